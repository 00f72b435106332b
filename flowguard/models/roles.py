"""
Custom role and role template database models.

Custom roles are organization-scoped and may inherit from a parent role.
Templates are blueprints whose permission list is copied into a role at
creation time.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flowguard.core.database import Base, new_id as _new_id, utcnow as _utcnow


class CustomRole(Base):
    """
    Organization-defined role.

    The effective permission set is the role's own permissions plus those
    of every ancestor reached through parent_role_id.
    """
    __tablename__ = "custom_roles"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_new_id,
    )

    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Role hierarchy (inheritance)
    parent_role_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("custom_roles.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Provenance only; template edits never propagate
    template_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        nullable=True,
    )

    priority: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    created_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    # Relationships
    permissions: Mapped[list["CustomRolePermission"]] = relationship(
        "CustomRolePermission",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_custom_roles_org_name"),
        Index("ix_custom_roles_parent", "parent_role_id"),
    )

    @property
    def permission_keys(self) -> list[str]:
        """Own (non-inherited) permissions as `resource:action` strings."""
        return sorted(p.key for p in self.permissions)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "parent_role_id": self.parent_role_id,
            "template_id": self.template_id,
            "priority": self.priority,
            "version": self.version,
            "permissions": self.permission_keys,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class CustomRolePermission(Base):
    """
    One (resource_type, action) grant attached to a custom role.
    """
    __tablename__ = "custom_role_permissions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_new_id,
    )

    role_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("custom_roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    resource_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    action: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("role_id", "resource_type", "action", name="uq_custom_role_permission"),
    )

    @property
    def key(self) -> str:
        return f"{self.resource_type}:{self.action}"


class RoleTemplate(Base):
    """
    Reusable role blueprint.

    organization_id NULL means the template is available to every
    organization.
    """
    __tablename__ = "role_templates"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_new_id,
    )

    organization_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # List of "resource:action" strings
    permissions: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_role_templates_org_name"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "permissions": list(self.permissions or []),
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
