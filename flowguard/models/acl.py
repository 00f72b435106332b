"""
Resource-level permission overrides (ACL entries).
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from flowguard.core.database import Base, new_id as _new_id, utcnow as _utcnow


class ResourcePermission(Base):
    """
    Explicit grant or revoke of one permission on one resource instance.

    `granted=True` is an explicit allow, `granted=False` an explicit deny.
    Absence of a row means no override.
    """
    __tablename__ = "resource_permissions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_new_id,
    )

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    resource_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    resource_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Action name, e.g. "read" or "update"
    permission: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    granted: Mapped[bool] = mapped_column(
        Boolean,
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

    __table_args__ = (
        UniqueConstraint(
            "user_id", "resource_type", "resource_id", "permission",
            name="uq_resource_permission",
        ),
        Index("ix_resource_permissions_resource", "resource_type", "resource_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "permission": self.permission,
            "granted": self.granted,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
