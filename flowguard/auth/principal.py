"""
Request identity types.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


class AuthMethod(str, enum.Enum):
    """How the principal was established."""
    TOKEN = "token"
    API_KEY = "api_key"
    BASIC = "basic"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Identity:
    """What a single strategy resolved, before profile lookup."""

    auth_method: AuthMethod
    user_id: Optional[str] = None
    email: Optional[str] = None
    api_key_id: Optional[str] = None
    # Only static credentials assert admin rights by themselves
    is_system_admin: bool = False
    claims: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Principal:
    """
    Authenticated identity attached to one request.

    Built fresh per request by the authentication chain; never persisted.
    """

    user_id: Optional[str]
    auth_method: AuthMethod
    api_key_id: Optional[str] = None
    is_system_admin: bool = False
    is_internal: bool = False
    email: Optional[str] = None

    @classmethod
    def internal(cls) -> "Principal":
        return cls(
            user_id=None,
            auth_method=AuthMethod.INTERNAL,
            is_system_admin=True,
            is_internal=True,
        )

    @property
    def rate_limit_key(self) -> str:
        """Identity a rate limiter can key on."""
        if self.user_id:
            return f"user:{self.user_id}"
        if self.api_key_id:
            return f"api_key:{self.api_key_id}"
        return self.auth_method.value

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "auth_method": self.auth_method.value,
            "api_key_id": self.api_key_id,
            "is_system_admin": self.is_system_admin,
            "is_internal": self.is_internal,
            "email": self.email,
        }


@dataclass(frozen=True)
class AuthRequest:
    """Framework-neutral view of the parts of a request the chain reads."""

    method: str = "GET"
    path: str = "/"
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Header lookups are case-insensitive
        object.__setattr__(
            self,
            "headers",
            {name.lower(): value for name, value in dict(self.headers).items()},
        )

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @property
    def bearer_token(self) -> Optional[str]:
        """Token from `Authorization: Bearer <token>`, if present."""
        value = self.header("authorization")
        if not value:
            return None
        parts = value.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return None
        return parts[1]

    @classmethod
    def from_starlette(cls, request: Any) -> "AuthRequest":
        return cls(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
        )
