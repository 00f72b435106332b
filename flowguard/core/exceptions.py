"""
Error taxonomy for the authorization engine.

Every error carries a machine-readable code and the HTTP status the
boundary layer should answer with.
"""

from typing import Any, Dict, Optional


class FlowguardError(Exception):
    """Base class for all engine errors."""

    code = "FLOWGUARD_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Render the error in the API error envelope format."""
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class AuthenticationFailure(FlowguardError):
    """No authentication strategy resolved a principal."""

    code = "UNAUTHORIZED"
    status_code = 401


class AuthorizationDenied(FlowguardError):
    """The resolver denied the requested action."""

    code = "PERMISSION_DENIED"
    status_code = 403


class NotFoundError(FlowguardError):
    """A referenced organization, workspace, role or resource does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class ConflictError(FlowguardError):
    """Duplicate membership, duplicate role name or a blocked deletion."""

    code = "CONFLICT"
    status_code = 409


class MembershipRequiredError(ConflictError):
    """Workspace membership requested for a user outside the parent organization."""

    code = "ORGANIZATION_MEMBERSHIP_REQUIRED"


class ValidationError(FlowguardError):
    """Input rejected before reaching the store (unknown permission, role cycle)."""

    code = "VALIDATION_ERROR"
    status_code = 400


class BackendUnavailable(FlowguardError):
    """The store of record (or the cache) could not be reached."""

    code = "BACKEND_UNAVAILABLE"
    status_code = 503
