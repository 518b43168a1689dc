from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - validation_error (400)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or incomplete (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource in a conflicting state (409)."""
    status_code = 409
    error_code = "conflict"


class ImpersonationErrorKind(str, Enum):
    NOT_PERMITTED = "not_permitted"
    TARGET_ROLE_BLOCKED = "target_role_blocked"
    TARGET_IS_SELF = "target_is_self"
    TARGET_BANNED = "target_banned"
    ADMIN_LACKS_2FA = "admin_lacks_2fa"
    GLOBAL_CEILING_REACHED = "global_ceiling_reached"
    PER_ADMIN_CEILING_REACHED = "per_admin_ceiling_reached"


class ImpersonationDenied(ForbiddenError):
    """A start precondition failed; no session was created."""

    def __init__(self, kind: ImpersonationErrorKind, message: str, *, detail: Optional[dict] = None):
        super().__init__(message, detail=detail, error_code=kind.value)
        self.kind = kind


class ImpersonationNotFound(NotFoundError):
    error_code = "impersonation_not_found"


class ImpersonationTerminated(ConflictError):
    """Extend attempted on a terminated or expired impersonation."""
    error_code = "impersonation_terminated"


class AlreadyImpersonating(ConflictError):
    error_code = "already_impersonating"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ImpersonationErrorKind",
    "ImpersonationDenied",
    "ImpersonationNotFound",
    "ImpersonationTerminated",
    "AlreadyImpersonating",
]
