from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the JSON error envelope:
    - unauthorized / session_expired (401)
    - forbidden (403)
    - csrf_missing / csrf_invalid (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - store_unavailable (503)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session expired or was revoked before the request finished (401)."""
    error_code = "session_expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class CsrfError(ForbiddenError):
    """CSRF token missing or invalid (403).

    ``reason`` is kept for observability; clients see the same status either way.
    """

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"CSRF token {reason}",
            detail={"reason": reason},
            error_code=f"csrf_{reason}",
        )
        self.reason = reason


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., 2FA already enabled (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServiceError):
    """Session or challenge store could not be reached (503).

    Raised by storage adapters so callers can fail closed deliberately.
    """
    status_code = 503
    error_code = "store_unavailable"

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(
            f"store unavailable during {operation}",
            detail={"operation": operation},
        )
        self.operation = operation
        self.cause = cause


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "CsrfError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "StoreUnavailableError",
]
