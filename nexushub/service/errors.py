from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    machine-readable error_code:
    - VALIDATION_ERROR (400)
    - UNAUTHORIZED / TOKEN_EXPIRED / INVALID_TOKEN (401)
    - FORBIDDEN (403)
    - NOT_FOUND (404)
    - CONFLICT (409)
    - INTERNAL_ERROR (500)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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
    error_code = "VALIDATION_ERROR"


class UnauthorizedError(ServiceError):
    """Identity unknown, invalid, or credentials rejected (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class TokenExpiredError(UnauthorizedError):
    """Token signature is valid but its expiry has passed (401)."""
    error_code = "TOKEN_EXPIRED"


class TokenInvalidError(UnauthorizedError):
    """Token is malformed, tampered with, or signed with the wrong key (401)."""
    error_code = "INVALID_TOKEN"


class ForbiddenError(ServiceError):
    """Authenticated but lacking permission (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email or username (409)."""
    status_code = 409
    error_code = "CONFLICT"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthorizedError",
    "TokenExpiredError",
    "TokenInvalidError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
