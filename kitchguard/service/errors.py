from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` and the HTTP ``status_code``
    the API layer renders it with. Messages are safe to show to callers: they
    never say whether a username exists or describe out-of-scope resources.
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
    """Missing or unreadable bearer credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown identifier or wrong password; the two are indistinguishable."""
    error_code = "invalid_credentials"


class AccountInactiveError(AuthenticationError):
    error_code = "account_inactive"


class AccountLockedError(AuthenticationError):
    """Too many failed attempts; locked until ``lock_until`` (423)."""
    status_code = 423
    error_code = "account_locked"


class InvalidTokenError(AuthenticationError):
    """Malformed, expired, wrong-signature or wrong-audience token."""
    error_code = "invalid_token"


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role or scope (403)."""
    status_code = 403
    error_code = "forbidden"


class TenantInactiveError(ForbiddenError):
    """Tenant is inactive, deleted, suspended or cancelled."""
    error_code = "tenant_inactive"


class NotFoundError(ServiceError):
    """Requested resource not found or outside the caller's scope (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate username or slug (409)."""
    status_code = 409
    error_code = "conflict"


class ServiceUnavailableError(ServiceError):
    """Backing store unreachable (503). Never retried inside the core."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountInactiveError",
    "AccountLockedError",
    "InvalidTokenError",
    "TokenRevokedError",
    "ForbiddenError",
    "TenantInactiveError",
    "NotFoundError",
    "ConflictError",
    "ServiceUnavailableError",
]
