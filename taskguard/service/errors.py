from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
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


class ProviderEmailMissingError(ValidationError):
    """OAuth provider did not assert an email address (400)."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"{provider} did not provide an email address",
            detail={"provider": provider},
        )
        self.provider = provider


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    """Signed token is past its expiry (401)."""

    def __init__(self, message: str = "token expired") -> None:
        super().__init__(message)


class TokenInvalidError(AuthenticationError):
    """Signed token is malformed, forged, or of the wrong type (401)."""

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)


class ForbiddenError(ServiceError):
    """Access denied: locked, inactive, unverified, or insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email or last login method (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DecryptionError(ServerError):
    """Encrypted payload could not be opened.

    The reason ("malformed" or "tag mismatch") is kept on the exception for
    logging; the boundary only ever reports a generic server error.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(f"decryption failed: {reason}", detail={})
        self.reason = reason


class ServiceUnavailableError(ServiceError):
    """Downstream cache, store, or identity provider failed (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ProviderEmailMissingError",
    "AuthenticationError",
    "TokenExpiredError",
    "TokenInvalidError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DecryptionError",
    "ServiceUnavailableError",
]
