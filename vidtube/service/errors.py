from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries both an HTTP status_code and a stable error_code:
    - invalid_argument (400)
    - unauthorized / invalid_token / stale_token (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "invalid_argument"

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


class InvalidArgumentError(ServiceError):
    """Malformed identifier, missing field or bad pagination (400)."""
    status_code = 400
    error_code = "invalid_argument"


class UnauthorizedError(ServiceError):
    """Missing credential or wrong password (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(UnauthorizedError):
    """Token signature, type or expiry check failed (401)."""
    error_code = "invalid_token"


class StaleTokenError(UnauthorizedError):
    """Refresh token no longer matches the stored value (401)."""
    error_code = "stale_token"


class NotFoundError(ServiceError):
    """Referenced entity not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate unique field (409)."""
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


__all__ = [
    "ServiceError",
    "InvalidArgumentError",
    "UnauthorizedError",
    "InvalidTokenError",
    "StaleTokenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
