from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` from:
    unauthorized (401), forbidden (403), not_found (404), rate_limited (429),
    validation_error (400), conflict (409), server_error (500).
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


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Duplicate creation, e.g. an email that is already registered (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Fatal misconfiguration detected at startup, such as a missing signing secret."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "ForbiddenError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ConfigurationError",
]
