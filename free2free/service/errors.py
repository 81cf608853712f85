from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` that is serialized as ``code_error`` in the response body:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - internal_error (500)
    - oauth_failed (502)
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


class UnauthorizedError(ServiceError):
    """Credential missing, invalid or expired (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Valid credential without sufficient privilege (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class OAuthError(ServiceError):
    """Upstream OAuth provider failed or timed out (502)."""
    status_code = 502
    error_code = "oauth_failed"

    def __init__(self, message: str, *, provider: Optional[str] = None, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        if provider:
            detail = {**detail, "provider": provider}
        super().__init__(message, detail=detail, **kwargs)
        self.provider = provider


class InternalError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "internal_error"


class ConfigurationError(Exception):
    """Raised at construction time when required configuration is unusable."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "OAuthError",
    "InternalError",
    "ConfigurationError",
]
