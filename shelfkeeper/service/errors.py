from __future__ import annotations

import uuid
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
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


class InvalidOrExpiredTokenError(ValidationError):
    """A verification or reset token is unknown, consumed, or past its expiry (400)."""

    def __init__(self, message: str = "invalid or expired token") -> None:
        super().__init__(message)


class AuthenticationError(ServiceError):
    """Bearer or refresh token missing, invalid, or of the wrong class (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """The presented token was genuine but has expired (401)."""
    pass


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair rejected; never says which half was wrong (401)."""

    def __init__(self, message: str = "invalid credentials") -> None:
        super().__init__(message)


class OAuthLinkError(AuthenticationError):
    """Identity provider handoff could not be turned into a principal (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - role or verification precondition failed (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Collaborator failure (500).

    Carries only an opaque ``reference`` that matches the server-side log
    entry; the underlying cause never leaves the process.
    """
    status_code = 500
    error_code = "server_error"

    def __init__(self, message: str = "internal error", *, reference: Optional[str] = None) -> None:
        super().__init__(message)
        self.reference = reference or uuid.uuid4().hex


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOrExpiredTokenError",
    "AuthenticationError",
    "SessionExpiredError",
    "InvalidCredentialsError",
    "OAuthLinkError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
