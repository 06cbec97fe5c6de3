from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code``, a stable ``error_code`` and a
    ``track`` flag telling the error tracker whether the failure is worth an
    operator's attention. Stable codes:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - bad_gateway (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Request failed"
    track: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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
    default_message = "Invalid request"


class AuthenticationError(ServiceError):
    """Authentication missing or rejected (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Authentication required"


class InvalidCredentials(AuthenticationError):
    """Wrong password or unknown email. Never reported to error tracking."""
    default_message = "Invalid email or password"


class RefreshTokenError(AuthenticationError):
    """Refresh token is expired, revoked, malformed or has no profile behind it."""
    default_message = "Invalid or expired refresh token"


class ForbiddenError(ServiceError):
    """Request refused, e.g. a failed CSRF or Origin check (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "Forbidden"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"
    default_message = "Conflict"


class DuplicateAccountError(ConflictError):
    default_message = "User with this email already exists"


class EmailInUseError(ConflictError):
    default_message = "Email address is already in use"


class NoPendingChangeError(ValidationError):
    default_message = "No pending email change found"


class InvalidTokenError(ValidationError):
    default_message = "Invalid verification token"


class TokenExpiredError(ValidationError):
    default_message = "Verification token has expired. Please request a new email change."


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many requests, please try again later"

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 0) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "Internal server error"
    track = True


class AuthenticationFailed(ServerError):
    """The identity provider failed for a reason other than bad credentials."""
    default_message = "Authentication failed"


class AccountIncomplete(ServerError):
    """Identity exists but registration never created its profile."""
    default_message = "Account incomplete. Please contact support."


class DownstreamServiceError(ServerError):
    """The email sender or identity provider is unavailable."""
    default_message = "A downstream service is unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "AuthenticationFailed",
    "RefreshTokenError",
    "ForbiddenError",
    "ConflictError",
    "DuplicateAccountError",
    "EmailInUseError",
    "NoPendingChangeError",
    "InvalidTokenError",
    "TokenExpiredError",
    "RateLimitedError",
    "ServerError",
    "AccountIncomplete",
    "DownstreamServiceError",
]
