from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Failure of an auth operation, carrying what the HTTP layer renders.

    ``status_code`` is the response status and ``error_code`` the stable code
    placed in the error envelope. Subclasses pin both; an instance may
    override either for a one-off mapping.
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
    """Malformed email, password, name or request body."""


class BadRequestError(ValidationError):
    """Unknown, expired or already-used verification code or reset token."""


class AuthenticationError(ServiceError):
    """Bad credentials or a missing, unknown or expired session token."""

    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Email address already registered."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Caller exhausted its window; ``retry_after`` is in whole seconds."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many requests", *, retry_after: int = 60, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class HashingFailed(ServerError):
    """The password KDF could not run (allocation or parameter failure)."""


class ServiceUnavailableError(ServiceError):
    """The database stayed unreachable after retries."""

    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "AuthenticationError",
    "BadRequestError",
    "ConflictError",
    "HashingFailed",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ServiceError",
    "ServiceUnavailableError",
    "ValidationError",
]
