from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Failure raised by the service layer and rendered as `{"error": message}`.

    Subclasses pin the HTTP status and a stable machine-readable
    ``error_code``; ``detail`` carries extra response fields.
    """

    status_code: int = 400
    error_code: str = "bad_request"

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


class BadRequestError(ServiceError):
    """Well-formed request the domain rejects (400)."""
    status_code = 400
    error_code = "bad_request"


class AuthenticationError(ServiceError):
    """Missing or unusable credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable."""

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Token is malformed, badly signed, expired or of the wrong kind."""

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Unknown user or chat (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Email or phone already taken (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts inside the limiter window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_seconds: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = max(0, int(retry_after_seconds))
        self.detail.setdefault("retryAfter", self.retry_after_seconds)


class ThrottledError(RateLimitedError):
    """Verification resend requested before the cooldown elapsed."""

    def __init__(self, retry_after_seconds: int, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Please wait {retry_after_seconds} seconds before resending",
            retry_after_seconds=retry_after_seconds,
        )


class ServerError(ServiceError):
    """Failure the client cannot fix (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """A required secret or upstream credential is missing."""
    pass


class UpstreamError(ServerError):
    """The upstream model provider failed or answered with a non-success status."""
    pass


# Verification outcomes; all map to 400 so the client can prompt for a new code
class NoActiveChallengeError(BadRequestError):
    def __init__(self, message: str = "No active verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeExpiredError(BadRequestError):
    def __init__(self, message: str = "Verification code expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeMismatchError(BadRequestError):
    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SupersededError(BadRequestError):
    def __init__(
        self, message: str = "A newer verification link has been sent", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidLinkError(BadRequestError):
    def __init__(
        self, message: str = "Invalid or expired verification link", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ThrottledError",
    "ServerError",
    "ConfigurationError",
    "UpstreamError",
    "NoActiveChallengeError",
    "ChallengeExpiredError",
    "ChallengeMismatchError",
    "SupersededError",
    "InvalidLinkError",
]
