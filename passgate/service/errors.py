from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for conditions that abort an action.

    Business outcomes such as a wrong code or an unknown email travel back as
    ``ActionResult`` values instead. Subclasses here carry the HTTP status and
    the stable ``error_code`` written into the response envelope.
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


class UserNotLoggedInError(ServiceError):
    """No access token was presented to an action that needs one.

    Reported with a 200 status so clients route the user to a login screen
    instead of treating it as a transport failure.
    """
    status_code = 200
    error_code = "NOT_LOGGED_IN"


class UnauthorizedError(ServiceError):
    """The presented token is malformed, forged or revoked (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class TokenExpiredError(UnauthorizedError):
    """The token is genuine but past expiry; the client should refresh (401)."""
    error_code = "TOKEN_EXPIRED"


class RateLimitedError(ServiceError):
    """Too many attempts inside a counting window (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class IpBlockedError(RateLimitedError):
    """The caller's IP was placed on the blocklist after earlier rate limiting."""
    error_code = "IP_BLOCKED"


class TransientFailure(ServiceError):
    """A downstream dependency (mail relay, directory) failed (503)."""
    status_code = 503
    error_code = "TRANSIENT_FAILURE"


__all__ = [
    "ServiceError",
    "UserNotLoggedInError",
    "UnauthorizedError",
    "TokenExpiredError",
    "RateLimitedError",
    "IpBlockedError",
    "TransientFailure",
]
