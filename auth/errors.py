"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every AuthError carries the HTTP status and the generic client-facing message.
The API layer maps them with a single exception handler, so the specific
failure reason never reaches the client -- it is recorded in the audit log
instead [enumeration/oracle protection].

ConfigurationError is raised by core.config at startup and re-exported here so
callers can import the whole taxonomy from one place.
"""

from __future__ import annotations

from core.config import ConfigurationError

__all__ = [
    "AuthError",
    "ConfigurationError",
    "Forbidden",
    "InactiveAccount",
    "InvalidCredentials",
    "InvalidOrExpiredOtp",
    "InvalidOrExpiredRefreshToken",
    "InvalidPassword",
    "OtpDeliveryError",
    "Unauthorized",
    "UserNotFound",
]


class AuthError(Exception):
    status_code: int = 400
    message: str = "Authentication failed"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    """Unknown username or wrong password. Deliberately indistinguishable."""

    status_code = 401
    message = "Invalid credentials"


class InvalidPassword(AuthError):
    """A new password that is empty once surrounding whitespace is removed."""

    status_code = 400
    message = "Password must not be blank"


class InactiveAccount(AuthError):
    status_code = 403
    message = "Account inactive"


class InvalidOrExpiredOtp(AuthError):
    """Unknown challenge id, wrong code, consumed or expired challenge."""

    status_code = 400
    message = "Invalid or expired code"


class InvalidOrExpiredRefreshToken(AuthError):
    status_code = 401
    message = "Unauthorized"


class Unauthorized(AuthError):
    status_code = 401
    message = "Unauthorized"


class Forbidden(AuthError):
    status_code = 403
    message = "Forbidden"


class UserNotFound(AuthError):
    status_code = 404
    message = "User not found"


class OtpDeliveryError(AuthError):
    """SMTP is configured but the verification email could not be sent."""

    status_code = 503
    message = "Unable to send verification code"
