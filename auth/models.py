"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores map rows into
these; the authority and routes do the work.

The password credential is a tagged variant -- LegacyPlaintext | Hashed --
rather than a single string whose prefix is sniffed. The store persists the
tag in its own column, and the verifier branches on the type.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union

# Login event reason codes. Recorded in the audit log only, never echoed to
# clients.
REASON_INVALID_CREDENTIALS = "invalid_credentials"
REASON_INACTIVE_ACCOUNT = "inactive_account"
REASON_OTP_REQUIRED = "otp_required"
REASON_LOGIN_SUCCESS = "login_success"
REASON_INVALID_OTP = "invalid_otp"
REASON_OTP_SUCCESS = "otp_success"
REASON_REFRESH_REUSE = "refresh_token_reuse"


@dataclass(frozen=True)
class LegacyPlaintext:
    """Password stored as-is by the pre-hashing version of the application."""

    value: str
    kind = "legacy-plaintext"


@dataclass(frozen=True)
class Hashed:
    """bcrypt hash of the password."""

    value: str
    kind = "hashed"


PasswordCredential = Union[LegacyPlaintext, Hashed]


@dataclass
class User:
    """A local account.

    email is optional; without one the account cannot receive step-up codes
    and logs in on password alone. require_email_otp forces step-up on every
    login regardless of device or location.
    """

    username: str
    role: str
    password: PasswordCredential
    id: str | None = None
    name: str | None = None
    email: str | None = None
    organization_id: str | None = None
    require_email_otp: bool = False
    is_active: bool = True
    created_at: str | None = None


@dataclass
class RefreshToken:
    """Server-side record of an issued refresh token.

    token_hash is HMAC-SHA256(REFRESH_TOKEN_SECRET, raw_token). The raw value
    exists only in the client's cookie.
    """

    user_id: str
    token_hash: str
    expires_at: datetime
    id: str | None = None
    device_hash: str | None = None
    ip_address: str | None = None
    country: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None
    revoked_at: datetime | None = None
    replaced_by_token_id: str | None = None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now

    @property
    def is_rotated(self) -> bool:
        return self.revoked_at is not None and self.replaced_by_token_id is not None


@dataclass
class EmailOtp:
    user_id: str
    code_hash: str
    expires_at: datetime
    id: str | None = None
    device_hash: str | None = None
    ip_address: str | None = None
    country: str | None = None
    created_at: datetime | None = None
    consumed_at: datetime | None = None


@dataclass
class UserDevice:
    user_id: str
    device_hash: str
    trusted: bool = False
    id: str | None = None
    label: str | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class LoginEvent:
    """One row of the append-only audit trail. user_id is None when the
    submitted username did not resolve to an account."""

    success: bool
    reason: str
    user_id: str | None = None
    device_hash: str | None = None
    ip_address: str | None = None
    country: str | None = None
    user_agent: str | None = None
    id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class RequestOrigin:
    """Network metadata captured from the request that triggered an operation."""

    ip_address: str | None = None
    country: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class IssuedTokens:
    """A freshly minted token pair. refresh_token is the raw value and must
    only ever be written to the response cookie."""

    access_token: str
    refresh_token: str
    refresh_token_id: str
    refresh_expires_at: datetime


@dataclass(frozen=True)
class LoginSuccess:
    user: User
    tokens: IssuedTokens


@dataclass(frozen=True)
class OtpRequired:
    """Informational login outcome: credentials were valid but a step-up code
    was mailed. No tokens are issued until verify_otp succeeds."""

    otp_id: str
    email: str
    expires_at: datetime
