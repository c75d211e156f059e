"""
auth/otp.py -- One-time email codes for step-up authentication.

Codes are 6 digits from the OS CSPRNG, valid for OTP_TTL_MINUTES (10 by
default). Only HMAC(code) is persisted. consume() is the single mutation and
is a conditional update in the store, so a code is accepted at most once even
under concurrent submissions.

Every failure mode of consume() -- unknown id, wrong code, consumed, expired --
returns None without writing anything, and the caller maps all of them to the
same client message.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from auth.keys import SecretProvider
from auth.models import EmailOtp
from auth.store import AuthStore, utcnow

logger = logging.getLogger("authority.otp")

OTP_DIGITS = 6


class CodeSender(Protocol):
    def send_login_code(self, to_email: str, code: str) -> None: ...


@dataclass(frozen=True)
class OtpChallenge:
    otp_id: str
    expires_at: datetime


def generate_code() -> str:
    return f"{secrets.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}"


class OtpChallengeManager:
    def __init__(
        self,
        store: AuthStore,
        keys: SecretProvider,
        sender: CodeSender,
        ttl_minutes: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._keys = keys
        self._sender = sender
        self._ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def issue(
        self,
        user_id: str,
        email: str,
        device_hash: str | None = None,
        ip_address: str | None = None,
        country: str | None = None,
    ) -> OtpChallenge:
        """Create a challenge for user_id and mail the code to email.

        The record is stored before sending so a delivery failure leaves an
        unusable (never-seen) challenge behind rather than a mailed code with
        no record.
        """
        code = generate_code()
        now = self._clock()
        otp = self._store.create_email_otp(
            EmailOtp(
                user_id=user_id,
                code_hash=self._keys.keyed_hash(code),
                device_hash=device_hash,
                ip_address=ip_address,
                country=country,
                created_at=now,
                expires_at=now + self._ttl,
            )
        )
        self._sender.send_login_code(email, code)
        logger.info("OTP challenge %s issued for user %s", otp.id, user_id)
        return OtpChallenge(otp_id=otp.id, expires_at=otp.expires_at)

    def consume(self, otp_id: str, code: str) -> EmailOtp | None:
        """Return the consumed challenge on success, None on any failure."""
        otp = self._store.get_email_otp(otp_id)
        now = self._clock()
        if otp is None or otp.consumed_at is not None or otp.expires_at <= now:
            return None
        if not self._keys.matches(code.strip(), otp.code_hash):
            return None
        if not self._store.consume_email_otp(otp.id, now):
            # Lost a race with a concurrent submission of the same code
            return None
        otp.consumed_at = now
        return otp

    def peek_owner(self, otp_id: str) -> str | None:
        """Return the user id a challenge belongs to, for audit attribution."""
        otp = self._store.get_email_otp(otp_id)
        return otp.user_id if otp is not None else None
