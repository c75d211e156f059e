"""
auth/authority.py -- Session Authority: the login, step-up, refresh and logout protocols.

SessionAuthority composes the leaf components and is the only object the API
layer talks to. Each method is one stateless protocol step: everything it
needs comes in as arguments or from the store, everything it changes goes
back to the store.

Failure policy:
  Credential, OTP and refresh failures raise the generic AuthError subclasses
  from auth.errors. The precise reason is written to the audit log only.
  Audit writes happen after the state change they describe and are
  best-effort (see auth.audit).

Login flow:
  1. Resolve the user (exact, then case-insensitive username).
  2. Unknown user -> dummy bcrypt, audit invalid_credentials, fail.
  3. Wrong password -> audit invalid_credentials, fail (same error).
  4. Inactive account -> audit inactive_account, fail 403. Checked after the
     password so the 403 is never an existence oracle.
  5. Legacy credential matched -> persist the bcrypt upgrade.
  6. Step-up required and email on file -> issue OTP, audit otp_required,
     return OtpRequired (no tokens).
  7. Otherwise upsert device trust, issue tokens, audit login_success.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Union

from auth import passwords
from auth.audit import AuditLog
from auth.devices import DeviceTrustStore
from auth.errors import (
    InactiveAccount,
    InvalidCredentials,
    InvalidOrExpiredOtp,
    InvalidOrExpiredRefreshToken,
    UserNotFound,
)
from auth.keys import SecretProvider
from auth.models import (
    REASON_INACTIVE_ACCOUNT,
    REASON_INVALID_CREDENTIALS,
    REASON_INVALID_OTP,
    REASON_LOGIN_SUCCESS,
    REASON_OTP_REQUIRED,
    REASON_OTP_SUCCESS,
    REASON_REFRESH_REUSE,
    Hashed,
    IssuedTokens,
    LoginEvent,
    LoginSuccess,
    OtpRequired,
    RefreshToken,
    RequestOrigin,
    User,
)
from auth.mailer import OtpMailer
from auth.otp import CodeSender, OtpChallengeManager
from auth.stepup import requires_otp
from auth.store import AuthStore, utcnow
from auth.tokens import RefreshTokenReused, TokenIssuer
from core.config import Settings

logger = logging.getLogger("authority.auth")

LoginOutcome = Union[LoginSuccess, OtpRequired]


class SessionAuthority:
    def __init__(
        self,
        store: AuthStore,
        keys: SecretProvider,
        tokens: TokenIssuer,
        otp: OtpChallengeManager,
        devices: DeviceTrustStore,
        audit: AuditLog,
        refresh_retention_days: int = 90,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.keys = keys
        self.tokens = tokens
        self.otp = otp
        self.devices = devices
        self.audit = audit
        self._retention = timedelta(days=refresh_retention_days)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: AuthStore,
        sender: CodeSender | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> SessionAuthority:
        """Wire every component from one Settings instance.

        sender defaults to the SMTP mailer; tests pass a recorder.
        """
        keys = SecretProvider.from_settings(settings)
        return cls(
            store=store,
            keys=keys,
            tokens=TokenIssuer(
                store,
                keys,
                access_ttl_seconds=settings.access_token_ttl_seconds,
                refresh_ttl_days=settings.refresh_token_ttl_days,
                clock=clock,
            ),
            otp=OtpChallengeManager(
                store,
                keys,
                sender if sender is not None else OtpMailer(settings),
                ttl_minutes=settings.otp_ttl_minutes,
                clock=clock,
            ),
            devices=DeviceTrustStore(store, clock=clock),
            audit=AuditLog(store),
            refresh_retention_days=settings.refresh_token_retention_days,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Protocols
    # ------------------------------------------------------------------

    def login(
        self,
        username: str,
        password: str,
        origin: RequestOrigin,
        remember_device: bool = False,
        device_id: str | None = None,
    ) -> LoginOutcome:
        username = username.strip()
        password = password.strip()
        device_hash = self.keys.device_hash(device_id)

        user = self.store.get_by_username(username) if username else None
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            passwords.burn_verification(password)
            self.audit.attempt(REASON_INVALID_CREDENTIALS, False, origin, device_hash=device_hash)
            raise InvalidCredentials()

        verification = passwords.verify(password, user.password)
        if not verification.valid:
            self.audit.attempt(REASON_INVALID_CREDENTIALS, False, origin, user.id, device_hash)
            raise InvalidCredentials()

        if not user.is_active:
            self.audit.attempt(REASON_INACTIVE_ACCOUNT, False, origin, user.id, device_hash)
            raise InactiveAccount()

        if verification.needs_upgrade:
            user.password = passwords.upgraded(password)
            self.store.set_password(user.id, user.password)
            logger.info("Upgraded legacy credential for user %s", user.id)

        device = self.devices.lookup(user.id, device_hash) if device_hash else None
        last_country = self.audit.last_successful_country(user.id)
        if requires_otp(user, device, device_hash is not None, last_country, origin.country):
            if user.email:
                challenge = self.otp.issue(
                    user.id,
                    user.email,
                    device_hash=device_hash,
                    ip_address=origin.ip_address,
                    country=origin.country,
                )
                self.audit.attempt(REASON_OTP_REQUIRED, False, origin, user.id, device_hash)
                return OtpRequired(otp_id=challenge.otp_id, email=user.email, expires_at=challenge.expires_at)
            logger.warning("Step-up skipped for user %s: no email address on file", user.id)

        return self._complete(user, device_hash, remember_device, origin, REASON_LOGIN_SUCCESS)

    def verify_otp(
        self,
        otp_id: str,
        code: str,
        origin: RequestOrigin,
        remember_device: bool = False,
        device_id: str | None = None,
    ) -> LoginSuccess:
        device_hash = self.keys.device_hash(device_id)
        otp = self.otp.consume(otp_id, code)
        if otp is None:
            self.audit.attempt(REASON_INVALID_OTP, False, origin, self.otp.peek_owner(otp_id), device_hash)
            raise InvalidOrExpiredOtp()

        user = self.store.get_by_id(otp.user_id)
        if user is None:
            raise InvalidOrExpiredOtp()
        if not user.is_active:
            self.audit.attempt(REASON_INACTIVE_ACCOUNT, False, origin, user.id, device_hash)
            raise InactiveAccount()

        return self._complete(user, device_hash or otp.device_hash, remember_device, origin, REASON_OTP_SUCCESS)

    def refresh(self, presented: str | None, origin: RequestOrigin) -> IssuedTokens:
        """Exchange a refresh token for a new pair. Any failure -> InvalidOrExpiredRefreshToken."""
        if not presented:
            raise InvalidOrExpiredRefreshToken()
        try:
            record = self.tokens.find_active(presented)
        except RefreshTokenReused as exc:
            self.audit.attempt(REASON_REFRESH_REUSE, False, origin, exc.user_id)
            raise
        user = self.store.get_by_id(record.user_id)
        if user is None or not user.is_active:
            raise InvalidOrExpiredRefreshToken()
        return self.tokens.rotate(record, origin)

    def logout(self, presented: str | None, session_token_id: str | None = None) -> None:
        """Revoke the session behind a refresh token and the one a server
        session points at. Unknown tokens are ignored."""
        if presented:
            record = self.tokens.lookup(presented)
            if record is not None:
                self.tokens.revoke(record.id)
        if session_token_id:
            head = self.tokens.chain_head(session_token_id)
            if head is not None:
                self.tokens.revoke(head.id)

    def _complete(
        self,
        user: User,
        device_hash: str | None,
        remember_device: bool,
        origin: RequestOrigin,
        reason: str,
    ) -> LoginSuccess:
        if device_hash:
            self.devices.upsert(user.id, device_hash, trusted=remember_device)
        issued = self.tokens.issue(user.id, device_hash, origin)
        self.audit.attempt(reason, True, origin, user.id, device_hash)
        return LoginSuccess(user=user, tokens=issued)

    # ------------------------------------------------------------------
    # Principal resolution (guards)
    # ------------------------------------------------------------------

    def resolve_principal(
        self,
        session_user_id: str | None,
        session_token_id: str | None,
        bearer_token: str | None,
    ) -> str | None:
        """Return the authenticated user id, trying the session before the bearer token."""
        return self._from_session(session_user_id, session_token_id) or self._from_bearer(bearer_token)

    def _from_session(self, session_user_id: str | None, session_token_id: str | None) -> str | None:
        """The session cookie only points at a refresh-token chain; the chain's
        live record is what keeps the session valid."""
        if not session_user_id or not session_token_id:
            return None
        head = self.tokens.chain_head(session_token_id)
        if head is None or head.user_id != session_user_id or not head.is_active(self._clock()):
            return None
        return session_user_id

    def _from_bearer(self, bearer_token: str | None) -> str | None:
        if not bearer_token:
            return None
        claims = self.tokens.decode(bearer_token)
        return claims.user_id if claims is not None else None

    # ------------------------------------------------------------------
    # Account and admin operations
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> User | None:
        return self.store.get_by_id(user_id)

    def change_password(self, user: User, current_password: str, new_password: str) -> None:
        """Raises InvalidCredentials if current_password does not match and
        InvalidPassword if new_password is blank."""
        new_password = passwords.normalize_new_password(new_password)
        if not passwords.verify(current_password.strip(), user.password).valid:
            raise InvalidCredentials("Current password is incorrect")
        self.store.set_password(user.id, Hashed(passwords.hash_password(new_password)))

    def reset_password(self, user_id: str, new_password: str) -> User:
        new_password = passwords.normalize_new_password(new_password)
        if not self.store.set_password(user_id, Hashed(passwords.hash_password(new_password))):
            raise UserNotFound()
        return self.store.get_by_id(user_id)

    def update_profile(self, user_id: str, **fields) -> User:
        """Apply profile changes. None values are skipped."""
        changes = {k: v for k, v in fields.items() if v is not None}
        if not self.store.update_user(user_id, **changes):
            raise UserNotFound()
        return self.store.get_by_id(user_id)

    def list_sessions(self) -> list[tuple[RefreshToken, User | None]]:
        sessions = self.tokens.active_sessions()
        users = self.store.get_users_by_ids({s.user_id for s in sessions})
        return [(s, users.get(s.user_id)) for s in sessions]

    def revoke_session(self, token_id: str) -> bool:
        return self.tokens.revoke(token_id)

    def revoke_all_sessions(self, user_id: str) -> int:
        revoked = self.tokens.revoke_all_for_user(user_id)
        logger.info("Revoked %d session(s) for user %s", revoked, user_id)
        return revoked

    def access_log(self, limit: int = 50) -> list[tuple[LoginEvent, User | None]]:
        events = self.audit.recent(limit)
        users = self.store.get_users_by_ids({e.user_id for e in events if e.user_id})
        return [(e, users.get(e.user_id) if e.user_id else None) for e in events]

    def purge_expired(self) -> tuple[int, int]:
        """Delete dead OTP challenges and refresh tokens past the retention window.

        Returns (otps_deleted, refresh_tokens_deleted). Login events are never purged.
        """
        now = self._clock()
        otps = self.store.purge_email_otps(now)
        tokens = self.store.purge_refresh_tokens(now - self._retention)
        if otps or tokens:
            logger.info("Purged %d OTP challenge(s) and %d refresh token(s)", otps, tokens)
        return otps, tokens
