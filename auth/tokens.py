"""
auth/tokens.py -- Access tokens, refresh tokens, and the rotation protocol.

Security design decisions:
  Access token: python-jose HS256 JWT signed with ACCESS_TOKEN_SECRET, 15
       minute lifetime. Claims: sub (user id), sid (id of the refresh-token
       record the session hangs off), iat, exp. Verification returns None on
       any failure -- the guard turns that into a 401. It never raises.

  Refresh token: secrets.token_urlsafe(64) -- 64 random bytes, base64url.
       Returned to the client once (HttpOnly cookie); the store keeps only
       HMAC-SHA256(REFRESH_TOKEN_SECRET, token) plus issuance metadata.

  Rotation: every refresh retires the presented token and issues a new one.
       The retire step is a conditional UPDATE inside the same transaction as
       the insert (AuthStore.rotate_refresh_token), so of two requests racing
       on one token exactly one wins.

  Reuse detection: a rotated token showing up again means either a client bug
       or a stolen token. Every still-active successor in its chain is revoked,
       which logs out whoever holds the current head -- legitimate user or
       attacker -- and forces a fresh password login.

State per record: ACTIVE -> ROTATED | REVOKED | EXPIRED. All terminal states
reject identically.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import InvalidOrExpiredRefreshToken
from auth.keys import SecretProvider
from auth.models import IssuedTokens, RefreshToken, RequestOrigin
from auth.store import AuthStore, utcnow

logger = logging.getLogger("authority.tokens")

_ALGORITHM = "HS256"


class RefreshTokenReused(InvalidOrExpiredRefreshToken):
    """A rotated token was presented again. Same client-facing failure as any
    other invalid refresh token; carries the owner for the audit trail."""

    def __init__(self, user_id: str, token_id: str) -> None:
        super().__init__()
        self.user_id = user_id
        self.token_id = token_id


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    session_id: str | None


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: str, session_id: str | None, secret: str, ttl_seconds: int = 900) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "sid": session_id,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def decode_access_token(token: str, secret: str) -> AccessClaims | None:
    """Verify signature and expiry. Returns None on any failure."""
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        return None
    return AccessClaims(user_id=user_id, session_id=payload.get("sid"))


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(64)


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    def __init__(
        self,
        store: AuthStore,
        keys: SecretProvider,
        access_ttl_seconds: int = 900,
        refresh_ttl_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._keys = keys
        self._access_ttl = access_ttl_seconds
        self._refresh_ttl = timedelta(days=refresh_ttl_days)
        self._clock = clock

    def _new_record(self, user_id: str, device_hash: str | None, origin: RequestOrigin) -> tuple[str, RefreshToken]:
        raw = generate_refresh_token()
        now = self._clock()
        record = RefreshToken(
            user_id=user_id,
            token_hash=self._keys.keyed_hash(raw),
            device_hash=device_hash,
            ip_address=origin.ip_address,
            country=origin.country,
            user_agent=origin.user_agent,
            created_at=now,
            expires_at=now + self._refresh_ttl,
        )
        return raw, record

    def _pair(self, raw: str, record: RefreshToken) -> IssuedTokens:
        return IssuedTokens(
            access_token=create_access_token(
                record.user_id, record.id, self._keys.access_token_secret, self._access_ttl
            ),
            refresh_token=raw,
            refresh_token_id=record.id,
            refresh_expires_at=record.expires_at,
        )

    def issue(self, user_id: str, device_hash: str | None, origin: RequestOrigin) -> IssuedTokens:
        """Start a new session chain for user_id."""
        raw, record = self._new_record(user_id, device_hash, origin)
        record = self._store.create_refresh_token(record)
        return self._pair(raw, record)

    def lookup(self, presented: str) -> RefreshToken | None:
        return self._store.get_refresh_token_by_hash(self._keys.keyed_hash(presented))

    def find_active(self, presented: str) -> RefreshToken:
        """Return the active record behind a presented token.

        Raises InvalidOrExpiredRefreshToken for unknown, revoked and expired
        tokens, and its RefreshTokenReused subclass (after revoking the
        downstream chain) for rotated ones.
        """
        record = self.lookup(presented)
        now = self._clock()
        if record is None:
            raise InvalidOrExpiredRefreshToken()
        if record.is_rotated:
            revoked = self._store.revoke_descendants(record.id, now)
            logger.warning(
                "Rotated refresh token %s replayed for user %s -- revoked %d downstream token(s)",
                record.id,
                record.user_id,
                revoked,
            )
            raise RefreshTokenReused(record.user_id, record.id)
        if not record.is_active(now):
            raise InvalidOrExpiredRefreshToken()
        return record

    def rotate(self, record: RefreshToken, origin: RequestOrigin) -> IssuedTokens:
        """Replace record with a new token carrying the same device binding.

        Raises InvalidOrExpiredRefreshToken if another request rotated or
        revoked it first.
        """
        raw, replacement = self._new_record(record.user_id, record.device_hash, origin)
        rotated = self._store.rotate_refresh_token(record.id, replacement, self._clock())
        if rotated is None:
            raise InvalidOrExpiredRefreshToken()
        return self._pair(raw, rotated)

    def chain_head(self, token_id: str) -> RefreshToken | None:
        """Follow rotations from token_id to the newest record of its chain.

        Returns that record whether or not it is still active; None if the
        chain is broken (record purged).
        """
        record = self._store.get_refresh_token(token_id)
        seen = set()
        while record is not None and record.is_rotated and record.id not in seen:
            seen.add(record.id)
            record = self._store.get_refresh_token(record.replaced_by_token_id)
        return record

    def decode(self, access_token: str) -> AccessClaims | None:
        return decode_access_token(access_token, self._keys.access_token_secret)

    def revoke(self, token_id: str) -> bool:
        return self._store.revoke_refresh_token(token_id, self._clock())

    def revoke_all_for_user(self, user_id: str) -> int:
        return self._store.revoke_refresh_tokens_for_user(user_id, self._clock())

    def active_sessions(self) -> list[RefreshToken]:
        return self._store.list_active_refresh_tokens(self._clock())
