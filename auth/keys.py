"""
auth/keys.py -- Secret material and keyed hashing.

SecretProvider is built once from Settings at startup and passed by reference
to every component that signs or hashes. Nothing else reads secrets.

Keyed hashes: refresh tokens, OTP codes and device ids are stored as
HMAC-SHA256(REFRESH_TOKEN_SECRET, value). The hash is deterministic so the
store can look records up by an indexed column, and an attacker holding only a
database dump cannot recompute it without the secret. bcrypt's slowness buys
nothing here: refresh tokens carry 512 bits of entropy and OTP codes are
short-lived and rate limited.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from auth.errors import ConfigurationError
from core.config import Settings


@dataclass(frozen=True)
class SecretProvider:
    access_token_secret: str
    hmac_secret: str
    session_secret: str

    @classmethod
    def from_settings(cls, settings: Settings) -> SecretProvider:
        """Fail fast if any secret is absent -- the process must not start."""
        missing = [
            name
            for name in ("access_token_secret", "refresh_token_secret", "session_secret")
            if not getattr(settings, name)
        ]
        if missing:
            raise ConfigurationError(f"Missing required secrets: {', '.join(n.upper() for n in missing)}")
        return cls(
            access_token_secret=settings.access_token_secret,
            hmac_secret=settings.refresh_token_secret,
            session_secret=settings.session_secret,
        )

    def keyed_hash(self, value: str) -> str:
        """Return HMAC-SHA256(hmac_secret, value) as a hex string."""
        return hmac.new(self.hmac_secret.encode(), value.encode(), hashlib.sha256).hexdigest()

    def device_hash(self, device_id: str | None) -> str | None:
        """Hash a client-supplied device id. The raw id is never persisted."""
        if not device_id:
            return None
        return self.keyed_hash(device_id)

    def matches(self, value: str, expected_hash: str) -> bool:
        """Constant-time comparison of keyed_hash(value) against a stored hash."""
        return hmac.compare_digest(self.keyed_hash(value), expected_hash)
