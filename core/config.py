"""
core/config.py -- Centralized configuration for the session authority via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead, or better, take
the Settings instance as a constructor argument (components built in the
FastAPI lifespan receive it by reference).

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Enforces the secret policy once all fields
      are resolved. Dev mode generates missing secrets with a warning;
      production mode refuses to start.

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright. JWT signing and the
       HMAC used for refresh tokens, OTP codes and device ids all rely on key
       entropy.

  [M7] Outside DEBUG, a missing secret is a hard startup failure. get_settings()
       re-raises pydantic's ValidationError as ConfigurationError so the
       process aborts with one recognisable error type.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authority.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authority.db'}"

_SECRET_FIELDS = ("access_token_secret", "refresh_token_secret", "session_secret")


class ConfigurationError(RuntimeError):
    """Required configuration is missing or invalid. Fatal at startup."""


class Settings(BaseSettings):
    """Process-wide settings loaded from environment variables and .env file.

    Every field has a default so Settings() can be built in tests with only
    DEBUG=true set. Treat the instance as immutable once constructed.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL
    api_root: str = "/api"

    # Empty string is the sentinel for "not configured". The validator below
    # either generates a dev value or raises, so callers never see "".
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    session_secret: str = ""

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_days: int = 30
    # Terminal refresh tokens are kept for the admin audit trail this long
    # past their expiry before the purge job deletes them.
    refresh_token_retention_days: int = 90
    otp_ttl_minutes: int = 10

    # ------------------------------------------------------------------
    # OTP delivery (optional -- empty SMTP_HOST degrades to log-only)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "no-reply@liahone.app"

    # ------------------------------------------------------------------
    # Geo lookup (optional -- empty path disables anomaly detection)
    # ------------------------------------------------------------------

    geoip_database_path: str = ""
    trust_proxy_headers: bool = True

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    admin_roles: list[str] = ["obispo", "consejero_obispo", "secretario_ejecutivo"]

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:5173", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy [M7].

        Dev mode (DEBUG=true): generate any missing secret with a warning.
            Sessions and refresh tokens will not survive a restart.

        Production mode: refuse to start when any secret is missing.

        Both modes: reject secrets shorter than 32 characters [M6].
        """
        for name in _SECRET_FIELDS:
            value = getattr(self, name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, name, value)
                logger.warning("Using auto-generated %s. Sessions will not persist across restarts.", name.upper())
            if len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        return self

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_from)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Raises ConfigurationError (never a per-request failure) when the
    environment does not satisfy the secret policy.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
