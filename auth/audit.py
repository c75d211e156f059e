"""
auth/audit.py -- Append-only audit trail of login attempts.

Writes are best-effort. record() runs after the primary state transition has
committed (tokens issued, OTP stored) and is not part of that unit: a storage
failure here is logged and swallowed so the caller still gets its auth
decision. Token consistency never depends on an audit row existing.

The only reads the rest of the system needs are the admin access log and the
user's last successful login (for geo-anomaly detection).
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.models import LoginEvent, RequestOrigin
from auth.store import AuthStore

logger = logging.getLogger("authority.audit")


class AuditLog:
    def __init__(self, store: AuthStore) -> None:
        self._store = store

    def record(self, login_event: LoginEvent) -> None:
        try:
            self._store.create_login_event(login_event)
        except SQLAlchemyError:
            logger.exception(
                "Failed to append login event (user_id=%s reason=%s)", login_event.user_id, login_event.reason
            )

    def attempt(
        self,
        reason: str,
        success: bool,
        origin: RequestOrigin,
        user_id: str | None = None,
        device_hash: str | None = None,
    ) -> None:
        """Shorthand for record() from request metadata."""
        self.record(
            LoginEvent(
                user_id=user_id,
                device_hash=device_hash,
                ip_address=origin.ip_address,
                country=origin.country,
                user_agent=origin.user_agent,
                success=success,
                reason=reason,
            )
        )

    def recent(self, limit: int = 50) -> list[LoginEvent]:
        return self._store.recent_login_events(limit)

    def last_success_for(self, user_id: str) -> LoginEvent | None:
        return self._store.last_successful_login(user_id)

    def last_successful_country(self, user_id: str) -> str | None:
        last = self.last_success_for(user_id)
        return last.country if last is not None else None
