"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. The authority, components and routes never touch
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh-token rotation and OTP consumption are conditional updates
  ("... WHERE revoked_at IS NULL", "... WHERE consumed_at IS NULL") so two
  racing requests cannot both succeed -- the loser sees rowcount == 0. The
  rotation insert and the revoke run in one transaction (engine.begin()).

Timestamps are stored as fixed-width UTC ISO 8601 strings (microsecond
precision, +00:00 offset). Fixed width keeps lexical order equal to time order,
so expiry comparisons can run in SQL on any backend.

DB path: authority.db at the repository root unless DATABASE_URL is set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import (
    EmailOtp,
    Hashed,
    LegacyPlaintext,
    LoginEvent,
    PasswordCredential,
    RefreshToken,
    User,
    UserDevice,
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("password", Text, nullable=False),
    Column("password_kind", String(20), nullable=False, server_default="hashed"),  # "legacy-plaintext" | "hashed"
    Column("name", String(255)),
    Column("email", String(255)),
    Column("role", String(50), nullable=False),
    Column("organization_id", String(36)),
    Column("require_email_otp", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False, index=True),
    Column("device_hash", String(64)),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("ip_address", String(64)),
    Column("country", String(2)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("replaced_by_token_id", String(36)),
)

_email_otps = Table(
    "email_otps",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("code_hash", String(64), nullable=False),
    Column("device_hash", String(64)),
    Column("ip_address", String(64)),
    Column("country", String(2)),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
)

_user_devices = Table(
    "user_devices",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("device_hash", String(64), nullable=False),
    Column("label", String(255)),
    Column("trusted", Integer, nullable=False, server_default="0"),
    Column("last_used_at", String(32)),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "device_hash", name="uq_user_devices_user_device"),
)

_login_events = Table(
    "login_events",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), index=True),  # NULL when username did not resolve
    Column("device_hash", String(64)),
    Column("ip_address", String(64)),
    Column("country", String(2)),
    Column("user_agent", Text),
    Column("success", Integer, nullable=False, server_default="0"),
    Column("reason", String(50)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _new_id() -> str:
    return str(uuid.uuid4())


def _credential_columns(credential: PasswordCredential) -> dict:
    return {"password": credential.value, "password_kind": credential.kind}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, refresh tokens, OTP challenges, devices and login events.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        user_id = store.create_user(User(username="alice", role="secretario", password=Hashed(...)))
        user = store.get_by_username("Alice")
        store.close()
    """

    _USER_FIELDS: set = {"username", "name", "email", "role", "organization_id", "require_email_otp", "is_active"}

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        user_id = user.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    username=user.username,
                    name=user.name,
                    email=user.email,
                    role=user.role,
                    organization_id=user.organization_id,
                    require_email_otp=1 if user.require_email_otp else 0,
                    is_active=1 if user.is_active else 0,
                    created_at=_to_iso(utcnow()),
                    **_credential_columns(user.password),
                )
            )
            conn.commit()
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Exact match first, then case-insensitive on the trimmed value.

        The fallback lets "Alice " log in as "alice" without making the exact
        lookup ambiguous when two legacy rows differ only by case.
        """
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
            if row is None:
                normalized = username.strip().lower()
                row = conn.execute(
                    _users.select().where(func.lower(func.trim(_users.c.username)) == normalized)
                ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_users_by_ids(self, user_ids: set[str]) -> dict[str, User]:
        if not user_ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().where(_users.c.id.in_(user_ids))).fetchall()
        return {row.id: _row_to_user(row) for row in rows}

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable profile fields. Returns False if user_id was not found.

        Accepted fields: username, name, email, role, organization_id,
        require_email_otp, is_active. Unknown keys raise ValueError.
        """
        unknown = set(fields) - self._USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for flag in ("require_email_otp", "is_active"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if not fields:
            return self.get_by_id(user_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_password(self, user_id: str, credential: PasswordCredential) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(**_credential_columns(credential))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        token.id = token.id or _new_id()
        token.created_at = token.created_at or utcnow()
        with self.engine.connect() as conn:
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(token)))
            conn.commit()
        return token

    def get_refresh_token(self, token_id: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == token_id)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshToken | None:
        """Look up a refresh token record by its HMAC. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, old_id: str, replacement: RefreshToken, now: datetime) -> RefreshToken | None:
        """Atomically retire old_id and insert its replacement.

        The conditional revoke is the claim: only the request whose UPDATE
        changes a row proceeds. Returns None (and writes nothing) if old_id is
        already revoked or expired.
        """
        replacement.id = replacement.id or _new_id()
        replacement.created_at = replacement.created_at or now
        with self.engine.begin() as conn:
            claimed = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.id == old_id)
                    & (_refresh_tokens.c.revoked_at.is_(None))
                    & (_refresh_tokens.c.expires_at > _to_iso(now))
                )
                .values(revoked_at=_to_iso(now))
            )
            if claimed.rowcount != 1:
                return None
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(replacement)))
            conn.execute(
                _refresh_tokens.update()
                .where(_refresh_tokens.c.id == old_id)
                .values(replaced_by_token_id=replacement.id)
            )
        return replacement

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool:
        """Revoke one record without touching replaced_by_token_id.

        Returns True if the record was active (not previously revoked).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_to_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_refresh_tokens_for_user(self, user_id: str, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_to_iso(now))
            )
            conn.commit()
        return result.rowcount

    def revoke_descendants(self, token_id: str, now: datetime) -> int:
        """Walk the replaced_by chain from token_id and revoke every live successor.

        Returns the number of records revoked. The walk stops at the chain
        head or on a cycle (which would indicate corrupted data).
        """
        revoked = 0
        seen: set[str] = {token_id}
        with self.engine.begin() as conn:
            next_id = conn.execute(
                select(_refresh_tokens.c.replaced_by_token_id).where(_refresh_tokens.c.id == token_id)
            ).scalar()
            while next_id and next_id not in seen:
                seen.add(next_id)
                result = conn.execute(
                    _refresh_tokens.update()
                    .where((_refresh_tokens.c.id == next_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                    .values(revoked_at=_to_iso(now))
                )
                revoked += result.rowcount
                next_id = conn.execute(
                    select(_refresh_tokens.c.replaced_by_token_id).where(_refresh_tokens.c.id == next_id)
                ).scalar()
        return revoked

    def list_active_refresh_tokens(self, now: datetime) -> list[RefreshToken]:
        """Return non-revoked, non-expired records, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where((_refresh_tokens.c.revoked_at.is_(None)) & (_refresh_tokens.c.expires_at > _to_iso(now)))
                .order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        """Physically delete records that expired before the given instant."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(_refresh_tokens.c.expires_at < _to_iso(expired_before))
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Email OTPs
    # ------------------------------------------------------------------

    def create_email_otp(self, otp: EmailOtp) -> EmailOtp:
        otp.id = otp.id or _new_id()
        otp.created_at = otp.created_at or utcnow()
        with self.engine.connect() as conn:
            conn.execute(
                _email_otps.insert().values(
                    id=otp.id,
                    user_id=otp.user_id,
                    code_hash=otp.code_hash,
                    device_hash=otp.device_hash,
                    ip_address=otp.ip_address,
                    country=otp.country,
                    created_at=_to_iso(otp.created_at),
                    expires_at=_to_iso(otp.expires_at),
                    consumed_at=_to_iso(otp.consumed_at),
                )
            )
            conn.commit()
        return otp

    def get_email_otp(self, otp_id: str) -> EmailOtp | None:
        with self.engine.connect() as conn:
            row = conn.execute(_email_otps.select().where(_email_otps.c.id == otp_id)).fetchone()
        return _row_to_email_otp(row) if row is not None else None

    def consume_email_otp(self, otp_id: str, now: datetime) -> bool:
        """Mark a challenge consumed. Only succeeds once, and only before expiry."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _email_otps.update()
                .where(
                    (_email_otps.c.id == otp_id)
                    & (_email_otps.c.consumed_at.is_(None))
                    & (_email_otps.c.expires_at > _to_iso(now))
                )
                .values(consumed_at=_to_iso(now))
            )
            conn.commit()
        return result.rowcount == 1

    def purge_email_otps(self, now: datetime) -> int:
        """Delete challenges that are consumed or past expiry."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _email_otps.delete().where(
                    (_email_otps.c.consumed_at.is_not(None)) | (_email_otps.c.expires_at <= _to_iso(now))
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def get_user_device(self, user_id: str, device_hash: str) -> UserDevice | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _user_devices.select().where(
                    (_user_devices.c.user_id == user_id) & (_user_devices.c.device_hash == device_hash)
                )
            ).fetchone()
        return _row_to_user_device(row) if row is not None else None

    def upsert_user_device(
        self, user_id: str, device_hash: str, trusted: bool, now: datetime, label: str | None = None
    ) -> UserDevice:
        """Update the (user, device) record or insert it on first sight.

        A concurrent first-sight insert loses on the UNIQUE constraint and
        falls back to the update path.
        """
        if not self._update_user_device(user_id, device_hash, trusted, now, label):
            try:
                with self.engine.connect() as conn:
                    conn.execute(
                        _user_devices.insert().values(
                            id=_new_id(),
                            user_id=user_id,
                            device_hash=device_hash,
                            label=label,
                            trusted=1 if trusted else 0,
                            last_used_at=_to_iso(now),
                            created_at=_to_iso(now),
                        )
                    )
                    conn.commit()
            except IntegrityError:
                self._update_user_device(user_id, device_hash, trusted, now, label)
        return self.get_user_device(user_id, device_hash)

    def _update_user_device(
        self, user_id: str, device_hash: str, trusted: bool, now: datetime, label: str | None
    ) -> bool:
        values: dict = {"trusted": 1 if trusted else 0, "last_used_at": _to_iso(now)}
        if label is not None:
            values["label"] = label
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_devices.update()
                .where((_user_devices.c.user_id == user_id) & (_user_devices.c.device_hash == device_hash))
                .values(**values)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Login events (append-only: no update or delete methods)
    # ------------------------------------------------------------------

    def create_login_event(self, login_event: LoginEvent) -> str:
        event_id = _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _login_events.insert().values(
                    id=event_id,
                    user_id=login_event.user_id,
                    device_hash=login_event.device_hash,
                    ip_address=login_event.ip_address,
                    country=login_event.country,
                    user_agent=login_event.user_agent,
                    success=1 if login_event.success else 0,
                    reason=login_event.reason,
                    created_at=_to_iso(login_event.created_at or utcnow()),
                )
            )
            conn.commit()
        return event_id

    def recent_login_events(self, limit: int = 50) -> list[LoginEvent]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _login_events.select().order_by(_login_events.c.created_at.desc()).limit(limit)
            ).fetchall()
        return [_row_to_login_event(r) for r in rows]

    def last_successful_login(self, user_id: str) -> LoginEvent | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _login_events.select()
                .where((_login_events.c.user_id == user_id) & (_login_events.c.success == 1))
                .order_by(_login_events.c.created_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_login_event(row) if row is not None else None

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _refresh_token_values(token: RefreshToken) -> dict:
    return {
        "id": token.id,
        "user_id": token.user_id,
        "device_hash": token.device_hash,
        "token_hash": token.token_hash,
        "ip_address": token.ip_address,
        "country": token.country,
        "user_agent": token.user_agent,
        "created_at": _to_iso(token.created_at),
        "expires_at": _to_iso(token.expires_at),
        "revoked_at": _to_iso(token.revoked_at),
        "replaced_by_token_id": token.replaced_by_token_id,
    }


def _row_to_user(row) -> User:
    if row.password_kind == LegacyPlaintext.kind:
        password: PasswordCredential = LegacyPlaintext(row.password)
    else:
        password = Hashed(row.password)
    return User(
        id=row.id,
        username=row.username,
        password=password,
        name=row.name,
        email=row.email,
        role=row.role,
        organization_id=row.organization_id,
        require_email_otp=bool(row.require_email_otp),
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        device_hash=row.device_hash,
        token_hash=row.token_hash,
        ip_address=row.ip_address,
        country=row.country,
        user_agent=row.user_agent,
        created_at=_from_iso(row.created_at),
        expires_at=_from_iso(row.expires_at),
        revoked_at=_from_iso(row.revoked_at),
        replaced_by_token_id=row.replaced_by_token_id,
    )


def _row_to_email_otp(row) -> EmailOtp:
    return EmailOtp(
        id=row.id,
        user_id=row.user_id,
        code_hash=row.code_hash,
        device_hash=row.device_hash,
        ip_address=row.ip_address,
        country=row.country,
        created_at=_from_iso(row.created_at),
        expires_at=_from_iso(row.expires_at),
        consumed_at=_from_iso(row.consumed_at),
    )


def _row_to_user_device(row) -> UserDevice:
    return UserDevice(
        id=row.id,
        user_id=row.user_id,
        device_hash=row.device_hash,
        label=row.label,
        trusted=bool(row.trusted),
        last_used_at=_from_iso(row.last_used_at),
        created_at=_from_iso(row.created_at),
    )


def _row_to_login_event(row) -> LoginEvent:
    return LoginEvent(
        id=row.id,
        user_id=row.user_id,
        device_hash=row.device_hash,
        ip_address=row.ip_address,
        country=row.country,
        user_agent=row.user_agent,
        success=bool(row.success),
        reason=row.reason,
        created_at=_from_iso(row.created_at),
    )
