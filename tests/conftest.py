"""
tests/conftest.py -- Shared test fixtures for the session authority.

This module provides:
  - FakeGeoResolver: GeoResolver with a fixed IP -> country table
  - RecordingSender: captures step-up codes instead of mailing them
  - MutableClock: injectable clock for expiry tests
  - make_store(): isolated named shared-memory AuthStore
  - auth_env: module-scoped TestClient over the real app with a patched lifespan
  - env: per-test view of auth_env with a clean cookie jar

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

DEBUG, RATE_LIMIT_ENABLED and ALLOWED_HOSTS must be set before any project
import: get_settings() then generates dev secrets, the shared limiter starts
disabled and TrustedHostMiddleware admits the test client host.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any project import.
os.environ.setdefault("DEBUG", "true")
os.environ["RATE_LIMIT_ENABLED"] = "false"
# TestClient sends Host: testserver.
os.environ.setdefault("ALLOWED_HOSTS", '["testserver"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.authority import SessionAuthority
from auth.geo import GeoResolver
from auth.keys import SecretProvider
from auth.models import Hashed, LegacyPlaintext, User
from auth.passwords import hash_password
from auth.store import AuthStore
from core.config import get_settings

# Public addresses the fake resolver knows about. Anything else resolves to None.
IP_US = "8.8.8.8"
IP_FR = "80.12.0.1"
IP_AU = "1.1.1.1"

ADMIN_PASSWORD = "admin-pass-123"


class FakeGeoResolver(GeoResolver):
    def __init__(self, countries: dict[str, str] | None = None) -> None:
        super().__init__(None)
        self.countries = countries or {IP_US: "US", IP_FR: "FR", IP_AU: "AU"}

    def _lookup(self, ip: str) -> str | None:
        return self.countries.get(ip)


@dataclass
class RecordingSender:
    sent: list[tuple[str, str]] = field(default_factory=list)

    def send_login_code(self, to_email: str, code: str) -> None:
        self.sent.append((to_email, code))

    def last_code(self) -> str:
        return self.sent[-1][1]


class MutableClock:
    """Callable clock that tests can move forward."""

    def __init__(self) -> None:
        self.offset = timedelta()

    def __call__(self) -> datetime:
        return datetime.now(timezone.utc) + self.offset

    def advance(self, **kwargs) -> None:
        self.offset += timedelta(**kwargs)

    def reset(self) -> None:
        self.offset = timedelta()


def make_store(db_suffix: str | None = None) -> AuthStore:
    """Create an isolated named shared-memory store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state. Random when omitted.
    """
    suffix = db_suffix or uuid.uuid4().hex
    return AuthStore(f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")


def make_keys() -> SecretProvider:
    return SecretProvider.from_settings(get_settings())


def add_user(
    store: AuthStore,
    password: str = "correct horse",
    role: str = "secretario",
    email: str | None = "user@example.org",
    legacy: bool = False,
    **fields,
) -> User:
    """Create a user with a unique username and return the stored record."""
    username = fields.pop("username", None) or f"user_{uuid.uuid4().hex[:8]}"
    credential = LegacyPlaintext(password) if legacy else Hashed(hash_password(password))
    user_id = store.create_user(User(username=username, role=role, password=credential, email=email, **fields))
    return store.get_by_id(user_id)


@dataclass
class AuthEnv:
    client: TestClient
    store: AuthStore
    sender: RecordingSender
    clock: MutableClock
    admin: User

    def login(self, username: str, password: str, ip: str | None = None, **body):
        headers = {"X-Forwarded-For": ip} if ip else {}
        return self.client.post(
            "/api/login",
            json={"username": username, "password": password, **body},
            headers=headers,
        )

    def verify(self, otp_id: str, code: str, ip: str | None = None, **body):
        headers = {"X-Forwarded-For": ip} if ip else {}
        return self.client.post("/api/login/verify", json={"otpId": otp_id, "code": code, **body}, headers=headers)

    def admin_token(self) -> str:
        """Log in as the admin on a trusted path and return a bearer token."""
        resp = self.login(self.admin.username, ADMIN_PASSWORD)
        if resp.status_code == 202:
            resp = self.verify(resp.json()["otpId"], self.sender.last_code())
        assert resp.status_code == 200, resp.text
        self.client.cookies.clear()
        return resp.json()["accessToken"]


def _patch_lifespan(store: AuthStore, authority: SessionAuthority, geo: GeoResolver):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown can cancel it
    like the real one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.store = store
        app.state.geo = geo
        app.state.authority = authority
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def auth_env() -> Generator[AuthEnv, None, None]:
    """Yield an AuthEnv over the real app with an isolated store.

    One TestClient per test module for speed. The admin account has an email
    and is created before the client starts.
    """
    store = make_store()
    sender = RecordingSender()
    clock = MutableClock()
    authority = SessionAuthority.from_settings(get_settings(), store, sender=sender, clock=clock)
    admin = add_user(store, password=ADMIN_PASSWORD, role="obispo", email="admin@example.org", username="testadmin")

    app.router.lifespan_context = _patch_lifespan(store, authority, FakeGeoResolver())

    with TestClient(app, raise_server_exceptions=True) as client:
        yield AuthEnv(client=client, store=store, sender=sender, clock=clock, admin=admin)

    store.close()


@pytest.fixture
def env(auth_env: AuthEnv) -> AuthEnv:
    """auth_env with no cookies and the clock at real time."""
    auth_env.client.cookies.clear()
    auth_env.clock.reset()
    return auth_env


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = make_store()
    yield s
    s.close()
