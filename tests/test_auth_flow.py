"""
tests/test_auth_flow.py -- Integration tests for the login, step-up, refresh and logout endpoints.

These tests exercise the full stack: FastAPI routing -> SessionAuthority ->
AuthStore -> response serialization, with a fake geo table (X-Forwarded-For
picks the country) and a recording mail sender.

Covers:
  - Wrong password and unknown username are indistinguishable and both audited
  - A wrong password on a legacy account pays the same bcrypt check as an unknown user
  - Inactive account: 403 after a correct password only
  - Legacy plaintext credential is upgraded on first successful login
  - Step-up: new device, country change, always-require flag, no email on file
  - OTP single use and expiry over HTTP
  - Refresh rotation, replay detection and chain revocation
  - Logout revokes the refresh token and clears the cookie and session
  - A copied session cookie stops working after logout and after refresh-token replay
  - Trusted device in the same country logs in directly; a new country steps up
"""

from __future__ import annotations

from auth import passwords
from auth.models import Hashed, LegacyPlaintext
from conftest import IP_AU, IP_FR, IP_US, AuthEnv, add_user

PASSWORD = "correct horse"


def _events_for(env: AuthEnv, user_id: str | None, limit: int = 20):
    return [e for e in env.store.recent_login_events(limit) if e.user_id == user_id]


def _refresh_with(env: AuthEnv, token: str):
    """POST /auth/refresh presenting only the given refresh token."""
    env.client.cookies.clear()
    env.client.cookies.set("refresh_token", token)
    return env.client.post("/api/auth/refresh")


def _trust_device(env: AuthEnv, username: str, device_id: str, ip: str) -> dict:
    """Log in on a new device from ip, pass step-up with rememberDevice, return the 200 body."""
    resp = env.login(username, PASSWORD, ip=ip, deviceId=device_id, rememberDevice=True)
    assert resp.status_code == 202, resp.text
    resp = env.verify(resp.json()["otpId"], env.sender.last_code(), ip=ip, deviceId=device_id, rememberDevice=True)
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestCredentialFailures:
    def test_wrong_password_and_unknown_user_match(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD)
        wrong = env.login(user.username, "not it", ip=IP_US)
        unknown = env.login("nobody_here", "not it", ip=IP_US)
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json() == {"error": "Invalid credentials"}
        assert wrong.headers["cache-control"] == "no-store"

        (wrong_event,) = _events_for(env, user.id)
        assert wrong_event.success is False
        assert wrong_event.reason == "invalid_credentials"
        unknown_events = [e for e in _events_for(env, None) if e.reason == "invalid_credentials"]
        assert unknown_events and unknown_events[0].success is False

    def test_legacy_wrong_password_costs_the_same_as_unknown_user(self, env: AuthEnv, monkeypatch) -> None:
        user = add_user(env.store, password=PASSWORD, legacy=True, email=None)
        calls = []
        real_check = passwords.check_password

        def counting_check(plain: str, hashed: str) -> bool:
            calls.append(hashed)
            return real_check(plain, hashed)

        monkeypatch.setattr(passwords, "check_password", counting_check)

        legacy = env.login(user.username, "not it", ip=IP_US)
        legacy_checks = len(calls)
        unknown = env.login("nobody_here", "not it", ip=IP_US)
        unknown_checks = len(calls) - legacy_checks

        assert legacy_checks == unknown_checks == 1
        assert legacy.status_code == unknown.status_code == 401
        assert legacy.json() == unknown.json()
        assert legacy.headers["cache-control"] == unknown.headers["cache-control"]
        assert isinstance(env.store.get_by_id(user.id).password, LegacyPlaintext)

    def test_inactive_account_only_after_password(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD, is_active=False)
        assert env.login(user.username, "wrong").status_code == 401
        resp = env.login(user.username, PASSWORD)
        assert resp.status_code == 403
        assert resp.json() == {"error": "Account inactive"}
        assert _events_for(env, user.id)[0].reason == "inactive_account"

    def test_username_and_password_are_trimmed(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD, email=None)
        resp = env.login(f"  {user.username.upper()} ", f" {PASSWORD} ")
        assert resp.status_code == 200, resp.text

    def test_missing_fields_is_422(self, env: AuthEnv) -> None:
        resp = env.client.post("/api/login", json={"username": "x"})
        assert resp.status_code == 422
        assert resp.json()["error"] == "Request validation failed"


class TestLegacyUpgrade:
    def test_legacy_credential_is_rehashed(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD, legacy=True, email=None)
        assert isinstance(user.password, LegacyPlaintext)

        assert env.login(user.username, PASSWORD).status_code == 200
        stored = env.store.get_by_id(user.id).password
        assert isinstance(stored, Hashed)
        assert stored.value != PASSWORD

        env.client.cookies.clear()
        assert env.login(user.username, PASSWORD).status_code == 200
        assert env.login(user.username, "wrong").status_code == 401


class TestStepUp:
    def test_no_device_id_requires_code(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD, email="step@example.org")
        resp = env.login(user.username, PASSWORD, ip=IP_US)
        assert resp.status_code == 202
        body = resp.json()
        assert body["requiresEmailCode"] is True
        assert body["email"] == "step@example.org"
        assert "accessToken" not in body
        assert "refresh_token" not in resp.cookies
        assert env.sender.sent[-1][0] == "step@example.org"
        assert _events_for(env, user.id)[0].reason == "otp_required"

    def test_no_email_skips_step_up(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD, email=None)
        resp = env.login(user.username, PASSWORD, ip=IP_US)
        assert resp.status_code == 200
        assert resp.json()["user"]["username"] == user.username

    def test_always_require_flag(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD)
        _trust_device(env, user.username, "laptop", IP_US)
        env.store.update_user(user.id, require_email_otp=True)
        env.client.cookies.clear()
        resp = env.login(user.username, PASSWORD, ip=IP_US, deviceId="laptop")
        assert resp.status_code == 202

    def test_verify_without_remember_leaves_device_untrusted(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD)
        resp = env.login(user.username, PASSWORD, ip=IP_US, deviceId="kiosk")
        resp = env.verify(resp.json()["otpId"], env.sender.last_code(), ip=IP_US, deviceId="kiosk")
        assert resp.status_code == 200
        env.client.cookies.clear()
        assert env.login(user.username, PASSWORD, ip=IP_US, deviceId="kiosk").status_code == 202

    def test_code_is_single_use(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD)
        otp_id = env.login(user.username, PASSWORD, ip=IP_US).json()["otpId"]
        code = env.sender.last_code()
        first = env.verify(otp_id, code, ip=IP_US)
        assert first.status_code == 200
        assert first.json()["accessToken"]
        second = env.verify(otp_id, code, ip=IP_US)
        wrong = env.verify(otp_id, "abcdef", ip=IP_US)
        assert second.status_code == wrong.status_code == 400
        assert second.json() == wrong.json() == {"error": "Invalid or expired code"}
        reasons = [e.reason for e in _events_for(env, user.id)]
        assert reasons[:3] == ["invalid_otp", "invalid_otp", "otp_success"]

    def test_expired_code(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD)
        otp_id = env.login(user.username, PASSWORD, ip=IP_US).json()["otpId"]
        env.clock.advance(minutes=11)
        resp = env.verify(otp_id, env.sender.last_code(), ip=IP_US)
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid or expired code"}

    def test_unknown_challenge(self, env: AuthEnv) -> None:
        resp = env.verify("00000000-0000-0000-0000-000000000000", "123456")
        assert resp.status_code == 400


class TestTrustedDeviceAndCountry:
    """user alice, device d1 trusted, last success from US."""

    def test_same_country_direct_new_country_steps_up(self, env: AuthEnv) -> None:
        alice = add_user(env.store, password=PASSWORD, email="alice@example.org")
        _trust_device(env, alice.username, "d1", IP_US)

        env.client.cookies.clear()
        direct = env.login(alice.username, PASSWORD, ip=IP_US, deviceId="d1", rememberDevice=True)
        assert direct.status_code == 200
        assert direct.json()["accessToken"]
        assert "refresh_token" in direct.cookies

        env.client.cookies.clear()
        abroad = env.login(alice.username, PASSWORD, ip=IP_FR, deviceId="d1", rememberDevice=True)
        assert abroad.status_code == 202
        assert abroad.json()["requiresEmailCode"] is True

        otp_id = abroad.json()["otpId"]
        code = env.sender.last_code()
        ok = env.verify(otp_id, code, ip=IP_FR, deviceId="d1", rememberDevice=True)
        assert ok.status_code == 200
        assert ok.json()["user"]["id"] == alice.id
        assert env.verify(otp_id, code, ip=IP_FR, deviceId="d1").status_code == 400

    def test_unresolved_country_does_not_step_up(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD)
        _trust_device(env, user.username, "phone", IP_AU)
        env.client.cookies.clear()
        # No X-Forwarded-For: the test client's address has no country
        assert env.login(user.username, PASSWORD, deviceId="phone").status_code == 200


class TestRefresh:
    def _login(self, env: AuthEnv) -> tuple[str, str]:
        user = add_user(env.store, password=PASSWORD, email=None)
        resp = env.login(user.username, PASSWORD, ip=IP_US)
        assert resp.status_code == 200
        return user.id, resp.cookies["refresh_token"]

    def test_cookie_attributes(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD, email=None)
        resp = env.login(user.username, PASSWORD)
        set_cookie = [h for h in resp.headers.get_list("set-cookie") if h.startswith("refresh_token=")][0].lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie
        assert "path=/api" in set_cookie
        assert "max-age=" in set_cookie
        assert "refresh" not in resp.json()

    def test_rotation(self, env: AuthEnv) -> None:
        _, first = self._login(env)
        resp = env.client.post("/api/auth/refresh")
        assert resp.status_code == 200
        assert resp.json()["accessToken"]
        assert resp.headers["cache-control"] == "no-store"
        second = resp.cookies["refresh_token"]
        assert second != first

    def test_session_follows_rotation(self, env: AuthEnv) -> None:
        self._login(env)
        for _ in range(2):
            assert env.client.post("/api/auth/refresh").status_code == 200
        assert env.client.get("/api/me").status_code == 200

    def test_replay_ends_cookie_session(self, env: AuthEnv) -> None:
        _, first = self._login(env)
        session = env.client.cookies.get("session")
        assert env.client.post("/api/auth/refresh").status_code == 200

        assert _refresh_with(env, first).status_code == 401
        env.client.cookies.clear()
        env.client.cookies.set("session", session)
        assert env.client.get("/api/me").status_code == 401

    def test_old_token_cannot_be_reused(self, env: AuthEnv) -> None:
        user_id, first = self._login(env)
        assert env.client.post("/api/auth/refresh").status_code == 200
        current = env.client.cookies.get("refresh_token")

        replay = _refresh_with(env, first)
        assert replay.status_code == 401
        assert replay.json() == {"error": "Unauthorized"}
        assert "accessToken" not in replay.json()
        assert _events_for(env, user_id)[0].reason == "refresh_token_reuse"

        # The chain head was revoked with it
        assert _refresh_with(env, current).status_code == 401

    def test_missing_cookie(self, env: AuthEnv) -> None:
        assert env.client.post("/api/auth/refresh").status_code == 401

    def test_garbage_cookie(self, env: AuthEnv) -> None:
        resp = _refresh_with(env, "forged")
        assert resp.status_code == 401

    def test_deactivated_user_cannot_refresh(self, env: AuthEnv) -> None:
        user_id, _ = self._login(env)
        env.store.update_user(user_id, is_active=False)
        assert env.client.post("/api/auth/refresh").status_code == 401


class TestLogout:
    def test_logout_revokes_and_clears(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD, email=None)
        token = env.login(user.username, PASSWORD).cookies["refresh_token"]
        assert env.client.get("/api/me").status_code == 200

        resp = env.client.post("/api/logout")
        assert resp.status_code == 200
        assert resp.json() == {"message": "Logged out successfully"}
        assert env.client.get("/api/me").status_code == 401
        record = env.store.get_refresh_token_by_hash(env.client.app.state.authority.keys.keyed_hash(token))
        assert record.revoked_at is not None
        assert _refresh_with(env, token).status_code == 401

    def test_copied_session_cookie_rejected_after_logout(self, env: AuthEnv) -> None:
        user = add_user(env.store, password=PASSWORD, email=None)
        env.login(user.username, PASSWORD)
        copied = env.client.cookies.get("session")
        assert copied

        assert env.client.post("/api/logout").status_code == 200
        env.client.cookies.clear()
        env.client.cookies.set("session", copied)
        assert env.client.get("/api/me").status_code == 401

    def test_logout_without_session(self, env: AuthEnv) -> None:
        assert env.client.post("/api/logout").status_code == 200
