"""Unit tests for auth/tokens.py and auth/keys.py -- JWTs, rotation and reuse detection.

Covers:
- access token encodes sub and sid and rejects tampering, expiry and wrong keys
- refresh tokens are stored only as keyed hashes
- rotation retires the presented token and links the successor
- a rotated token replayed raises RefreshTokenReused and revokes the chain head
- revoked and expired tokens fail with InvalidOrExpiredRefreshToken
- chain_head follows rotations to the newest record of a session
"""

from datetime import timedelta

import pytest
from jose import jwt

from auth.errors import InvalidOrExpiredRefreshToken
from auth.keys import SecretProvider
from auth.models import RequestOrigin
from auth.tokens import (
    RefreshTokenReused,
    TokenIssuer,
    create_access_token,
    decode_access_token,
)
from conftest import MutableClock, add_user, make_keys

ORIGIN = RequestOrigin(ip_address="8.8.8.8", country="US", user_agent="pytest")


@pytest.fixture
def keys() -> SecretProvider:
    return make_keys()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def issuer(store, keys, clock) -> TokenIssuer:
    return TokenIssuer(store, keys, access_ttl_seconds=900, refresh_ttl_days=30, clock=clock)


class TestAccessToken:
    def test_round_trip(self, keys: SecretProvider) -> None:
        token = create_access_token("user-1", "session-1", keys.access_token_secret)
        claims = decode_access_token(token, keys.access_token_secret)
        assert claims.user_id == "user-1"
        assert claims.session_id == "session-1"

    def test_lifetime_is_fifteen_minutes(self, keys: SecretProvider) -> None:
        token = create_access_token("user-1", None, keys.access_token_secret)
        payload = jwt.get_unverified_claims(token)
        assert payload["exp"] - payload["iat"] == 900

    def test_expired(self, keys: SecretProvider) -> None:
        token = create_access_token("user-1", None, keys.access_token_secret, ttl_seconds=-10)
        assert decode_access_token(token, keys.access_token_secret) is None

    def test_wrong_secret(self, keys: SecretProvider) -> None:
        token = create_access_token("user-1", None, keys.access_token_secret)
        assert decode_access_token(token, keys.hmac_secret) is None

    def test_garbage(self, keys: SecretProvider) -> None:
        assert decode_access_token("not.a.jwt", keys.access_token_secret) is None


class TestKeys:
    def test_keyed_hash_is_deterministic_and_secret_bound(self, keys: SecretProvider) -> None:
        other = SecretProvider(keys.access_token_secret, "x" * 64, keys.session_secret)
        assert keys.keyed_hash("abc") == keys.keyed_hash("abc")
        assert keys.keyed_hash("abc") != other.keyed_hash("abc")
        assert keys.matches("abc", keys.keyed_hash("abc"))

    def test_device_hash_none_for_missing_id(self, keys: SecretProvider) -> None:
        assert keys.device_hash(None) is None
        assert keys.device_hash("") is None
        assert keys.device_hash("d1") != "d1"


class TestRotation:
    def test_issue_stores_hash_only(self, store, keys, issuer: TokenIssuer) -> None:
        user = add_user(store)
        issued = issuer.issue(user.id, None, ORIGIN)
        record = store.get_refresh_token(issued.refresh_token_id)
        assert record.token_hash == keys.keyed_hash(issued.refresh_token)
        assert record.token_hash != issued.refresh_token
        assert record.country == "US"
        claims = issuer.decode(issued.access_token)
        assert claims.session_id == record.id

    def test_rotate_links_successor(self, store, issuer: TokenIssuer) -> None:
        user = add_user(store)
        first = issuer.issue(user.id, "device-hash", ORIGIN)
        record = issuer.find_active(first.refresh_token)
        second = issuer.rotate(record, ORIGIN)
        old = store.get_refresh_token(first.refresh_token_id)
        new = store.get_refresh_token(second.refresh_token_id)
        assert old.revoked_at is not None
        assert old.replaced_by_token_id == new.id
        assert new.device_hash == "device-hash"
        assert new.is_active(new.created_at)

    def test_rotate_twice_from_same_record_fails(self, store, issuer: TokenIssuer) -> None:
        user = add_user(store)
        first = issuer.issue(user.id, None, ORIGIN)
        record = issuer.find_active(first.refresh_token)
        issuer.rotate(record, ORIGIN)
        with pytest.raises(InvalidOrExpiredRefreshToken):
            issuer.rotate(record, ORIGIN)

    def test_reuse_revokes_chain(self, store, issuer: TokenIssuer) -> None:
        user = add_user(store)
        first = issuer.issue(user.id, None, ORIGIN)
        second = issuer.rotate(issuer.find_active(first.refresh_token), ORIGIN)
        with pytest.raises(RefreshTokenReused) as exc_info:
            issuer.find_active(first.refresh_token)
        assert exc_info.value.user_id == user.id
        assert store.get_refresh_token(second.refresh_token_id).revoked_at is not None
        with pytest.raises(InvalidOrExpiredRefreshToken):
            issuer.find_active(second.refresh_token)

    def test_unknown_token(self, issuer: TokenIssuer) -> None:
        with pytest.raises(InvalidOrExpiredRefreshToken):
            issuer.find_active("never-issued")

    def test_revoked_token(self, store, issuer: TokenIssuer) -> None:
        user = add_user(store)
        issued = issuer.issue(user.id, None, ORIGIN)
        assert issuer.revoke(issued.refresh_token_id)
        with pytest.raises(InvalidOrExpiredRefreshToken) as exc_info:
            issuer.find_active(issued.refresh_token)
        assert not isinstance(exc_info.value, RefreshTokenReused)

    def test_expired_token(self, store, issuer: TokenIssuer, clock: MutableClock) -> None:
        user = add_user(store)
        issued = issuer.issue(user.id, None, ORIGIN)
        clock.advance(days=31)
        with pytest.raises(InvalidOrExpiredRefreshToken):
            issuer.find_active(issued.refresh_token)

    def test_refresh_lifetime(self, store, issuer: TokenIssuer) -> None:
        user = add_user(store)
        issued = issuer.issue(user.id, None, ORIGIN)
        record = store.get_refresh_token(issued.refresh_token_id)
        assert record.expires_at - record.created_at == timedelta(days=30)


class TestChainHead:
    def test_follows_rotations(self, store, issuer: TokenIssuer) -> None:
        user = add_user(store)
        first = issuer.issue(user.id, None, ORIGIN)
        second = issuer.rotate(issuer.find_active(first.refresh_token), ORIGIN)
        third = issuer.rotate(issuer.find_active(second.refresh_token), ORIGIN)
        head = issuer.chain_head(first.refresh_token_id)
        assert head.id == third.refresh_token_id
        assert head.revoked_at is None

    def test_revoked_head_is_returned(self, store, issuer: TokenIssuer) -> None:
        user = add_user(store)
        first = issuer.issue(user.id, None, ORIGIN)
        issuer.revoke(first.refresh_token_id)
        head = issuer.chain_head(first.refresh_token_id)
        assert head.id == first.refresh_token_id
        assert head.revoked_at is not None

    def test_unknown_id(self, issuer: TokenIssuer) -> None:
        assert issuer.chain_head("no-such-record") is None
