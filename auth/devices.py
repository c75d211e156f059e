"""
auth/devices.py -- Per-user device trust.

A device is identified by the keyed hash of the client-generated device id
(see SecretProvider.device_hash). Trust is set, not only upgraded: a login
with rememberDevice=false on a previously trusted device clears the flag.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from auth.models import UserDevice
from auth.store import AuthStore, utcnow


class DeviceTrustStore:
    def __init__(self, store: AuthStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def lookup(self, user_id: str, device_hash: str) -> UserDevice | None:
        return self._store.get_user_device(user_id, device_hash)

    def upsert(self, user_id: str, device_hash: str, trusted: bool, label: str | None = None) -> UserDevice:
        return self._store.upsert_user_device(user_id, device_hash, trusted, self._clock(), label=label)
