"""Secure storage seam and the cold-start client snapshot cache."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

import msgspec

from .models import Client
from .serialization import json_decode, json_encode
from .store import ClientStore

logger = logging.getLogger(__name__)

CLIENT_SNAPSHOT_KEY = "portunus.client"


class SecureStorage(Protocol):
    """Keychain-equivalent string storage supplied by the host platform."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local :class:`SecureStorage`."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class SnapshotCache:
    """Persist the latest client so a cold start can show state before the first refresh."""

    def __init__(self, storage: SecureStorage, store: ClientStore, *, key: str = CLIENT_SNAPSHOT_KEY) -> None:
        self.storage = storage
        self.store = store
        self.key = key
        self._detach: Callable[[], None] | None = None

    def load(self) -> Client | None:
        """Apply the stored snapshot unless the store already holds a client."""

        if self.store.current is not None:
            return None
        try:
            raw = self.storage.get(self.key)
        except Exception:
            logger.exception("Unable to read the cached client")
            return None
        if raw is None:
            return None
        try:
            client = json_decode(raw, Client)
        except msgspec.MsgspecError:
            logger.warning("Discarding unreadable cached client")
            self._delete()
            return None
        if self.store.current is not None:
            return None
        self.store.apply(client)
        return client

    def attach(self) -> None:
        if self._detach is None:
            self._detach = self.store.add_listener(self._on_snapshot)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def _on_snapshot(self, previous: Client | None, current: Client | None) -> None:
        if current is None:
            self._delete()
            return
        try:
            self.storage.set(self.key, json_encode(current).decode("utf-8"))
        except Exception:
            logger.exception("Unable to cache the client")

    def _delete(self) -> None:
        try:
            self.storage.delete(self.key)
        except Exception:
            logger.exception("Unable to delete the cached client")


__all__ = ["CLIENT_SNAPSHOT_KEY", "MemoryStorage", "SecureStorage", "SnapshotCache"]
