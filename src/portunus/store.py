"""Client snapshot store."""

from __future__ import annotations

import logging
from collections.abc import Callable

from .events import AuthEvent, EventEmitter
from .models import Client, Session

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[Client | None, Client | None], None]
SessionListener = Callable[[Session | None, str | None], None]


class ClientStore:
    """Single cell holding the latest server-authoritative :class:`Client`.

    Snapshots are replaced whole, never merged. A snapshot older than the one
    currently held (same client, smaller ``updated_at``) is dropped so responses
    completing out of order cannot roll state back.
    """

    def __init__(self, emitter: EventEmitter | None = None) -> None:
        self._client: Client | None = None
        self._emitter = emitter
        self._snapshot_listeners: list[SnapshotListener] = []
        self._session_listeners: list[SessionListener] = []

    @property
    def current(self) -> Client | None:
        return self._client

    @property
    def active_session(self) -> Session | None:
        client = self._client
        return client.active_session if client is not None else None

    def apply(self, client: Client | None) -> bool:
        """Replace the held snapshot; return ``False`` when ``client`` is stale."""

        previous = self._client
        if client is not None and previous is not None and client.id == previous.id:
            if client.updated_at < previous.updated_at:
                logger.warning(
                    "Ignoring stale client snapshot (%s < %s)",
                    client.updated_at,
                    previous.updated_at,
                )
                return False
        self._client = client
        self._notify(previous, client)
        return True

    def clear(self) -> None:
        self.apply(None)

    def remove_session(self, session_id: str) -> None:
        """Drop ``session_id`` locally, e.g. once the server reported it revoked."""

        client = self._client
        if client is None or client.session(session_id) is None:
            return
        self.apply(client.without_session(session_id))

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call ``listener(previous, current)`` after every replacement."""

        self._snapshot_listeners.append(listener)
        return lambda: _discard(self._snapshot_listeners, listener)

    def add_session_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Call ``listener(session, previous_id)`` when the active session id changes."""

        self._session_listeners.append(listener)
        return lambda: _discard(self._session_listeners, listener)

    def _notify(self, previous: Client | None, current: Client | None) -> None:
        for listener in tuple(self._snapshot_listeners):
            try:
                listener(previous, current)
            except Exception:
                logger.exception("Client snapshot listener failed")
        previous_id = previous.last_active_session_id if previous is not None else None
        session = current.active_session if current is not None else None
        current_id = session.id if session is not None else None
        if previous_id == current_id:
            return
        logger.debug("Active session changed from %s to %s", previous_id, current_id)
        for session_listener in tuple(self._session_listeners):
            try:
                session_listener(session, previous_id)
            except Exception:
                logger.exception("Session listener failed")
        if self._emitter is not None and not self._emitter.closed:
            self._emitter.emit(AuthEvent.session_changed(session, previous_id))


def _discard(listeners: list, listener: object) -> None:
    if listener in listeners:
        listeners.remove(listener)


__all__ = ["ClientStore", "SessionListener", "SnapshotListener"]
