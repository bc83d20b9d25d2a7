"""Auth event stream."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any, Awaitable, Callable

import msgspec

from .models import Session, SignIn, SignUp

logger = logging.getLogger(__name__)


class AuthEventKind(str, Enum):
    SIGN_IN_COMPLETED = "sign_in_completed"
    SIGN_UP_COMPLETED = "sign_up_completed"
    SIGNED_OUT = "signed_out"
    SESSION_CHANGED = "session_changed"


class AuthEvent(msgspec.Struct, frozen=True):
    """Structured representation of something observable happening to the client."""

    kind: AuthEventKind
    sign_in: SignIn | None = None
    sign_up: SignUp | None = None
    session: Session | None = None
    previous_session_id: str | None = None

    @classmethod
    def sign_in_completed(cls, sign_in: SignIn) -> AuthEvent:
        return cls(AuthEventKind.SIGN_IN_COMPLETED, sign_in=sign_in)

    @classmethod
    def sign_up_completed(cls, sign_up: SignUp) -> AuthEvent:
        return cls(AuthEventKind.SIGN_UP_COMPLETED, sign_up=sign_up)

    @classmethod
    def signed_out(cls, session: Session | None) -> AuthEvent:
        return cls(AuthEventKind.SIGNED_OUT, session=session)

    @classmethod
    def session_changed(cls, session: Session | None, previous_session_id: str | None) -> AuthEvent:
        return cls(AuthEventKind.SESSION_CHANGED, session=session, previous_session_id=previous_session_id)


Listener = Callable[[AuthEvent], Awaitable[Any] | Any]


class EventEmitter:
    """Fan out :class:`AuthEvent` values to queue subscribers and callbacks."""

    _SENTINEL = object()

    def __init__(self) -> None:
        self._queues: set[asyncio.Queue[AuthEvent | object]] = set()
        self._listeners: list[Listener] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: AuthEvent) -> None:
        """Deliver ``event`` to every subscriber registered so far."""

        if self._closed:
            raise RuntimeError("EventEmitter is closed")
        logger.debug("auth event %s", event.kind.value)
        for queue in tuple(self._queues):
            queue.put_nowait(event)
        for listener in tuple(self._listeners):
            try:
                result = listener(event)
            except Exception:
                logger.exception("Auth event listener failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._background.discard)
                task.add_done_callback(_log_task_error)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable removes it again."""

        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def subscribe(self) -> AsyncIterator[AuthEvent]:
        """Return an iterator over events emitted from now on until :meth:`close`."""

        if self._closed:
            raise RuntimeError("EventEmitter is closed")
        queue: asyncio.Queue[AuthEvent | object] = asyncio.Queue()
        self._queues.add(queue)

        async def iterator() -> AsyncIterator[AuthEvent]:
            try:
                while True:
                    item = await queue.get()
                    if item is self._SENTINEL:
                        break
                    yield item  # type: ignore[misc]
            finally:
                self._queues.discard(queue)

        return iterator()

    async def close(self) -> None:
        """End every subscription and wait for pending async listeners."""

        if self._closed:
            return
        self._closed = True
        for queue in tuple(self._queues):
            queue.put_nowait(self._SENTINEL)
        if self._background:
            await asyncio.gather(*tuple(self._background), return_exceptions=True)


def _log_task_error(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Auth event listener failed", exc_info=error)


__all__ = ["AuthEvent", "AuthEventKind", "EventEmitter", "Listener"]
