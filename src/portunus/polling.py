"""Session polling loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .events import AuthEvent, EventEmitter
from .exceptions import PortunusError, ServerTransientError, SessionRevokedError
from .models import Session
from .store import ClientStore
from .tokens import SessionTokenCache

logger = logging.getLogger(__name__)


class SessionPoller:
    """Keep the active session's token warm and notice server-side revocation.

    The loop runs only while the host is in the foreground and a session is
    active. Transient failures wait for the next tick; a revoked session is
    removed locally, polling stops and ``signed_out`` is emitted.
    """

    def __init__(
        self,
        tokens: SessionTokenCache,
        store: ClientStore,
        *,
        interval_seconds: float = 50.0,
        emitter: EventEmitter | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.tokens = tokens
        self.store = store
        self.interval_seconds = interval_seconds
        self._emitter = emitter
        self._sleep = sleep or asyncio.sleep
        self._task: asyncio.Task[None] | None = None
        # cancelled loop still unwinding after a sign-out
        self._retiring: asyncio.Task[None] | None = None
        self._foreground = False
        self._detach = store.add_session_listener(self._on_session_changed)

    @property
    def running(self) -> bool:
        task = self._task
        return task is not None and not task.done() and not task.cancelling()

    def start(self) -> bool:
        """Start polling if there is an active session; return whether the loop runs."""

        self._foreground = True
        if self.running:
            return True
        if self.store.active_session is None:
            return False
        self._task = asyncio.get_running_loop().create_task(self._run())
        self._task.add_done_callback(_log_task_error)
        logger.debug("Session polling started (every %.1fs)", self.interval_seconds)
        return True

    async def stop(self) -> None:
        """Cancel the loop and wait for it; safe to call at any point."""

        self._foreground = False
        tasks = [task for task in (self._task, self._retiring) if task is not None and not task.done()]
        self._task = self._retiring = None
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Session polling stopped")

    async def close(self) -> None:
        self._detach()
        await self.stop()

    async def tick(self) -> bool:
        """Refresh the active session's token once; return whether polling should continue."""

        session = self.store.active_session
        if session is None:
            return False
        try:
            await self.tokens.get_token(
                session.id,
                organization_id=session.last_active_organization_id,
                skip_cache=True,
            )
        except ServerTransientError as exc:
            logger.warning("Session refresh failed transiently (%s); retrying next tick", exc)
            return True
        except SessionRevokedError:
            logger.info("Session %s was revoked; signing out locally", session.id)
            self._sign_out_locally(session)
            return False
        except PortunusError as exc:
            logger.warning("Session refresh failed (%s); retrying next tick", exc)
            return True
        return True

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval_seconds)
            if not await self.tick():
                break

    def _sign_out_locally(self, session: Session) -> None:
        self.tokens.invalidate(session.id)
        self.store.remove_session(session.id)
        if self._emitter is not None and not self._emitter.closed:
            self._emitter.emit(AuthEvent.signed_out(session))

    def _on_session_changed(self, session: Session | None, previous_id: str | None) -> None:
        if session is None:
            task = self._task
            # after a revocation the loop is the caller and exits on its own
            if task is None or task.done() or task is _current_task():
                return
            task.cancel()
            self._task, self._retiring = None, task
            return
        if self._foreground and not self.running:
            try:
                self.start()
            except RuntimeError:
                logger.debug("No running event loop; polling resumes on the next foreground")


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def _log_task_error(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Session polling failed", exc_info=error)


__all__ = ["SessionPoller"]
