from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from portunus.events import AuthEventKind
from portunus.exceptions import ServerTransientError, ServerValidationError, SessionRevokedError
from portunus.models import Client, ErrorInfo
from portunus.polling import SessionPoller
from portunus.serialization import convert
from portunus.tokens import SessionTokenCache, TokenKey
from tests.support import client_payload, make_api, session_payload, signed_in_client


class ReleasedSleep:
    """Sleep replacement that blocks until the test releases the next tick."""

    def __init__(self) -> None:
        self.intervals: list[float] = []
        self._release: asyncio.Queue[None] = asyncio.Queue()

    async def __call__(self, seconds: float) -> None:
        self.intervals.append(seconds)
        await self._release.get()

    def release(self) -> None:
        self._release.put_nowait(None)


async def _until(predicate: Callable[[], bool]) -> None:
    for _ in range(100):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def _poller(*, signed_in: bool = True, sleep=None):
    api, transport, store, emitter = make_api()
    if signed_in:
        store.apply(convert(signed_in_client("sess_1"), Client))
    tokens = SessionTokenCache(api)
    poller = SessionPoller(tokens, store, interval_seconds=50, emitter=emitter, sleep=sleep)
    return poller, transport, store, emitter, tokens


def _revoked() -> SessionRevokedError:
    return SessionRevokedError(401, [ErrorInfo(code="session_revoked", message="Session revoked")])


def test_interval_must_be_positive() -> None:
    api, _, store, _ = make_api()
    with pytest.raises(ValueError):
        SessionPoller(SessionTokenCache(api), store, interval_seconds=0)


@pytest.mark.asyncio
async def test_tick_refreshes_token_bypassing_cache() -> None:
    poller, transport, _, _, tokens = _poller()
    transport.queue({"jwt": "jwt-A"})
    transport.queue({"jwt": "jwt-B"})
    assert await tokens.get_token() == "jwt-A"
    assert await poller.tick()
    cached = tokens.cached(TokenKey("sess_1"))
    assert cached is not None and cached.jwt == "jwt-B"
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_tick_without_session_stops() -> None:
    poller, transport, _, _, _ = _poller(signed_in=False)
    assert not await poller.tick()
    assert transport.requests == []


@pytest.mark.asyncio
async def test_transient_and_validation_failures_keep_polling() -> None:
    poller, transport, store, _, _ = _poller()
    transport.queue_error(ServerTransientError(None, "offline"))
    transport.queue_error(ServerValidationError(400, [ErrorInfo(code="bad_request")]))
    assert await poller.tick()
    assert await poller.tick()
    assert store.active_session is not None


@pytest.mark.asyncio
async def test_revoked_session_signs_out_locally() -> None:
    poller, transport, store, emitter, tokens = _poller()
    stream = emitter.subscribe()
    transport.queue_error(_revoked())
    assert not await poller.tick()
    assert store.active_session is None
    assert store.current is not None and store.current.sessions == ()
    await emitter.close()
    events = [event async for event in stream]
    assert [event.kind for event in events] == [AuthEventKind.SESSION_CHANGED, AuthEventKind.SIGNED_OUT]
    assert events[1].session is not None and events[1].session.id == "sess_1"
    assert tokens.cached(TokenKey("sess_1")) is None


@pytest.mark.asyncio
async def test_start_requires_active_session() -> None:
    poller, _, _, _, _ = _poller(signed_in=False, sleep=ReleasedSleep())
    assert not poller.start()
    assert not poller.running


@pytest.mark.asyncio
async def test_loop_ticks_until_session_is_revoked() -> None:
    sleep = ReleasedSleep()
    poller, transport, store, _, _ = _poller(sleep=sleep)
    assert poller.start()
    assert poller.running

    transport.queue({"jwt": "jwt-A"})
    sleep.release()
    await _until(lambda: len(transport.requests) == 1)

    transport.queue_error(_revoked())
    sleep.release()
    await _until(lambda: not poller.running)

    assert sleep.intervals == [50, 50]
    assert store.active_session is None


@pytest.mark.asyncio
async def test_stop_cancels_the_loop() -> None:
    sleep = ReleasedSleep()
    poller, transport, store, _, _ = _poller(sleep=sleep)
    poller.start()
    await _until(lambda: len(sleep.intervals) == 1)
    await poller.stop()
    assert not poller.running
    store.apply(convert(signed_in_client("sess_2", updated_at=2), Client))
    assert not poller.running
    assert transport.requests == []


@pytest.mark.asyncio
async def test_signing_out_cancels_and_signing_in_resumes() -> None:
    sleep = ReleasedSleep()
    poller, _, store, _, _ = _poller(signed_in=False, sleep=sleep)
    assert not poller.start()
    store.apply(convert(signed_in_client("sess_1"), Client))
    assert poller.running
    store.clear()
    await _until(lambda: not poller.running)
    store.apply(convert(signed_in_client("sess_2", updated_at=3), Client))
    assert poller.running
    await poller.close()
    assert not poller.running


@pytest.mark.asyncio
async def test_sign_out_during_tick_leaves_no_stray_loop() -> None:
    sleep = ReleasedSleep()
    poller, transport, store, _, tokens = _poller(sleep=sleep)
    gate = asyncio.Event()

    async def slow(request):
        await gate.wait()
        return {"jwt": "jwt-A"}

    transport.queue_responder(slow)
    poller.start()
    first = poller._task
    sleep.release()
    await _until(lambda: len(transport.requests) == 1)

    store.clear()
    assert not poller.running
    store.apply(convert(signed_in_client("sess_2", updated_at=2), Client))
    assert poller.running
    assert poller._task is not first

    await poller.stop()
    assert first is not None and first.done()
    assert not poller.running
    gate.set()
    tokens.close()


@pytest.mark.asyncio
async def test_tick_warms_the_organization_token() -> None:
    api, transport, store, emitter = make_api()
    session = {**session_payload("sess_1"), "last_active_organization_id": "org_1"}
    store.apply(convert(client_payload(sessions=[session], last_active_session_id="sess_1"), Client))
    tokens = SessionTokenCache(api)
    poller = SessionPoller(tokens, store, interval_seconds=50, emitter=emitter)
    transport.queue({"jwt": "jwt-org"})

    assert await poller.tick()
    assert transport.requests[0].body == {"organization_id": "org_1"}
    assert await tokens.get_token() == "jwt-org"
    assert len(transport.requests) == 1
