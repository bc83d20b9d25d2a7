"""Session token cache."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from collections.abc import Callable, Mapping
from time import monotonic
from typing import Any

import msgspec

from .models import Client, TokenResource
from .serialization import json_decode
from .transport import ApiRequest, FrontendApi

logger = logging.getLogger(__name__)

SESSIONS_PATH = "/v1/client/sessions"
EXPIRATION_BUFFER_SECONDS = 10.0


class TokenKey(msgspec.Struct, frozen=True):
    session_id: str
    template: str | None = None
    organization_id: str | None = None


class CachedToken(msgspec.Struct, frozen=True):
    key: TokenKey
    jwt: str
    fetched_at: float
    ttl: float
    session_updated_at: int | None = None

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def jwt_claims(jwt: str) -> Mapping[str, Any]:
    """Decode the claims of ``jwt`` without verifying its signature."""

    parts = jwt.split(".")
    if len(parts) != 3:
        return {}
    try:
        decoded = json_decode(_b64url_decode(parts[1]))
    except (binascii.Error, ValueError, msgspec.DecodeError):
        return {}
    return decoded if isinstance(decoded, Mapping) else {}


class SessionTokenCache:
    """Per-(session, template, organization) bearer token cache.

    A fresh entry is served without touching the network; otherwise one fetch
    per key is issued and every concurrent caller for that key awaits it. Entries
    also expire ahead of the token's own ``exp`` claim.
    """

    def __init__(
        self,
        api: FrontendApi,
        *,
        ttl_seconds: float = 60.0,
        expiration_buffer_seconds: float = EXPIRATION_BUFFER_SECONDS,
        clock: Callable[[], float] | None = None,
        wall_clock: Callable[[], float] | None = None,
    ) -> None:
        self.api = api
        self.ttl_seconds = ttl_seconds
        self.expiration_buffer_seconds = min(max(expiration_buffer_seconds, 0.0), ttl_seconds)
        self._clock = clock or monotonic
        self._wall_clock = wall_clock or time.time
        self._entries: dict[TokenKey, CachedToken] = {}
        self._inflight: dict[TokenKey, asyncio.Task[str]] = {}
        self._generation = 0
        self._detach = api.store.add_listener(self._on_snapshot)

    def cached(self, key: TokenKey) -> CachedToken | None:
        return self._entries.get(key)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def get_token(
        self,
        session_id: str | None = None,
        *,
        template: str | None = None,
        organization_id: str | None = None,
        skip_cache: bool = False,
    ) -> str | None:
        """Return a bearer token for ``session_id`` (the active session by default)."""

        if session_id is None:
            session = self.api.store.active_session
            if session is None:
                return None
            session_id = session.id
            if organization_id is None:
                organization_id = session.last_active_organization_id
        key = TokenKey(session_id, template, organization_id)
        if not skip_cache:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                logger.debug("Token cache hit for session %s", session_id)
                return entry.jwt
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(key, self._generation))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._finish(key, done))
        else:
            logger.debug("Joining in-flight token fetch for session %s", session_id)
        return await asyncio.shield(task)

    def invalidate(self, session_id: str | None = None) -> None:
        """Drop cached tokens for ``session_id`` or for every session."""

        if session_id is None:
            self._entries.clear()
            # running fetches finish for their callers but are no longer joined
            self._inflight.clear()
            self._generation += 1
            return
        for key in [key for key in self._entries if key.session_id == session_id]:
            del self._entries[key]

    def close(self) -> None:
        self._detach()
        running = tuple(self._inflight.values())
        self.invalidate()
        for task in running:
            task.cancel()

    async def _fetch(self, key: TokenKey, generation: int) -> str:
        fetched_at = self._clock()
        path = f"{SESSIONS_PATH}/{key.session_id}/tokens"
        if key.template:
            path = f"{path}/{key.template}"
        body = {"organization_id": key.organization_id} if key.organization_id else None
        token = await self.api.call(
            ApiRequest("POST", path, "session.token", body=body, session_scoped=True),
            TokenResource,
        )
        if generation == self._generation:
            client = self.api.store.current
            session = client.session(key.session_id) if client is not None else None
            self._entries[key] = CachedToken(
                key,
                token.jwt,
                fetched_at,
                self._lifetime(token.jwt),
                session_updated_at=session.updated_at if session is not None else None,
            )
        return token.jwt

    def _lifetime(self, jwt: str) -> float:
        expiry = jwt_claims(jwt).get("exp")
        if not isinstance(expiry, (int, float)):
            return self.ttl_seconds
        remaining = expiry - self._wall_clock() - self.expiration_buffer_seconds
        return max(0.0, min(self.ttl_seconds, remaining))

    def _finish(self, key: TokenKey, task: asyncio.Task[str]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            task.exception()

    def _on_snapshot(self, previous: Client | None, current: Client | None) -> None:
        if current is None:
            self.invalidate()
            return
        previous_active = previous.last_active_session_id if previous is not None else None
        if previous_active != current.last_active_session_id:
            self.invalidate()
            return
        for key, entry in list(self._entries.items()):
            session = current.session(key.session_id)
            if session is None or session.updated_at != entry.session_updated_at:
                del self._entries[key]


__all__ = ["CachedToken", "SessionTokenCache", "TokenKey", "jwt_claims"]
