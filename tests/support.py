"""Test support utilities: scripted transport, payload builders and fake ceremonies."""

from __future__ import annotations

import asyncio
import base64
import json
from collections.abc import Callable
from typing import Any, Iterable, Mapping

from portunus.ceremonies import IdTokenResult
from portunus.events import EventEmitter
from portunus.exceptions import UserCancelledError
from portunus.store import ClientStore
from portunus.transport import ApiRequest, ApiResponse, FrontendApi

Responder = Callable[[ApiRequest], Any]


class FakeTransport:
    """Record every request and answer with queued responses in order."""

    def __init__(self) -> None:
        self.requests: list[ApiRequest] = []
        self._queued: list[ApiResponse | BaseException | Responder] = []
        self.closed = False

    def queue(self, value: Any = None, *, client: Any = None, status: int = 200) -> None:
        self._queued.append(ApiResponse(value=value, client=client, status=status))

    def queue_error(self, error: BaseException) -> None:
        self._queued.append(error)

    def queue_responder(self, responder: Responder) -> None:
        self._queued.append(responder)

    @property
    def paths(self) -> list[tuple[str, str]]:
        return [(request.method, request.path) for request in self.requests]

    async def send(self, request: ApiRequest) -> ApiResponse:
        self.requests.append(request)
        if not self._queued:
            raise AssertionError(f"unexpected request {request.method} {request.path}")
        item = self._queued.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, ApiResponse):
            return item
        result = item(request)
        if asyncio.iscoroutine(result):
            result = await result
        if isinstance(result, ApiResponse):
            return result
        return ApiResponse(value=result)

    async def aclose(self) -> None:
        self.closed = True


class ManualClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_api(transport: FakeTransport | None = None) -> tuple[FrontendApi, FakeTransport, ClientStore, EventEmitter]:
    emitter = EventEmitter()
    store = ClientStore(emitter)
    fake = transport or FakeTransport()
    return FrontendApi(fake, store), fake, store, emitter


def verification(status: str = "unverified", strategy: str | None = "email_code", **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"status": status, "strategy": strategy}
    payload.update(extra)
    return payload


def factor(strategy: str, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"strategy": strategy}
    payload.update(extra)
    return payload


def sign_in_payload(
    sign_in_id: str = "sia_1",
    status: str = "needs_first_factor",
    *,
    identifier: str | None = "user@example.com",
    first_factors: Iterable[Mapping[str, Any]] = (),
    second_factors: Iterable[Mapping[str, Any]] = (),
    first_factor_verification: Mapping[str, Any] | None = None,
    second_factor_verification: Mapping[str, Any] | None = None,
    created_session_id: str | None = None,
) -> dict[str, Any]:
    return {
        "object": "sign_in_attempt",
        "id": sign_in_id,
        "status": status,
        "identifier": identifier,
        "supported_identifiers": ["email_address"],
        "supported_first_factors": [dict(item) for item in first_factors],
        "supported_second_factors": [dict(item) for item in second_factors],
        "first_factor_verification": dict(first_factor_verification) if first_factor_verification else None,
        "second_factor_verification": dict(second_factor_verification) if second_factor_verification else None,
        "created_session_id": created_session_id,
    }


def sign_up_payload(
    sign_up_id: str = "sua_1",
    status: str = "missing_requirements",
    *,
    missing_fields: Iterable[str] = (),
    unverified_fields: Iterable[str] = (),
    verifications: Mapping[str, Any] | None = None,
    created_session_id: str | None = None,
    created_user_id: str | None = None,
    **fields: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "object": "sign_up_attempt",
        "id": sign_up_id,
        "status": status,
        "required_fields": ["email_address"],
        "missing_fields": list(missing_fields),
        "unverified_fields": list(unverified_fields),
        "verifications": dict(verifications or {}),
        "created_session_id": created_session_id,
        "created_user_id": created_user_id,
    }
    payload.update(fields)
    return payload


def session_payload(
    session_id: str = "sess_1",
    status: str = "active",
    *,
    updated_at: int = 1_700_000_000_000,
    user_id: str = "user_1",
) -> dict[str, Any]:
    return {
        "object": "session",
        "id": session_id,
        "status": status,
        "expire_at": updated_at + 7 * 24 * 3600 * 1000,
        "last_active_at": updated_at,
        "updated_at": updated_at,
        "user": {"id": user_id, "first_name": "Ada"},
    }


def client_payload(
    client_id: str = "client_1",
    *,
    sessions: Iterable[Mapping[str, Any]] = (),
    last_active_session_id: str | None = None,
    updated_at: int = 1,
    sign_in: Mapping[str, Any] | None = None,
    sign_up: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "object": "client",
        "id": client_id,
        "sessions": [dict(item) for item in sessions],
        "last_active_session_id": last_active_session_id,
        "sign_in": dict(sign_in) if sign_in else None,
        "sign_up": dict(sign_up) if sign_up else None,
        "updated_at": updated_at,
    }


def signed_in_client(session_id: str = "sess_1", *, updated_at: int = 1, session_updated_at: int = 1) -> dict[str, Any]:
    return client_payload(
        sessions=[session_payload(session_id, updated_at=session_updated_at)],
        last_active_session_id=session_id,
        updated_at=updated_at,
    )


def make_jwt(claims: Mapping[str, Any]) -> str:
    def segment(data: Mapping[str, Any]) -> str:
        raw = json.dumps(dict(data), separators=(",", ":")).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    return f"{segment({'alg': 'RS256', 'typ': 'JWT'})}.{segment(claims)}.signature"


class FakeBrowser:
    def __init__(self, callback_url: str | None = None, *, cancel: bool = False) -> None:
        self.callback_url = callback_url
        self.cancel = cancel
        self.opened: list[tuple[str, str]] = []

    async def open(self, url: str, *, callback_url: str) -> str:
        self.opened.append((url, callback_url))
        if self.cancel:
            raise UserCancelledError("browser closed")
        assert self.callback_url is not None
        return self.callback_url


class FakeIdTokenProvider:
    def __init__(self, result: IdTokenResult | None = None, *, cancel: bool = False) -> None:
        self.result = result or IdTokenResult(token="id-token", first_name="Ada", last_name="Lovelace")
        self.cancel = cancel
        self.providers: list[str] = []

    async def authenticate(self, provider: str) -> IdTokenResult:
        self.providers.append(provider)
        if self.cancel:
            raise UserCancelledError("dismissed")
        return self.result


class FakePasskeys:
    def __init__(self, *, available: bool = True, cancel: bool = False) -> None:
        self._available = available
        self.cancel = cancel
        self.challenges: list[str] = []

    @property
    def available(self) -> bool:
        return self._available

    async def assert_credential(self, challenge: str) -> str:
        self.challenges.append(challenge)
        if self.cancel:
            raise UserCancelledError("dismissed")
        return json.dumps({"id": "cred_1", "challenge": challenge})


__all__ = [
    "FakeBrowser",
    "FakeIdTokenProvider",
    "FakePasskeys",
    "FakeTransport",
    "ManualClock",
    "client_payload",
    "factor",
    "make_api",
    "make_jwt",
    "session_payload",
    "sign_in_payload",
    "sign_up_payload",
    "signed_in_client",
    "verification",
]
