"""Frontend API transport and response envelope handling."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, TypeVar

import httpx
import msgspec

from .config import PortunusConfig
from .exceptions import ClientError, ServerTransientError, error_from_response
from .http import is_retryable, is_success, parse_retry_after
from .models import Client, ErrorInfo
from .observability import Observability
from .serialization import convert, json_decode, json_encode, to_builtins
from .storage import SecureStorage
from .store import ClientStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLIENT_PATH = "/v1/client"
CLIENT_TOKEN_KEY = "portunus.client_token"


class ApiRequest(msgspec.Struct, frozen=True):
    """One Frontend API call."""

    method: str
    path: str
    operation: str
    query: tuple[tuple[str, str], ...] = ()
    body: dict[str, Any] | None = None
    session_scoped: bool = False


class ApiResponse(msgspec.Struct, frozen=True):
    """Response envelope: the endpoint's own value plus an optional piggybacked client."""

    value: Any = None
    client: Any = None
    status: int = 200


class Transport(Protocol):
    async def send(self, request: ApiRequest) -> ApiResponse: ...

    async def aclose(self) -> None: ...


def _envelope(payload: Any, status: int) -> ApiResponse:
    if isinstance(payload, Mapping) and "response" in payload:
        return ApiResponse(value=payload.get("response"), client=payload.get("client"), status=status)
    return ApiResponse(value=payload, status=status)


def _error_details(payload: Any) -> list[ErrorInfo]:
    if not isinstance(payload, Mapping):
        return []
    try:
        return convert(payload.get("errors") or [], list[ErrorInfo])
    except msgspec.ValidationError:
        return []


class HttpxTransport:
    """Speak JSON to the Frontend API over :mod:`httpx` with bounded retries."""

    def __init__(
        self,
        config: PortunusConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        token_storage: SecureStorage | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=config.api_url,
            timeout=config.request_timeout_seconds,
        )
        self._storage = token_storage
        self._sleep = sleep or asyncio.sleep
        self._client_token: str | None = None
        if token_storage is not None:
            try:
                self._client_token = token_storage.get(CLIENT_TOKEN_KEY)
            except Exception:
                logger.exception("Unable to read the stored client token")

    @property
    def client_token(self) -> str | None:
        return self._client_token

    async def send(self, request: ApiRequest) -> ApiResponse:
        attempt = 0
        while True:
            try:
                response = await self._http.request(
                    request.method,
                    request.path,
                    params=self._params(request),
                    content=json_encode(request.body, drop_none=True) if request.body is not None else None,
                    headers=self._headers(request),
                )
            except httpx.TransportError as exc:
                if attempt >= self.config.max_retries:
                    raise ServerTransientError(None, str(exc)) from exc
                delay = self._backoff(attempt)
                logger.warning("%s %s failed (%s); retrying in %.2fs", request.method, request.path, exc, delay)
                await self._sleep(delay)
                attempt += 1
                continue
            if is_retryable(response.status_code):
                retry_after = parse_retry_after(response.headers.get("retry-after"))
                if attempt >= self.config.max_retries:
                    raise ServerTransientError(
                        response.status_code,
                        _error_details(self._decode(response, strict=False)),
                        retry_after=retry_after,
                    )
                delay = retry_after if retry_after is not None else self._backoff(attempt)
                logger.warning(
                    "%s %s answered %s; retrying in %.2fs",
                    request.method,
                    request.path,
                    response.status_code,
                    delay,
                )
                await self._sleep(delay)
                attempt += 1
                continue
            break
        self._remember_client_token(response)
        payload = self._decode(response, strict=is_success(response.status_code))
        if not is_success(response.status_code):
            raise error_from_response(
                response.status_code,
                _error_details(payload),
                session_scoped=request.session_scoped,
            )
        return _envelope(payload, response.status_code)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _params(self, request: ApiRequest) -> list[tuple[str, str]]:
        params = [("_is_native", "true"), ("__clerk_api_version", self.config.api_version)]
        params.extend(request.query)
        return params

    def _headers(self, request: ApiRequest) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if request.body is not None:
            headers["content-type"] = "application/json"
        if self._client_token:
            headers["authorization"] = self._client_token
        return headers

    def _backoff(self, attempt: int) -> float:
        return self.config.retry_backoff_seconds * (2**attempt)

    def _remember_client_token(self, response: httpx.Response) -> None:
        token = response.headers.get("authorization")
        if not token or token == self._client_token:
            return
        self._client_token = token
        if self._storage is None:
            return
        try:
            self._storage.set(CLIENT_TOKEN_KEY, token)
        except Exception:
            logger.exception("Unable to persist the client token")

    @staticmethod
    def _decode(response: httpx.Response, *, strict: bool) -> Any:
        if not response.content:
            return None
        try:
            return json_decode(response.content)
        except msgspec.DecodeError as exc:
            if strict:
                raise ClientError(f"malformed response body ({response.status_code})") from exc
            return None


class FrontendApi:
    """Send requests and apply piggybacked client snapshots to the store in one step."""

    def __init__(
        self,
        transport: Transport,
        store: ClientStore,
        *,
        observability: Observability | None = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self._observability = observability

    async def call(self, request: ApiRequest, target: type[T]) -> T:
        """Send ``request`` and return its value converted to ``target``."""

        value, client = await self._exchange(request, target)
        if client is not None:
            self.store.apply(client)
        return value

    async def call_client(self, request: ApiRequest) -> Client | None:
        """Send a request whose value is itself the client snapshot and apply it."""

        value, _ = await self._exchange(request, Client | None)
        self.store.apply(value)
        return value

    async def _exchange(self, request: ApiRequest, target: Any) -> tuple[Any, Client | None]:
        observability = self._observability
        call = observability.on_api_start(request) if observability is not None else None
        try:
            response = await self.transport.send(request)
            value = _coerce(response.value, target)
            client = _coerce(response.client, Client) if response.client is not None else None
        except BaseException as exc:
            if observability is not None:
                observability.on_api_error(call, exc)
            raise
        if observability is not None:
            observability.on_api_success(call, status=response.status)
        return value, client


def _coerce(value: Any, target: Any) -> Any:
    if isinstance(target, type) and isinstance(value, target):
        return value
    if isinstance(value, msgspec.Struct):
        value = to_builtins(value)
    try:
        return convert(value, target)
    except msgspec.ValidationError as exc:
        raise ClientError(f"unexpected response shape: {exc}") from exc


__all__ = [
    "ApiRequest",
    "ApiResponse",
    "CLIENT_PATH",
    "CLIENT_TOKEN_KEY",
    "FrontendApi",
    "HttpxTransport",
    "Transport",
]
