"""Platform credential ceremonies consumed by the flows.

Every ceremony is one awaitable call that either returns its result or raises
:class:`~portunus.exceptions.UserCancelledError` when the user dismisses it.
"""

from __future__ import annotations

from typing import Protocol

import msgspec

from .exceptions import ClientError
from .serialization import json_decode


class IdTokenResult(msgspec.Struct, frozen=True):
    """Native identity provider token plus the profile hints it came with."""

    token: str
    first_name: str | None = None
    last_name: str | None = None


class BrowserSession(Protocol):
    async def open(self, url: str, *, callback_url: str) -> str:
        """Open ``url`` and return the URL the provider redirected back to."""
        ...


class IdTokenProvider(Protocol):
    async def authenticate(self, provider: str) -> IdTokenResult: ...


class PasskeyAuthenticator(Protocol):
    @property
    def available(self) -> bool: ...

    async def assert_credential(self, challenge: str) -> str:
        """Sign ``challenge`` and return the serialized public key credential."""
        ...


class _PasskeyNonce(msgspec.Struct):
    challenge: str


def passkey_challenge(nonce: str | None) -> str:
    """Extract the WebAuthn challenge from a passkey verification nonce."""

    if not nonce:
        raise ClientError("passkey verification carries no nonce")
    try:
        return json_decode(nonce, _PasskeyNonce).challenge
    except msgspec.MsgspecError as exc:
        raise ClientError("passkey nonce does not contain a challenge") from exc


__all__ = [
    "BrowserSession",
    "IdTokenProvider",
    "IdTokenResult",
    "PasskeyAuthenticator",
    "passkey_challenge",
]
