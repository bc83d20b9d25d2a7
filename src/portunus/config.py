"""Client configuration objects."""

from __future__ import annotations

import base64
import binascii

from msgspec import Struct

from .observability import ObservabilityConfig
from .strategies import StrategyKind

_KEY_PREFIXES = ("pk_test_", "pk_live_")

DEFAULT_FACTOR_PRIORITY: tuple[StrategyKind, ...] = (
    StrategyKind.PASSKEY,
    StrategyKind.EMAIL_CODE,
    StrategyKind.PHONE_CODE,
    StrategyKind.PASSWORD,
)
DEFAULT_SECOND_FACTOR_PRIORITY: tuple[StrategyKind, ...] = (
    StrategyKind.TOTP,
    StrategyKind.PHONE_CODE,
    StrategyKind.EMAIL_CODE,
    StrategyKind.BACKUP_CODE,
)


def frontend_api_from_publishable_key(publishable_key: str) -> str:
    """Return the Frontend API origin encoded in ``publishable_key``."""

    for prefix in _KEY_PREFIXES:
        if publishable_key.startswith(prefix):
            encoded = publishable_key[len(prefix) :]
            break
    else:
        raise ValueError("publishable key must start with pk_test_ or pk_live_")
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        decoded = base64.b64decode(padded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError("publishable key is not valid base64") from exc
    if not decoded.endswith("$") or len(decoded) < 2:
        raise ValueError("publishable key does not encode a Frontend API host")
    return f"https://{decoded[:-1]}"


class PortunusConfig(Struct, frozen=True):
    """Typed configuration for a :class:`~portunus.client.Portunus` instance."""

    publishable_key: str = ""
    frontend_api_url: str | None = None
    redirect_url: str = "portunus://callback"
    api_version: str = "2025-04-10"
    token_ttl_seconds: float = 60.0
    poll_interval_seconds: float | None = None
    code_resend_cooldown_seconds: float = 30.0
    request_timeout_seconds: float = 30.0
    max_retries: int = 2
    retry_backoff_seconds: float = 0.5
    factor_priority: tuple[StrategyKind, ...] = DEFAULT_FACTOR_PRIORITY
    second_factor_priority: tuple[StrategyKind, ...] = DEFAULT_SECOND_FACTOR_PRIORITY
    persist_snapshot: bool = True
    observability: ObservabilityConfig = ObservabilityConfig()

    @property
    def api_url(self) -> str:
        if self.frontend_api_url:
            return self.frontend_api_url.rstrip("/")
        if not self.publishable_key:
            raise ValueError("either frontend_api_url or publishable_key is required")
        return frontend_api_from_publishable_key(self.publishable_key)

    @property
    def poll_interval(self) -> float:
        """Seconds between polling ticks; always shorter than the token TTL."""

        if self.poll_interval_seconds is not None:
            return self.poll_interval_seconds
        return max(self.token_ttl_seconds - 10.0, self.token_ttl_seconds / 2)

    def validate(self) -> PortunusConfig:
        if self.token_ttl_seconds <= 0:
            raise ValueError("token_ttl_seconds must be positive")
        if self.poll_interval <= 0 or self.poll_interval >= self.token_ttl_seconds:
            raise ValueError("poll interval must be positive and shorter than the token TTL")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.code_resend_cooldown_seconds < 0:
            raise ValueError("code_resend_cooldown_seconds cannot be negative")
        if not self.frontend_api_url:
            frontend_api_from_publishable_key(self.publishable_key)
        return self


__all__ = [
    "DEFAULT_FACTOR_PRIORITY",
    "DEFAULT_SECOND_FACTOR_PRIORITY",
    "PortunusConfig",
    "frontend_api_from_publishable_key",
]
