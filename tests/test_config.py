from __future__ import annotations

import base64

import pytest

from portunus.config import (
    DEFAULT_FACTOR_PRIORITY,
    PortunusConfig,
    frontend_api_from_publishable_key,
)
from portunus.strategies import StrategyKind


def _key(host: str, prefix: str = "pk_test_") -> str:
    return prefix + base64.b64encode(f"{host}$".encode()).decode().rstrip("=")


def test_frontend_api_from_publishable_key() -> None:
    assert frontend_api_from_publishable_key(_key("clerk.example.com")) == "https://clerk.example.com"
    assert frontend_api_from_publishable_key(_key("accounts.example.dev", "pk_live_")) == "https://accounts.example.dev"


@pytest.mark.parametrize(
    "key",
    [
        "sk_test_abc",
        "pk_test_!!!",
        "pk_test_" + base64.b64encode(b"no-terminator").decode(),
    ],
)
def test_invalid_publishable_keys(key: str) -> None:
    with pytest.raises(ValueError):
        frontend_api_from_publishable_key(key)


def test_config_defaults() -> None:
    config = PortunusConfig(publishable_key=_key("clerk.example.com")).validate()
    assert config.api_url == "https://clerk.example.com"
    assert config.token_ttl_seconds == 60.0
    assert config.poll_interval == 50.0
    assert config.factor_priority == DEFAULT_FACTOR_PRIORITY
    assert config.factor_priority[0] is StrategyKind.PASSKEY


def test_explicit_frontend_api_url_wins() -> None:
    config = PortunusConfig(frontend_api_url="https://api.example.com/").validate()
    assert config.api_url == "https://api.example.com"


def test_validate_requires_an_api_location() -> None:
    with pytest.raises(ValueError):
        PortunusConfig().validate()


@pytest.mark.parametrize(
    "overrides",
    [
        {"token_ttl_seconds": 0},
        {"poll_interval_seconds": 60.0},
        {"poll_interval_seconds": 0.0},
        {"max_retries": -1},
        {"code_resend_cooldown_seconds": -5},
    ],
)
def test_validate_rejects_inconsistent_values(overrides: dict[str, float]) -> None:
    config = PortunusConfig(frontend_api_url="https://api.example.com", **overrides)
    with pytest.raises(ValueError):
        config.validate()


def test_short_ttl_halves_poll_interval() -> None:
    config = PortunusConfig(frontend_api_url="https://api.example.com", token_ttl_seconds=12).validate()
    assert config.poll_interval == 6.0
