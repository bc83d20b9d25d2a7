from __future__ import annotations

from typing import Any, Protocol, TypeVar, cast

import msgspec

from .strategies import Strategy

T = TypeVar("T")


class _JSONModule(Protocol):
    def encode(self, obj: Any, *, enc_hook: Any = None) -> bytes: ...

    def decode(self, data: bytes | str, *, type: Any = Any, dec_hook: Any = None) -> Any: ...


_json = cast(_JSONModule, getattr(msgspec, "json"))


def enc_hook(value: Any) -> Any:
    if isinstance(value, Strategy):
        return value.raw
    raise NotImplementedError(f"Objects of type {type(value)!r} are not supported")


def dec_hook(kind: type, value: Any) -> Any:
    if kind is Strategy:
        if isinstance(value, Strategy):
            return value
        if isinstance(value, str):
            return Strategy.parse(value)
        raise msgspec.ValidationError(f"Expected a strategy string, got {type(value).__name__}")
    raise NotImplementedError(f"Objects of type {kind!r} are not supported")


def _strip_none(value: Any) -> Any:
    if isinstance(value, msgspec.Struct):
        value = msgspec.to_builtins(value, enc_hook=enc_hook)
    if isinstance(value, dict):
        return {key: _strip_none(val) for key, val in value.items() if val is not None}
    if isinstance(value, (list, tuple)):
        return [_strip_none(item) for item in value]
    return value


def json_encode(value: Any, *, drop_none: bool = False) -> bytes:
    """Serialize ``value`` to JSON bytes using msgspec."""

    if drop_none:
        value = _strip_none(value)
    return _json.encode(value, enc_hook=enc_hook)


def json_decode(data: bytes | str, target: type[T] | Any = Any) -> T:
    """Deserialize JSON ``data``, optionally validating it against ``target``."""

    return cast(T, _json.decode(data, type=target, dec_hook=dec_hook))


def convert(value: Any, target: type[T]) -> T:
    """Convert already-decoded builtins (dicts, lists) into ``target``."""

    return msgspec.convert(value, target, dec_hook=dec_hook)


def to_builtins(value: Any) -> Any:
    """Lower structs, enums and strategies to JSON-compatible builtins."""

    return msgspec.to_builtins(value, enc_hook=enc_hook)


__all__ = ["convert", "dec_hook", "enc_hook", "json_decode", "json_encode", "to_builtins"]
