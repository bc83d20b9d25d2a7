"""HTTP status helpers used by the Frontend API transport."""

from __future__ import annotations

from enum import IntEnum
from http import HTTPStatus as _HTTPStatus


class Status(IntEnum):
    """Enumeration of the HTTP status codes the Frontend API is known to return."""

    OK = 200
    CREATED = 201
    NO_CONTENT = 204
    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    FORBIDDEN = 403
    NOT_FOUND = 404
    REQUEST_TIMEOUT = 408
    CONFLICT = 409
    GONE = 410
    UNPROCESSABLE_ENTITY = 422
    TOO_EARLY = 425
    TOO_MANY_REQUESTS = 429
    INTERNAL_SERVER_ERROR = 500
    BAD_GATEWAY = 502
    SERVICE_UNAVAILABLE = 503
    GATEWAY_TIMEOUT = 504


RETRYABLE_STATUSES = frozenset(
    {
        Status.REQUEST_TIMEOUT,
        Status.TOO_EARLY,
        Status.TOO_MANY_REQUESTS,
        Status.INTERNAL_SERVER_ERROR,
        Status.BAD_GATEWAY,
        Status.SERVICE_UNAVAILABLE,
        Status.GATEWAY_TIMEOUT,
    }
)


def ensure_status(status: int | Status) -> int:
    """Normalize ``status`` to an ``int`` and ensure it is within the HTTP range."""

    code = int(status)
    if code < 100 or code > 599:
        raise ValueError(f"Invalid HTTP status code: {status}")
    return code


def reason_phrase(status: int | Status) -> str:
    """Return the HTTP reason phrase for ``status`` if known."""

    try:
        code = ensure_status(status)
    except ValueError:
        return "Unknown Status"
    try:
        return _HTTPStatus(code).phrase
    except ValueError:  # pragma: no cover - non-standard status codes
        return "Unknown Status"


def is_success(status: int | Status) -> bool:
    """Return ``True`` if ``status`` is a 2xx code."""

    code = ensure_status(status)
    return 200 <= code < 300


def is_retryable(status: int | Status) -> bool:
    """Return ``True`` when a request answered with ``status`` may be replayed."""

    return ensure_status(status) in RETRYABLE_STATUSES


def parse_retry_after(value: str | None) -> float | None:
    """Interpret a ``Retry-After`` header expressed in seconds."""

    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


__all__ = [
    "RETRYABLE_STATUSES",
    "Status",
    "ensure_status",
    "is_retryable",
    "is_success",
    "parse_retry_after",
    "reason_phrase",
]
