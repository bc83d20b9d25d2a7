"""Error taxonomy raised by the identity flow engine."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from .http import Status, ensure_status, reason_phrase
from .models import ErrorInfo

EXPIRED_CODES = frozenset({"verification_expired", "form_code_expired", "sign_in_expired", "sign_up_expired"})
SESSION_REVOKED_CODES = frozenset(
    {
        "authentication_invalid",
        "resource_not_found",
        "session_expired",
        "session_not_found",
        "session_revoked",
    }
)


class PortunusError(Exception):
    """Base error type."""


class ServerValidationError(PortunusError):
    """The server rejected the request; the user has to correct something before retrying."""

    def __init__(self, status: int | Status | None, errors: Sequence[ErrorInfo]) -> None:
        self.status = ensure_status(status) if status is not None else None
        self.errors = tuple(errors)
        super().__init__(self.status, self.message)

    @property
    def first(self) -> ErrorInfo | None:
        return self.errors[0] if self.errors else None

    @property
    def code(self) -> str | None:
        return self.first.code if self.first else None

    @property
    def message(self) -> str:
        if self.first is None:
            return reason_phrase(self.status) if self.status is not None else "Validation failed"
        return self.first.message

    @property
    def long_message(self) -> str | None:
        return self.first.long_message if self.first else None

    @property
    def meta(self) -> dict[str, Any]:
        return dict(self.first.meta or {}) if self.first else {}

    def __str__(self) -> str:
        if self.long_message:
            return self.long_message
        return self.message


class AttemptExpiredError(ServerValidationError):
    """The verification window elapsed; the factor has to be prepared again."""


class SessionRevokedError(ServerValidationError):
    """The server no longer recognises the session."""


class ServerTransientError(PortunusError):
    """Network failure or retryable server status; the caller may try again."""

    def __init__(self, status: int | None, detail: Any = None, *, retry_after: float | None = None) -> None:
        super().__init__(status, detail)
        self.status = status
        self.detail = detail
        self.retry_after = retry_after

    def __str__(self) -> str:
        if self.status is None:
            return f"network error: {self.detail}"
        return f"{self.status} {reason_phrase(self.status)}"


class UserCancelledError(PortunusError):
    """A platform ceremony was dismissed by the user."""


class InvalidStateError(PortunusError):
    """Operation attempted from a state that does not permit it."""


class InvalidFactorError(InvalidStateError):
    """The requested strategy is not offered for this attempt."""

    def __init__(self, strategy: Any, supported: Iterable[Any] = ()) -> None:
        self.strategy = strategy
        self.supported = tuple(supported)
        listed = ", ".join(str(item) for item in self.supported) or "none"
        super().__init__(f"strategy {strategy} is not supported (supported: {listed})")


class ClientError(PortunusError):
    """Local data required to continue a flow is missing or malformed."""


def error_from_response(
    status: int,
    errors: Sequence[ErrorInfo],
    *,
    session_scoped: bool = False,
) -> ServerValidationError:
    """Classify a non-retryable error response into the taxonomy."""

    codes = {error.code for error in errors}
    if (
        session_scoped
        and status in (Status.UNAUTHORIZED, Status.NOT_FOUND)
        and codes & SESSION_REVOKED_CODES
    ):
        return SessionRevokedError(status, errors)
    if codes & EXPIRED_CODES:
        return AttemptExpiredError(status, errors)
    return ServerValidationError(status, errors)


def verification_error(error: ErrorInfo) -> ServerValidationError:
    """Wrap the error carried by a verification record."""

    if error.code in EXPIRED_CODES:
        return AttemptExpiredError(None, (error,))
    return ServerValidationError(None, (error,))


__all__ = [
    "AttemptExpiredError",
    "ClientError",
    "EXPIRED_CODES",
    "InvalidFactorError",
    "InvalidStateError",
    "PortunusError",
    "SESSION_REVOKED_CODES",
    "ServerTransientError",
    "ServerValidationError",
    "SessionRevokedError",
    "UserCancelledError",
    "error_from_response",
    "verification_error",
]
