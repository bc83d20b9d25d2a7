"""Frontend API resources: verifications, attempts, sessions and the client snapshot."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

import msgspec

from .strategies import SignUpField, Strategy, StrategyKind


def _from_millis(value: int | None) -> dt.datetime | None:
    if value is None:
        return None
    return dt.datetime.fromtimestamp(value / 1000, tz=dt.timezone.utc)


class _ForwardCompatibleEnum(str, Enum):
    """Unknown wire values decode to ``UNKNOWN`` rather than failing."""

    @classmethod
    def _missing_(cls, value: object) -> Any:
        return cls["UNKNOWN"]


class VerificationStatus(_ForwardCompatibleEnum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    TRANSFERABLE = "transferable"
    EXPIRED = "expired"
    FAILED = "failed"
    UNKNOWN = "unknown"


class SignInStatus(_ForwardCompatibleEnum):
    NEEDS_IDENTIFIER = "needs_identifier"
    NEEDS_FIRST_FACTOR = "needs_first_factor"
    NEEDS_SECOND_FACTOR = "needs_second_factor"
    NEEDS_NEW_PASSWORD = "needs_new_password"
    NEEDS_CLIENT_TRUST = "needs_client_trust"
    COMPLETE = "complete"
    UNKNOWN = "unknown"


class SignUpStatus(_ForwardCompatibleEnum):
    MISSING_REQUIREMENTS = "missing_requirements"
    COMPLETE = "complete"
    ABANDONED = "abandoned"
    UNKNOWN = "unknown"


class SessionStatus(_ForwardCompatibleEnum):
    ACTIVE = "active"
    PENDING = "pending"
    ENDED = "ended"
    EXPIRED = "expired"
    REMOVED = "removed"
    REPLACED = "replaced"
    REVOKED = "revoked"
    ABANDONED = "abandoned"
    UNKNOWN = "unknown"


class ErrorInfo(msgspec.Struct, frozen=True):
    """One entry of the ``errors`` array in an error response."""

    code: str
    message: str = ""
    long_message: str | None = None
    meta: dict[str, Any] | None = None


class Verification(msgspec.Struct, frozen=True):
    """Status of one factor's challenge/response cycle."""

    status: VerificationStatus = VerificationStatus.UNVERIFIED
    strategy: Strategy | None = None
    attempts: int | None = None
    expire_at: int | None = None
    error: ErrorInfo | None = None
    external_verification_redirect_url: str | None = None
    nonce: str | None = None

    def __post_init__(self) -> None:
        if self.external_verification_redirect_url is None or self.strategy is None:
            return
        if not self.strategy.is_redirect and self.strategy.kind is not StrategyKind.UNKNOWN:
            raise ValueError(f"{self.strategy.raw} verifications cannot carry a redirect URL")

    @property
    def expires(self) -> dt.datetime | None:
        return _from_millis(self.expire_at)

    def is_expired(self, now: dt.datetime | None = None) -> bool:
        if self.status is VerificationStatus.EXPIRED:
            return True
        expires = self.expires
        if expires is None:
            return False
        return expires <= (now or dt.datetime.now(dt.timezone.utc))


class Factor(msgspec.Struct, frozen=True):
    """One way a sign-in could be verified."""

    strategy: Strategy
    safe_identifier: str | None = None
    email_address_id: str | None = None
    phone_number_id: str | None = None
    web3_wallet_id: str | None = None
    is_primary: bool = msgspec.field(default=False, name="primary")
    is_default: bool | None = msgspec.field(default=None, name="default")


class SignIn(msgspec.Struct, frozen=True):
    id: str
    status: SignInStatus = SignInStatus.NEEDS_IDENTIFIER
    supported_identifiers: tuple[str, ...] = ()
    identifier: str | None = None
    supported_first_factors: tuple[Factor, ...] = ()
    supported_second_factors: tuple[Factor, ...] = ()
    first_factor_verification: Verification | None = None
    second_factor_verification: Verification | None = None
    created_session_id: str | None = None
    abandon_at: int | None = None

    def __post_init__(self) -> None:
        if (self.status is SignInStatus.COMPLETE) != (self.created_session_id is not None):
            raise ValueError("a sign-in is complete exactly when it has created a session")

    @property
    def is_complete(self) -> bool:
        return self.status is SignInStatus.COMPLETE

    def first_factor(self, strategy: Strategy) -> Factor | None:
        """Return the supported first factor for ``strategy``.

        When several factors share the strategy, the one matching the identifier the
        attempt was created with wins, then the server's order.
        """

        candidates = [factor for factor in self.supported_first_factors if factor.strategy == strategy]
        for factor in candidates:
            if self.identifier is not None and factor.safe_identifier == self.identifier:
                return factor
        return candidates[0] if candidates else None

    def second_factor(self, strategy: Strategy) -> Factor | None:
        for factor in self.supported_second_factors:
            if factor.strategy == strategy:
                return factor
        return None

    def transferable_verification(self) -> Verification | None:
        for verification in (self.first_factor_verification, self.second_factor_verification):
            if verification is not None and verification.status is VerificationStatus.TRANSFERABLE:
                return verification
        return None


class SignUp(msgspec.Struct, frozen=True):
    id: str
    status: SignUpStatus = SignUpStatus.MISSING_REQUIREMENTS
    required_fields: tuple[str, ...] = ()
    optional_fields: tuple[str, ...] = ()
    missing_fields: tuple[str, ...] = ()
    unverified_fields: tuple[str, ...] = ()
    verifications: dict[str, Verification | None] = msgspec.field(default_factory=dict)
    username: str | None = None
    email_address: str | None = None
    phone_number: str | None = None
    web3_wallet: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    password_enabled: bool = False
    unsafe_metadata: dict[str, Any] | None = None
    legal_accepted_at: int | None = None
    created_session_id: str | None = None
    created_user_id: str | None = None
    abandon_at: int | None = None

    def __post_init__(self) -> None:
        created = self.created_session_id is not None and self.created_user_id is not None
        if (self.status is SignUpStatus.COMPLETE) != created:
            raise ValueError("a sign-up is complete exactly when it has created a user and a session")

    @property
    def is_complete(self) -> bool:
        return self.status is SignUpStatus.COMPLETE

    @property
    def first_field_to_verify(self) -> str | None:
        for field in self.unverified_fields:
            if self.verifications.get(field) is not None:
                return field
        return None

    @property
    def first_field_to_collect(self) -> str | None:
        return self.missing_fields[0] if self.missing_fields else None

    @property
    def external_account_verification(self) -> Verification | None:
        return self.verifications.get(SignUpField.EXTERNAL_ACCOUNT.value)

    def verification(self, field: SignUpField | str) -> Verification | None:
        key = field.value if isinstance(field, SignUpField) else field
        return self.verifications.get(key)


class TokenResource(msgspec.Struct, frozen=True):
    jwt: str


class User(msgspec.Struct, frozen=True):
    id: str
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    primary_email_address_id: str | None = None
    primary_phone_number_id: str | None = None
    image_url: str | None = None
    password_enabled: bool = False
    two_factor_enabled: bool = False
    updated_at: int | None = None


class Session(msgspec.Struct, frozen=True):
    id: str
    status: SessionStatus = SessionStatus.ACTIVE
    expire_at: int | None = None
    abandon_at: int | None = None
    last_active_at: int | None = None
    last_active_organization_id: str | None = None
    user: User | None = None
    last_active_token: TokenResource | None = None
    created_at: int | None = None
    updated_at: int | None = None

    @property
    def last_active(self) -> dt.datetime | None:
        return _from_millis(self.last_active_at)

    @property
    def expires(self) -> dt.datetime | None:
        return _from_millis(self.expire_at)


class Client(msgspec.Struct, frozen=True):
    """Server-authoritative snapshot of everything the device knows."""

    id: str
    sign_in: SignIn | None = None
    sign_up: SignUp | None = None
    sessions: tuple[Session, ...] = ()
    last_active_session_id: str | None = None
    created_at: int | None = None
    updated_at: int = 0

    def __post_init__(self) -> None:
        if self.last_active_session_id is None:
            return
        if all(session.id != self.last_active_session_id for session in self.sessions):
            raise ValueError("last_active_session_id must reference one of the client's sessions")

    @property
    def active_session(self) -> Session | None:
        for session in self.sessions:
            if session.id == self.last_active_session_id:
                return session
        return None

    @property
    def updated(self) -> dt.datetime | None:
        return _from_millis(self.updated_at)

    def session(self, session_id: str) -> Session | None:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def without_session(self, session_id: str) -> Client:
        """Return a copy with ``session_id`` dropped from the session list."""

        sessions = tuple(session for session in self.sessions if session.id != session_id)
        last_active = self.last_active_session_id
        if last_active == session_id:
            last_active = None
        return msgspec.structs.replace(self, sessions=sessions, last_active_session_id=last_active)


AttemptResult = SignIn | SignUp


__all__ = [
    "AttemptResult",
    "Client",
    "ErrorInfo",
    "Factor",
    "Session",
    "SessionStatus",
    "SignIn",
    "SignInStatus",
    "SignUp",
    "SignUpStatus",
    "TokenResource",
    "User",
    "Verification",
    "VerificationStatus",
]
