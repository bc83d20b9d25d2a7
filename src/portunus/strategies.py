"""Verification strategies and sign-up field names."""

from __future__ import annotations

from enum import Enum

OAUTH_PREFIX = "oauth_"
ID_TOKEN_PREFIX = "oauth_token_"


class StrategyKind(str, Enum):
    """Closed set of strategy families understood by the engine."""

    PASSWORD = "password"
    EMAIL_CODE = "email_code"
    PHONE_CODE = "phone_code"
    PASSKEY = "passkey"
    TICKET = "ticket"
    TRANSFER = "transfer"
    ENTERPRISE_SSO = "enterprise_sso"
    SAML = "saml"
    OAUTH = "oauth"
    ID_TOKEN = "id_token"
    RESET_PASSWORD_EMAIL_CODE = "reset_password_email_code"
    RESET_PASSWORD_PHONE_CODE = "reset_password_phone_code"
    TOTP = "totp"
    BACKUP_CODE = "backup_code"
    UNKNOWN = "unknown"


_PROVIDER_KINDS = frozenset({StrategyKind.OAUTH, StrategyKind.ID_TOKEN})
_SIMPLE_KINDS = {
    kind.value: kind
    for kind in StrategyKind
    if kind not in _PROVIDER_KINDS and kind is not StrategyKind.UNKNOWN
}
_REDIRECT_KINDS = frozenset({StrategyKind.OAUTH, StrategyKind.ENTERPRISE_SSO, StrategyKind.SAML})
_CODE_KINDS = frozenset(
    {
        StrategyKind.EMAIL_CODE,
        StrategyKind.PHONE_CODE,
        StrategyKind.RESET_PASSWORD_EMAIL_CODE,
        StrategyKind.RESET_PASSWORD_PHONE_CODE,
    }
)


class Strategy:
    """Immutable tag naming how a verification step is satisfied.

    ``oauth`` and ``id_token`` carry the identity provider; anything the engine
    does not recognise survives as ``unknown`` with its raw wire value so it can be
    echoed back to the server untouched.
    """

    __slots__ = ("kind", "provider", "_raw")

    def __init__(self, kind: StrategyKind, provider: str | None = None, *, raw: str | None = None) -> None:
        if kind in _PROVIDER_KINDS and not provider:
            raise ValueError(f"{kind.value} strategies require a provider")
        if kind is StrategyKind.UNKNOWN and not raw:
            raise ValueError("unknown strategies must keep their raw value")
        self.kind = kind
        self.provider = provider
        self._raw = raw

    @classmethod
    def parse(cls, raw: str) -> Strategy:
        if raw.startswith(ID_TOKEN_PREFIX) and len(raw) > len(ID_TOKEN_PREFIX):
            return cls(StrategyKind.ID_TOKEN, raw[len(ID_TOKEN_PREFIX) :])
        if raw.startswith(OAUTH_PREFIX) and len(raw) > len(OAUTH_PREFIX):
            return cls(StrategyKind.OAUTH, raw[len(OAUTH_PREFIX) :])
        kind = _SIMPLE_KINDS.get(raw)
        if kind is None:
            return cls(StrategyKind.UNKNOWN, raw=raw)
        return cls(kind)

    @classmethod
    def oauth(cls, provider: str) -> Strategy:
        return cls(StrategyKind.OAUTH, provider)

    @classmethod
    def id_token(cls, provider: str) -> Strategy:
        return cls(StrategyKind.ID_TOKEN, provider)

    @classmethod
    def unknown(cls, raw: str) -> Strategy:
        return cls(StrategyKind.UNKNOWN, raw=raw)

    @property
    def raw(self) -> str:
        if self.kind is StrategyKind.OAUTH:
            return f"{OAUTH_PREFIX}{self.provider}"
        if self.kind is StrategyKind.ID_TOKEN:
            return f"{ID_TOKEN_PREFIX}{self.provider}"
        if self.kind is StrategyKind.UNKNOWN:
            return self._raw or ""
        return self.kind.value

    @property
    def is_redirect(self) -> bool:
        """Whether the server answers ``prepare`` with an external redirect URL."""

        return self.kind in _REDIRECT_KINDS

    @property
    def is_code(self) -> bool:
        return self.kind in _CODE_KINDS

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Strategy):
            return self.raw == other.raw
        if isinstance(other, str):
            return self.raw == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.raw)

    def __repr__(self) -> str:
        return f"Strategy({self.raw!r})"

    def __str__(self) -> str:
        return self.raw


PASSWORD = Strategy(StrategyKind.PASSWORD)
EMAIL_CODE = Strategy(StrategyKind.EMAIL_CODE)
PHONE_CODE = Strategy(StrategyKind.PHONE_CODE)
PASSKEY = Strategy(StrategyKind.PASSKEY)
TICKET = Strategy(StrategyKind.TICKET)
TRANSFER = Strategy(StrategyKind.TRANSFER)
ENTERPRISE_SSO = Strategy(StrategyKind.ENTERPRISE_SSO)
SAML = Strategy(StrategyKind.SAML)
RESET_PASSWORD_EMAIL_CODE = Strategy(StrategyKind.RESET_PASSWORD_EMAIL_CODE)
RESET_PASSWORD_PHONE_CODE = Strategy(StrategyKind.RESET_PASSWORD_PHONE_CODE)
TOTP = Strategy(StrategyKind.TOTP)
BACKUP_CODE = Strategy(StrategyKind.BACKUP_CODE)


def coerce_strategy(value: Strategy | StrategyKind | str) -> Strategy:
    """Accept a :class:`Strategy`, a simple :class:`StrategyKind` or a raw string."""

    if isinstance(value, Strategy):
        return value
    if isinstance(value, StrategyKind):
        return Strategy(value)
    return Strategy.parse(value)


class SignUpField(str, Enum):
    """Names used by ``required_fields``/``missing_fields``/``unverified_fields``."""

    EMAIL_ADDRESS = "email_address"
    PHONE_NUMBER = "phone_number"
    USERNAME = "username"
    PASSWORD = "password"
    FIRST_NAME = "first_name"
    LAST_NAME = "last_name"
    WEB3_WALLET = "web3_wallet"
    LEGAL_ACCEPTED = "legal_accepted"
    EXTERNAL_ACCOUNT = "external_account"
    SAML = "saml"
    ENTERPRISE_SSO = "enterprise_sso"
    PASSKEY = "passkey"
    TICKET = "ticket"


__all__ = [
    "BACKUP_CODE",
    "EMAIL_CODE",
    "ENTERPRISE_SSO",
    "PASSKEY",
    "PASSWORD",
    "PHONE_CODE",
    "RESET_PASSWORD_EMAIL_CODE",
    "RESET_PASSWORD_PHONE_CODE",
    "SAML",
    "SignUpField",
    "Strategy",
    "StrategyKind",
    "TICKET",
    "TOTP",
    "TRANSFER",
    "coerce_strategy",
]
