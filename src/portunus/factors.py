"""Policy for choosing which factor a sign-in starts with."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from enum import Enum

from .config import DEFAULT_FACTOR_PRIORITY, DEFAULT_SECOND_FACTOR_PRIORITY
from .models import Factor, SignIn
from .strategies import StrategyKind

_PHONE_PATTERN = re.compile(r"\+?[0-9][0-9 ()\-.]{5,}")
_NEVER_START_WITH = frozenset({StrategyKind.RESET_PASSWORD_EMAIL_CODE, StrategyKind.RESET_PASSWORD_PHONE_CODE})


class IdentifierType(str, Enum):
    EMAIL_ADDRESS = "email_address"
    PHONE_NUMBER = "phone_number"
    OTHER = "other"


def identifier_type(identifier: str | None) -> IdentifierType | None:
    if not identifier:
        return None
    if "@" in identifier:
        return IdentifierType.EMAIL_ADDRESS
    if _PHONE_PATTERN.fullmatch(identifier.strip()):
        return IdentifierType.PHONE_NUMBER
    return IdentifierType.OTHER


class FactorPolicy:
    """Ordered preference over the factors a sign-in offers.

    The default order is passkey (when the device can perform one), the code
    factor matching the identifier type, password, then whatever the server listed
    first. The order is a client preference and can be replaced.
    """

    def __init__(
        self,
        priority: Sequence[StrategyKind] = DEFAULT_FACTOR_PRIORITY,
        second_factor_priority: Sequence[StrategyKind] = DEFAULT_SECOND_FACTOR_PRIORITY,
    ) -> None:
        self.priority = tuple(priority)
        self.second_factor_priority = tuple(second_factor_priority)

    def select_first_factor(self, sign_in: SignIn, *, passkey_available: bool = False) -> Factor | None:
        factors = [
            factor
            for factor in sign_in.supported_first_factors
            if factor.strategy.kind not in _NEVER_START_WITH
            and (passkey_available or factor.strategy.kind is not StrategyKind.PASSKEY)
        ]
        if not factors:
            return None
        kind_of_identifier = identifier_type(sign_in.identifier)
        for kind in self.priority:
            if not _matches_identifier(kind, kind_of_identifier):
                continue
            chosen = _pick(factors, kind, sign_in.identifier)
            if chosen is not None:
                return chosen
        return factors[0]

    def select_second_factor(self, sign_in: SignIn) -> Factor | None:
        factors = list(sign_in.supported_second_factors)
        if not factors:
            return None
        for kind in self.second_factor_priority:
            chosen = _pick(factors, kind, None)
            if chosen is not None:
                return chosen
        return factors[0]


def _matches_identifier(kind: StrategyKind, identifier: IdentifierType | None) -> bool:
    if identifier is IdentifierType.EMAIL_ADDRESS:
        return kind is not StrategyKind.PHONE_CODE
    if identifier is IdentifierType.PHONE_NUMBER:
        return kind is not StrategyKind.EMAIL_CODE
    return True


def _pick(factors: Iterable[Factor], kind: StrategyKind, identifier: str | None) -> Factor | None:
    candidates = [factor for factor in factors if factor.strategy.kind is kind]
    if identifier is not None:
        for factor in candidates:
            if factor.safe_identifier == identifier:
                return factor
    return candidates[0] if candidates else None


__all__ = ["FactorPolicy", "IdentifierType", "identifier_type"]
