"""Sign-in state machine."""

from __future__ import annotations

import logging
from collections.abc import Callable, MutableMapping
from time import monotonic
from typing import Any

from .ceremonies import PasskeyAuthenticator, passkey_challenge
from .events import AuthEvent, EventEmitter
from .exceptions import (
    AttemptExpiredError,
    InvalidFactorError,
    InvalidStateError,
    UserCancelledError,
)
from .factors import FactorPolicy
from .models import ErrorInfo, Factor, SignIn, SignInStatus, Verification, VerificationStatus
from .strategies import PASSKEY, PASSWORD, TICKET, Strategy, StrategyKind, coerce_strategy
from .transport import ApiRequest, FrontendApi

logger = logging.getLogger(__name__)

SIGN_INS_PATH = "/v1/client/sign_ins"

_SECOND_FACTOR_STATUSES = frozenset({SignInStatus.NEEDS_SECOND_FACTOR, SignInStatus.NEEDS_CLIENT_TRUST})
_NO_PREPARE_KINDS = frozenset({StrategyKind.PASSWORD, StrategyKind.TOTP, StrategyKind.BACKUP_CODE})


def _expired_error(strategy: Strategy) -> AttemptExpiredError:
    return AttemptExpiredError(
        None,
        (ErrorInfo(code="verification_expired", message=f"The {strategy.raw} verification has expired"),),
    )


class SignInService:
    """Drive sign-in attempts against the Frontend API.

    Every operation is keyed by attempt id and returns the updated attempt; the
    piggybacked client is applied to the store by :class:`FrontendApi`. The most
    recent copy of each attempt is kept so an operation on an unknown or
    superseded id fails before reaching the network.
    """

    def __init__(
        self,
        api: FrontendApi,
        *,
        emitter: EventEmitter | None = None,
        policy: FactorPolicy | None = None,
        passkeys: PasskeyAuthenticator | None = None,
        redirect_url: str | None = None,
        resend_cooldown_seconds: float = 30.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.api = api
        self.policy = policy or FactorPolicy()
        self.redirect_url = redirect_url
        self.resend_cooldown_seconds = resend_cooldown_seconds
        self._emitter = emitter
        self._passkeys = passkeys
        self._clock = clock or monotonic
        self._attempts: MutableMapping[str, SignIn] = {}
        self._prepared: dict[tuple[str, str, str], float] = {}

    def get(self, sign_in_id: str) -> SignIn:
        """Return the latest known copy of ``sign_in_id``."""

        return self._expect(sign_in_id)

    async def create(
        self,
        *,
        identifier: str | None = None,
        strategy: Strategy | StrategyKind | str | None = None,
        password: str | None = None,
        ticket: str | None = None,
        token: str | None = None,
        transfer: bool = False,
        redirect_url: str | None = None,
        action_complete_redirect_url: str | None = None,
        locale: str | None = None,
    ) -> SignIn:
        """Start a new attempt, superseding any previous one."""

        body: dict[str, Any] = {
            "identifier": identifier,
            "password": password,
            "ticket": ticket,
            "token": token,
            "locale": locale,
        }
        if strategy is not None:
            chosen = coerce_strategy(strategy)
            if chosen.kind is StrategyKind.TRANSFER:
                transfer = True
            else:
                body["strategy"] = chosen.raw
                if chosen.is_redirect:
                    body["redirect_url"] = redirect_url or self.redirect_url
                    body["action_complete_redirect_url"] = action_complete_redirect_url
        if transfer:
            body["transfer"] = True
        sign_in = await self.api.call(
            ApiRequest("POST", SIGN_INS_PATH, "sign_in.create", body=body),
            SignIn,
        )
        superseded = [key for key in self._attempts if key != sign_in.id]
        for key in superseded:
            self._forget(key)
        logger.info("Sign-in %s created (%s)", sign_in.id, sign_in.status.value)
        return self._remember(sign_in)

    async def prepare_first_factor(
        self,
        sign_in_id: str,
        strategy: Strategy | StrategyKind | str,
        *,
        email_address_id: str | None = None,
        phone_number_id: str | None = None,
        redirect_url: str | None = None,
        force: bool = False,
    ) -> SignIn:
        """Ask the server to deliver a code, issue a redirect URL or a passkey challenge."""

        sign_in = self._expect(sign_in_id)
        chosen = coerce_strategy(strategy)
        self._require_status(sign_in, "prepare_first_factor", SignInStatus.NEEDS_FIRST_FACTOR)
        factor = self._first_factor(sign_in, chosen)
        if not force and self._within_cooldown(sign_in, "first", chosen, sign_in.first_factor_verification):
            logger.debug("Skipping %s re-send for sign-in %s", chosen.raw, sign_in.id)
            return sign_in
        body = {
            "strategy": chosen.raw,
            "email_address_id": email_address_id or factor.email_address_id,
            "phone_number_id": phone_number_id or factor.phone_number_id,
            "web3_wallet_id": factor.web3_wallet_id,
        }
        if chosen.is_redirect:
            body["redirect_url"] = redirect_url or self.redirect_url
        updated = await self._post(sign_in, "prepare_first_factor", body)
        self._prepared[(updated.id, "first", chosen.raw)] = self._clock()
        return updated

    async def attempt_first_factor(
        self,
        sign_in_id: str,
        strategy: Strategy | StrategyKind | str,
        *,
        code: str | None = None,
        password: str | None = None,
        public_key_credential: str | None = None,
        token: str | None = None,
    ) -> SignIn:
        sign_in = self._expect(sign_in_id)
        chosen = coerce_strategy(strategy)
        self._require_status(sign_in, "attempt_first_factor", SignInStatus.NEEDS_FIRST_FACTOR)
        self._first_factor(sign_in, chosen)
        self._ensure_not_expired(sign_in.first_factor_verification, chosen)
        body = {
            "strategy": chosen.raw,
            "code": code,
            "password": password,
            "public_key_credential": public_key_credential,
            "token": token,
        }
        return await self._post(sign_in, "attempt_first_factor", body)

    async def prepare_second_factor(
        self,
        sign_in_id: str,
        strategy: Strategy | StrategyKind | str,
        *,
        phone_number_id: str | None = None,
        email_address_id: str | None = None,
        force: bool = False,
    ) -> SignIn:
        sign_in = self._expect(sign_in_id)
        chosen = coerce_strategy(strategy)
        self._require_status(sign_in, "prepare_second_factor", *_SECOND_FACTOR_STATUSES)
        factor = self._second_factor(sign_in, chosen)
        if not force and self._within_cooldown(sign_in, "second", chosen, sign_in.second_factor_verification):
            logger.debug("Skipping %s re-send for sign-in %s", chosen.raw, sign_in.id)
            return sign_in
        body = {
            "strategy": chosen.raw,
            "phone_number_id": phone_number_id or factor.phone_number_id,
            "email_address_id": email_address_id or factor.email_address_id,
        }
        updated = await self._post(sign_in, "prepare_second_factor", body)
        self._prepared[(updated.id, "second", chosen.raw)] = self._clock()
        return updated

    async def attempt_second_factor(
        self,
        sign_in_id: str,
        strategy: Strategy | StrategyKind | str,
        *,
        code: str,
    ) -> SignIn:
        sign_in = self._expect(sign_in_id)
        chosen = coerce_strategy(strategy)
        self._require_status(sign_in, "attempt_second_factor", *_SECOND_FACTOR_STATUSES)
        self._second_factor(sign_in, chosen)
        self._ensure_not_expired(sign_in.second_factor_verification, chosen)
        return await self._post(sign_in, "attempt_second_factor", {"strategy": chosen.raw, "code": code})

    async def reset_password(
        self,
        sign_in_id: str,
        password: str,
        *,
        sign_out_of_other_sessions: bool = False,
    ) -> SignIn:
        sign_in = self._expect(sign_in_id)
        self._require_status(sign_in, "reset_password", SignInStatus.NEEDS_NEW_PASSWORD)
        body = {"password": password, "sign_out_of_other_sessions": sign_out_of_other_sessions}
        return await self._post(sign_in, "reset_password", body)

    async def reload(self, sign_in_id: str, *, rotating_token_nonce: str | None = None) -> SignIn:
        """Re-fetch the attempt, e.g. after an external redirect came back with a nonce."""

        sign_in = self._expect(sign_in_id)
        query = (("rotating_token_nonce", rotating_token_nonce),) if rotating_token_nonce else ()
        updated = await self.api.call(
            ApiRequest("GET", f"{SIGN_INS_PATH}/{sign_in.id}", "sign_in.reload", query=query),
            SignIn,
        )
        return self._remember(updated)

    async def start_first_factor(
        self,
        sign_in_id: str,
        *,
        force: bool = False,
    ) -> tuple[SignIn, Factor | None]:
        """Pick the preferred first factor and prepare it when it needs preparing."""

        sign_in = self._expect(sign_in_id)
        factor = self.policy.select_first_factor(sign_in, passkey_available=self.passkey_available)
        if factor is None or factor.strategy.kind in _NO_PREPARE_KINDS:
            return sign_in, factor
        prepared = await self.prepare_first_factor(sign_in.id, factor.strategy, force=force)
        return prepared, factor

    async def start_second_factor(
        self,
        sign_in_id: str,
        *,
        force: bool = False,
    ) -> tuple[SignIn, Factor | None]:
        sign_in = self._expect(sign_in_id)
        factor = self.policy.select_second_factor(sign_in)
        if factor is None or factor.strategy.kind in _NO_PREPARE_KINDS:
            return sign_in, factor
        prepared = await self.prepare_second_factor(sign_in.id, factor.strategy, force=force)
        return prepared, factor

    @property
    def passkey_available(self) -> bool:
        return self._passkeys is not None and self._passkeys.available

    async def authenticate_with_passkey(self, sign_in_id: str | None = None) -> SignIn | None:
        """Run the passkey ceremony; ``None`` means the user dismissed the prompt."""

        if self._passkeys is None:
            raise InvalidStateError("no passkey authenticator configured")
        if sign_in_id is None:
            sign_in = await self.create(strategy=PASSKEY)
        else:
            sign_in = await self.prepare_first_factor(sign_in_id, PASSKEY, force=True)
        verification = sign_in.first_factor_verification
        challenge = passkey_challenge(verification.nonce if verification else None)
        try:
            credential = await self._passkeys.assert_credential(challenge)
        except UserCancelledError:
            logger.debug("Passkey ceremony cancelled for sign-in %s", sign_in.id)
            return None
        return await self.attempt_first_factor(sign_in.id, PASSKEY, public_key_credential=credential)

    async def sign_in_with_password(self, identifier: str, password: str) -> SignIn:
        sign_in = await self.create(identifier=identifier, strategy=PASSWORD, password=password)
        if sign_in.status is SignInStatus.NEEDS_FIRST_FACTOR and sign_in.first_factor(PASSWORD) is not None:
            return await self.attempt_first_factor(sign_in.id, PASSWORD, password=password)
        return sign_in

    async def sign_in_with_ticket(self, ticket: str) -> SignIn:
        return await self.create(strategy=TICKET, ticket=ticket)

    def adopt(self, sign_in: SignIn) -> SignIn:
        """Track an attempt obtained outside this service (e.g. from a client refresh)."""

        return self._remember(sign_in)

    async def _post(self, sign_in: SignIn, action: str, body: dict[str, Any]) -> SignIn:
        request = ApiRequest("POST", f"{SIGN_INS_PATH}/{sign_in.id}/{action}", f"sign_in.{action}", body=body)
        return self._remember(await self.api.call(request, SignIn))

    def _expect(self, sign_in_id: str) -> SignIn:
        sign_in = self._attempts.get(sign_in_id)
        if sign_in is None:
            client = self.api.store.current
            if client is not None and client.sign_in is not None and client.sign_in.id == sign_in_id:
                sign_in = self._remember(client.sign_in)
        if sign_in is None:
            raise InvalidStateError(f"unknown or superseded sign-in {sign_in_id}")
        return sign_in

    def _remember(self, sign_in: SignIn) -> SignIn:
        previous = self._attempts.get(sign_in.id)
        self._attempts[sign_in.id] = sign_in
        if sign_in.is_complete and (previous is None or not previous.is_complete):
            logger.info("Sign-in %s complete; session %s", sign_in.id, sign_in.created_session_id)
            if self._emitter is not None and not self._emitter.closed:
                self._emitter.emit(AuthEvent.sign_in_completed(sign_in))
        return sign_in

    def _forget(self, sign_in_id: str) -> None:
        self._attempts.pop(sign_in_id, None)
        for key in [key for key in self._prepared if key[0] == sign_in_id]:
            del self._prepared[key]

    @staticmethod
    def _require_status(sign_in: SignIn, operation: str, *allowed: SignInStatus) -> None:
        if sign_in.status not in allowed:
            expected = " or ".join(status.value for status in allowed)
            raise InvalidStateError(
                f"{operation} requires status {expected}, sign-in {sign_in.id} is {sign_in.status.value}"
            )

    @staticmethod
    def _first_factor(sign_in: SignIn, strategy: Strategy) -> Factor:
        factor = sign_in.first_factor(strategy)
        if factor is None:
            raise InvalidFactorError(strategy, (item.strategy for item in sign_in.supported_first_factors))
        return factor

    @staticmethod
    def _second_factor(sign_in: SignIn, strategy: Strategy) -> Factor:
        factor = sign_in.second_factor(strategy)
        if factor is None:
            raise InvalidFactorError(strategy, (item.strategy for item in sign_in.supported_second_factors))
        return factor

    @staticmethod
    def _ensure_not_expired(verification: Verification | None, strategy: Strategy) -> None:
        if verification is None or verification.strategy != strategy:
            return
        if verification.is_expired():
            raise _expired_error(strategy)

    def _within_cooldown(
        self,
        sign_in: SignIn,
        stage: str,
        strategy: Strategy,
        verification: Verification | None,
    ) -> bool:
        if not strategy.is_code:
            return False
        prepared_at = self._prepared.get((sign_in.id, stage, strategy.raw))
        if prepared_at is None or self._clock() - prepared_at >= self.resend_cooldown_seconds:
            return False
        if verification is None or verification.strategy != strategy:
            return False
        return verification.status is VerificationStatus.UNVERIFIED and not verification.is_expired()


__all__ = ["SIGN_INS_PATH", "SignInService"]
