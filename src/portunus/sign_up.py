"""Sign-up state machine."""

from __future__ import annotations

import logging
from collections.abc import Callable, MutableMapping
from enum import Enum
from time import monotonic
from typing import Any

import msgspec

from .events import AuthEvent, EventEmitter
from .exceptions import AttemptExpiredError, InvalidFactorError, InvalidStateError
from .models import ErrorInfo, SignUp, SignUpStatus, VerificationStatus
from .strategies import SignUpField, Strategy, StrategyKind, coerce_strategy
from .transport import ApiRequest, FrontendApi

logger = logging.getLogger(__name__)

SIGN_UPS_PATH = "/v1/client/sign_ups"

_VERIFIED_FIELDS = {
    StrategyKind.EMAIL_CODE: SignUpField.EMAIL_ADDRESS,
    StrategyKind.PHONE_CODE: SignUpField.PHONE_NUMBER,
}


class SignUpAction(str, Enum):
    VERIFY = "verify"
    COLLECT = "collect"
    COMPLETE = "complete"
    ABANDONED = "abandoned"


class SignUpStep(msgspec.Struct, frozen=True):
    """Where the caller should route a sign-up next."""

    action: SignUpAction
    field: str | None = None


def next_step(sign_up: SignUp) -> SignUpStep:
    """Verify pending fields first, then collect missing ones, otherwise finish."""

    if sign_up.status is SignUpStatus.ABANDONED:
        return SignUpStep(SignUpAction.ABANDONED)
    if sign_up.is_complete:
        return SignUpStep(SignUpAction.COMPLETE)
    to_verify = sign_up.first_field_to_verify
    if to_verify is not None:
        return SignUpStep(SignUpAction.VERIFY, to_verify)
    to_collect = sign_up.first_field_to_collect
    if to_collect is not None:
        return SignUpStep(SignUpAction.COLLECT, to_collect)
    return SignUpStep(SignUpAction.COMPLETE)


class SignUpService:
    """Drive sign-up attempts against the Frontend API."""

    def __init__(
        self,
        api: FrontendApi,
        *,
        emitter: EventEmitter | None = None,
        redirect_url: str | None = None,
        resend_cooldown_seconds: float = 30.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.api = api
        self.redirect_url = redirect_url
        self.resend_cooldown_seconds = resend_cooldown_seconds
        self._emitter = emitter
        self._clock = clock or monotonic
        self._attempts: MutableMapping[str, SignUp] = {}
        self._prepared: dict[tuple[str, str], float] = {}

    async def create(
        self,
        *,
        strategy: Strategy | StrategyKind | str | None = None,
        email_address: str | None = None,
        phone_number: str | None = None,
        username: str | None = None,
        password: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        unsafe_metadata: dict[str, Any] | None = None,
        legal_accepted: bool | None = None,
        ticket: str | None = None,
        token: str | None = None,
        transfer: bool = False,
        redirect_url: str | None = None,
        locale: str | None = None,
    ) -> SignUp:
        """Start a new sign-up, superseding any previous one."""

        body: dict[str, Any] = {
            "email_address": email_address,
            "phone_number": phone_number,
            "username": username,
            "password": password,
            "first_name": first_name,
            "last_name": last_name,
            "unsafe_metadata": unsafe_metadata,
            "legal_accepted": legal_accepted,
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
        if transfer:
            body["transfer"] = True
        sign_up = await self.api.call(ApiRequest("POST", SIGN_UPS_PATH, "sign_up.create", body=body), SignUp)
        for key in [key for key in self._attempts if key != sign_up.id]:
            self._forget(key)
        logger.info("Sign-up %s created (%s)", sign_up.id, sign_up.status.value)
        return self._remember(sign_up)

    async def update(self, sign_up_id: str, **fields: Any) -> SignUp:
        """Patch previously missing fields without restarting the flow."""

        sign_up = self._expect(sign_up_id)
        self._require_open(sign_up, "update")
        if not fields:
            return sign_up
        updated = await self.api.call(
            ApiRequest("PATCH", f"{SIGN_UPS_PATH}/{sign_up.id}", "sign_up.update", body=dict(fields)),
            SignUp,
        )
        return self._remember(updated)

    async def prepare_verification(
        self,
        sign_up_id: str,
        strategy: Strategy | StrategyKind | str,
        *,
        force: bool = False,
    ) -> SignUp:
        """Send a verification code to the email address or phone number."""

        sign_up = self._expect(sign_up_id)
        chosen = coerce_strategy(strategy)
        self._require_open(sign_up, "prepare_verification")
        field = self._field_for(sign_up, chosen)
        verification = sign_up.verification(field)
        prepared_at = self._prepared.get((sign_up.id, chosen.raw))
        if (
            not force
            and prepared_at is not None
            and self._clock() - prepared_at < self.resend_cooldown_seconds
            and verification is not None
            and verification.status is VerificationStatus.UNVERIFIED
            and not verification.is_expired()
        ):
            logger.debug("Skipping %s re-send for sign-up %s", chosen.raw, sign_up.id)
            return sign_up
        updated = await self._post(sign_up, "prepare_verification", {"strategy": chosen.raw})
        self._prepared[(updated.id, chosen.raw)] = self._clock()
        return updated

    async def attempt_verification(
        self,
        sign_up_id: str,
        strategy: Strategy | StrategyKind | str,
        *,
        code: str,
    ) -> SignUp:
        sign_up = self._expect(sign_up_id)
        chosen = coerce_strategy(strategy)
        self._require_open(sign_up, "attempt_verification")
        verification = sign_up.verification(self._field_for(sign_up, chosen))
        if verification is not None and verification.is_expired():
            raise AttemptExpiredError(
                None,
                (ErrorInfo(code="verification_expired", message=f"The {chosen.raw} verification has expired"),),
            )
        return await self._post(sign_up, "attempt_verification", {"strategy": chosen.raw, "code": code})

    async def get(self, sign_up_id: str, *, rotating_token_nonce: str | None = None) -> SignUp:
        """Re-fetch the attempt, e.g. after an external redirect came back with a nonce."""

        sign_up = self._expect(sign_up_id)
        query = (("rotating_token_nonce", rotating_token_nonce),) if rotating_token_nonce else ()
        updated = await self.api.call(
            ApiRequest("GET", f"{SIGN_UPS_PATH}/{sign_up.id}", "sign_up.get", query=query),
            SignUp,
        )
        return self._remember(updated)

    def attempt(self, sign_up_id: str) -> SignUp:
        """Return the latest known copy of ``sign_up_id``."""

        return self._expect(sign_up_id)

    def adopt(self, sign_up: SignUp) -> SignUp:
        return self._remember(sign_up)

    async def _post(self, sign_up: SignUp, action: str, body: dict[str, Any]) -> SignUp:
        request = ApiRequest("POST", f"{SIGN_UPS_PATH}/{sign_up.id}/{action}", f"sign_up.{action}", body=body)
        return self._remember(await self.api.call(request, SignUp))

    def _expect(self, sign_up_id: str) -> SignUp:
        sign_up = self._attempts.get(sign_up_id)
        if sign_up is None:
            client = self.api.store.current
            if client is not None and client.sign_up is not None and client.sign_up.id == sign_up_id:
                sign_up = self._remember(client.sign_up)
        if sign_up is None:
            raise InvalidStateError(f"unknown or superseded sign-up {sign_up_id}")
        return sign_up

    def _remember(self, sign_up: SignUp) -> SignUp:
        previous = self._attempts.get(sign_up.id)
        self._attempts[sign_up.id] = sign_up
        if sign_up.is_complete and (previous is None or not previous.is_complete):
            logger.info("Sign-up %s complete; user %s", sign_up.id, sign_up.created_user_id)
            if self._emitter is not None and not self._emitter.closed:
                self._emitter.emit(AuthEvent.sign_up_completed(sign_up))
        return sign_up

    def _forget(self, sign_up_id: str) -> None:
        self._attempts.pop(sign_up_id, None)
        for key in [key for key in self._prepared if key[0] == sign_up_id]:
            del self._prepared[key]

    @staticmethod
    def _require_open(sign_up: SignUp, operation: str) -> None:
        if sign_up.status is not SignUpStatus.MISSING_REQUIREMENTS:
            raise InvalidStateError(f"{operation} is not allowed once sign-up {sign_up.id} is {sign_up.status.value}")

    @staticmethod
    def _field_for(sign_up: SignUp, strategy: Strategy) -> str:
        field = _VERIFIED_FIELDS.get(strategy.kind)
        if field is None:
            raise InvalidFactorError(strategy, (Strategy(kind) for kind in _VERIFIED_FIELDS))
        if field.value not in sign_up.unverified_fields and sign_up.verification(field) is None:
            raise InvalidStateError(f"sign-up {sign_up.id} has no {field.value} awaiting verification")
        return field.value


__all__ = ["SIGN_UPS_PATH", "SignUpAction", "SignUpService", "SignUpStep", "next_step"]
