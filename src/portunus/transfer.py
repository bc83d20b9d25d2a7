"""Reconcile OAuth, ID-token and ticket exchanges into a single sign-in or sign-up outcome."""

from __future__ import annotations

import logging
from urllib.parse import parse_qs, urlparse

from .ceremonies import BrowserSession, IdTokenProvider, IdTokenResult
from .exceptions import ClientError, InvalidStateError, UserCancelledError, verification_error
from .models import AttemptResult, SignIn, SignUp, Verification, VerificationStatus
from .sign_in import SignInService
from .sign_up import SignUpService
from .strategies import TRANSFER, Strategy, StrategyKind, coerce_strategy
from .transport import CLIENT_PATH, ApiRequest

logger = logging.getLogger(__name__)

NONCE_PARAMETER = "rotating_token_nonce"


def nonce_from_callback_url(callback_url: str) -> str | None:
    """Return the ``rotating_token_nonce`` carried by a redirect callback, if any."""

    values = parse_qs(urlparse(callback_url).query).get(NONCE_PARAMETER)
    if not values or not values[0]:
        return None
    return values[0]


def _raise_for_verification(verification: Verification | None) -> None:
    if verification is not None and verification.error is not None:
        raise verification_error(verification.error)


class TransferFlowCoordinator:
    """Decide whether an exchange ended as a sign-in or has to continue as a sign-up.

    The server marks a verification ``transferable`` when the identity it checked
    belongs to the other side: a sign-up for an existing account becomes a
    sign-in, a sign-in for an unknown account becomes a sign-up. Callers always
    receive one of the two attempt types and must handle both.
    """

    def __init__(
        self,
        sign_ins: SignInService,
        sign_ups: SignUpService,
        *,
        browser: BrowserSession | None = None,
        id_tokens: IdTokenProvider | None = None,
        redirect_url: str | None = None,
    ) -> None:
        self.sign_ins = sign_ins
        self.sign_ups = sign_ups
        self.redirect_url = redirect_url
        self._browser = browser
        self._id_tokens = id_tokens

    async def resolve(self, attempt: AttemptResult) -> AttemptResult:
        if isinstance(attempt, SignUp):
            return await self.resolve_sign_up(attempt)
        return await self.resolve_sign_in(attempt)

    async def resolve_sign_up(self, sign_up: SignUp) -> AttemptResult:
        verification = sign_up.external_account_verification
        if verification is None or verification.status is not VerificationStatus.TRANSFERABLE:
            return sign_up
        logger.info("Sign-up %s matched an existing account; transferring to sign-in", sign_up.id)
        return await self.sign_ins.create(strategy=TRANSFER)

    async def resolve_sign_in(
        self,
        sign_in: SignIn,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        legal_accepted: bool | None = None,
    ) -> AttemptResult:
        if sign_in.transferable_verification() is None:
            return sign_in
        logger.info("Sign-in %s has no matching account; transferring to sign-up", sign_in.id)
        return await self.sign_ups.create(
            strategy=TRANSFER,
            first_name=first_name,
            last_name=last_name,
            legal_accepted=legal_accepted,
        )

    async def handle_redirect_callback(self, attempt: AttemptResult, callback_url: str) -> AttemptResult:
        """Reload the attempt that issued a redirect and apply the transfer rule.

        With a nonce the attempt itself is re-fetched. Without one the server
        has already moved on, so the client is refreshed and whichever attempt
        it now holds is evaluated.
        """

        nonce = nonce_from_callback_url(callback_url)
        if nonce is None:
            attempt = await self._refreshed_attempt(attempt)
        result: AttemptResult
        if isinstance(attempt, SignUp):
            if nonce is not None:
                attempt = await self.sign_ups.get(attempt.id, rotating_token_nonce=nonce)
            result = await self.resolve_sign_up(attempt)
        else:
            if nonce is not None:
                attempt = await self.sign_ins.reload(attempt.id, rotating_token_nonce=nonce)
            result = await self.resolve_sign_in(attempt)
        if isinstance(result, SignUp):
            _raise_for_verification(result.external_account_verification)
        else:
            _raise_for_verification(result.first_factor_verification)
        return result

    async def sign_in_with_redirect(
        self,
        strategy: Strategy | StrategyKind | str,
        *,
        identifier: str | None = None,
    ) -> AttemptResult | None:
        """OAuth or enterprise SSO sign-in; ``None`` when the user closes the browser."""

        chosen = self._redirect_strategy(strategy)
        self._require_browser()
        sign_in = await self.sign_ins.create(strategy=chosen, identifier=identifier, redirect_url=self.redirect_url)
        verification = sign_in.first_factor_verification
        url = verification.external_verification_redirect_url if verification else None
        return await self._follow_redirect(sign_in, url)

    async def sign_up_with_redirect(
        self,
        strategy: Strategy | StrategyKind | str,
        *,
        email_address: str | None = None,
        legal_accepted: bool | None = None,
    ) -> AttemptResult | None:
        chosen = self._redirect_strategy(strategy)
        self._require_browser()
        sign_up = await self.sign_ups.create(
            strategy=chosen,
            email_address=email_address,
            legal_accepted=legal_accepted,
            redirect_url=self.redirect_url,
        )
        verification = sign_up.external_account_verification
        url = verification.external_verification_redirect_url if verification else None
        return await self._follow_redirect(sign_up, url)

    async def sign_in_with_id_token(self, provider: str) -> AttemptResult | None:
        """Native ID-token sign-in that falls through to sign-up for new accounts."""

        result = await self._run_id_token_ceremony(provider)
        if result is None:
            return None
        sign_in = await self.sign_ins.create(strategy=Strategy.id_token(provider), token=result.token)
        return await self.resolve_sign_in(sign_in, first_name=result.first_name, last_name=result.last_name)

    async def sign_up_with_id_token(
        self,
        provider: str,
        *,
        token: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        legal_accepted: bool | None = None,
    ) -> AttemptResult | None:
        if token is None:
            result = await self._run_id_token_ceremony(provider)
            if result is None:
                return None
            token = result.token
            first_name = first_name or result.first_name
            last_name = last_name or result.last_name
        sign_up = await self.sign_ups.create(
            strategy=Strategy.id_token(provider),
            token=token,
            first_name=first_name,
            last_name=last_name,
            legal_accepted=legal_accepted,
        )
        return await self.resolve_sign_up(sign_up)

    async def _refreshed_attempt(self, attempt: AttemptResult) -> AttemptResult:
        client = await self.sign_ups.api.call_client(ApiRequest("GET", CLIENT_PATH, "client.get"))
        if isinstance(attempt, SignUp):
            sign_up = client.sign_up if client is not None else None
            if sign_up is None:
                raise ClientError(f"client has no sign-up in progress after redirect for {attempt.id}")
            return self.sign_ups.adopt(sign_up)
        sign_in = client.sign_in if client is not None else None
        if sign_in is None:
            raise ClientError(f"client has no sign-in in progress after redirect for {attempt.id}")
        return self.sign_ins.adopt(sign_in)

    def _require_browser(self) -> BrowserSession:
        if self._browser is None:
            raise InvalidStateError("no browser session configured")
        return self._browser

    async def _follow_redirect(self, attempt: AttemptResult, url: str | None) -> AttemptResult | None:
        browser = self._require_browser()
        if not url:
            raise ClientError(f"attempt {attempt.id} did not return an external verification URL")
        try:
            callback_url = await browser.open(url, callback_url=self.redirect_url or "")
        except UserCancelledError:
            logger.debug("Browser session cancelled for %s", attempt.id)
            return None
        return await self.handle_redirect_callback(attempt, callback_url)

    async def _run_id_token_ceremony(self, provider: str) -> IdTokenResult | None:
        if self._id_tokens is None:
            raise InvalidStateError("no ID token provider configured")
        try:
            return await self._id_tokens.authenticate(provider)
        except UserCancelledError:
            logger.debug("ID token ceremony cancelled for %s", provider)
            return None

    @staticmethod
    def _redirect_strategy(strategy: Strategy | StrategyKind | str) -> Strategy:
        chosen = coerce_strategy(strategy)
        if not chosen.is_redirect:
            raise InvalidStateError(f"{chosen.raw} is not a redirect strategy")
        return chosen


__all__ = ["NONCE_PARAMETER", "TransferFlowCoordinator", "nonce_from_callback_url"]
