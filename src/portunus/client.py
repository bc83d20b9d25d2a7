"""Client facade wiring the store, flows, token cache and polling loop together."""

from __future__ import annotations

import logging
from typing import Any

from .ceremonies import BrowserSession, IdTokenProvider, PasskeyAuthenticator
from .config import PortunusConfig
from .events import AuthEvent, EventEmitter
from .exceptions import InvalidStateError
from .factors import FactorPolicy
from .models import AttemptResult, Client, Session, SignIn, SignUp
from .observability import Observability
from .polling import SessionPoller
from .sign_in import SignInService
from .sign_up import SignUpService
from .storage import MemoryStorage, SecureStorage, SnapshotCache
from .store import ClientStore
from .strategies import EMAIL_CODE, ENTERPRISE_SSO, PHONE_CODE, TICKET, Strategy
from .tokens import SessionTokenCache
from .transfer import TransferFlowCoordinator
from .transport import CLIENT_PATH, ApiRequest, FrontendApi, HttpxTransport, Transport

logger = logging.getLogger(__name__)


class Portunus:
    """Entry point for host applications.

    Construct it once, call :meth:`load` at start-up and forward foreground and
    background transitions. All collaborators are passed in explicitly; nothing
    is looked up through a global.
    """

    def __init__(
        self,
        config: PortunusConfig | None = None,
        *,
        transport: Transport | None = None,
        storage: SecureStorage | None = None,
        browser: BrowserSession | None = None,
        id_tokens: IdTokenProvider | None = None,
        passkeys: PasskeyAuthenticator | None = None,
        observability: Observability | None = None,
    ) -> None:
        self.config = (config or PortunusConfig()).validate()
        self.storage = storage or MemoryStorage()
        self.events = EventEmitter()
        self.store = ClientStore(self.events)
        self.observability = observability or Observability(self.config.observability)
        self.transport = transport or HttpxTransport(self.config, token_storage=self.storage)
        self.api = FrontendApi(self.transport, self.store, observability=self.observability)
        self.sign_ins = SignInService(
            self.api,
            emitter=self.events,
            policy=FactorPolicy(self.config.factor_priority, self.config.second_factor_priority),
            passkeys=passkeys,
            redirect_url=self.config.redirect_url,
            resend_cooldown_seconds=self.config.code_resend_cooldown_seconds,
        )
        self.sign_ups = SignUpService(
            self.api,
            emitter=self.events,
            redirect_url=self.config.redirect_url,
            resend_cooldown_seconds=self.config.code_resend_cooldown_seconds,
        )
        self.transfers = TransferFlowCoordinator(
            self.sign_ins,
            self.sign_ups,
            browser=browser,
            id_tokens=id_tokens,
            redirect_url=self.config.redirect_url,
        )
        self.tokens = SessionTokenCache(self.api, ttl_seconds=self.config.token_ttl_seconds)
        self.poller = SessionPoller(
            self.tokens,
            self.store,
            interval_seconds=self.config.poll_interval,
            emitter=self.events,
        )
        self.snapshots = SnapshotCache(self.storage, self.store) if self.config.persist_snapshot else None

    @property
    def client(self) -> Client | None:
        return self.store.current

    @property
    def session(self) -> Session | None:
        return self.store.active_session

    async def load(self) -> Client | None:
        """Apply the cached snapshot, refresh from the server and start polling."""

        if self.snapshots is not None:
            self.snapshots.load()
            self.snapshots.attach()
        client = await self.refresh_client()
        self.poller.start()
        return client

    async def refresh_client(self) -> Client | None:
        return await self.api.call_client(ApiRequest("GET", CLIENT_PATH, "client.get"))

    async def on_foreground(self) -> None:
        self.poller.start()
        await self.refresh_client()

    async def on_background(self) -> None:
        await self.poller.stop()

    async def aclose(self) -> None:
        await self.poller.close()
        self.tokens.close()
        if self.snapshots is not None:
            self.snapshots.detach()
        await self.events.close()
        await self.transport.aclose()

    async def get_token(
        self,
        *,
        template: str | None = None,
        organization_id: str | None = None,
        skip_cache: bool = False,
    ) -> str | None:
        """Bearer token for the active session, or ``None`` when signed out."""

        return await self.tokens.get_token(template=template, organization_id=organization_id, skip_cache=skip_cache)

    async def sign_out(self, session_id: str | None = None) -> None:
        """End ``session_id``, or every session on this client when omitted."""

        if session_id is None:
            sessions = self.client.sessions if self.client is not None else ()
            await self.api.call_client(ApiRequest("DELETE", f"{CLIENT_PATH}/sessions", "client.sign_out"))
            signed_out: tuple[Session, ...] = sessions
        else:
            session = self.client.session(session_id) if self.client is not None else None
            path = f"{CLIENT_PATH}/sessions/{session_id}/remove"
            await self.api.call(ApiRequest("POST", path, "session.remove", session_scoped=True), Session)
            self.tokens.invalidate(session_id)
            signed_out = (session,) if session is not None else ()
        logger.info("Signed out %d session(s)", len(signed_out))
        if self.events.closed:
            return
        for ended in signed_out:
            self.events.emit(AuthEvent.signed_out(ended))
        if not signed_out and session_id is None:
            self.events.emit(AuthEvent.signed_out(None))

    async def set_active(self, session_id: str, *, organization_id: str | None = None) -> Session:
        """Make ``session_id`` the client's active session."""

        client = self.client
        if client is None or client.session(session_id) is None:
            raise InvalidStateError(f"session {session_id} is not part of this client")
        return await self.api.call(
            ApiRequest(
                "POST",
                f"{CLIENT_PATH}/sessions/{session_id}/touch",
                "session.touch",
                body={"active_organization_id": organization_id},
                session_scoped=True,
            ),
            Session,
        )

    async def sign_in(self, identifier: str) -> SignIn:
        """Create a sign-in for ``identifier`` and start its preferred first factor."""

        sign_in = await self.sign_ins.create(identifier=identifier)
        prepared, _ = await self.sign_ins.start_first_factor(sign_in.id)
        return prepared

    async def sign_in_with_password(self, identifier: str, password: str) -> SignIn:
        return await self.sign_ins.sign_in_with_password(identifier, password)

    async def sign_in_with_email_code(self, email_address: str) -> SignIn:
        sign_in = await self.sign_ins.create(identifier=email_address)
        return await self.sign_ins.prepare_first_factor(sign_in.id, EMAIL_CODE)

    async def sign_in_with_phone_code(self, phone_number: str) -> SignIn:
        sign_in = await self.sign_ins.create(identifier=phone_number)
        return await self.sign_ins.prepare_first_factor(sign_in.id, PHONE_CODE)

    async def sign_in_with_ticket(self, ticket: str) -> SignIn:
        return await self.sign_ins.sign_in_with_ticket(ticket)

    async def sign_in_with_oauth(self, provider: str) -> AttemptResult | None:
        return await self.transfers.sign_in_with_redirect(Strategy.oauth(provider))

    async def sign_in_with_enterprise_sso(self, email_address: str) -> AttemptResult | None:
        return await self.transfers.sign_in_with_redirect(ENTERPRISE_SSO, identifier=email_address)

    async def sign_in_with_id_token(self, provider: str) -> AttemptResult | None:
        return await self.transfers.sign_in_with_id_token(provider)

    async def sign_in_with_passkey(self) -> SignIn | None:
        return await self.sign_ins.authenticate_with_passkey()

    async def sign_up(self, **fields: Any) -> SignUp:
        return await self.sign_ups.create(**fields)

    async def sign_up_with_oauth(self, provider: str, *, legal_accepted: bool | None = None) -> AttemptResult | None:
        return await self.transfers.sign_up_with_redirect(Strategy.oauth(provider), legal_accepted=legal_accepted)

    async def sign_up_with_enterprise_sso(
        self,
        email_address: str,
        *,
        legal_accepted: bool | None = None,
    ) -> AttemptResult | None:
        return await self.transfers.sign_up_with_redirect(
            ENTERPRISE_SSO,
            email_address=email_address,
            legal_accepted=legal_accepted,
        )

    async def sign_up_with_id_token(
        self,
        provider: str,
        *,
        token: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> AttemptResult | None:
        return await self.transfers.sign_up_with_id_token(
            provider,
            token=token,
            first_name=first_name,
            last_name=last_name,
        )

    async def sign_up_with_ticket(self, ticket: str) -> SignUp:
        return await self.sign_ups.create(strategy=TICKET, ticket=ticket)


__all__ = ["CLIENT_PATH", "Portunus"]
