from __future__ import annotations

import pytest

from portunus.events import AuthEventKind
from portunus.exceptions import AttemptExpiredError, InvalidFactorError, InvalidStateError
from portunus.models import SignUp, SignUpStatus
from portunus.serialization import convert
from portunus.sign_up import SIGN_UPS_PATH, SignUpAction, SignUpService, SignUpStep, next_step
from portunus.strategies import EMAIL_CODE, PASSWORD, PHONE_CODE
from tests.support import ManualClock, make_api, sign_up_payload, signed_in_client, verification


def _service(**kwargs):
    api, transport, store, emitter = make_api()
    clock = ManualClock()
    service = SignUpService(api, emitter=emitter, clock=clock, **kwargs)
    return service, transport, store, emitter, clock


def _awaiting_email(**extra):
    return sign_up_payload(
        unverified_fields=["email_address"],
        verifications={"email_address": verification()},
        email_address="new@example.com",
        **extra,
    )


@pytest.mark.asyncio
async def test_email_sign_up_verifies_and_completes() -> None:
    service, transport, store, emitter, _ = _service()
    stream = emitter.subscribe()
    transport.queue(_awaiting_email())
    sign_up = await service.create(email_address="new@example.com", password="s3cret-pass", legal_accepted=True)
    assert next_step(sign_up) == SignUpStep(SignUpAction.VERIFY, "email_address")
    assert transport.requests[0].body is not None
    assert transport.requests[0].body["legal_accepted"] is True
    assert "strategy" not in transport.requests[0].body

    transport.queue(_awaiting_email())
    await service.prepare_verification(sign_up.id, EMAIL_CODE)
    transport.queue(
        sign_up_payload(
            status="complete",
            verifications={"email_address": verification("verified")},
            created_session_id="sess_1",
            created_user_id="user_1",
        ),
        client=signed_in_client("sess_1"),
    )
    completed = await service.attempt_verification(sign_up.id, EMAIL_CODE, code="123456")
    assert completed.is_complete
    assert next_step(completed).action is SignUpAction.COMPLETE
    assert store.active_session is not None and store.active_session.id == "sess_1"
    assert transport.paths[1:] == [
        ("POST", f"{SIGN_UPS_PATH}/sua_1/prepare_verification"),
        ("POST", f"{SIGN_UPS_PATH}/sua_1/attempt_verification"),
    ]

    await emitter.close()
    kinds = [event.kind async for event in stream]
    assert kinds == [AuthEventKind.SESSION_CHANGED, AuthEventKind.SIGN_UP_COMPLETED]


@pytest.mark.asyncio
async def test_update_patches_missing_fields() -> None:
    service, transport, _, _, _ = _service()
    transport.queue(sign_up_payload(missing_fields=["username"]))
    sign_up = await service.create(email_address="new@example.com")
    assert next_step(sign_up) == SignUpStep(SignUpAction.COLLECT, "username")

    assert await service.update(sign_up.id) is sign_up
    assert len(transport.requests) == 1

    transport.queue(sign_up_payload(username="ada"))
    updated = await service.update(sign_up.id, username="ada")
    assert updated.username == "ada"
    assert transport.requests[-1].method == "PATCH"
    assert transport.requests[-1].path == f"{SIGN_UPS_PATH}/sua_1"
    assert transport.requests[-1].body == {"username": "ada"}


@pytest.mark.asyncio
async def test_operations_after_abandonment_fail_locally() -> None:
    service, transport, _, _, _ = _service()
    transport.queue(sign_up_payload(status="abandoned"))
    sign_up = await service.create(email_address="new@example.com")
    assert next_step(sign_up).action is SignUpAction.ABANDONED
    with pytest.raises(InvalidStateError):
        await service.update(sign_up.id, username="ada")
    with pytest.raises(InvalidStateError):
        await service.prepare_verification(sign_up.id, EMAIL_CODE)
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_only_code_strategies_can_verify_fields() -> None:
    service, transport, _, _, _ = _service()
    transport.queue(_awaiting_email())
    sign_up = await service.create(email_address="new@example.com")
    with pytest.raises(InvalidFactorError):
        await service.prepare_verification(sign_up.id, PASSWORD)
    with pytest.raises(InvalidStateError):
        await service.prepare_verification(sign_up.id, PHONE_CODE)
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_verification_resend_cooldown() -> None:
    service, transport, _, _, clock = _service(resend_cooldown_seconds=30)
    transport.queue(_awaiting_email())
    sign_up = await service.create(email_address="new@example.com")
    transport.queue(_awaiting_email())
    await service.prepare_verification(sign_up.id, EMAIL_CODE)
    clock.advance(5)
    await service.prepare_verification(sign_up.id, EMAIL_CODE)
    assert len(transport.requests) == 2
    clock.advance(30)
    transport.queue(_awaiting_email())
    await service.prepare_verification(sign_up.id, EMAIL_CODE)
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_expired_verification_fails_before_network() -> None:
    service, transport, _, _, _ = _service()
    transport.queue(
        sign_up_payload(
            unverified_fields=["email_address"],
            verifications={"email_address": verification(expire_at=1_000)},
        )
    )
    sign_up = await service.create(email_address="new@example.com")
    with pytest.raises(AttemptExpiredError):
        await service.attempt_verification(sign_up.id, EMAIL_CODE, code="000000")
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_new_sign_up_supersedes_previous() -> None:
    service, transport, _, _, _ = _service()
    transport.queue(sign_up_payload("sua_1"))
    await service.create(email_address="a@example.com")
    transport.queue(sign_up_payload("sua_2"))
    await service.create(email_address="b@example.com")
    with pytest.raises(InvalidStateError):
        service.attempt("sua_1")
    assert service.attempt("sua_2").id == "sua_2"


@pytest.mark.asyncio
async def test_get_reloads_with_nonce() -> None:
    service, transport, _, _, _ = _service()
    transport.queue(sign_up_payload())
    sign_up = await service.create(strategy="oauth_google")
    assert transport.requests[0].body is not None
    assert transport.requests[0].body["strategy"] == "oauth_google"
    assert transport.requests[0].body["redirect_url"] is None

    transport.queue(sign_up_payload(missing_fields=["username"]))
    reloaded = await service.get(sign_up.id, rotating_token_nonce="n-1")
    assert reloaded.missing_fields == ("username",)
    assert transport.requests[-1].query == (("rotating_token_nonce", "n-1"),)


def test_next_step_without_pending_fields_completes() -> None:
    sign_up = convert(sign_up_payload(unverified_fields=["email_address"]), SignUp)
    assert sign_up.status is SignUpStatus.MISSING_REQUIREMENTS
    assert next_step(sign_up) == SignUpStep(SignUpAction.COMPLETE)
