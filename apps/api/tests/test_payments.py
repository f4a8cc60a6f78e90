import asyncio
import json

import pytest
from sqlalchemy.future import select

from config import settings
from models.pending_payment import PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_SUCCESS, PendingPayment
from models.user import User
from services import payments as payment_service
from services import paystack
from services.credits import get_credit_balance
from services.session_token import create_session_token


WEBHOOK_SECRET = "whsec_test_secret_value_for_hmac"
BUYER_ID = "buyer-1"
BUYER_EMAIL = "buyer@example.com"


def _auth_header(user_id, email):
    return {"Authorization": f"Bearer {create_session_token(user_id, email)['token']}"}


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "PAYSTACK_WEBHOOK_SECRET", WEBHOOK_SECRET)


async def _seed_payment(session_maker, reference, *, user_id=None, email=BUYER_EMAIL, amount=500, half_units=10):
    async with session_maker() as session:
        if user_id:
            session.add(User(id=user_id, email=email))
        session.add(
            PendingPayment(
                processor_reference=reference,
                user_id=user_id,
                payer_email=email,
                amount=amount,
                currency="KES",
                half_units=half_units,
                status=PAYMENT_PENDING,
            )
        )
        await session.commit()


async def _post_event(client, event, *, secret=WEBHOOK_SECRET, signature=None):
    body = json.dumps(event).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    headers[paystack.SIGNATURE_HEADER] = signature or paystack.compute_signature(body, secret)
    return await client.post("/payments/webhook", content=body, headers=headers)


def _charge_success(reference, amount=500):
    return {"event": "charge.success", "data": {"reference": reference, "amount": amount, "status": "success"}}


def test_signature_verification_is_exact():
    body = b'{"event":"charge.success"}'
    signature = paystack.compute_signature(body, WEBHOOK_SECRET)
    assert paystack.verify_webhook_signature(body, signature, WEBHOOK_SECRET)
    assert paystack.verify_webhook_signature(body, signature.upper(), WEBHOOK_SECRET)
    assert not paystack.verify_webhook_signature(body + b" ", signature, WEBHOOK_SECRET)
    assert not paystack.verify_webhook_signature(body, None, WEBHOOK_SECRET)
    assert not paystack.verify_webhook_signature(body, signature, "")


@pytest.mark.asyncio
async def test_duplicate_webhook_credits_exactly_once(api_client, session_maker):
    await _seed_payment(session_maker, "ref-dup", user_id=BUYER_ID)

    first = await _post_event(api_client, _charge_success("ref-dup"))
    second = await _post_event(api_client, _charge_success("ref-dup"))

    assert first.status_code == 200
    assert first.json()["status"] == "success"
    assert first.json()["credited"] is True
    assert second.status_code == 200
    assert second.json()["status"] == "already_processed"

    async with session_maker() as session:
        assert await get_credit_balance(BUYER_ID, session) == 10


@pytest.mark.asyncio
async def test_concurrent_duplicate_webhooks_credit_exactly_once(api_client, session_maker):
    await _seed_payment(session_maker, "ref-race", user_id=BUYER_ID)

    responses = await asyncio.gather(
        _post_event(api_client, _charge_success("ref-race")),
        _post_event(api_client, _charge_success("ref-race")),
    )

    assert [response.status_code for response in responses] == [200, 200]
    assert sorted(response.json()["status"] for response in responses) == ["already_processed", "success"]

    async with session_maker() as session:
        assert await get_credit_balance(BUYER_ID, session) == 10


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_state_change(api_client, session_maker):
    await _seed_payment(session_maker, "ref-forged", user_id=BUYER_ID)

    response = await _post_event(api_client, _charge_success("ref-forged"), secret="not-the-secret")
    assert response.status_code == 401

    async with session_maker() as session:
        payment = (
            await session.execute(select(PendingPayment).where(PendingPayment.processor_reference == "ref-forged"))
        ).scalar_one()
        assert payment.status == PAYMENT_PENDING
        assert await get_credit_balance(BUYER_ID, session) == 0


@pytest.mark.asyncio
async def test_missing_secret_rejects_outside_development(api_client, session_maker, monkeypatch):
    monkeypatch.setattr(settings, "PAYSTACK_WEBHOOK_SECRET", "")
    monkeypatch.setattr(settings, "ALLOW_UNSIGNED_WEBHOOKS", True)
    monkeypatch.setattr(settings, "ENVIRONMENT", "production")
    await _seed_payment(session_maker, "ref-unsigned", user_id=BUYER_ID)

    response = await _post_event(api_client, _charge_success("ref-unsigned"), signature="anything")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unknown_reference_is_404(api_client):
    response = await _post_event(api_client, _charge_success("ref-missing"))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_underpayment_is_rejected(api_client, session_maker):
    await _seed_payment(session_maker, "ref-short", user_id=BUYER_ID)
    response = await _post_event(api_client, _charge_success("ref-short", amount=100))
    assert response.status_code == 400

    async with session_maker() as session:
        assert await get_credit_balance(BUYER_ID, session) == 0


@pytest.mark.asyncio
async def test_charge_failed_is_terminal(api_client, session_maker):
    await _seed_payment(session_maker, "ref-failed", user_id=BUYER_ID)

    failed = await _post_event(api_client, {"event": "charge.failed", "data": {"reference": "ref-failed"}})
    assert failed.status_code == 200
    assert failed.json()["status"] == "failed"

    late_success = await _post_event(api_client, _charge_success("ref-failed"))
    assert late_success.json()["status"] == "ignored"

    async with session_maker() as session:
        payment = (
            await session.execute(select(PendingPayment).where(PendingPayment.processor_reference == "ref-failed"))
        ).scalar_one()
        assert payment.status == PAYMENT_FAILED
        assert await get_credit_balance(BUYER_ID, session) == 0


@pytest.mark.asyncio
async def test_unhandled_event_types_are_acknowledged(api_client):
    response = await _post_event(api_client, {"event": "transfer.success", "data": {}})
    assert response.status_code == 200
    assert response.json() == {"status": "ignored", "event": "transfer.success"}


@pytest.mark.asyncio
async def test_unlinked_payment_is_linked_once_after_signup(api_client, session_maker):
    await _seed_payment(session_maker, "ref-guest", email="guest@example.com")

    webhook = await _post_event(api_client, _charge_success("ref-guest"))
    assert webhook.json()["credited"] is False

    headers = _auth_header("guest-account", "Guest@Example.com")
    first = await api_client.post("/payments/link-credits", headers=headers)
    second = await api_client.post("/payments/link-credits", headers=headers)

    assert first.status_code == 200
    assert first.json()["payments_linked"] == 1
    assert first.json()["half_units_linked"] == 10
    assert second.json()["payments_linked"] == 0

    async with session_maker() as session:
        assert await get_credit_balance("guest-account", session) == 10
        payment = (
            await session.execute(select(PendingPayment).where(PendingPayment.processor_reference == "ref-guest"))
        ).scalar_one()
        assert payment.user_id == "guest-account"
        assert payment.status == PAYMENT_SUCCESS


@pytest.mark.asyncio
async def test_link_credits_requires_authentication(api_client):
    response = await api_client.post("/payments/link-credits")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_initiate_records_pending_payment(api_client, session_maker, monkeypatch):
    captured = {}

    async def _fake_initialize(**kwargs):
        captured.update(kwargs)
        return {"authorization_url": "https://checkout.example/abc", "reference": kwargs["reference"]}

    monkeypatch.setattr(paystack, "initialize_transaction", _fake_initialize)

    response = await api_client.post(
        "/payments/initiate",
        json={},
        headers=_auth_header(BUYER_ID, BUYER_EMAIL),
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["authorization_url"] == "https://checkout.example/abc"
    assert payload["amount"] == settings.DEFAULT_PLAN_AMOUNT
    assert payload["half_units"] == settings.DEFAULT_PLAN_HALF_UNITS
    assert captured["email"] == BUYER_EMAIL

    async with session_maker() as session:
        payment = (
            await session.execute(
                select(PendingPayment).where(PendingPayment.processor_reference == payload["reference"])
            )
        ).scalar_one()
        assert payment.user_id == BUYER_ID
        assert payment.status == PAYMENT_PENDING


@pytest.mark.asyncio
async def test_initiate_marks_payment_failed_when_processor_errors(api_client, session_maker, monkeypatch):
    async def _failing_initialize(**kwargs):
        raise paystack.PaystackError("boom")

    monkeypatch.setattr(paystack, "initialize_transaction", _failing_initialize)

    response = await api_client.post("/payments/initiate", json={"email": "guest@example.com"})
    assert response.status_code == 502

    async with session_maker() as session:
        payment = (await session.execute(select(PendingPayment))).scalar_one()
        assert payment.status == PAYMENT_FAILED
        assert payment.user_id is None


@pytest.mark.asyncio
async def test_initiate_without_account_requires_email(api_client):
    response = await api_client.post("/payments/initiate", json={})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_callback_redirects_unlinked_payment_to_signup(api_client, session_maker, monkeypatch):
    await _seed_payment(session_maker, "ref-callback", email="newcomer@example.com")

    async def _fake_verify(reference):
        return {"status": "success", "amount": 500, "reference": reference}

    monkeypatch.setattr(paystack, "verify_transaction", _fake_verify)

    response = await api_client.get("/payments/callback", params={"reference": "ref-callback"})
    assert response.status_code == 303
    location = response.headers["location"]
    assert location.startswith(settings.PAYMENT_SUCCESS_URL)
    assert "reference=ref-callback" in location
    assert "signup=1" in location


@pytest.mark.asyncio
async def test_callback_for_linked_payment_omits_signup(api_client, session_maker, monkeypatch):
    await _seed_payment(session_maker, "ref-linked", user_id=BUYER_ID)

    async def _fake_verify(reference):
        return {"status": "success", "amount": 500, "reference": reference}

    monkeypatch.setattr(paystack, "verify_transaction", _fake_verify)

    response = await api_client.get("/payments/callback", params={"reference": "ref-linked"})
    assert response.status_code == 303
    assert "signup=1" not in response.headers["location"]

    async with session_maker() as session:
        assert await get_credit_balance(BUYER_ID, session) == 10


@pytest.mark.asyncio
async def test_callback_failure_redirects_to_failure_page(api_client, session_maker, monkeypatch):
    await _seed_payment(session_maker, "ref-abandoned", user_id=BUYER_ID)

    async def _fake_verify(reference):
        return {"status": "abandoned", "reference": reference}

    monkeypatch.setattr(paystack, "verify_transaction", _fake_verify)

    response = await api_client.get("/payments/callback", params={"reference": "ref-abandoned"})
    assert response.status_code == 303
    assert response.headers["location"] == settings.PAYMENT_FAILURE_URL


def test_display_amount_is_formatted_from_minor_units():
    assert payment_service.format_display_amount(500, "KES") == "KES 5.00"
