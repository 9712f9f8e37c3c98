import json
import time

import pytest
import stripe

from conftest import WEBHOOK_SECRET, checkout_completed_event, sign_payload
from pipeline.errors import ConfigurationError, InvalidSignature, UpstreamUnavailable, ValidationError
from pipeline.payment_gate import CHECKOUT_COMPLETED, PaymentGate, WebhookRouter
from schemas.staging import JobMetadata


@pytest.fixture
def gate(fake_stripe):
    return PaymentGate(
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        site_url="https://site.test/",
        stripe_client=fake_stripe,
    )


@pytest.fixture
def metadata():
    return JobMetadata(
        job_id="job_1",
        dropbox_path="/renders/job_1/original.jpg",
        image_url="https://www.dropbox.com/scl/fi/1/original.jpg?rlkey=k&raw=1",
        room_type="living_room",
        style="modern",
    )


# ----------------------------------------------------------------------------
# Checkout
# ----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_checkout(gate, fake_stripe, metadata):
    result = await gate.create_checkout(4900, "USD", metadata, customer_email="buyer@example.com")

    assert result.checkout_url == "https://checkout.stripe.test/pay/cs_test_1"
    assert result.session_id == "cs_test_1"

    params = fake_stripe.sessions[0]
    assert params["mode"] == "payment"
    assert params["success_url"] == "https://site.test/thank-you"
    assert params["cancel_url"] == "https://site.test/cancel"
    assert params["customer_email"] == "buyer@example.com"
    assert params["api_key"] == "sk_test_123"

    line_item = params["line_items"][0]
    assert line_item["quantity"] == 1
    assert line_item["price_data"]["unit_amount"] == 4900
    assert line_item["price_data"]["currency"] == "usd"


@pytest.mark.asyncio
async def test_checkout_metadata_is_all_strings(gate, fake_stripe, metadata):
    await gate.create_checkout(4900, "usd", metadata)

    sent = fake_stripe.sessions[0]["metadata"]
    assert sent == metadata.to_stripe_metadata()
    assert all(isinstance(value, str) for value in sent.values())
    assert fake_stripe.sessions[0]["customer_email"] is None


@pytest.mark.asyncio
async def test_checkout_rounds_fractional_minor_units(gate, fake_stripe, metadata):
    await gate.create_checkout(49.6, "usd", metadata)
    assert fake_stripe.sessions[0]["line_items"][0]["price_data"]["unit_amount"] == 50


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, 0.4, "abc", "4900", "1e3", None, True, float("nan")])
async def test_checkout_rejects_invalid_amount(gate, fake_stripe, metadata, amount):
    with pytest.raises(ValidationError, match="Invalid amount"):
        await gate.create_checkout(amount, "usd", metadata)
    assert fake_stripe.sessions == []


@pytest.mark.asyncio
@pytest.mark.parametrize("currency", ["", "   ", None, 840])
async def test_checkout_rejects_invalid_currency(gate, metadata, currency):
    with pytest.raises(ValidationError, match="Invalid currency"):
        await gate.create_checkout(4900, currency, metadata)


@pytest.mark.asyncio
async def test_checkout_stripe_failure(gate, fake_stripe, metadata):
    fake_stripe.error = stripe.APIConnectionError("network down")

    with pytest.raises(UpstreamUnavailable):
        await gate.create_checkout(4900, "usd", metadata)


# ----------------------------------------------------------------------------
# Webhook verification
# ----------------------------------------------------------------------------

def _signed_event(event=None, **sign_kwargs):
    payload = json.dumps(event or checkout_completed_event({"job_id": "job_1"}))
    return payload.encode(), sign_payload(payload, **sign_kwargs)


def test_verify_event_accepts_valid_signature(gate):
    payload, signature = _signed_event()

    event = gate.verify_event(payload, signature)

    assert event["type"] == CHECKOUT_COMPLETED
    assert event["data"]["object"]["metadata"] == {"job_id": "job_1"}


def test_verify_event_rejects_tampered_body(gate):
    payload, signature = _signed_event()
    tampered = payload.replace(b"job_1", b"job_2")

    with pytest.raises(InvalidSignature):
        gate.verify_event(tampered, signature)


def test_verify_event_rejects_wrong_secret(gate):
    payload, signature = _signed_event(secret="whsec_other")

    with pytest.raises(InvalidSignature):
        gate.verify_event(payload, signature)


def test_verify_event_rejects_stale_timestamp(gate):
    payload, signature = _signed_event(timestamp=int(time.time()) - 3600)

    with pytest.raises(InvalidSignature):
        gate.verify_event(payload, signature)


@pytest.mark.parametrize("signature", [None, ""])
def test_verify_event_requires_signature(gate, signature):
    with pytest.raises(InvalidSignature, match="Missing Stripe signature"):
        gate.verify_event(b"{}", signature)


def test_verify_event_rejects_non_object_body(gate):
    payload = "[1, 2, 3]"

    with pytest.raises(InvalidSignature):
        gate.verify_event(payload.encode(), sign_payload(payload))


def test_verify_event_rejects_undecodable_body(gate):
    with pytest.raises(InvalidSignature):
        gate.verify_event(b"\xff\xfe", sign_payload("x"))


def test_verify_event_without_secret_is_configuration_error(fake_stripe):
    gate = PaymentGate("sk_test_123", None, stripe_client=fake_stripe)
    payload, signature = _signed_event()

    with pytest.raises(ConfigurationError):
        gate.verify_event(payload, signature)


# ----------------------------------------------------------------------------
# Completed-payment extraction
# ----------------------------------------------------------------------------

def test_extract_completed_payment_prefers_customer_details():
    event = checkout_completed_event({"job_id": "job_1"}, customer_email="buyer@example.com")
    event["data"]["object"]["customer_email"] = "other@example.com"

    payment = PaymentGate.extract_completed_payment(event)

    assert payment.customer_email == "buyer@example.com"
    assert payment.session_id == "cs_test_1"
    assert payment.metadata == {"job_id": "job_1"}


def test_extract_completed_payment_email_fallbacks():
    event = checkout_completed_event({"job_id": "job_1", "customer_email": "meta@example.com"})
    assert PaymentGate.extract_completed_payment(event).customer_email == "meta@example.com"

    event["data"]["object"]["customer_email"] = "session@example.com"
    assert PaymentGate.extract_completed_payment(event).customer_email == "session@example.com"


def test_extract_completed_payment_without_email():
    payment = PaymentGate.extract_completed_payment(checkout_completed_event({"job_id": "job_1"}))
    assert payment.customer_email is None


# ----------------------------------------------------------------------------
# Router
# ----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_webhook_router_dispatches_by_type():
    router = WebhookRouter()

    @router.register(CHECKOUT_COMPLETED)
    async def handle(event):
        return {"handled": event["id"]}

    assert router.handles(CHECKOUT_COMPLETED)
    assert router.supported_events == [CHECKOUT_COMPLETED]
    assert await router.route({"id": "evt_1", "type": CHECKOUT_COMPLETED}) == {"handled": "evt_1"}
    assert await router.route({"id": "evt_2", "type": "payment_intent.created"}) is None
