"""
Tests for the payment confirmation gateway.

Webhook tests run against the real StripeProvider; signature verification is
local HMAC so no network is involved.
"""
import json

import pytest

from unlocks.features.purchases.gateway import (
    ConfirmedPayment,
    Ignored,
    NotYetConfirmed,
    PaymentConfirmationGateway,
    PaymentFailed,
    Rejected,
)
from unlocks.features.purchases.stripe_provider import StripeProvider
from unlocks.tests.mocks import FakeProvider, checkout_session, sign_payload, stripe_event


SECRET = "whsec_gateway_test"


@pytest.fixture
def gateway():
    return PaymentConfirmationGateway(StripeProvider(secret_key="sk_test_gateway", webhook_secret=SECRET))


def test_paid_checkout_session_is_confirmed(gateway):
    body = stripe_event("checkout.session.completed", checkout_session("p_1"))

    result = gateway.handle_provider_event(body, sign_payload(body, SECRET))

    assert result == ConfirmedPayment(purchase_id="p_1", provider_reference="pay_123", channel="webhook")


def test_purchase_id_falls_back_to_metadata(gateway):
    body = stripe_event("checkout.session.completed", checkout_session("p_2", use_metadata=True))

    result = gateway.handle_provider_event(body, sign_payload(body, SECRET))

    assert isinstance(result, ConfirmedPayment)
    assert result.purchase_id == "p_2"


def test_session_id_used_when_no_payment_intent(gateway):
    body = stripe_event("checkout.session.completed", checkout_session("p_3", session_id="cs_9", payment_intent=None))

    result = gateway.handle_provider_event(body, sign_payload(body, SECRET))

    assert result.provider_reference == "cs_9"


def test_unpaid_completed_session_waits_for_async_event(gateway):
    body = stripe_event("checkout.session.completed", checkout_session("p_4", payment_status="unpaid"))
    assert isinstance(gateway.handle_provider_event(body, sign_payload(body, SECRET)), Ignored)

    body = stripe_event("checkout.session.async_payment_succeeded", checkout_session("p_4"))
    assert isinstance(gateway.handle_provider_event(body, sign_payload(body, SECRET)), ConfirmedPayment)


@pytest.mark.parametrize("event_type,reason", [
    ("checkout.session.expired", "expired"),
    ("checkout.session.async_payment_failed", "payment_failed"),
])
def test_failure_events(gateway, event_type, reason):
    body = stripe_event(event_type, checkout_session("p_5", status="expired", payment_status="unpaid"))

    result = gateway.handle_provider_event(body, sign_payload(body, SECRET))

    assert result == PaymentFailed(purchase_id="p_5", channel="webhook", reason=reason)


def test_unrelated_event_is_ignored(gateway):
    body = json.dumps({"id": "evt_2", "object": "event", "type": "customer.created", "data": {"object": {}}}).encode()

    result = gateway.handle_provider_event(body, sign_payload(body, SECRET))

    assert result == Ignored(event_type="customer.created")



@pytest.mark.parametrize("data", [{"object": "nope"}, "nope", {"object": {"payment_status": "paid", "metadata": "nope"}}])
def test_malformed_session_payload_is_ignored(gateway, data):
    body = json.dumps({"id": "evt_3", "object": "event", "type": "checkout.session.completed", "data": data}).encode()

    result = gateway.handle_provider_event(body, sign_payload(body, SECRET))

    assert result == Ignored(event_type="checkout.session.completed")


def test_bad_signature_is_rejected(gateway):
    body = stripe_event("checkout.session.completed", checkout_session("p_1"))

    result = gateway.handle_provider_event(body, sign_payload(body, "whsec_wrong"))

    assert isinstance(result, Rejected)
    assert result.retryable is False


def test_tampered_body_is_rejected(gateway):
    body = stripe_event("checkout.session.completed", checkout_session("p_1"))
    header = sign_payload(body, SECRET)
    tampered = body.replace(b"p_1", b"p_2")

    assert isinstance(gateway.handle_provider_event(tampered, header), Rejected)


def test_missing_signature_is_rejected(gateway):
    body = stripe_event("checkout.session.completed", checkout_session("p_1"))
    assert isinstance(gateway.handle_provider_event(body, None), Rejected)


def test_stale_timestamp_is_rejected(gateway):
    body = stripe_event("checkout.session.completed", checkout_session("p_1"))
    assert isinstance(gateway.handle_provider_event(body, sign_payload(body, SECRET, timestamp=1_000_000)), Rejected)


def test_fallback_paid_session_confirms():
    provider = FakeProvider()
    provider.sessions["cs_1"] = checkout_session("p_1", session_id="cs_1")

    result = PaymentConfirmationGateway(provider).verify_session_fallback("cs_1", "p_1")

    assert result == ConfirmedPayment(purchase_id="p_1", provider_reference="pay_123", channel="fallback")


def test_fallback_open_session_not_yet_confirmed():
    provider = FakeProvider()
    provider.sessions["cs_1"] = checkout_session("p_1", session_id="cs_1", status="open", payment_status="unpaid")

    result = PaymentConfirmationGateway(provider).verify_session_fallback("cs_1", "p_1")

    assert result == NotYetConfirmed(purchase_id="p_1", status="open", payment_status="unpaid")


def test_fallback_expired_session_rejected():
    provider = FakeProvider()
    provider.sessions["cs_1"] = checkout_session("p_1", session_id="cs_1", status="expired", payment_status="unpaid")

    result = PaymentConfirmationGateway(provider).verify_session_fallback("cs_1", "p_1")

    assert isinstance(result, Rejected)
    assert result.retryable is False


def test_fallback_session_for_other_purchase_rejected():
    provider = FakeProvider()
    provider.sessions["cs_1"] = checkout_session("p_other", session_id="cs_1")

    result = PaymentConfirmationGateway(provider).verify_session_fallback("cs_1", "p_1")

    assert isinstance(result, Rejected)
    assert result.retryable is False


def test_fallback_provider_error_is_retryable():
    provider = FakeProvider()
    provider.fail_retrieve = True

    result = PaymentConfirmationGateway(provider).verify_session_fallback("cs_1", "p_1")

    assert isinstance(result, Rejected)
    assert result.retryable is True
