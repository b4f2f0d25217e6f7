"""
Tests for the Stripe payment processor

The Stripe API is replaced with monkeypatched PaymentIntent.create calls.
"""

from decimal import Decimal

import pytest
import stripe

from decrown_billing.core.errors import ProcessorUnavailable
from decrown_billing.processors.base import ChargeStatus
from decrown_billing.processors.stripe import StripeProcessor, to_minor_units


@pytest.fixture
def processor(monkeypatch):
    monkeypatch.setattr(stripe, "api_key", None)
    return StripeProcessor(api_key="sk_test_dummy", customer_lookup=lambda account: f"cus_{account}")


def fake_create(calls, result=None, error=None):
    def create(**kwargs):
        calls.append(kwargs)
        if error is not None:
            raise error
        return result
    return create


def charge(processor):
    return processor.charge("acct-A", Decimal("2750.00"), "PHP", "INV-1:PAY-1", {"invoice_id": "INV-1"})


def test_minor_units():
    assert to_minor_units(Decimal("2750.00")) == 275000
    assert to_minor_units(Decimal("0.10")) == 10


def test_success(monkeypatch, processor):
    calls = []
    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create(calls, {"id": "pi_1", "status": "succeeded"}))

    result = charge(processor)

    assert result.status == ChargeStatus.SUCCEEDED
    assert result.transaction_id == "pi_1"
    sent = calls[0]
    assert sent["amount"] == 275000
    assert sent["currency"] == "php"
    assert sent["customer"] == "cus_acct-A"
    assert sent["idempotency_key"] == "INV-1:PAY-1"
    assert sent["metadata"] == {"invoice_id": "INV-1", "idempotency_key": "INV-1:PAY-1"}


def test_async_intent_is_processing(monkeypatch, processor):
    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create([], {"id": "pi_2", "status": "processing"}))

    assert charge(processor).status == ChargeStatus.PROCESSING


def test_permanent_decline(monkeypatch, processor):
    error = stripe.CardError(
        "Your card was declined.",
        None,
        "card_declined",
        json_body={"error": {"code": "card_declined", "decline_code": "stolen_card", "message": "Your card was declined."}},
    )
    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create([], error=error))

    result = charge(processor)

    assert result.status == ChargeStatus.FAILED
    assert result.failure_reason == "stolen_card"
    assert result.retryable is False


def test_soft_decline_is_retryable(monkeypatch, processor):
    error = stripe.CardError(
        "Insufficient funds.",
        None,
        "card_declined",
        json_body={"error": {"code": "card_declined", "decline_code": "insufficient_funds"}},
    )
    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create([], error=error))

    result = charge(processor)

    assert result.failure_reason == "insufficient_funds"
    assert result.retryable is True


def test_network_error_is_transient(monkeypatch, processor):
    monkeypatch.setattr(
        stripe.PaymentIntent, "create", fake_create([], error=stripe.APIConnectionError("connection reset"))
    )

    with pytest.raises(ProcessorUnavailable):
        charge(processor)


def test_other_api_errors_fail_the_attempt(monkeypatch, processor):
    monkeypatch.setattr(
        stripe.PaymentIntent, "create", fake_create([], error=stripe.InvalidRequestError("No such customer", "customer"))
    )

    result = charge(processor)

    assert result.status == ChargeStatus.FAILED
    assert "No such customer" in result.failure_reason
