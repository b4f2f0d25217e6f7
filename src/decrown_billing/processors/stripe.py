"""
Stripe payment processor.

Charges an account's saved payment method off-session through a confirmed
PaymentIntent. The attempt's idempotency key is passed to Stripe so a
resubmitted attempt never charges twice.
"""

import os
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
import structlog
import stripe

from ..core.errors import ProcessorUnavailable
from .base import ChargeResult, ChargeStatus, PaymentProcessor

logger = structlog.get_logger()

# Declines that will not succeed on a later retry
PERMANENT_DECLINE_CODES = {
    "stolen_card",
    "lost_card",
    "pickup_card",
    "fraudulent",
    "restricted_card",
    "invalid_account",
    "card_not_supported",
}

INTENT_STATUSES = {
    "succeeded": ChargeStatus.SUCCEEDED,
    "processing": ChargeStatus.PROCESSING,
    "requires_action": ChargeStatus.PROCESSING,
    "requires_capture": ChargeStatus.PROCESSING,
    "requires_payment_method": ChargeStatus.FAILED,
    "canceled": ChargeStatus.FAILED,
}


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1")))


class StripeProcessor(PaymentProcessor):
    """
    Stripe-backed processor.

    Args:
        api_key: Stripe secret key (or STRIPE_API_KEY env var)
        customer_lookup: maps a billing account id to a Stripe customer id;
            defaults to using the account id as-is
    """

    name = "stripe"

    def __init__(
        self,
        api_key: Optional[str] = None,
        customer_lookup: Optional[Callable[[str], str]] = None,
    ):
        self.api_key = api_key or os.environ.get("STRIPE_API_KEY")
        self.customer_lookup = customer_lookup or (lambda account_id: account_id)
        if self.api_key:
            stripe.api_key = self.api_key
            logger.info("stripe_processor_initialized")
        else:
            logger.warning("stripe_not_configured", api_key_set=False)

    def charge(
        self,
        customer_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency.lower(),
                customer=self.customer_lookup(customer_ref),
                confirm=True,
                off_session=True,
                metadata={**(metadata or {}), "idempotency_key": idempotency_key},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            error: Any = e.error
            decline_code = getattr(error, "decline_code", None) or getattr(error, "code", None)
            payment_intent = getattr(error, "payment_intent", None)
            logger.warning(
                "stripe_charge_declined",
                idempotency_key=idempotency_key,
                decline_code=decline_code,
            )
            return ChargeResult(
                status=ChargeStatus.FAILED,
                transaction_id=getattr(payment_intent, "id", None),
                failure_reason=decline_code or e.user_message or "card_declined",
                retryable=decline_code not in PERMANENT_DECLINE_CODES,
                raw={"error": str(e), "decline_code": decline_code},
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning("stripe_unavailable", idempotency_key=idempotency_key, error=str(e))
            raise ProcessorUnavailable(str(e)) from e
        except stripe.StripeError as e:
            logger.error("stripe_charge_error", idempotency_key=idempotency_key, error=str(e))
            return ChargeResult(
                status=ChargeStatus.FAILED,
                failure_reason=str(e) or type(e).__name__,
                retryable=True,
                raw={"error": str(e)},
            )

        status = INTENT_STATUSES.get(intent["status"], ChargeStatus.PROCESSING)
        last_error = intent.get("last_payment_error") or {}
        logger.info(
            "stripe_charge_submitted",
            idempotency_key=idempotency_key,
            payment_intent=intent["id"],
            status=intent["status"],
        )
        return ChargeResult(
            status=status,
            transaction_id=intent["id"],
            failure_reason=last_error.get("message") if status == ChargeStatus.FAILED else None,
            raw={"id": intent["id"], "status": intent["status"]},
        )
