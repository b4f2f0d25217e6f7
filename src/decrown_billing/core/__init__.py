"""
DeCrown Billing - Core Module

Usage ledgers, invoices, payment attempts, dunning and the webhook security
log. Submodules are imported directly (``decrown_billing.core.payment``);
only the error taxonomy and backoff policy are re-exported here.
"""

from .backoff import RetryPolicy
from .errors import (
    BillingError,
    ConsumerUnavailable,
    IncompleteUsageData,
    IntegrityViolation,
    InvalidSignature,
    InvoiceNotPayable,
    LedgerLocked,
    LedgerNotFrozen,
    MalformedEvent,
    NotFound,
    ProcessorUnavailable,
    RedeliveryExhausted,
    StaleOrFutureEvent,
    TransientError,
    UnknownProvider,
    WebhookRejected,
)

__all__ = [
    "RetryPolicy",
    "BillingError",
    "ConsumerUnavailable",
    "IncompleteUsageData",
    "IntegrityViolation",
    "InvalidSignature",
    "InvoiceNotPayable",
    "LedgerLocked",
    "LedgerNotFrozen",
    "MalformedEvent",
    "NotFound",
    "ProcessorUnavailable",
    "RedeliveryExhausted",
    "StaleOrFutureEvent",
    "TransientError",
    "UnknownProvider",
    "WebhookRejected",
]
