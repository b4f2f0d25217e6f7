"""
Billing Error Taxonomy

Validation errors are rejected at the boundary and never retried, state
errors are returned to the caller, transient errors are retried with backoff,
and fatal errors stop processing and alert an operator.
"""


class BillingError(Exception):
    """Base class for all billing core errors."""
    pass


# ============================================================================
# Webhook validation (rejected, never retried)
# ============================================================================

class WebhookRejected(BillingError):
    """An inbound webhook failed validation."""
    validation_result = "error"
    status_code = 400


class InvalidSignature(WebhookRejected):
    validation_result = "invalid_signature"
    status_code = 401


class StaleOrFutureEvent(WebhookRejected):
    validation_result = "invalid_timestamp"
    status_code = 400


class MalformedEvent(WebhookRejected):
    validation_result = "error"
    status_code = 400


class UnknownProvider(WebhookRejected):
    validation_result = "error"
    status_code = 404


# ============================================================================
# State errors (returned to the caller)
# ============================================================================

class NotFound(BillingError):
    pass


class IncompleteUsageData(BillingError):
    """The billing period cannot be closed yet."""
    pass


class LedgerNotFrozen(BillingError):
    pass


class LedgerLocked(BillingError):
    """The ledger has been invoiced; post-issue changes need a correction document."""
    pass


class InvoiceNotPayable(BillingError):
    pass


# ============================================================================
# Transient errors (retried with backoff)
# ============================================================================

class TransientError(BillingError):
    pass


class ProcessorUnavailable(TransientError):
    pass


class ConsumerUnavailable(TransientError):
    pass


# ============================================================================
# Fatal errors (operator alert)
# ============================================================================

class IntegrityViolation(BillingError):
    """Persisted state contradicts a billing invariant."""
    pass


class RedeliveryExhausted(BillingError):
    """A webhook consumer kept failing after every configured retry."""
    pass
