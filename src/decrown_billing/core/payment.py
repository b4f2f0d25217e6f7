"""
Payment Attempt State Machine

Drives collection of one invoice through the payment processor:

    pending -> processing -> succeeded
                          -> failed -> (new pending attempt, backed off)
    pending / processing  -> cancelled

Every transition runs in a transaction holding the invoice lock, so two
workers (or a worker and a webhook) never both decide the fate of the same
invoice. The processor call itself happens outside the transaction.

Results reported by a processor webhook win over results returned
synchronously by ``submit``: a synchronous result only applies to an attempt
that is still ``processing``.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
import json
import random
import uuid
import structlog

from ..persistence.database import Database
from ..persistence.models import (
    AttemptStatus,
    Invoice,
    InvoiceStatus,
    PaymentAttempt,
    new_id,
    utcnow,
)
from ..persistence.repository import InvoiceRepository, PaymentAttemptRepository
from ..processors.base import ChargeResult, ChargeStatus, PaymentProcessor
from .backoff import RetryPolicy
from .errors import (
    IntegrityViolation,
    InvoiceNotPayable,
    NotFound,
    ProcessorUnavailable,
)

logger = structlog.get_logger()

# 3 retries starting one hour apart, capped at a day
DEFAULT_PAYMENT_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay_ms=60 * 60 * 1000,
    backoff_multiplier=2.0,
    max_delay_ms=24 * 60 * 60 * 1000,
    jitter_ratio=0.1,
)

SOURCE_SYNC = "sync"
SOURCE_WEBHOOK = "webhook"

PAYABLE_STATUSES = (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE)


def idempotency_key_for(invoice_id: str, attempt_id: str) -> str:
    return f"pay_{invoice_id}_{attempt_id}"


def _dump(raw: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(raw, default=str, sort_keys=True) if raw else None


class PaymentAttemptStateMachine:
    """
    Creates, submits and settles payment attempts.

    Usage:
        machine = PaymentAttemptStateMachine(db, MockProcessor())
        attempt = machine.create_attempt(invoice.id)
        attempt = machine.submit(attempt.id)
    """

    def __init__(
        self,
        db: Database,
        processor: PaymentProcessor,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        processing_lease_seconds: int = 900,
        worker_id: Optional[str] = None,
    ):
        self.db = db
        self.processor = processor
        self.policy = policy or DEFAULT_PAYMENT_RETRY_POLICY
        self.clock = clock
        self.rng = rng or random.Random()
        self.processing_lease = timedelta(seconds=processing_lease_seconds)
        self.worker_id = worker_id or f"pay-{uuid.uuid4().hex[:8]}"
        self.invoices = InvoiceRepository(db)
        self.attempts = PaymentAttemptRepository(db)

    # ------------------------------------------------------------------
    # Helpers (call inside a transaction)
    # ------------------------------------------------------------------

    def _lock_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.invoices.get(invoice_id, for_update=True)
        if invoice is None:
            raise NotFound(f"invoice {invoice_id} not found")
        return invoice

    def _get_attempt(self, attempt_id: str) -> PaymentAttempt:
        attempt = self.attempts.get(attempt_id)
        if attempt is None:
            raise NotFound(f"payment attempt {attempt_id} not found")
        return attempt

    def _integrity_violation(self, message: str, **context: Any) -> IntegrityViolation:
        logger.critical("payment_integrity_violation", detail=message, **context)
        return IntegrityViolation(message)

    def _create_locked(
        self,
        invoice: Invoice,
        retry_count: int = 0,
        next_retry_at: Optional[datetime] = None,
    ) -> PaymentAttempt:
        if invoice.status not in PAYABLE_STATUSES:
            raise InvoiceNotPayable(f"invoice {invoice.id} is {invoice.status.value}")
        succeeded = self.attempts.succeeded_for(invoice.id)
        if succeeded is not None:
            raise self._integrity_violation(
                f"invoice {invoice.id} is {invoice.status.value} but attempt {succeeded.id} succeeded",
                invoice_id=invoice.id,
            )
        open_attempt = self.attempts.open_for(invoice.id)
        if open_attempt is not None:
            return open_attempt

        amount = self.invoices.amount_due(invoice)
        if amount <= 0:
            raise InvoiceNotPayable(f"invoice {invoice.id} has nothing to collect")

        now = self.clock()
        attempt_id = new_id("PAY")
        attempt = self.attempts.create(PaymentAttempt(
            id=attempt_id,
            invoice_id=invoice.id,
            amount=amount,
            currency=invoice.currency,
            processor=self.processor.name,
            idempotency_key=idempotency_key_for(invoice.id, attempt_id),
            status=AttemptStatus.PENDING,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            created_at=now,
            updated_at=now,
        ))
        logger.info(
            "payment_attempt_created",
            attempt_id=attempt.id,
            invoice_id=invoice.id,
            amount=str(amount),
            retry_count=retry_count,
            next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
        )
        return attempt

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_attempt(self, invoice_id: str) -> PaymentAttempt:
        """
        Open a payment attempt for a payable invoice.

        Returns the invoice's open attempt if one already exists.
        """
        with self.db.transaction():
            return self._create_locked(self._lock_invoice(invoice_id))

    def submit(self, attempt_id: str) -> PaymentAttempt:
        """Claim a due pending attempt and charge it."""
        with self.db.transaction():
            attempt = self._get_attempt(attempt_id)
            invoice = self._lock_invoice(attempt.invoice_id)
            attempt = self._get_attempt(attempt_id)
            if attempt.status != AttemptStatus.PENDING:
                return attempt
            now = self.clock()
            if invoice.status not in PAYABLE_STATUSES:
                self.attempts.finish(
                    attempt.id, AttemptStatus.CANCELLED, now,
                    failure_reason=f"invoice {invoice.status.value}",
                )
                return self._get_attempt(attempt_id)
            if attempt.next_retry_at is not None and attempt.next_retry_at > now:
                return attempt
            if not self.attempts.claim(attempt.id, self.worker_id, now):
                return self._get_attempt(attempt_id)

        return self._charge(self._get_attempt(attempt_id), invoice)

    def _charge(self, attempt: PaymentAttempt, invoice: Invoice) -> PaymentAttempt:
        logger.info(
            "payment_submitting",
            attempt_id=attempt.id,
            invoice_id=attempt.invoice_id,
            idempotency_key=attempt.idempotency_key,
        )
        try:
            result = self.processor.charge(
                customer_ref=invoice.account_id,
                amount=attempt.amount,
                currency=attempt.currency,
                idempotency_key=attempt.idempotency_key,
                metadata={"attempt_id": attempt.id, "invoice_id": attempt.invoice_id},
            )
        except ProcessorUnavailable as e:
            return self.record_failure(
                attempt.id,
                reason=f"processor unavailable: {e}",
                retryable=True,
                source=SOURCE_SYNC,
            )
        return self.apply_charge_result(attempt.id, result, source=SOURCE_SYNC)

    def apply_charge_result(self, attempt_id: str, result: ChargeResult, source: str) -> PaymentAttempt:
        if result.status == ChargeStatus.SUCCEEDED:
            return self.record_success(attempt_id, result.transaction_id, result.raw, source=source)
        if result.status == ChargeStatus.FAILED:
            return self.record_failure(
                attempt_id,
                reason=result.failure_reason or "declined",
                retryable=result.retryable,
                transaction_id=result.transaction_id,
                raw=result.raw,
                source=source,
            )
        return self.record_processing(attempt_id, result.transaction_id, result.raw)

    def record_processing(
        self,
        attempt_id: str,
        transaction_id: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> PaymentAttempt:
        """Remember the processor reference of an attempt awaiting asynchronous settlement."""
        with self.db.transaction():
            attempt = self._get_attempt(attempt_id)
            if attempt.status in (AttemptStatus.PENDING, AttemptStatus.PROCESSING):
                self.attempts.record_processing(attempt.id, self.clock(), transaction_id, _dump(raw))
        logger.info("payment_processing", attempt_id=attempt_id, transaction_id=transaction_id)
        return self._get_attempt(attempt_id)

    def record_success(
        self,
        attempt_id: str,
        transaction_id: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
        source: str = SOURCE_SYNC,
    ) -> PaymentAttempt:
        with self.db.transaction():
            attempt = self._get_attempt(attempt_id)
            invoice = self._lock_invoice(attempt.invoice_id)
            attempt = self._get_attempt(attempt_id)
            if attempt.status == AttemptStatus.SUCCEEDED:
                return attempt

            other = self.attempts.succeeded_for(invoice.id)
            if other is not None and other.id != attempt.id:
                raise self._integrity_violation(
                    f"second successful payment for invoice {invoice.id}",
                    invoice_id=invoice.id,
                    attempt_id=attempt.id,
                    succeeded_attempt_id=other.id,
                    transaction_id=transaction_id,
                )

            now = self.clock()
            if invoice.status == InvoiceStatus.CANCELLED:
                self.attempts.finish(
                    attempt.id, AttemptStatus.CANCELLED, now,
                    transaction_id=transaction_id,
                    failure_reason="captured on cancelled invoice",
                    provider_response=_dump(raw),
                )
                logger.error(
                    "payment_captured_on_cancelled_invoice",
                    invoice_id=invoice.id,
                    attempt_id=attempt.id,
                    transaction_id=transaction_id,
                )
                return self._get_attempt(attempt_id)

            if source == SOURCE_SYNC and attempt.status != AttemptStatus.PROCESSING:
                logger.info(
                    "payment_sync_result_superseded",
                    attempt_id=attempt.id,
                    status=attempt.status.value,
                    result="succeeded",
                )
                return attempt

            if invoice.status not in PAYABLE_STATUSES:
                raise self._integrity_violation(
                    f"payment succeeded for invoice {invoice.id} in status {invoice.status.value}",
                    invoice_id=invoice.id,
                    attempt_id=attempt.id,
                )

            self.attempts.finish(
                attempt.id, AttemptStatus.SUCCEEDED, now,
                transaction_id=transaction_id,
                provider_response=_dump(raw),
            )
            cancelled = self.attempts.cancel_for_invoice(
                invoice.id, now, "invoice paid", except_id=attempt.id
            )
            self.invoices.transition(invoice.id, InvoiceStatus.PAID, now, PAYABLE_STATUSES)

        logger.info(
            "payment_succeeded",
            attempt_id=attempt_id,
            invoice_id=invoice.id,
            transaction_id=transaction_id,
            source=source,
            cancelled_siblings=cancelled,
        )
        return self._get_attempt(attempt_id)

    def record_failure(
        self,
        attempt_id: str,
        reason: str,
        retryable: bool = True,
        transaction_id: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
        source: str = SOURCE_SYNC,
    ) -> PaymentAttempt:
        """
        Fail an attempt and schedule the next one, or hand the invoice to
        dunning once retries are exhausted.
        """
        with self.db.transaction():
            attempt = self._get_attempt(attempt_id)
            invoice = self._lock_invoice(attempt.invoice_id)
            attempt = self._get_attempt(attempt_id)

            if attempt.status in (AttemptStatus.SUCCEEDED, AttemptStatus.FAILED, AttemptStatus.CANCELLED):
                # Success is final; repeated failures are already handled.
                logger.info(
                    "payment_failure_ignored",
                    attempt_id=attempt.id,
                    status=attempt.status.value,
                    source=source,
                )
                return attempt
            if source == SOURCE_SYNC and attempt.status != AttemptStatus.PROCESSING:
                logger.info(
                    "payment_sync_result_superseded",
                    attempt_id=attempt.id,
                    status=attempt.status.value,
                    result="failed",
                )
                return attempt

            now = self.clock()
            if invoice.status == InvoiceStatus.CANCELLED:
                self.attempts.finish(
                    attempt.id, AttemptStatus.CANCELLED, now,
                    transaction_id=transaction_id,
                    failure_reason=reason,
                    provider_response=_dump(raw),
                )
                return self._get_attempt(attempt_id)

            can_retry = retryable and self.policy.can_retry(attempt.retry_count)
            next_retry_at = (
                self.policy.next_retry_at(attempt.retry_count, now, self.rng) if can_retry else None
            )
            self.attempts.finish(
                attempt.id, AttemptStatus.FAILED, now,
                transaction_id=transaction_id,
                failure_reason=reason,
                provider_response=_dump(raw),
                next_retry_at=next_retry_at,
            )
            logger.warning(
                "payment_failed",
                attempt_id=attempt.id,
                invoice_id=invoice.id,
                reason=reason,
                retry_count=attempt.retry_count,
                retryable=retryable,
                source=source,
            )

            if invoice.status == InvoiceStatus.PAID:
                return self._get_attempt(attempt_id)
            if can_retry:
                self._create_locked(invoice, attempt.retry_count + 1, next_retry_at)
            else:
                self.invoices.transition(invoice.id, InvoiceStatus.OVERDUE, now, (InvoiceStatus.PENDING,))
                logger.warning(
                    "payment_retries_exhausted",
                    invoice_id=invoice.id,
                    attempt_id=attempt.id,
                    retry_count=attempt.retry_count,
                    permanent=not retryable,
                )
        return self._get_attempt(attempt_id)

    def recover_stale(self, attempt: PaymentAttempt) -> Optional[PaymentAttempt]:
        """
        Resubmit a processing attempt whose worker lease expired before the
        processor acknowledged it.

        The idempotency key is unchanged, so the processor returns the result
        of the original charge instead of charging again. An attempt whose
        invoice stopped being payable meanwhile is cancelled, not charged.
        """
        now = self.clock()
        with self.db.transaction():
            invoice = self._lock_invoice(attempt.invoice_id)
            if not self.attempts.reclaim_stale(attempt.id, self.worker_id, now, attempt.claimed_at):
                return None
            if invoice.status not in PAYABLE_STATUSES:
                self.attempts.finish(
                    attempt.id, AttemptStatus.CANCELLED, now,
                    failure_reason=f"invoice {invoice.status.value}",
                )
                logger.info(
                    "payment_stale_attempt_cancelled",
                    attempt_id=attempt.id,
                    invoice_id=invoice.id,
                    invoice_status=invoice.status.value,
                )
                return self._get_attempt(attempt.id)
        logger.warning(
            "payment_attempt_reclaimed",
            attempt_id=attempt.id,
            previous_worker=attempt.claimed_by,
        )
        return self._charge(self._get_attempt(attempt.id), invoice)

    def find_attempt(
        self,
        attempt_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Optional[PaymentAttempt]:
        """Locate the attempt a processor notification refers to."""
        if attempt_id:
            attempt = self.attempts.get(attempt_id)
            if attempt is not None:
                return attempt
        if idempotency_key:
            attempt = self.attempts.get_by_idempotency_key(idempotency_key)
            if attempt is not None:
                return attempt
        if transaction_id:
            return self.attempts.get_by_transaction_id(transaction_id)
        return None


class PaymentRetryPoller:
    """
    Periodic worker that submits due attempts and recovers stale ones.

    Per-attempt failures are logged and counted without stopping the batch;
    integrity violations stop the run.
    """

    def __init__(self, machine: PaymentAttemptStateMachine, batch_size: int = 100):
        self.machine = machine
        self.batch_size = batch_size

    def run_once(self) -> Dict[str, int]:
        summary = {
            "submitted": 0,
            "succeeded": 0,
            "failed": 0,
            "processing": 0,
            "recovered": 0,
            "cancelled": 0,
            "errors": 0,
        }
        now = self.machine.clock()

        for attempt in self.machine.attempts.due(now, self.batch_size):
            try:
                result = self.machine.submit(attempt.id)
            except IntegrityViolation:
                raise
            except Exception as e:
                summary["errors"] += 1
                logger.error("payment_retry_failed", attempt_id=attempt.id, error=str(e))
                continue
            summary["submitted"] += 1
            if result.status == AttemptStatus.SUCCEEDED:
                summary["succeeded"] += 1
            elif result.status == AttemptStatus.FAILED:
                summary["failed"] += 1
            elif result.status == AttemptStatus.PROCESSING:
                summary["processing"] += 1

        stale_before = now - self.machine.processing_lease
        for attempt in self.machine.attempts.stale_processing(stale_before, self.batch_size):
            try:
                result = self.machine.recover_stale(attempt)
                if result is None:
                    continue
                if result.status == AttemptStatus.CANCELLED:
                    summary["cancelled"] += 1
                else:
                    summary["recovered"] += 1
            except IntegrityViolation:
                raise
            except Exception as e:
                summary["errors"] += 1
                logger.error("payment_recovery_failed", attempt_id=attempt.id, error=str(e))

        logger.info("payment_retry_poll_complete", **summary)
        return summary
