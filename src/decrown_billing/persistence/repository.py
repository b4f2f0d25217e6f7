"""
Repository Layer for the Billing Core

Provides CRUD operations for all persisted entities. State transitions are
written as conditional updates (``... WHERE status = ?``) and report whether
they won, so callers can detect a lost race instead of overwriting it.
"""

from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime
from decimal import Decimal
import json
import structlog

from .database import Database, get_database
from .models import (
    AttemptStatus,
    AuditCheckpoint,
    DunningNotice,
    Invoice,
    InvoiceCorrection,
    InvoiceStatus,
    LedgerAdjustment,
    LedgerStatus,
    NoticeStatus,
    PaymentAttempt,
    SecurityLogEntry,
    UsageLedger,
    WebhookDeduplicationRecord,
    WebhookEvent,
    WebhookRetry,
    money,
    to_iso,
)

logger = structlog.get_logger()


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class LedgerRepository:
    """Repository for usage ledgers and their adjustments."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def _load(self, results: List[Dict[str, Any]]) -> Optional[UsageLedger]:
        if not results:
            return None
        ledger = UsageLedger.from_row(results[0])
        ledger.adjustments = self.adjustments(ledger.id)
        return ledger

    def get(self, ledger_id: str, for_update: bool = False) -> Optional[UsageLedger]:
        """Get a ledger by ID, optionally locking it for the current transaction."""
        if for_update:
            self.db.lock_row("usage_ledgers", "id", ledger_id)
        return self._load(self.db.execute(
            "SELECT * FROM usage_ledgers WHERE id = ?",
            (ledger_id,)
        ))

    def get_by_period(self, account_id: str, month: str) -> Optional[UsageLedger]:
        return self._load(self.db.execute(
            "SELECT * FROM usage_ledgers WHERE account_id = ? AND month = ?",
            (account_id, month)
        ))

    def insert_if_absent(self, ledger: UsageLedger) -> bool:
        """Create the (account, month) ledger unless one already exists."""
        inserted = self.db.execute_write(
            """INSERT INTO usage_ledgers
               (id, account_id, month, currency, status, ride_count, total_distance_km,
                total_duration_minutes, cost_components, final_amount, frozen_at,
                invoiced_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (account_id, month) DO NOTHING""",
            ledger.to_db_tuple()
        )
        return inserted == 1

    def freeze(self, ledger: UsageLedger) -> bool:
        """Write final totals and move open -> frozen. False if no longer open."""
        updated = self.db.execute_write(
            """UPDATE usage_ledgers
               SET status = ?, ride_count = ?, total_distance_km = ?, total_duration_minutes = ?,
                   cost_components = ?, final_amount = ?, frozen_at = ?, updated_at = ?
               WHERE id = ? AND status = ?""",
            (
                LedgerStatus.FROZEN.value,
                ledger.ride_count,
                str(ledger.total_distance_km),
                ledger.total_duration_minutes,
                json.dumps({k: str(v) for k, v in ledger.cost_components.items()}, sort_keys=True),
                str(ledger.final_amount),
                to_iso(ledger.frozen_at),
                to_iso(ledger.updated_at),
                ledger.id,
                LedgerStatus.OPEN.value,
            )
        )
        return updated == 1

    def update_final_amount(self, ledger_id: str, final_amount: str, now: datetime) -> None:
        self.db.execute_write(
            "UPDATE usage_ledgers SET final_amount = ?, updated_at = ? WHERE id = ?",
            (final_amount, to_iso(now), ledger_id)
        )

    def mark_invoiced(self, ledger_id: str, now: datetime) -> bool:
        updated = self.db.execute_write(
            """UPDATE usage_ledgers SET status = ?, invoiced_at = ?, updated_at = ?
               WHERE id = ? AND status = ?""",
            (LedgerStatus.INVOICED.value, to_iso(now), to_iso(now), ledger_id, LedgerStatus.FROZEN.value)
        )
        return updated == 1

    def add_adjustment(self, adjustment: LedgerAdjustment) -> LedgerAdjustment:
        self.db.execute(
            """INSERT INTO ledger_adjustments
               (id, ledger_id, kind, amount, reason, actor, applied_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            adjustment.to_db_tuple()
        )
        logger.info(
            "ledger_adjustment_added",
            ledger_id=adjustment.ledger_id,
            kind=adjustment.kind.value,
            amount=str(adjustment.amount),
            actor=adjustment.actor,
        )
        return adjustment

    def adjustments(self, ledger_id: str) -> List[LedgerAdjustment]:
        results = self.db.execute(
            "SELECT * FROM ledger_adjustments WHERE ledger_id = ? ORDER BY applied_at, id",
            (ledger_id,)
        )
        return [LedgerAdjustment.from_row(r) for r in results]


class InvoiceRepository:
    """Repository for invoices and post-issue correction documents."""

    # Timestamp column stamped when entering a status
    _STATUS_COLUMNS = {
        InvoiceStatus.PAID: "paid_at",
        InvoiceStatus.OVERDUE: "overdue_at",
        InvoiceStatus.CANCELLED: "cancelled_at",
    }

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, invoice: Invoice) -> Invoice:
        self.db.execute(
            """INSERT INTO invoices
               (id, invoice_number, account_id, ledger_id, period, line_items, subtotal,
                tax, total, currency, due_date, status, paid_at, overdue_at, cancelled_at,
                collections_handoff_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            invoice.to_db_tuple()
        )
        return invoice

    def get(self, invoice_id: str, for_update: bool = False) -> Optional[Invoice]:
        if for_update:
            self.db.lock_row("invoices", "id", invoice_id)
        results = self.db.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,))
        return Invoice.from_row(results[0]) if results else None

    def get_by_ledger(self, ledger_id: str) -> Optional[Invoice]:
        results = self.db.execute("SELECT * FROM invoices WHERE ledger_id = ?", (ledger_id,))
        return Invoice.from_row(results[0]) if results else None

    def list_by_account(self, account_id: str, limit: int = 100) -> List[Invoice]:
        results = self.db.execute(
            "SELECT * FROM invoices WHERE account_id = ? ORDER BY period DESC LIMIT ?",
            (account_id, limit)
        )
        return [Invoice.from_row(r) for r in results]

    def list_awaiting_dunning(self, limit: int = 500) -> List[Invoice]:
        """Overdue invoices not yet handed off to collections."""
        results = self.db.execute(
            """SELECT * FROM invoices
               WHERE status = ? AND collections_handoff_at IS NULL
               ORDER BY due_date, id LIMIT ?""",
            (InvoiceStatus.OVERDUE.value, limit)
        )
        return [Invoice.from_row(r) for r in results]

    def list_past_due(self, as_of: str, limit: int = 500) -> List[Invoice]:
        results = self.db.execute(
            "SELECT * FROM invoices WHERE status = ? AND due_date < ? ORDER BY due_date LIMIT ?",
            (InvoiceStatus.PENDING.value, as_of, limit)
        )
        return [Invoice.from_row(r) for r in results]

    def transition(
        self,
        invoice_id: str,
        to_status: InvoiceStatus,
        now: datetime,
        from_statuses: Sequence[InvoiceStatus],
    ) -> bool:
        """Conditionally move an invoice between statuses."""
        expected = [s.value for s in from_statuses]
        column = self._STATUS_COLUMNS.get(to_status)
        stamp = f", {column} = ?" if column else ""
        params: List[Any] = [to_status.value, to_iso(now)]
        if column:
            params.append(to_iso(now))
        params.append(invoice_id)
        params.extend(expected)
        updated = self.db.execute_write(
            f"""UPDATE invoices SET status = ?, updated_at = ?{stamp}
                WHERE id = ? AND status IN ({_placeholders(expected)})""",
            tuple(params)
        )
        if updated:
            logger.info("invoice_status_updated", invoice_id=invoice_id, status=to_status.value)
        return updated == 1

    def mark_collections_handoff(self, invoice_id: str, now: datetime) -> bool:
        updated = self.db.execute_write(
            """UPDATE invoices SET collections_handoff_at = ?, updated_at = ?
               WHERE id = ? AND collections_handoff_at IS NULL""",
            (to_iso(now), to_iso(now), invoice_id)
        )
        return updated == 1

    def add_correction(self, correction: InvoiceCorrection) -> InvoiceCorrection:
        self.db.execute(
            """INSERT INTO invoice_corrections
               (id, invoice_id, kind, amount, reason, actor, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            correction.to_db_tuple()
        )
        return correction

    def corrections(self, invoice_id: str) -> List[InvoiceCorrection]:
        results = self.db.execute(
            "SELECT * FROM invoice_corrections WHERE invoice_id = ? ORDER BY created_at, id",
            (invoice_id,)
        )
        return [InvoiceCorrection.from_row(r) for r in results]

    def amount_due(self, invoice: Invoice) -> Decimal:
        """Invoice total plus net corrections."""
        return money(invoice.total + sum(
            (c.signed_amount for c in self.corrections(invoice.id)), Decimal("0")
        ))


class PaymentAttemptRepository:
    """Repository for payment attempts."""

    _OPEN = (AttemptStatus.PENDING.value, AttemptStatus.PROCESSING.value)

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, attempt: PaymentAttempt) -> PaymentAttempt:
        self.db.execute(
            """INSERT INTO payment_attempts
               (id, invoice_id, amount, currency, processor, idempotency_key, status,
                retry_count, next_retry_at, transaction_id, failure_reason, provider_response,
                claimed_by, claimed_at, created_at, updated_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            attempt.to_db_tuple()
        )
        return attempt

    def _one(self, query: str, params: tuple) -> Optional[PaymentAttempt]:
        results = self.db.execute(query, params)
        return PaymentAttempt.from_row(results[0]) if results else None

    def get(self, attempt_id: str) -> Optional[PaymentAttempt]:
        return self._one("SELECT * FROM payment_attempts WHERE id = ?", (attempt_id,))

    def get_by_idempotency_key(self, key: str) -> Optional[PaymentAttempt]:
        return self._one("SELECT * FROM payment_attempts WHERE idempotency_key = ?", (key,))

    def get_by_transaction_id(self, transaction_id: str) -> Optional[PaymentAttempt]:
        return self._one(
            "SELECT * FROM payment_attempts WHERE transaction_id = ? ORDER BY created_at DESC LIMIT 1",
            (transaction_id,)
        )

    def list_for_invoice(self, invoice_id: str) -> List[PaymentAttempt]:
        results = self.db.execute(
            "SELECT * FROM payment_attempts WHERE invoice_id = ? ORDER BY created_at, retry_count",
            (invoice_id,)
        )
        return [PaymentAttempt.from_row(r) for r in results]

    def open_for(self, invoice_id: str) -> Optional[PaymentAttempt]:
        return self._one(
            "SELECT * FROM payment_attempts WHERE invoice_id = ? AND status IN (?, ?)",
            (invoice_id, *self._OPEN)
        )

    def succeeded_for(self, invoice_id: str) -> Optional[PaymentAttempt]:
        return self._one(
            "SELECT * FROM payment_attempts WHERE invoice_id = ? AND status = ?",
            (invoice_id, AttemptStatus.SUCCEEDED.value)
        )

    def claim(self, attempt_id: str, worker: str, now: datetime) -> bool:
        """pending -> processing, owned by ``worker``."""
        updated = self.db.execute_write(
            """UPDATE payment_attempts
               SET status = ?, claimed_by = ?, claimed_at = ?, updated_at = ?
               WHERE id = ? AND status = ?""",
            (AttemptStatus.PROCESSING.value, worker, to_iso(now), to_iso(now),
             attempt_id, AttemptStatus.PENDING.value)
        )
        return updated == 1

    def reclaim_stale(
        self,
        attempt_id: str,
        worker: str,
        now: datetime,
        previous_claimed_at: Optional[datetime],
    ) -> bool:
        """
        Take over a processing attempt whose lease expired (compare-and-set).

        Attempts the processor already acknowledged are left to its webhook.
        """
        updated = self.db.execute_write(
            """UPDATE payment_attempts
               SET claimed_by = ?, claimed_at = ?, updated_at = ?
               WHERE id = ? AND status = ? AND claimed_at = ? AND transaction_id IS NULL""",
            (worker, to_iso(now), to_iso(now), attempt_id,
             AttemptStatus.PROCESSING.value, to_iso(previous_claimed_at))
        )
        return updated == 1

    def finish(
        self,
        attempt_id: str,
        status: AttemptStatus,
        now: datetime,
        transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        provider_response: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
    ) -> None:
        """Move an attempt to a terminal status, keeping earlier details when not supplied."""
        self.db.execute_write(
            """UPDATE payment_attempts
               SET status = ?, transaction_id = COALESCE(?, transaction_id),
                   failure_reason = ?, provider_response = COALESCE(?, provider_response),
                   next_retry_at = ?, completed_at = ?, updated_at = ?
               WHERE id = ?""",
            (status.value, transaction_id, failure_reason, provider_response,
             to_iso(next_retry_at), to_iso(now), to_iso(now), attempt_id)
        )

    def record_processing(
        self,
        attempt_id: str,
        now: datetime,
        transaction_id: Optional[str],
        provider_response: Optional[str],
    ) -> None:
        self.db.execute_write(
            """UPDATE payment_attempts
               SET transaction_id = COALESCE(?, transaction_id),
                   provider_response = COALESCE(?, provider_response), updated_at = ?
               WHERE id = ?""",
            (transaction_id, provider_response, to_iso(now), attempt_id)
        )

    def cancel_for_invoice(
        self,
        invoice_id: str,
        now: datetime,
        reason: str,
        statuses: Sequence[AttemptStatus] = (AttemptStatus.PENDING, AttemptStatus.PROCESSING),
        except_id: Optional[str] = None,
    ) -> int:
        """Cancel the invoice's attempts in ``statuses``, except ``except_id``."""
        expected = [s.value for s in statuses]
        return self.db.execute_write(
            f"""UPDATE payment_attempts
                SET status = ?, failure_reason = ?, completed_at = ?, updated_at = ?
                WHERE invoice_id = ? AND status IN ({_placeholders(expected)}) AND id != ?""",
            (AttemptStatus.CANCELLED.value, reason, to_iso(now), to_iso(now),
             invoice_id, *expected, except_id or "")
        )

    def due(self, now: datetime, limit: int = 100) -> List[PaymentAttempt]:
        """Pending attempts whose retry time has arrived."""
        results = self.db.execute(
            """SELECT * FROM payment_attempts
               WHERE status = ? AND (next_retry_at IS NULL OR next_retry_at <= ?)
               ORDER BY next_retry_at, created_at LIMIT ?""",
            (AttemptStatus.PENDING.value, to_iso(now), limit)
        )
        return [PaymentAttempt.from_row(r) for r in results]

    def stale_processing(self, claimed_before: datetime, limit: int = 100) -> List[PaymentAttempt]:
        """Processing attempts past their lease that never reached the processor."""
        results = self.db.execute(
            """SELECT * FROM payment_attempts
               WHERE status = ? AND claimed_at < ? AND transaction_id IS NULL
               ORDER BY claimed_at LIMIT ?""",
            (AttemptStatus.PROCESSING.value, to_iso(claimed_before), limit)
        )
        return [PaymentAttempt.from_row(r) for r in results]


class WebhookEventRepository:
    """Repository for stored inbound webhook events."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, event: WebhookEvent) -> WebhookEvent:
        self.db.execute(
            """INSERT INTO webhook_events
               (id, provider, event_id, event_type, signature, payload, occurred_at,
                processed, processed_at, outcome, processing_error, claimed_by,
                claimed_at, received_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            event.to_db_tuple()
        )
        return event

    def get(self, webhook_id: str, for_update: bool = False) -> Optional[WebhookEvent]:
        if for_update:
            self.db.lock_row("webhook_events", "id", webhook_id)
        results = self.db.execute("SELECT * FROM webhook_events WHERE id = ?", (webhook_id,))
        return WebhookEvent.from_row(results[0]) if results else None

    def get_by_event_id(self, provider: str, event_id: str) -> Optional[WebhookEvent]:
        results = self.db.execute(
            "SELECT * FROM webhook_events WHERE provider = ? AND event_id = ?",
            (provider, event_id)
        )
        return WebhookEvent.from_row(results[0]) if results else None

    def take_over(
        self,
        webhook_id: str,
        worker: str,
        now: datetime,
        previous_claimed_at: Optional[datetime],
    ) -> bool:
        """Claim an unprocessed event whose previous handler's lease expired."""
        updated = self.db.execute_write(
            """UPDATE webhook_events SET claimed_by = ?, claimed_at = ?
               WHERE id = ? AND processed = ? AND claimed_at = ?""",
            (worker, to_iso(now), webhook_id, False, to_iso(previous_claimed_at))
        )
        return updated == 1

    def mark_processed(self, webhook_id: str, outcome: str, now: datetime) -> bool:
        updated = self.db.execute_write(
            """UPDATE webhook_events
               SET processed = ?, processed_at = ?, outcome = ?, processing_error = NULL
               WHERE id = ? AND processed = ?""",
            (True, to_iso(now), outcome, webhook_id, False)
        )
        return updated == 1

    def record_error(self, webhook_id: str, error: str) -> None:
        self.db.execute_write(
            "UPDATE webhook_events SET processing_error = ? WHERE id = ?",
            (error[:1000], webhook_id)
        )

    def delete_processed_before(self, cutoff: datetime) -> int:
        """Drop processed events that no dedup record or redelivery still references."""
        return self.db.execute_write(
            """DELETE FROM webhook_events
               WHERE processed = ? AND received_at < ?
                 AND NOT EXISTS (SELECT 1 FROM webhook_retries r WHERE r.webhook_id = webhook_events.id)
                 AND NOT EXISTS (SELECT 1 FROM webhook_deduplication d
                                 WHERE d.provider = webhook_events.provider
                                   AND d.event_id = webhook_events.event_id)""",
            (True, to_iso(cutoff))
        )

    def stats(self, since: datetime, provider: Optional[str] = None) -> Dict[str, int]:
        query = """SELECT COUNT(*) AS total,
                          SUM(CASE WHEN processed = ? THEN 1 ELSE 0 END) AS processed,
                          SUM(CASE WHEN processed = ? AND processing_error IS NOT NULL
                              THEN 1 ELSE 0 END) AS failed
                   FROM webhook_events WHERE received_at >= ?"""
        params: List[Any] = [True, False, to_iso(since)]
        if provider:
            query += " AND provider = ?"
            params.append(provider)
        row = self.db.execute(query, tuple(params))[0]
        return {
            "total": int(row.get("total") or 0),
            "processed": int(row.get("processed") or 0),
            "failed": int(row.get("failed") or 0),
        }


class DeduplicationRepository:
    """Repository for the (provider, event_id) deduplication window."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def insert_if_absent(self, record: WebhookDeduplicationRecord) -> bool:
        inserted = self.db.execute_write(
            """INSERT INTO webhook_deduplication
               (provider, event_id, event_type, first_seen, last_seen, occurrence_count, expires_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (provider, event_id) DO NOTHING""",
            record.to_db_tuple()
        )
        return inserted == 1

    def touch(self, provider: str, event_id: str, now: datetime) -> None:
        self.db.execute_write(
            """UPDATE webhook_deduplication
               SET last_seen = ?, occurrence_count = occurrence_count + 1
               WHERE provider = ? AND event_id = ?""",
            (to_iso(now), provider, event_id)
        )

    def get(self, provider: str, event_id: str) -> Optional[WebhookDeduplicationRecord]:
        results = self.db.execute(
            "SELECT * FROM webhook_deduplication WHERE provider = ? AND event_id = ?",
            (provider, event_id)
        )
        return WebhookDeduplicationRecord.from_row(results[0]) if results else None

    def delete_expired(self, now: datetime) -> int:
        return self.db.execute_write(
            "DELETE FROM webhook_deduplication WHERE expires_at < ?",
            (to_iso(now),)
        )

    def duplicate_count(self, since: datetime, provider: Optional[str] = None) -> int:
        query = """SELECT COALESCE(SUM(occurrence_count - 1), 0) AS duplicates
                   FROM webhook_deduplication WHERE last_seen >= ?"""
        params: List[Any] = [to_iso(since)]
        if provider:
            query += " AND provider = ?"
            params.append(provider)
        return int(self.db.execute(query, tuple(params))[0]["duplicates"] or 0)


class WebhookRetryRepository:
    """Repository for outbound redelivery obligations."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def insert_if_absent(self, retry: WebhookRetry) -> bool:
        inserted = self.db.execute_write(
            """INSERT INTO webhook_retries
               (id, webhook_id, consumer, max_attempts, current_attempt, next_retry_at,
                failure_reason, failed_at, claimed_by, claimed_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (webhook_id, consumer) DO NOTHING""",
            retry.to_db_tuple()
        )
        return inserted == 1

    def get(self, retry_id: str) -> Optional[WebhookRetry]:
        results = self.db.execute("SELECT * FROM webhook_retries WHERE id = ?", (retry_id,))
        return WebhookRetry.from_row(results[0]) if results else None

    def get_for(self, webhook_id: str, consumer: str) -> Optional[WebhookRetry]:
        results = self.db.execute(
            "SELECT * FROM webhook_retries WHERE webhook_id = ? AND consumer = ?",
            (webhook_id, consumer)
        )
        return WebhookRetry.from_row(results[0]) if results else None

    def list_for_webhook(self, webhook_id: str) -> List[WebhookRetry]:
        results = self.db.execute(
            "SELECT * FROM webhook_retries WHERE webhook_id = ? ORDER BY created_at",
            (webhook_id,)
        )
        return [WebhookRetry.from_row(r) for r in results]

    def due(self, now: datetime, stale_before: datetime, limit: int = 100) -> List[WebhookRetry]:
        results = self.db.execute(
            """SELECT * FROM webhook_retries
               WHERE failed_at IS NULL AND next_retry_at <= ?
                 AND (claimed_by IS NULL OR claimed_at < ?)
               ORDER BY next_retry_at LIMIT ?""",
            (to_iso(now), to_iso(stale_before), limit)
        )
        return [WebhookRetry.from_row(r) for r in results]

    def claim(self, retry_id: str, worker: str, now: datetime, stale_before: datetime) -> bool:
        updated = self.db.execute_write(
            """UPDATE webhook_retries SET claimed_by = ?, claimed_at = ?
               WHERE id = ? AND failed_at IS NULL
                 AND (claimed_by IS NULL OR claimed_at < ?)""",
            (worker, to_iso(now), retry_id, to_iso(stale_before))
        )
        return updated == 1

    def reschedule(
        self,
        retry_id: str,
        current_attempt: int,
        next_retry_at: datetime,
        reason: str,
    ) -> None:
        self.db.execute_write(
            """UPDATE webhook_retries
               SET current_attempt = ?, next_retry_at = ?, failure_reason = ?,
                   claimed_by = NULL, claimed_at = NULL
               WHERE id = ?""",
            (current_attempt, to_iso(next_retry_at), reason[:1000], retry_id)
        )

    def mark_failed(self, retry_id: str, current_attempt: int, reason: str, now: datetime) -> None:
        self.db.execute_write(
            """UPDATE webhook_retries
               SET current_attempt = ?, failure_reason = ?, failed_at = ?,
                   claimed_by = NULL, claimed_at = NULL
               WHERE id = ?""",
            (current_attempt, reason[:1000], to_iso(now), retry_id)
        )

    def delete(self, retry_id: str) -> None:
        self.db.execute_write("DELETE FROM webhook_retries WHERE id = ?", (retry_id,))

    def delete_failed_before(self, cutoff: datetime) -> int:
        return self.db.execute_write(
            "DELETE FROM webhook_retries WHERE failed_at IS NOT NULL AND failed_at < ?",
            (to_iso(cutoff),)
        )

    def counts(self) -> Dict[str, int]:
        row = self.db.execute(
            """SELECT SUM(CASE WHEN failed_at IS NULL THEN 1 ELSE 0 END) AS pending,
                      SUM(CASE WHEN failed_at IS NOT NULL THEN 1 ELSE 0 END) AS exhausted
               FROM webhook_retries"""
        )[0]
        return {
            "pending": int(row.get("pending") or 0),
            "exhausted": int(row.get("exhausted") or 0),
        }


class SecurityLogRepository:
    """Repository for the hash-chained webhook security log."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def head(self) -> Optional[SecurityLogEntry]:
        results = self.db.execute(
            "SELECT * FROM webhook_security_logs ORDER BY sequence DESC LIMIT 1"
        )
        return SecurityLogEntry.from_row(results[0]) if results else None

    def append(self, entry: SecurityLogEntry) -> SecurityLogEntry:
        self.db.execute(
            """INSERT INTO webhook_security_logs
               (sequence, provider, event_type, event_id, validation_result, error_message,
                source_ip, user_agent, logged_at, prev_hash, entry_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            entry.to_db_tuple()
        )
        return entry

    def page(self, after_sequence: int, limit: int = 1000) -> List[SecurityLogEntry]:
        results = self.db.execute(
            "SELECT * FROM webhook_security_logs WHERE sequence > ? ORDER BY sequence LIMIT ?",
            (after_sequence, limit)
        )
        return [SecurityLogEntry.from_row(r) for r in results]

    def recent(self, limit: int = 100, provider: Optional[str] = None) -> List[SecurityLogEntry]:
        query = "SELECT * FROM webhook_security_logs"
        params: List[Any] = []
        if provider:
            query += " WHERE provider = ?"
            params.append(provider)
        query += " ORDER BY sequence DESC LIMIT ?"
        params.append(limit)
        return [SecurityLogEntry.from_row(r) for r in self.db.execute(query, tuple(params))]

    def count_by_result(self, since: datetime, provider: Optional[str] = None) -> Dict[str, int]:
        query = """SELECT validation_result, COUNT(*) AS n FROM webhook_security_logs
                   WHERE logged_at >= ?"""
        params: List[Any] = [to_iso(since)]
        if provider:
            query += " AND provider = ?"
            params.append(provider)
        query += " GROUP BY validation_result"
        return {r["validation_result"]: int(r["n"]) for r in self.db.execute(query, tuple(params))}

    def add_checkpoint(self, checkpoint: AuditCheckpoint) -> AuditCheckpoint:
        self.db.execute(
            """INSERT INTO audit_checkpoints (sequence, head_hash, signature, key_id, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (checkpoint.sequence, checkpoint.head_hash, checkpoint.signature,
             checkpoint.key_id, to_iso(checkpoint.created_at))
        )
        return checkpoint

    def latest_checkpoint(self) -> Optional[AuditCheckpoint]:
        results = self.db.execute("SELECT * FROM audit_checkpoints ORDER BY sequence DESC LIMIT 1")
        return AuditCheckpoint.from_row(results[0]) if results else None

    def checkpoints(self) -> List[AuditCheckpoint]:
        results = self.db.execute("SELECT * FROM audit_checkpoints ORDER BY sequence")
        return [AuditCheckpoint.from_row(r) for r in results]


class WebhookConfigRepository:
    """Repository for per-provider webhook security settings overrides."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def list(self) -> List[Dict[str, Any]]:
        return self.db.execute("SELECT * FROM webhook_security_config ORDER BY provider")

    def upsert(self, values: Dict[str, Any], now: datetime) -> None:
        self.db.execute(
            """INSERT INTO webhook_security_config
               (provider, signature_header, timestamp_header, timestamp_tolerance,
                max_retry_attempts, retry_delay_ms, backoff_multiplier, max_retry_delay_ms,
                enabled, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (provider) DO UPDATE SET
                 signature_header = excluded.signature_header,
                 timestamp_header = excluded.timestamp_header,
                 timestamp_tolerance = excluded.timestamp_tolerance,
                 max_retry_attempts = excluded.max_retry_attempts,
                 retry_delay_ms = excluded.retry_delay_ms,
                 backoff_multiplier = excluded.backoff_multiplier,
                 max_retry_delay_ms = excluded.max_retry_delay_ms,
                 enabled = excluded.enabled,
                 updated_at = excluded.updated_at""",
            (
                values["provider"],
                values["signature_header"],
                values["timestamp_header"],
                values["timestamp_tolerance"],
                values["max_retry_attempts"],
                values["retry_delay_ms"],
                values["backoff_multiplier"],
                values["max_retry_delay_ms"],
                bool(values.get("enabled", True)),
                to_iso(now),
            )
        )
        logger.info("webhook_config_saved", provider=values["provider"])


class DunningNoticeRepository:
    """Repository for dunning notices."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def insert_if_absent(self, notice: DunningNotice) -> bool:
        inserted = self.db.execute_write(
            """INSERT INTO dunning_notices
               (id, invoice_id, account_id, notice_level, due_date, amount, message,
                status, delivery_method, created_at, delivered_at, claimed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (invoice_id, notice_level) DO NOTHING""",
            notice.to_db_tuple()
        )
        return inserted == 1

    def latest_for(self, invoice_id: str) -> Optional[DunningNotice]:
        results = self.db.execute(
            "SELECT * FROM dunning_notices WHERE invoice_id = ? ORDER BY notice_level DESC LIMIT 1",
            (invoice_id,)
        )
        return DunningNotice.from_row(results[0]) if results else None

    def list_for_invoice(self, invoice_id: str) -> List[DunningNotice]:
        results = self.db.execute(
            "SELECT * FROM dunning_notices WHERE invoice_id = ? ORDER BY notice_level",
            (invoice_id,)
        )
        return [DunningNotice.from_row(r) for r in results]

    def set_status(self, notice_id: str, status: NoticeStatus, now: Optional[datetime] = None) -> None:
        self.db.execute_write(
            "UPDATE dunning_notices SET status = ?, delivered_at = COALESCE(?, delivered_at) WHERE id = ?",
            (status.value, to_iso(now), notice_id)
        )

    def claim_for_delivery(self, notice_id: str, now: datetime, stale_before: datetime) -> bool:
        """scheduled -> sending, or take over a send whose claim is older than ``stale_before``."""
        updated = self.db.execute_write(
            """UPDATE dunning_notices SET status = ?, claimed_at = ?
               WHERE id = ? AND (status = ? OR (status = ? AND claimed_at < ?))""",
            (NoticeStatus.SENDING.value, to_iso(now), notice_id,
             NoticeStatus.SCHEDULED.value, NoticeStatus.SENDING.value, to_iso(stale_before))
        )
        return updated == 1

    def release(self, notice_id: str) -> None:
        """Return a notice whose send failed to ``scheduled``."""
        self.db.execute_write(
            "UPDATE dunning_notices SET status = ?, claimed_at = NULL WHERE id = ? AND status = ?",
            (NoticeStatus.SCHEDULED.value, notice_id, NoticeStatus.SENDING.value)
        )
