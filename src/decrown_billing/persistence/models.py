"""
Data Models for the Billing Persistence Layer

Records mirror the billing tables one-to-one. Money is carried as Decimal
quantized to cents, timestamps as timezone-aware UTC datetimes; both are
converted at the row boundary so SQLite (text) and PostgreSQL (NUMERIC,
TIMESTAMPTZ, JSONB) rows load the same way.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import json
import uuid


CENTS = Decimal("0.01")


def money(value: Any) -> Decimal:
    """Quantize a numeric value to cents, rounding half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:20].upper()}"


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def from_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _json(value: Any) -> Any:
    if isinstance(value, (str, bytes)) and value:
        return json.loads(value)
    return value


def month_bounds(month: str) -> Tuple[datetime, datetime]:
    """Return [start, end) of a YYYY-MM billing month in UTC."""
    try:
        year, mon = (int(part) for part in month.split("-"))
        start = datetime(year, mon, 1, tzinfo=timezone.utc)
    except ValueError as e:
        raise ValueError(f"Invalid billing month {month!r}, expected YYYY-MM") from e
    if mon == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, mon + 1, 1, tzinfo=timezone.utc)
    return start, end


# ============================================================================
# Enums
# ============================================================================

class LedgerStatus(Enum):
    OPEN = "open"
    FROZEN = "frozen"
    INVOICED = "invoiced"


class AdjustmentKind(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class InvoiceStatus(Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class AttemptStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ValidationResult(Enum):
    """Outcome recorded in the webhook security log."""
    VALID = "valid"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_TIMESTAMP = "invalid_timestamp"
    DUPLICATE = "duplicate"
    ERROR = "error"


class NoticeStatus(Enum):
    SCHEDULED = "scheduled"
    SENDING = "sending"
    DELIVERED = "delivered"
    SKIPPED = "skipped"


# ============================================================================
# Usage input (supplied by the trip subsystem)
# ============================================================================

@dataclass
class StopRecord:
    """A completed (or not yet completed) trip stop for one rider account."""
    account_id: str
    trip_id: str
    stop_id: str
    status: str  # pending, arrived, picked_up, no_show
    completed_at: Optional[datetime] = None
    distance_km: Optional[Decimal] = None
    duration_minutes: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StopRecord":
        distance = data.get("distance_km")
        return cls(
            account_id=data["account_id"],
            trip_id=data["trip_id"],
            stop_id=data["stop_id"],
            status=data.get("status", "picked_up"),
            completed_at=from_iso(data.get("completed_at")),
            distance_km=Decimal(str(distance)) if distance is not None else None,
            duration_minutes=data.get("duration_minutes"),
        )


# ============================================================================
# Ledger
# ============================================================================

@dataclass
class LedgerAdjustment:
    id: str
    ledger_id: str
    kind: AdjustmentKind
    amount: Decimal
    reason: str
    actor: str
    applied_at: datetime

    @property
    def signed_amount(self) -> Decimal:
        return -self.amount if self.kind == AdjustmentKind.CREDIT else self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ledger_id": self.ledger_id,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "reason": self.reason,
            "actor": self.actor,
            "applied_at": to_iso(self.applied_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.ledger_id,
            self.kind.value,
            str(self.amount),
            self.reason,
            self.actor,
            to_iso(self.applied_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LedgerAdjustment":
        return cls(
            id=row["id"],
            ledger_id=row["ledger_id"],
            kind=AdjustmentKind(row["kind"]),
            amount=money(row["amount"]),
            reason=row["reason"],
            actor=row["actor"],
            applied_at=from_iso(row["applied_at"]),
        )


@dataclass
class UsageLedger:
    """Monthly usage summary for one account; seeds exactly one invoice."""
    id: str
    account_id: str
    month: str
    currency: str
    status: LedgerStatus = LedgerStatus.OPEN
    ride_count: int = 0
    total_distance_km: Decimal = Decimal("0")
    total_duration_minutes: int = 0
    cost_components: Dict[str, Decimal] = field(default_factory=dict)
    final_amount: Decimal = Decimal("0.00")
    adjustments: List[LedgerAdjustment] = field(default_factory=list)
    frozen_at: Optional[datetime] = None
    invoiced_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def net_adjustments(self) -> Decimal:
        return money(sum((a.signed_amount for a in self.adjustments), Decimal("0")))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "month": self.month,
            "currency": self.currency,
            "status": self.status.value,
            "ride_count": self.ride_count,
            "total_distance_km": str(self.total_distance_km),
            "total_duration_minutes": self.total_duration_minutes,
            "cost_components": {k: str(v) for k, v in sorted(self.cost_components.items())},
            "final_amount": str(self.final_amount),
            "adjustments": [a.to_dict() for a in self.adjustments],
            "frozen_at": to_iso(self.frozen_at),
            "invoiced_at": to_iso(self.invoiced_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.account_id,
            self.month,
            self.currency,
            self.status.value,
            self.ride_count,
            str(self.total_distance_km),
            self.total_duration_minutes,
            json.dumps({k: str(v) for k, v in self.cost_components.items()}, sort_keys=True),
            str(self.final_amount),
            to_iso(self.frozen_at),
            to_iso(self.invoiced_at),
            to_iso(self.created_at),
            to_iso(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageLedger":
        components = _json(row.get("cost_components")) or {}
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            month=row["month"],
            currency=row["currency"],
            status=LedgerStatus(row["status"]),
            ride_count=row.get("ride_count") or 0,
            total_distance_km=Decimal(str(row.get("total_distance_km") or "0")),
            total_duration_minutes=row.get("total_duration_minutes") or 0,
            cost_components={k: money(v) for k, v in components.items()},
            final_amount=money(row.get("final_amount") or "0"),
            frozen_at=from_iso(row.get("frozen_at")),
            invoiced_at=from_iso(row.get("invoiced_at")),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


# ============================================================================
# Invoice
# ============================================================================

@dataclass(frozen=True)
class LineItem:
    code: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "amount": str(self.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItem":
        return cls(
            code=data["code"],
            description=data["description"],
            quantity=Decimal(str(data["quantity"])),
            unit_price=money(data["unit_price"]),
            amount=money(data["amount"]),
        )


@dataclass
class Invoice:
    id: str
    invoice_number: str
    account_id: str
    ledger_id: Optional[str]
    period: str
    line_items: Tuple[LineItem, ...]
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    currency: str
    due_date: date
    status: InvoiceStatus = InvoiceStatus.PENDING
    paid_at: Optional[datetime] = None
    overdue_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    collections_handoff_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "account_id": self.account_id,
            "ledger_id": self.ledger_id,
            "period": self.period,
            "line_items": [li.to_dict() for li in self.line_items],
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "total": str(self.total),
            "currency": self.currency,
            "due_date": self.due_date.isoformat(),
            "status": self.status.value,
            "paid_at": to_iso(self.paid_at),
            "overdue_at": to_iso(self.overdue_at),
            "cancelled_at": to_iso(self.cancelled_at),
            "collections_handoff_at": to_iso(self.collections_handoff_at),
            "created_at": to_iso(self.created_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.invoice_number,
            self.account_id,
            self.ledger_id,
            self.period,
            json.dumps([li.to_dict() for li in self.line_items]),
            str(self.subtotal),
            str(self.tax),
            str(self.total),
            self.currency,
            self.due_date.isoformat(),
            self.status.value,
            to_iso(self.paid_at),
            to_iso(self.overdue_at),
            to_iso(self.cancelled_at),
            to_iso(self.collections_handoff_at),
            to_iso(self.created_at),
            to_iso(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Invoice":
        items = _json(row.get("line_items")) or []
        return cls(
            id=row["id"],
            invoice_number=row["invoice_number"],
            account_id=row["account_id"],
            ledger_id=row.get("ledger_id"),
            period=row["period"],
            line_items=tuple(LineItem.from_dict(i) for i in items),
            subtotal=money(row["subtotal"]),
            tax=money(row["tax"]),
            total=money(row["total"]),
            currency=row["currency"],
            due_date=from_date(row["due_date"]),
            status=InvoiceStatus(row["status"]),
            paid_at=from_iso(row.get("paid_at")),
            overdue_at=from_iso(row.get("overdue_at")),
            cancelled_at=from_iso(row.get("cancelled_at")),
            collections_handoff_at=from_iso(row.get("collections_handoff_at")),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class InvoiceCorrection:
    """Adjustment document issued against an invoice after generation."""
    id: str
    invoice_id: str
    kind: AdjustmentKind
    amount: Decimal
    reason: str
    actor: str
    created_at: datetime = field(default_factory=utcnow)

    @property
    def signed_amount(self) -> Decimal:
        return -self.amount if self.kind == AdjustmentKind.CREDIT else self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "reason": self.reason,
            "actor": self.actor,
            "created_at": to_iso(self.created_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.invoice_id,
            self.kind.value,
            str(self.amount),
            self.reason,
            self.actor,
            to_iso(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "InvoiceCorrection":
        return cls(
            id=row["id"],
            invoice_id=row["invoice_id"],
            kind=AdjustmentKind(row["kind"]),
            amount=money(row["amount"]),
            reason=row["reason"],
            actor=row["actor"],
            created_at=from_iso(row["created_at"]),
        )


# ============================================================================
# Payment attempts
# ============================================================================

@dataclass
class PaymentAttempt:
    id: str
    invoice_id: str
    amount: Decimal
    currency: str
    processor: str
    idempotency_key: str
    status: AttemptStatus = AttemptStatus.PENDING
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    provider_response: Dict[str, Any] = field(default_factory=dict)
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "processor": self.processor,
            "idempotency_key": self.idempotency_key,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "next_retry_at": to_iso(self.next_retry_at),
            "transaction_id": self.transaction_id,
            "failure_reason": self.failure_reason,
            "created_at": to_iso(self.created_at),
            "completed_at": to_iso(self.completed_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.invoice_id,
            str(self.amount),
            self.currency,
            self.processor,
            self.idempotency_key,
            self.status.value,
            self.retry_count,
            to_iso(self.next_retry_at),
            self.transaction_id,
            self.failure_reason,
            json.dumps(self.provider_response or {}, default=str),
            self.claimed_by,
            to_iso(self.claimed_at),
            to_iso(self.created_at),
            to_iso(self.updated_at),
            to_iso(self.completed_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaymentAttempt":
        return cls(
            id=row["id"],
            invoice_id=row["invoice_id"],
            amount=money(row["amount"]),
            currency=row["currency"],
            processor=row["processor"],
            idempotency_key=row["idempotency_key"],
            status=AttemptStatus(row["status"]),
            retry_count=row.get("retry_count") or 0,
            next_retry_at=from_iso(row.get("next_retry_at")),
            transaction_id=row.get("transaction_id"),
            failure_reason=row.get("failure_reason"),
            provider_response=_json(row.get("provider_response")) or {},
            claimed_by=row.get("claimed_by"),
            claimed_at=from_iso(row.get("claimed_at")),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            completed_at=from_iso(row.get("completed_at")),
        )


# ============================================================================
# Webhooks
# ============================================================================

@dataclass
class WebhookEvent:
    """One inbound processor notification; payload is kept byte-for-byte."""
    id: str
    provider: str
    event_id: str
    event_type: str
    signature: str
    payload: str
    occurred_at: Optional[datetime] = None
    processed: bool = False
    processed_at: Optional[datetime] = None
    outcome: Optional[str] = None
    processing_error: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    received_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "occurred_at": to_iso(self.occurred_at),
            "processed": self.processed,
            "processed_at": to_iso(self.processed_at),
            "outcome": self.outcome,
            "processing_error": self.processing_error,
            "received_at": to_iso(self.received_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.provider,
            self.event_id,
            self.event_type,
            self.signature,
            self.payload,
            to_iso(self.occurred_at),
            self.processed,
            to_iso(self.processed_at),
            self.outcome,
            self.processing_error,
            self.claimed_by,
            to_iso(self.claimed_at),
            to_iso(self.received_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WebhookEvent":
        return cls(
            id=row["id"],
            provider=row["provider"],
            event_id=row["event_id"],
            event_type=row["event_type"],
            signature=row["signature"],
            payload=row["payload"],
            occurred_at=from_iso(row.get("occurred_at")),
            processed=bool(row.get("processed")),
            processed_at=from_iso(row.get("processed_at")),
            outcome=row.get("outcome"),
            processing_error=row.get("processing_error"),
            claimed_by=row.get("claimed_by"),
            claimed_at=from_iso(row.get("claimed_at")),
            received_at=from_iso(row["received_at"]),
        )


@dataclass
class WebhookDeduplicationRecord:
    provider: str
    event_id: str
    event_type: str
    first_seen: datetime
    last_seen: datetime
    expires_at: datetime
    occurrence_count: int = 1

    def to_db_tuple(self) -> tuple:
        return (
            self.provider,
            self.event_id,
            self.event_type,
            to_iso(self.first_seen),
            to_iso(self.last_seen),
            self.occurrence_count,
            to_iso(self.expires_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WebhookDeduplicationRecord":
        return cls(
            provider=row["provider"],
            event_id=row["event_id"],
            event_type=row["event_type"],
            first_seen=from_iso(row["first_seen"]),
            last_seen=from_iso(row["last_seen"]),
            occurrence_count=row["occurrence_count"],
            expires_at=from_iso(row["expires_at"]),
        )


@dataclass
class WebhookRetry:
    """Outbound redelivery obligation of one stored event to one consumer."""
    id: str
    webhook_id: str
    consumer: str
    max_attempts: int
    next_retry_at: datetime
    current_attempt: int = 0
    failure_reason: Optional[str] = None
    failed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def exhausted(self) -> bool:
        return self.failed_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "consumer": self.consumer,
            "max_attempts": self.max_attempts,
            "current_attempt": self.current_attempt,
            "next_retry_at": to_iso(self.next_retry_at),
            "failure_reason": self.failure_reason,
            "failed_at": to_iso(self.failed_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.webhook_id,
            self.consumer,
            self.max_attempts,
            self.current_attempt,
            to_iso(self.next_retry_at),
            self.failure_reason,
            to_iso(self.failed_at),
            self.claimed_by,
            to_iso(self.claimed_at),
            to_iso(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WebhookRetry":
        return cls(
            id=row["id"],
            webhook_id=row["webhook_id"],
            consumer=row["consumer"],
            max_attempts=row["max_attempts"],
            current_attempt=row["current_attempt"],
            next_retry_at=from_iso(row["next_retry_at"]),
            failure_reason=row.get("failure_reason"),
            failed_at=from_iso(row.get("failed_at")),
            claimed_by=row.get("claimed_by"),
            claimed_at=from_iso(row.get("claimed_at")),
            created_at=from_iso(row["created_at"]),
        )


@dataclass
class SecurityLogEntry:
    """One link in the hash-chained webhook security log."""
    sequence: int
    provider: str
    event_type: str
    event_id: str
    validation_result: ValidationResult
    prev_hash: str
    logged_at: datetime
    error_message: Optional[str] = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    entry_hash: str = ""

    def canonical_content(self) -> str:
        return json.dumps({
            "sequence": self.sequence,
            "provider": self.provider,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "validation_result": self.validation_result.value,
            "error_message": self.error_message,
            "source_ip": self.source_ip,
            "user_agent": self.user_agent,
            "logged_at": to_iso(self.logged_at),
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(',', ':'))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "provider": self.provider,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "validation_result": self.validation_result.value,
            "error_message": self.error_message,
            "source_ip": self.source_ip,
            "user_agent": self.user_agent,
            "logged_at": to_iso(self.logged_at),
            "prev_hash": self.prev_hash,
            "entry_hash": self.entry_hash,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.sequence,
            self.provider,
            self.event_type,
            self.event_id,
            self.validation_result.value,
            self.error_message,
            self.source_ip,
            self.user_agent,
            to_iso(self.logged_at),
            self.prev_hash,
            self.entry_hash,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SecurityLogEntry":
        return cls(
            sequence=row["sequence"],
            provider=row["provider"],
            event_type=row["event_type"],
            event_id=row["event_id"],
            validation_result=ValidationResult(row["validation_result"]),
            error_message=row.get("error_message"),
            source_ip=row.get("source_ip"),
            user_agent=row.get("user_agent"),
            logged_at=from_iso(row["logged_at"]),
            prev_hash=row["prev_hash"],
            entry_hash=row["entry_hash"],
        )


@dataclass
class AuditCheckpoint:
    """Signed head of the security log at a given sequence."""
    sequence: int
    head_hash: str
    signature: str
    key_id: str
    created_at: datetime

    def signed_content(self) -> bytes:
        return f"{self.sequence}:{self.head_hash}".encode("utf-8")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "head_hash": self.head_hash,
            "signature": self.signature,
            "key_id": self.key_id,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AuditCheckpoint":
        return cls(
            sequence=row["sequence"],
            head_hash=row["head_hash"],
            signature=row["signature"],
            key_id=row["key_id"],
            created_at=from_iso(row["created_at"]),
        )


# ============================================================================
# Dunning
# ============================================================================

@dataclass
class DunningNotice:
    id: str
    invoice_id: str
    account_id: str
    notice_level: int
    due_date: date
    amount: Decimal
    message: str
    status: NoticeStatus = NoticeStatus.SCHEDULED
    delivery_method: str = "email"
    created_at: datetime = field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "account_id": self.account_id,
            "notice_level": self.notice_level,
            "due_date": self.due_date.isoformat(),
            "amount": str(self.amount),
            "message": self.message,
            "status": self.status.value,
            "delivery_method": self.delivery_method,
            "created_at": to_iso(self.created_at),
            "delivered_at": to_iso(self.delivered_at),
            "claimed_at": to_iso(self.claimed_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.invoice_id,
            self.account_id,
            self.notice_level,
            self.due_date.isoformat(),
            str(self.amount),
            self.message,
            self.status.value,
            self.delivery_method,
            to_iso(self.created_at),
            to_iso(self.delivered_at),
            to_iso(self.claimed_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DunningNotice":
        return cls(
            id=row["id"],
            invoice_id=row["invoice_id"],
            account_id=row["account_id"],
            notice_level=row["notice_level"],
            due_date=from_date(row["due_date"]),
            amount=money(row["amount"]),
            message=row["message"],
            status=NoticeStatus(row["status"]),
            delivery_method=row.get("delivery_method") or "email",
            created_at=from_iso(row["created_at"]),
            delivered_at=from_iso(row.get("delivered_at")),
            claimed_at=from_iso(row.get("claimed_at")),
        )
