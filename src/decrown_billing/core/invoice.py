"""
Invoice Generation

Turns a frozen usage ledger into exactly one invoice. Amounts on an issued
invoice never change; later corrections are separate documents and only the
derived ``amount_due`` reflects them.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Union
import uuid
import structlog

from ..persistence.database import Database
from ..persistence.models import (
    AdjustmentKind,
    AttemptStatus,
    Invoice,
    InvoiceCorrection,
    InvoiceStatus,
    LedgerAdjustment,
    LedgerStatus,
    LineItem,
    UsageLedger,
    money,
    new_id,
    utcnow,
)
from ..persistence.repository import (
    InvoiceRepository,
    LedgerRepository,
    PaymentAttemptRepository,
)
from .errors import IntegrityViolation, InvoiceNotPayable, LedgerNotFrozen, NotFound

logger = structlog.get_logger()

TaxRateFn = Callable[[UsageLedger], Decimal]

# Presentation of the priced usage components, in line-item order by code.
COMPONENT_LINES = {
    "base": ("Rides", lambda ledger: Decimal(ledger.ride_count)),
    "distance": ("Distance (km)", lambda ledger: ledger.total_distance_km),
    "time": ("Ride time (minutes)", lambda ledger: Decimal(ledger.total_duration_minutes)),
}


def flat_tax_rate(rate: Union[str, Decimal, float]) -> TaxRateFn:
    """Tax function applying one rate to every ledger."""
    value = Decimal(str(rate))

    def tax_rate(ledger: UsageLedger) -> Decimal:
        return value

    return tax_rate


def generate_invoice_number(month: str) -> str:
    return f"INV-{month.replace('-', '')}-{uuid.uuid4().hex[:12].upper()}"


def build_line_items(ledger: UsageLedger, adjustments: List[LedgerAdjustment]) -> List[LineItem]:
    """Deterministic line items: components by name, then adjustments by applied_at."""
    items = []
    for name in sorted(ledger.cost_components):
        amount = money(ledger.cost_components[name])
        description, quantity_of = COMPONENT_LINES.get(name, (name, lambda _: Decimal("1")))
        quantity = quantity_of(ledger)
        unit_price = money(amount / quantity) if quantity else Decimal("0.00")
        items.append(LineItem(
            code=name,
            description=description,
            quantity=quantity,
            unit_price=unit_price,
            amount=amount,
        ))

    for adjustment in sorted(adjustments, key=lambda a: (a.applied_at, a.id)):
        signed = money(adjustment.signed_amount)
        items.append(LineItem(
            code=f"adjustment:{adjustment.kind.value}",
            description=adjustment.reason,
            quantity=Decimal("1"),
            unit_price=signed,
            amount=signed,
        ))
    return items


class InvoiceGenerator:
    """
    Generates invoices from frozen ledgers.

    Generation is idempotent per ledger: a second call returns the invoice
    already generated.
    """

    def __init__(
        self,
        db: Database,
        tax_rate: Optional[TaxRateFn] = None,
        payment_terms_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.tax_rate = tax_rate or flat_tax_rate("0.10")
        self.payment_terms_days = payment_terms_days
        self.clock = clock
        self.ledgers = LedgerRepository(db)
        self.invoices = InvoiceRepository(db)

    def generate(self, ledger_id: str) -> Invoice:
        with self.db.transaction():
            ledger = self.ledgers.get(ledger_id, for_update=True)
            if ledger is None:
                raise NotFound(f"ledger {ledger_id} not found")

            existing = self.invoices.get_by_ledger(ledger_id)
            if existing is not None:
                if ledger.status != LedgerStatus.INVOICED:
                    raise IntegrityViolation(
                        f"ledger {ledger_id} has invoice {existing.id} but status {ledger.status.value}"
                    )
                return existing
            if ledger.status == LedgerStatus.INVOICED:
                raise IntegrityViolation(f"ledger {ledger_id} is invoiced but has no invoice")
            if ledger.status != LedgerStatus.FROZEN:
                raise LedgerNotFrozen(f"ledger {ledger_id} is {ledger.status.value}")

            items = build_line_items(ledger, ledger.adjustments)
            subtotal = money(sum((i.amount for i in items), Decimal("0")))
            rate = Decimal(str(self.tax_rate(ledger)))
            tax = money(max(subtotal, Decimal("0")) * rate)
            now = self.clock()

            invoice = self.invoices.create(Invoice(
                id=new_id("INVC"),
                invoice_number=generate_invoice_number(ledger.month),
                account_id=ledger.account_id,
                ledger_id=ledger.id,
                period=ledger.month,
                line_items=tuple(items),
                subtotal=subtotal,
                tax=tax,
                total=money(subtotal + tax),
                currency=ledger.currency,
                due_date=(now + timedelta(days=self.payment_terms_days)).date(),
                status=InvoiceStatus.PENDING,
                created_at=now,
                updated_at=now,
            ))
            if not self.ledgers.mark_invoiced(ledger.id, now):
                raise IntegrityViolation(f"ledger {ledger_id} left frozen state during generation")

        logger.info(
            "invoice_generated",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            account_id=invoice.account_id,
            period=invoice.period,
            total=str(invoice.total),
        )
        return invoice


class InvoiceService:
    """Lifecycle operations on issued invoices."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.invoices = InvoiceRepository(db)
        self.attempts = PaymentAttemptRepository(db)

    def get(self, invoice_id: str) -> Invoice:
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            raise NotFound(f"invoice {invoice_id} not found")
        return invoice

    def amount_due(self, invoice_id: str) -> Decimal:
        return self.invoices.amount_due(self.get(invoice_id))

    def void(self, invoice_id: str, reason: str = "invoice voided") -> Invoice:
        """
        Cancel an unpaid invoice and its pending attempts.

        Attempts already processing finish on their own and observe the
        cancellation when their result is recorded.
        """
        with self.db.transaction():
            invoice = self.invoices.get(invoice_id, for_update=True)
            if invoice is None:
                raise NotFound(f"invoice {invoice_id} not found")
            if invoice.status == InvoiceStatus.CANCELLED:
                return invoice
            if invoice.status == InvoiceStatus.PAID:
                raise InvoiceNotPayable(f"invoice {invoice_id} is paid and cannot be voided")

            now = self.clock()
            self.invoices.transition(
                invoice_id,
                InvoiceStatus.CANCELLED,
                now,
                (InvoiceStatus.DRAFT, InvoiceStatus.PENDING, InvoiceStatus.OVERDUE),
            )
            cancelled = self.attempts.cancel_for_invoice(
                invoice_id, now, reason, statuses=(AttemptStatus.PENDING,)
            )
        logger.info("invoice_voided", invoice_id=invoice_id, cancelled_attempts=cancelled, reason=reason)
        return self.get(invoice_id)

    def issue_correction(
        self,
        invoice_id: str,
        kind: AdjustmentKind,
        amount: Decimal,
        reason: str,
        actor: str,
    ) -> InvoiceCorrection:
        amount = money(amount)
        if amount <= 0:
            raise ValueError("correction amount must be positive; use kind to set direction")
        with self.db.transaction():
            invoice = self.invoices.get(invoice_id, for_update=True)
            if invoice is None:
                raise NotFound(f"invoice {invoice_id} not found")
            correction = self.invoices.add_correction(InvoiceCorrection(
                id=new_id("COR"),
                invoice_id=invoice_id,
                kind=kind,
                amount=amount,
                reason=reason,
                actor=actor,
                created_at=self.clock(),
            ))
        logger.info(
            "invoice_correction_issued",
            invoice_id=invoice_id,
            kind=kind.value,
            amount=str(amount),
            actor=actor,
        )
        return correction

    def mark_overdue_past_due(self) -> Dict[str, int]:
        """Move pending invoices whose due date has passed to overdue."""
        now = self.clock()
        marked = 0
        for invoice in self.invoices.list_past_due(now.date().isoformat()):
            with self.db.transaction():
                if self.invoices.transition(
                    invoice.id, InvoiceStatus.OVERDUE, now, (InvoiceStatus.PENDING,)
                ):
                    marked += 1
        if marked:
            logger.info("invoices_marked_overdue", count=marked)
        return {"marked_overdue": marked}
