"""
Tests for Invoice Generation and Invoice Lifecycle
"""

import re
from datetime import date
from decimal import Decimal

import pytest

from decrown_billing.core.errors import InvoiceNotPayable, LedgerNotFrozen, NotFound
from decrown_billing.core.invoice import InvoiceGenerator, build_line_items, flat_tax_rate
from decrown_billing.core.ledger import StaticUsageSource
from decrown_billing.persistence.models import (
    AdjustmentKind,
    AttemptStatus,
    InvoiceStatus,
    LedgerStatus,
)
from decrown_billing.persistence.repository import LedgerRepository

from conftest import make_stops


class TestGenerate:
    """Test InvoiceGenerator.generate."""

    def test_reference_invoice_totals(self, services, ledger):
        """2500.00 of usage at 10% tax totals 2750.00."""
        invoice = services.invoice_generator.generate(ledger.id)

        assert invoice.subtotal == Decimal("2500.00")
        assert invoice.tax == Decimal("250.00")
        assert invoice.total == Decimal("2750.00")
        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.currency == "PHP"
        assert invoice.period == "2024-11"

    def test_line_items_sum_to_subtotal(self, services, ledger):
        """Line items plus tax always equal the total."""
        invoice = services.invoice_generator.generate(ledger.id)

        assert sum(li.amount for li in invoice.line_items) + invoice.tax == invoice.total

    def test_line_items_are_deterministic(self, services, ledger):
        """Line items come out in a fixed order with unit prices per quantity."""
        invoice = services.invoice_generator.generate(ledger.id)

        assert [li.code for li in invoice.line_items] == ["base", "distance", "time"]
        base = invoice.line_items[0]
        assert base.quantity == Decimal("10")
        assert base.unit_price == Decimal("45.00")
        assert base.amount == Decimal("450.00")
        assert build_line_items(ledger, ledger.adjustments) == list(invoice.line_items)

    def test_adjustments_become_signed_line_items(self, services):
        """Credits reduce the subtotal as negative line items."""
        aggregator = services.aggregator(StaticUsageSource(make_stops("acct-A")))
        aggregator.add_adjustment("acct-A", "2024-11", AdjustmentKind.CREDIT, Decimal("100"), "goodwill", "ops-1")
        ledger = aggregator.close_month("acct-A", "2024-11")

        invoice = services.invoice_generator.generate(ledger.id)

        credit = invoice.line_items[-1]
        assert credit.code == "adjustment:credit"
        assert credit.amount == Decimal("-100.00")
        assert invoice.subtotal == Decimal("2400.00")
        assert invoice.tax == Decimal("240.00")

    def test_generate_is_idempotent(self, services, ledger):
        """A second call returns the same invoice."""
        first = services.invoice_generator.generate(ledger.id)
        second = services.invoice_generator.generate(ledger.id)

        assert second.id == first.id
        assert second.invoice_number == first.invoice_number
        assert len(services.invoices.invoices.list_by_account("acct-A")) == 1

    def test_generate_marks_ledger_invoiced(self, services, ledger):
        """The ledger moves to invoiced together with invoice creation."""
        services.invoice_generator.generate(ledger.id)

        assert LedgerRepository(services.db).get(ledger.id).status == LedgerStatus.INVOICED

    def test_invoice_number_format(self, services, ledger):
        """Numbers are human readable and carry the period."""
        invoice = services.invoice_generator.generate(ledger.id)

        assert re.fullmatch(r"INV-202411-[0-9A-F]{12}", invoice.invoice_number)

    def test_due_date_from_payment_terms(self, services, ledger):
        """Due date is the generation date plus payment terms."""
        invoice = services.invoice_generator.generate(ledger.id)

        assert invoice.due_date == date(2025, 1, 1)

    def test_open_ledger_rejected(self, services):
        """Only frozen ledgers can be invoiced."""
        aggregator = services.aggregator(StaticUsageSource())
        aggregator.add_adjustment("acct-A", "2024-11", AdjustmentKind.DEBIT, Decimal("5"), "fee", "ops-1")
        open_ledger = LedgerRepository(services.db).get_by_period("acct-A", "2024-11")

        with pytest.raises(LedgerNotFrozen):
            services.invoice_generator.generate(open_ledger.id)

    def test_unknown_ledger(self, services):
        with pytest.raises(NotFound):
            services.invoice_generator.generate("LED-MISSING")

    def test_injected_tax_function(self, services, ledger, clock):
        """The tax rate is a function of the ledger."""
        generator = InvoiceGenerator(
            services.db,
            tax_rate=lambda led: Decimal("0.12") if led.currency == "PHP" else Decimal("0"),
            clock=clock,
        )

        invoice = generator.generate(ledger.id)

        assert invoice.tax == Decimal("300.00")
        assert invoice.total == Decimal("2800.00")

    def test_stored_invoice_round_trips(self, services, invoice):
        """Persisted invoices load back with identical money and line items."""
        stored = services.invoices.get(invoice.id)

        assert stored.total == invoice.total
        assert stored.line_items == invoice.line_items


class TestInvoiceService:
    """Test void, corrections and overdue marking."""

    def test_void_cancels_pending_attempts(self, services, invoice):
        """Voiding cancels the invoice and its pending attempt."""
        attempt = services.payments.create_attempt(invoice.id)

        voided = services.invoices.void(invoice.id)

        assert voided.status == InvoiceStatus.CANCELLED
        assert voided.cancelled_at is not None
        assert services.payments.attempts.get(attempt.id).status == AttemptStatus.CANCELLED

    def test_void_paid_invoice_rejected(self, services, invoice):
        """Paid invoices cannot be voided."""
        attempt = services.payments.create_attempt(invoice.id)
        services.payments.submit(attempt.id)

        with pytest.raises(InvoiceNotPayable):
            services.invoices.void(invoice.id)

    def test_correction_changes_amount_due_not_total(self, services, invoice):
        """Corrections are separate documents; the invoice total never changes."""
        services.invoices.issue_correction(invoice.id, AdjustmentKind.CREDIT, Decimal("50"), "billing error", "ops-1")

        assert services.invoices.get(invoice.id).total == Decimal("2750.00")
        assert services.invoices.amount_due(invoice.id) == Decimal("2700.00")

    def test_mark_overdue_past_due(self, services, invoice, clock):
        """Pending invoices past their due date become overdue."""
        assert services.invoices.mark_overdue_past_due() == {"marked_overdue": 0}

        clock.advance(days=31)

        assert services.invoices.mark_overdue_past_due() == {"marked_overdue": 1}
        assert services.invoices.get(invoice.id).status == InvoiceStatus.OVERDUE


def test_flat_tax_rate_ignores_ledger(ledger):
    assert flat_tax_rate("0.10")(ledger) == Decimal("0.10")
