"""
Tests for Dunning Escalation
"""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from decrown_billing.core.dunning import DunningEscalationEngine, DunningPolicy
from decrown_billing.core.errors import NotFound
from decrown_billing.core.payment import SOURCE_WEBHOOK
from decrown_billing.persistence.models import AdjustmentKind, DunningNotice, InvoiceStatus, NoticeStatus, new_id


class RecordingSender:
    """Notice sender that remembers what it sent and can be told to fail."""

    def __init__(self):
        self.sent = []
        self.fail_next = False

    def __call__(self, notice, invoice):
        if self.fail_next:
            self.fail_next = False
            raise ConnectionError("mail relay down")
        self.sent.append((notice.notice_level, invoice.id))


def on_day(clock, day):
    """Set the clock to 09:00 UTC on January ``day``, 2025 (the invoice is due January 1)."""
    clock.now = datetime(2025, 1, day, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def engine(services, sender, clock):
    return DunningEscalationEngine(services.db, DunningPolicy(), sender=sender, clock=clock)


@pytest.fixture
def overdue(services, invoice, clock):
    """The reference invoice, one day past its due date."""
    on_day(clock, 2)
    services.invoices.mark_overdue_past_due()
    return services.invoices.get(invoice.id)


class TestEscalate:
    """Test DunningEscalationEngine.escalate."""

    def test_levels_follow_days_past_due(self, engine, overdue, sender, clock):
        """Levels 1, 2, 3 go out at 3, 7 and 14 days past due."""
        assert engine.escalate(overdue.id) == "not_due"

        outcomes = {}
        for day in (4, 6, 8, 12, 15):
            on_day(clock, day)
            outcomes[day] = engine.escalate(overdue.id)

        assert outcomes == {4: "sent", 6: "not_due", 8: "sent", 12: "not_due", 15: "sent"}
        assert sender.sent == [(1, overdue.id), (2, overdue.id), (3, overdue.id)]

        notices = engine.notices.list_for_invoice(overdue.id)
        assert [n.notice_level for n in notices] == [1, 2, 3]
        assert all(n.status == NoticeStatus.DELIVERED for n in notices)
        assert notices[0].delivered_at == datetime(2025, 1, 4, 9, 0, tzinfo=timezone.utc)

    def test_notice_content(self, engine, overdue, clock):
        on_day(clock, 4)
        engine.escalate(overdue.id)

        notice = engine.notices.latest_for(overdue.id)

        assert notice.amount == overdue.total
        assert notice.due_date == overdue.due_date
        assert notice.account_id == "acct-A"
        assert notice.delivery_method == "email"
        assert overdue.invoice_number in notice.message
        assert "PHP 2750.00" in notice.message

    def test_one_level_per_run_with_cooldown(self, engine, overdue, sender, clock):
        """An invoice found 20 days overdue still climbs one level at a time."""
        on_day(clock, 21)
        assert engine.escalate(overdue.id) == "sent"
        assert engine.escalate(overdue.id) == "not_due"

        clock.now = datetime(2025, 1, 24, 8, 59, tzinfo=timezone.utc)
        assert engine.escalate(overdue.id) == "not_due"

        on_day(clock, 24)
        assert engine.escalate(overdue.id) == "sent"
        assert [level for level, _ in sender.sent] == [1, 2]

    def test_handoff_after_final_notice(self, services, engine, overdue, clock):
        """After level 3 the invoice goes to collections and is left alone."""
        for day in (4, 8, 15):
            on_day(clock, day)
            engine.escalate(overdue.id)

        on_day(clock, 18)
        assert engine.escalate(overdue.id) == "handed_off"

        handed_off = services.invoices.get(overdue.id)
        assert handed_off.status == InvoiceStatus.OVERDUE
        assert handed_off.collections_handoff_at == clock()

        on_day(clock, 30)
        assert engine.escalate(overdue.id) == "not_due"
        assert len(engine.notices.list_for_invoice(overdue.id)) == 3

    def test_pending_invoice_is_not_dunned(self, engine, invoice, clock):
        on_day(clock, 20)

        assert engine.escalate(invoice.id) == "not_due"

    def test_paid_invoice_stops_escalation(self, services, engine, overdue, sender, clock):
        on_day(clock, 4)
        engine.escalate(overdue.id)
        attempt = services.payments.create_attempt(overdue.id)
        services.payments.record_success(attempt.id, "txn_paid", source=SOURCE_WEBHOOK)

        on_day(clock, 8)

        assert engine.escalate(overdue.id) == "not_due"
        assert len(sender.sent) == 1

    def test_notice_skipped_when_paid_before_delivery(self, services, engine, overdue, sender, clock):
        """A notice scheduled while overdue is not delivered once the invoice is paid."""
        on_day(clock, 4)
        notice = DunningNotice(
            id=new_id("DUN"),
            invoice_id=overdue.id,
            account_id=overdue.account_id,
            notice_level=1,
            due_date=overdue.due_date,
            amount=overdue.total,
            message="reminder",
            created_at=clock(),
        )
        engine.notices.insert_if_absent(notice)
        attempt = services.payments.create_attempt(overdue.id)
        services.payments.record_success(attempt.id, "txn_paid", source=SOURCE_WEBHOOK)

        assert engine._deliver(notice) == "skipped"
        assert engine.notices.latest_for(overdue.id).status == NoticeStatus.SKIPPED
        assert sender.sent == []

    def test_failed_send_is_retried_without_duplicating_level(self, engine, overdue, sender, clock):
        """A notice whose delivery failed stays scheduled and is resent on the next run."""
        on_day(clock, 4)
        sender.fail_next = True

        with pytest.raises(ConnectionError):
            engine.escalate(overdue.id)
        assert engine.notices.latest_for(overdue.id).status == NoticeStatus.SCHEDULED

        assert engine.escalate(overdue.id) == "sent"
        notices = engine.notices.list_for_invoice(overdue.id)
        assert len(notices) == 1
        assert notices[0].status == NoticeStatus.DELIVERED
        assert sender.sent == [(1, overdue.id)]

    def test_notice_asks_for_amount_due_after_corrections(self, services, engine, overdue, clock):
        services.invoices.issue_correction(overdue.id, AdjustmentKind.CREDIT, Decimal("2000.00"), "fare dispute", "ops-1")
        on_day(clock, 4)

        assert engine.escalate(overdue.id) == "sent"

        notice = engine.notices.latest_for(overdue.id)
        assert notice.amount == Decimal("750.00")
        assert "PHP 750.00" in notice.message

    def test_invoice_credited_to_zero_is_not_dunned(self, services, engine, overdue, sender, clock):
        services.invoices.issue_correction(overdue.id, AdjustmentKind.CREDIT, overdue.total, "waived", "ops-1")

        for day in (4, 8, 15, 18):
            on_day(clock, day)
            assert engine.escalate(overdue.id) == "nothing_due"

        assert engine.notices.list_for_invoice(overdue.id) == []
        assert sender.sent == []
        assert services.invoices.get(overdue.id).collections_handoff_at is None

    def test_sender_runs_after_claim_is_committed(self, engine, overdue, clock):
        """Other connections see the notice as sending while the sender works."""
        seen = []

        def sender(notice, invoice):
            reader = threading.Thread(
                target=lambda: seen.append(engine.notices.latest_for(invoice.id).status)
            )
            reader.start()
            reader.join(timeout=10)

        engine.sender = sender
        on_day(clock, 4)

        assert engine.escalate(overdue.id) == "sent"
        assert seen == [NoticeStatus.SENDING]
        assert engine.notices.latest_for(overdue.id).status == NoticeStatus.DELIVERED

    def test_abandoned_send_is_taken_over_after_lease(self, engine, overdue, sender, clock):
        """A notice left in sending by a dead worker is resent once its claim is stale."""
        on_day(clock, 4)
        notice = DunningNotice(
            id=new_id("DUN"),
            invoice_id=overdue.id,
            account_id=overdue.account_id,
            notice_level=1,
            due_date=overdue.due_date,
            amount=overdue.total,
            message="reminder",
            created_at=clock(),
        )
        engine.notices.insert_if_absent(notice)
        engine.notices.claim_for_delivery(notice.id, clock(), clock() - engine.send_lease)

        assert engine.escalate(overdue.id) == "not_due"
        assert sender.sent == []

        clock.now += engine.send_lease + timedelta(seconds=1)
        assert engine.escalate(overdue.id) == "sent"
        assert sender.sent == [(1, overdue.id)]
        assert len(engine.notices.list_for_invoice(overdue.id)) == 1

    def test_unknown_invoice(self, engine):
        with pytest.raises(NotFound):
            engine.escalate("INV-MISSING")


class TestRunOnce:
    """Test the scheduled pass over overdue invoices."""

    def test_summary(self, engine, overdue, sender, clock):
        on_day(clock, 4)

        summary = engine.run_once()

        assert summary == {"examined": 1, "sent": 1, "skipped": 0, "handed_off": 0, "errors": 0}

    def test_errors_are_counted_not_raised(self, engine, overdue, sender, clock):
        on_day(clock, 4)
        sender.fail_next = True

        summary = engine.run_once()

        assert summary["errors"] == 1
        assert engine.run_once()["sent"] == 1

    def test_handed_off_invoices_are_not_examined(self, engine, overdue, clock):
        for day in (4, 8, 15, 18):
            on_day(clock, day)
            engine.run_once()

        assert engine.run_once()["examined"] == 0


def test_shorter_policy_hands_off_sooner(services, overdue, sender, clock):
    engine = DunningEscalationEngine(
        services.db,
        DunningPolicy(level_thresholds_days=(3,), cooldown_hours=24),
        sender=sender,
        clock=clock,
    )
    on_day(clock, 4)
    assert engine.escalate(overdue.id) == "sent"

    on_day(clock, 5)
    assert engine.escalate(overdue.id) == "handed_off"
