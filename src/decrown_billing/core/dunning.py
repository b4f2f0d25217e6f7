"""
Dunning Escalation

Sends escalating payment notices for overdue invoices:

    level 1 at 3 days past due  - reminder
    level 2 at 7 days past due  - urgent
    level 3 at 14 days past due - final notice

One notice per level per invoice, levels only go up, and at least the
cooldown passes between two notices. Notices ask for the amount still due
after corrections; an invoice credited down to nothing is not dunned. After
the final level the invoice is handed to manual collections and the engine
stops touching it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple
import structlog

from ..persistence.database import Database
from ..persistence.models import (
    DunningNotice,
    Invoice,
    InvoiceStatus,
    NoticeStatus,
    new_id,
    utcnow,
)
from ..persistence.repository import DunningNoticeRepository, InvoiceRepository
from .errors import NotFound

logger = structlog.get_logger()

NOTICE_MESSAGES = {
    1: "Payment reminder: Your invoice {invoice_number} for {currency} {amount} is now overdue. "
       "Please make payment to avoid service interruption.",
    2: "URGENT: Your invoice {invoice_number} for {currency} {amount} is 7 days overdue. "
       "Please make payment immediately to avoid service suspension.",
    3: "FINAL NOTICE: Your invoice {invoice_number} for {currency} {amount} is 14 days overdue. "
       "Your account will be handed to collections if payment is not received.",
}

NoticeSender = Callable[[DunningNotice, Invoice], None]


def log_notice_sender(notice: DunningNotice, invoice: Invoice) -> None:
    """Default sender: records the notice in the application log only."""
    logger.info(
        "dunning_notice_sent",
        notice_id=notice.id,
        invoice_id=invoice.id,
        account_id=invoice.account_id,
        level=notice.notice_level,
        method=notice.delivery_method,
    )


@dataclass(frozen=True)
class DunningPolicy:
    level_thresholds_days: Tuple[int, ...] = (3, 7, 14)
    cooldown_hours: int = 72
    delivery_method: str = "email"

    @property
    def max_level(self) -> int:
        return len(self.level_thresholds_days)


class DunningEscalationEngine:
    """
    Scheduled escalation over overdue invoices.

    Each level is written first as a ``scheduled`` notice (unique per
    invoice and level, so concurrent runs cannot both send it). Delivery
    re-reads the invoice, skips the notice if nothing is owed any more, and
    otherwise claims it as ``sending``. The sender runs after that
    transaction commits; a claim older than the send lease is taken over.
    """

    def __init__(
        self,
        db: Database,
        policy: Optional[DunningPolicy] = None,
        sender: NoticeSender = log_notice_sender,
        clock: Callable[[], datetime] = utcnow,
        send_lease_seconds: int = 900,
    ):
        self.db = db
        self.policy = policy or DunningPolicy()
        self.sender = sender
        self.clock = clock
        self.send_lease = timedelta(seconds=send_lease_seconds)
        self.invoices = InvoiceRepository(db)
        self.notices = DunningNoticeRepository(db)

    def _message(self, level: int, invoice: Invoice, amount: Decimal) -> str:
        template = NOTICE_MESSAGES.get(level, NOTICE_MESSAGES[max(NOTICE_MESSAGES)])
        return template.format(
            invoice_number=invoice.invoice_number,
            currency=invoice.currency,
            amount=amount,
        )

    def _next_level(self, invoice: Invoice, last: Optional[DunningNotice], now: datetime) -> Optional[int]:
        """Level due now, max_level + 1 for a collections hand-off, or None."""
        if last is not None:
            sent_at = last.delivered_at or last.created_at
            if now - sent_at < timedelta(hours=self.policy.cooldown_hours):
                return None
        level = (last.notice_level if last else 0) + 1
        if level > self.policy.max_level:
            return level
        days_overdue = (now.date() - invoice.due_date).days
        if days_overdue < self.policy.level_thresholds_days[level - 1]:
            return None
        return level

    def escalate(self, invoice_id: str) -> str:
        """
        Advance one invoice by at most one step.

        Returns one of: sent, skipped, handed_off, nothing_due, not_due.
        """
        with self.db.transaction():
            invoice = self.invoices.get(invoice_id, for_update=True)
            if invoice is None:
                raise NotFound(f"invoice {invoice_id} not found")
            if invoice.status != InvoiceStatus.OVERDUE or invoice.collections_handoff_at:
                return "not_due"
            amount = self.invoices.amount_due(invoice)
            if amount <= 0:
                logger.info("dunning_nothing_due", invoice_id=invoice_id, amount_due=str(amount))
                return "nothing_due"

            now = self.clock()
            last = self.notices.latest_for(invoice_id)
            if last is not None and last.status in (NoticeStatus.SCHEDULED, NoticeStatus.SENDING):
                notice = last
            else:
                level = self._next_level(invoice, last, now)
                if level is None:
                    return "not_due"
                if level > self.policy.max_level:
                    self.invoices.mark_collections_handoff(invoice_id, now)
                    logger.warning(
                        "dunning_collections_handoff",
                        invoice_id=invoice_id,
                        account_id=invoice.account_id,
                        last_level=last.notice_level if last else 0,
                    )
                    return "handed_off"
                notice = DunningNotice(
                    id=new_id("DUN"),
                    invoice_id=invoice.id,
                    account_id=invoice.account_id,
                    notice_level=level,
                    due_date=invoice.due_date,
                    amount=amount,
                    message=self._message(level, invoice, amount),
                    delivery_method=self.policy.delivery_method,
                    created_at=now,
                )
                if not self.notices.insert_if_absent(notice):
                    return "not_due"

        return self._deliver(notice)

    def _deliver(self, notice: DunningNotice) -> str:
        now = self.clock()
        with self.db.transaction():
            invoice = self.invoices.get(notice.invoice_id, for_update=True)
            amount_due = self.invoices.amount_due(invoice)
            if invoice.status != InvoiceStatus.OVERDUE or amount_due <= 0:
                self.notices.set_status(notice.id, NoticeStatus.SKIPPED)
                logger.info(
                    "dunning_notice_skipped",
                    notice_id=notice.id,
                    invoice_id=invoice.id,
                    status=invoice.status.value,
                    amount_due=str(amount_due),
                )
                return "skipped"
            if not self.notices.claim_for_delivery(notice.id, now, now - self.send_lease):
                return "not_due"

        try:
            self.sender(notice, invoice)
        except Exception:
            self.notices.release(notice.id)
            raise
        self.notices.set_status(notice.id, NoticeStatus.DELIVERED, self.clock())
        logger.info(
            "dunning_notice_delivered",
            notice_id=notice.id,
            invoice_id=notice.invoice_id,
            level=notice.notice_level,
        )
        return "sent"

    def run_once(self) -> Dict[str, int]:
        summary = {"examined": 0, "sent": 0, "skipped": 0, "handed_off": 0, "errors": 0}
        for invoice in self.invoices.list_awaiting_dunning():
            summary["examined"] += 1
            try:
                outcome = self.escalate(invoice.id)
            except Exception as e:
                summary["errors"] += 1
                logger.error("dunning_escalation_failed", invoice_id=invoice.id, error=str(e))
                continue
            if outcome in summary:
                summary[outcome] += 1
        logger.info("dunning_run_complete", **summary)
        return summary
