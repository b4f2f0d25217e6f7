"""
Usage Ledger Aggregation

Closes a billing month for one rider account: rolls the month's completed
trip stops up into ride count, distance and duration, prices them with the
configured rates and freezes the ledger so an invoice can be generated.

Lifecycle: open -> frozen -> invoiced. Re-closing a frozen or invoiced
ledger returns it unchanged.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional
import structlog

from ..persistence.database import Database
from ..persistence.models import (
    AdjustmentKind,
    LedgerAdjustment,
    LedgerStatus,
    StopRecord,
    UsageLedger,
    money,
    month_bounds,
    new_id,
    utcnow,
)
from ..persistence.repository import LedgerRepository
from .errors import IncompleteUsageData, IntegrityViolation, LedgerLocked

logger = structlog.get_logger()

Clock = Callable[[], datetime]

RIDE_STATUSES = {"picked_up"}
SETTLED_STATUSES = {"picked_up", "no_show"}


@dataclass(frozen=True)
class CostRates:
    """Per-account billing rates."""
    base_fare: Decimal = Decimal("50.00")
    per_km: Decimal = Decimal("15.00")
    per_minute: Decimal = Decimal("2.00")
    currency: str = "PHP"


class CostCalculator:
    """
    Prices a month of usage.

    Components are rounded independently; their sum is the ledger subtotal.
    """

    def __init__(self, rates: Optional[CostRates] = None):
        self.rates = rates or CostRates()

    def components(
        self,
        ride_count: int,
        distance_km: Decimal,
        duration_minutes: int,
    ) -> Dict[str, Decimal]:
        return {
            "base": money(self.rates.base_fare * ride_count),
            "distance": money(self.rates.per_km * Decimal(str(distance_km))),
            "time": money(self.rates.per_minute * duration_minutes),
        }


class UsageSource(ABC):
    """Read-only view of trip data owned by the dispatch subsystem."""

    @abstractmethod
    def completed_stops(self, account_id: str, month: str) -> Iterable[StopRecord]:
        ...

    def is_period_complete(self, account_id: str, month: str) -> bool:
        """Whether every trip of the month has landed. Sources that cannot tell return True."""
        return True


class StaticUsageSource(UsageSource):
    """Usage source over an in-memory list of stop records (imports, tests)."""

    def __init__(self, stops: Iterable[StopRecord] = (), incomplete_periods: Iterable[tuple] = ()):
        self.stops: List[StopRecord] = list(stops)
        self.incomplete_periods = set(incomplete_periods)

    def completed_stops(self, account_id: str, month: str) -> Iterable[StopRecord]:
        return [s for s in self.stops if s.account_id == account_id]

    def is_period_complete(self, account_id: str, month: str) -> bool:
        return (account_id, month) not in self.incomplete_periods


@dataclass
class UsageTotals:
    ride_count: int
    distance_km: Decimal
    duration_minutes: int


def summarize_stops(stops: Iterable[StopRecord], start: datetime, end: datetime) -> UsageTotals:
    """
    Roll stops inside [start, end) up into totals.

    Raises IncompleteUsageData when a stop is still in flight or a picked-up
    stop is missing its completion data.
    """
    rides = 0
    distance = Decimal("0")
    minutes = 0
    for stop in stops:
        if stop.completed_at is not None and not start <= stop.completed_at < end:
            continue
        if stop.status not in SETTLED_STATUSES:
            raise IncompleteUsageData(
                f"stop {stop.stop_id} of trip {stop.trip_id} is still {stop.status}"
            )
        if stop.status not in RIDE_STATUSES:
            continue
        if stop.completed_at is None or stop.distance_km is None or stop.duration_minutes is None:
            raise IncompleteUsageData(f"stop {stop.stop_id} of trip {stop.trip_id} has no completion data")
        rides += 1
        distance += Decimal(str(stop.distance_km))
        minutes += int(stop.duration_minutes)
    return UsageTotals(ride_count=rides, distance_km=distance, duration_minutes=minutes)


def final_amount(components: Dict[str, Decimal], adjustments: Iterable[LedgerAdjustment]) -> Decimal:
    total = sum(components.values(), Decimal("0")) + sum(
        (a.signed_amount for a in adjustments), Decimal("0")
    )
    return money(max(total, Decimal("0")))


class UsageLedgerAggregator:
    """
    Builds and freezes monthly usage ledgers.

    Usage:
        aggregator = UsageLedgerAggregator(db, source, CostRates())
        ledger = aggregator.close_month("acct-1", "2024-10")
    """

    def __init__(
        self,
        db: Database,
        source: UsageSource,
        rates: Optional[CostRates] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.source = source
        self.calculator = CostCalculator(rates)
        self.clock = clock
        self.ledgers = LedgerRepository(db)

    @property
    def rates(self) -> CostRates:
        return self.calculator.rates

    def _ensure_ledger(self, account_id: str, month: str) -> UsageLedger:
        """Get or create the (account, month) ledger. Call inside a transaction."""
        ledger = self.ledgers.get_by_period(account_id, month)
        if ledger is None:
            now = self.clock()
            self.ledgers.insert_if_absent(UsageLedger(
                id=new_id("LED"),
                account_id=account_id,
                month=month,
                currency=self.rates.currency,
                created_at=now,
                updated_at=now,
            ))
            ledger = self.ledgers.get_by_period(account_id, month)
        return self.ledgers.get(ledger.id, for_update=True)

    def close_month(self, account_id: str, month: str) -> UsageLedger:
        """
        Freeze the (account, month) ledger.

        Re-closing returns the existing frozen or invoiced ledger unchanged.
        """
        existing = self.ledgers.get_by_period(account_id, month)
        if existing is not None and existing.status != LedgerStatus.OPEN:
            logger.info("ledger_already_closed", ledger_id=existing.id, status=existing.status.value)
            return existing

        start, end = month_bounds(month)
        now = self.clock()
        if now < end:
            raise IncompleteUsageData(f"billing month {month} has not ended")
        if not self.source.is_period_complete(account_id, month):
            raise IncompleteUsageData(f"trip data for {account_id} in {month} has not fully landed")

        totals = summarize_stops(
            (s for s in self.source.completed_stops(account_id, month) if s.account_id == account_id),
            start,
            end,
        )
        components = self.calculator.components(
            totals.ride_count, totals.distance_km, totals.duration_minutes
        )

        with self.db.transaction():
            ledger = self._ensure_ledger(account_id, month)
            if ledger.status != LedgerStatus.OPEN:
                return ledger

            ledger.ride_count = totals.ride_count
            ledger.total_distance_km = totals.distance_km
            ledger.total_duration_minutes = totals.duration_minutes
            ledger.cost_components = components
            ledger.final_amount = final_amount(components, ledger.adjustments)
            ledger.status = LedgerStatus.FROZEN
            ledger.frozen_at = now
            ledger.updated_at = now
            if not self.ledgers.freeze(ledger):
                raise IntegrityViolation(f"ledger {ledger.id} changed status while being closed")

        logger.info(
            "ledger_closed",
            ledger_id=ledger.id,
            account_id=account_id,
            month=month,
            rides=totals.ride_count,
            final_amount=str(ledger.final_amount),
        )
        return ledger

    def add_adjustment(
        self,
        account_id: str,
        month: str,
        kind: AdjustmentKind,
        amount: Decimal,
        reason: str,
        actor: str,
    ) -> LedgerAdjustment:
        """Record a credit or debit against the month; refused once invoiced."""
        amount = money(amount)
        if amount <= 0:
            raise ValueError("adjustment amount must be positive; use kind to set direction")
        if not reason:
            raise ValueError("adjustment reason is required")

        with self.db.transaction():
            ledger = self._ensure_ledger(account_id, month)
            if ledger.status == LedgerStatus.INVOICED:
                raise LedgerLocked(
                    f"ledger {ledger.id} is invoiced; issue an invoice correction instead"
                )
            now = self.clock()
            adjustment = self.ledgers.add_adjustment(LedgerAdjustment(
                id=new_id("ADJ"),
                ledger_id=ledger.id,
                kind=kind,
                amount=amount,
                reason=reason,
                actor=actor,
                applied_at=now,
            ))
            if ledger.status == LedgerStatus.FROZEN:
                self.ledgers.update_final_amount(
                    ledger.id,
                    str(final_amount(ledger.cost_components, ledger.adjustments + [adjustment])),
                    now,
                )
        return adjustment
