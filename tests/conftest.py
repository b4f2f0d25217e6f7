"""
Pytest Configuration and Fixtures
"""

import json
import os
import random
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"

from decrown_billing.config import BillingSettings
from decrown_billing.core.audit import CheckpointSigner
from decrown_billing.core.backoff import RetryPolicy
from decrown_billing.core.ledger import CostRates, StaticUsageSource
from decrown_billing.persistence.database import Database
from decrown_billing.persistence.models import StopRecord
from decrown_billing.processors import MockProcessor
from decrown_billing.services import BillingServices
from decrown_billing.webhooks.adapters import get_adapter
from decrown_billing.webhooks.config import DEFAULT_PROVIDER_CONFIGS, WebhookConfigRegistry

WEBHOOK_SECRETS = {
    "mock": "whsec_mock_test_secret",
    "stripe": "whsec_stripe_test_secret",
    "paymongo": "whsec_paymongo_test_secret",
}


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_stops(account_id, month="2024-11", rides=10, distance_km="82", minutes=410):
    """``rides`` picked-up stops spread evenly over the first days of ``month``."""
    year, mon = (int(p) for p in month.split("-"))
    per_ride_km = Decimal(distance_km) / rides
    per_ride_minutes = minutes // rides
    return [
        StopRecord(
            account_id=account_id,
            trip_id=f"trip-{i}",
            stop_id=f"stop-{i}",
            status="picked_up",
            completed_at=datetime(year, mon, 1 + i % 28, 7, 30, tzinfo=timezone.utc),
            distance_km=per_ride_km,
            duration_minutes=per_ride_minutes,
        )
        for i in range(rides)
    ]


def signed_delivery(provider, payload, timestamp, secret=None):
    """Body and headers of a genuine delivery of ``payload`` (a dict or str)."""
    body = payload if isinstance(payload, str) else json.dumps(payload)
    headers = get_adapter(provider).sign_headers(
        body,
        DEFAULT_PROVIDER_CONFIGS[provider],
        secret or WEBHOOK_SECRETS[provider],
        int(timestamp.timestamp()),
    )
    return body.encode("utf-8"), headers


def mock_event(event_id, event_type, attempt=None, **data):
    """Payload of the mock provider, optionally pointing at a payment attempt."""
    if attempt is not None:
        data.setdefault("attempt_id", attempt.id)
        data.setdefault("idempotency_key", attempt.idempotency_key)
        data.setdefault("transaction_id", attempt.transaction_id or f"txn_{attempt.id}")
    return {
        "id": event_id,
        "type": event_type,
        "created_at": "2024-12-02T09:00:00Z",
        "data": data,
    }


@pytest.fixture
def clock():
    """Fixed clock, a day after the November 2024 billing month ended."""
    return FrozenClock(datetime(2024, 12, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def db(tmp_path):
    """Temporary SQLite database file (connections are per thread)."""
    database = Database(f"sqlite:///{tmp_path / 'billing.db'}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def processor():
    return MockProcessor()


@pytest.fixture
def settings(tmp_path):
    return BillingSettings(
        database_url=f"sqlite:///{tmp_path / 'billing.db'}",
        rates=CostRates(
            base_fare=Decimal("45.00"),
            per_km=Decimal("15.00"),
            per_minute=Decimal("2.00"),
        ),
        tax_rate=Decimal("0.10"),
        payment_retry=RetryPolicy(
            max_attempts=3,
            base_delay_ms=1000,
            backoff_multiplier=2.0,
            max_delay_ms=30000,
        ),
        api_key="test-key-12345",
    )


@pytest.fixture
def registry():
    return WebhookConfigRegistry(DEFAULT_PROVIDER_CONFIGS, WEBHOOK_SECRETS)


@pytest.fixture
def signer():
    return CheckpointSigner()


@pytest.fixture
def services(settings, db, processor, registry, signer, clock):
    """The full service graph over the temporary database and frozen clock."""
    return BillingServices(
        settings,
        db=db,
        processor=processor,
        registry=registry,
        signer=signer,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def ledger(services):
    """Frozen November 2024 ledger: 10 rides, 82 km, 410 minutes."""
    source = StaticUsageSource(make_stops("acct-A"))
    return services.aggregator(source).close_month("acct-A", "2024-11")


@pytest.fixture
def invoice(services, ledger):
    """Pending invoice generated from the frozen ledger."""
    return services.invoice_generator.generate(ledger.id)
