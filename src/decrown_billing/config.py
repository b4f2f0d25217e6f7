"""
Process settings, read from the environment.

Every knob has a default suitable for local development; production sets
DATABASE_URL, API_KEY, the processor credentials and the webhook secrets.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Mapping, Optional, Tuple

from .core.backoff import RetryPolicy
from .core.dunning import DunningPolicy
from .core.ledger import CostRates
from .core.payment import DEFAULT_PAYMENT_RETRY_POLICY


def _split(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


@dataclass
class BillingSettings:
    database_url: str = "sqlite:///decrown_billing.db"
    rates: CostRates = field(default_factory=CostRates)
    tax_rate: Decimal = Decimal("0.10")
    payment_terms_days: int = 30
    payment_retry: RetryPolicy = DEFAULT_PAYMENT_RETRY_POLICY
    processing_lease_seconds: int = 900
    webhook_lease_seconds: int = 60
    dedup_ttl_days: int = 30
    dunning: DunningPolicy = field(default_factory=DunningPolicy)
    processor: str = "mock"
    api_key: Optional[str] = None
    relay_urls: List[str] = field(default_factory=list)
    audit_checkpoint_interval: int = 1000
    log_format: str = "json"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BillingSettings":
        env = os.environ if environ is None else environ
        defaults = cls()

        rates = CostRates(
            base_fare=Decimal(env.get("BILLING_BASE_FARE", str(defaults.rates.base_fare))),
            per_km=Decimal(env.get("BILLING_PER_KM", str(defaults.rates.per_km))),
            per_minute=Decimal(env.get("BILLING_PER_MINUTE", str(defaults.rates.per_minute))),
            currency=env.get("BILLING_CURRENCY", defaults.rates.currency),
        )

        retry = defaults.payment_retry
        payment_retry = RetryPolicy(
            max_attempts=int(env.get("PAYMENT_MAX_RETRIES", retry.max_attempts)),
            base_delay_ms=int(env.get("PAYMENT_RETRY_BASE_MS", retry.base_delay_ms)),
            backoff_multiplier=float(env.get("PAYMENT_RETRY_MULTIPLIER", retry.backoff_multiplier)),
            max_delay_ms=int(env.get("PAYMENT_RETRY_MAX_MS", retry.max_delay_ms)),
            jitter_ratio=float(env.get("PAYMENT_RETRY_JITTER", retry.jitter_ratio)),
        )

        thresholds: Tuple[int, ...] = tuple(
            int(days) for days in _split(env.get("DUNNING_THRESHOLD_DAYS"))
        ) or defaults.dunning.level_thresholds_days
        max_level = int(env.get("DUNNING_MAX_LEVEL", len(thresholds)))
        if max_level < 1 or max_level > len(thresholds):
            raise ValueError(
                f"DUNNING_MAX_LEVEL must be between 1 and {len(thresholds)}, got {max_level}"
            )
        dunning = DunningPolicy(
            level_thresholds_days=thresholds[:max_level],
            cooldown_hours=int(env.get("DUNNING_COOLDOWN_HOURS", defaults.dunning.cooldown_hours)),
            delivery_method=env.get("DUNNING_DELIVERY_METHOD", defaults.dunning.delivery_method),
        )

        return cls(
            database_url=env.get("DATABASE_URL", defaults.database_url),
            rates=rates,
            tax_rate=Decimal(env.get("BILLING_TAX_RATE", str(defaults.tax_rate))),
            payment_terms_days=int(env.get("PAYMENT_TERMS_DAYS", defaults.payment_terms_days)),
            payment_retry=payment_retry,
            processing_lease_seconds=int(env.get("PAYMENT_PROCESSING_LEASE_SECONDS", defaults.processing_lease_seconds)),
            webhook_lease_seconds=int(env.get("WEBHOOK_PROCESSING_LEASE_SECONDS", defaults.webhook_lease_seconds)),
            dedup_ttl_days=int(env.get("WEBHOOK_DEDUP_TTL_DAYS", defaults.dedup_ttl_days)),
            dunning=dunning,
            processor=env.get("PAYMENT_PROCESSOR", defaults.processor).lower(),
            api_key=env.get("API_KEY") or None,
            relay_urls=_split(env.get("BILLING_RELAY_URLS")),
            audit_checkpoint_interval=int(env.get("AUDIT_CHECKPOINT_INTERVAL", defaults.audit_checkpoint_interval)),
            log_format=env.get("LOG_FORMAT", defaults.log_format).lower(),
        )
