"""
Wiring of the billing core for one process.

The API server, the CLI and the tests all build the same object graph
from BillingSettings, so pollers and the webhook endpoint always share one
database, one clock and one webhook configuration.
"""

import random
from datetime import datetime
from typing import Callable, Mapping, Optional
import structlog

from .config import BillingSettings
from .core.audit import CheckpointSigner, SecurityLog
from .core.dunning import DunningEscalationEngine, NoticeSender, log_notice_sender
from .core.invoice import InvoiceGenerator, InvoiceService, flat_tax_rate
from .core.ledger import UsageLedgerAggregator, UsageSource
from .core.payment import PaymentAttemptStateMachine, PaymentRetryPoller
from .persistence.database import Database
from .persistence.models import utcnow
from .processors import MockProcessor, PaymentProcessor, StripeProcessor
from .webhooks.config import WebhookConfigRegistry
from .webhooks.pipeline import PaymentEventApplier, WebhookIngestionPipeline, relays_from_urls
from .webhooks.redelivery import WebhookRedeliveryPoller

logger = structlog.get_logger()


def build_processor(name: str) -> PaymentProcessor:
    if name == "stripe":
        return StripeProcessor()
    if name == "mock":
        return MockProcessor()
    raise ValueError(f"Unknown payment processor {name!r}; expected 'stripe' or 'mock'")


class BillingServices:
    """
    Every long-lived service, built once.

    Usage:
        services = BillingServices(BillingSettings.from_env())
        services.payment_poller.run_once()
    """

    def __init__(
        self,
        settings: BillingSettings,
        db: Optional[Database] = None,
        processor: Optional[PaymentProcessor] = None,
        registry: Optional[WebhookConfigRegistry] = None,
        signer: Optional[CheckpointSigner] = None,
        notice_sender: NoticeSender = log_notice_sender,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.settings = settings
        self.clock = clock
        self.rng = rng or random.Random()
        self.db = db or Database(settings.database_url)
        self.db.initialize()

        self.processor = processor or build_processor(settings.processor)
        self.registry = registry or WebhookConfigRegistry.from_env(environ, self.db)
        self.security_log = SecurityLog(
            self.db,
            signer or CheckpointSigner.from_env(environ),
            checkpoint_interval=settings.audit_checkpoint_interval,
            clock=clock,
        )

        self.invoice_generator = InvoiceGenerator(
            self.db,
            tax_rate=flat_tax_rate(settings.tax_rate),
            payment_terms_days=settings.payment_terms_days,
            clock=clock,
        )
        self.invoices = InvoiceService(self.db, clock=clock)
        self.payments = PaymentAttemptStateMachine(
            self.db,
            self.processor,
            policy=settings.payment_retry,
            clock=clock,
            rng=self.rng,
            processing_lease_seconds=settings.processing_lease_seconds,
        )
        self.payment_poller = PaymentRetryPoller(self.payments)

        self.pipeline = WebhookIngestionPipeline(
            self.db,
            self.registry,
            self.security_log,
            PaymentEventApplier(self.payments),
            relays=relays_from_urls(settings.relay_urls),
            clock=clock,
            processing_lease_seconds=settings.webhook_lease_seconds,
            dedup_ttl_days=settings.dedup_ttl_days,
            rng=self.rng,
        )
        self.redelivery_poller = WebhookRedeliveryPoller(self.pipeline)
        self.dunning = DunningEscalationEngine(
            self.db, settings.dunning, sender=notice_sender, clock=clock
        )
        logger.info(
            "billing_services_ready",
            processor=self.processor.name,
            webhook_providers=self.registry.providers(),
            relays=len(settings.relay_urls),
        )

    def aggregator(self, source: UsageSource) -> UsageLedgerAggregator:
        """Ledger aggregator over a trip data source supplied by the caller."""
        return UsageLedgerAggregator(self.db, source, self.settings.rates, clock=self.clock)

    def close(self) -> None:
        self.db.close()
