"""
Internal redelivery of stored webhook events.

When a consumer (the payment applier or an HTTP relay) fails transiently,
one WebhookRetry row is written per (event, consumer). The poller claims
due rows atomically, replays the stored event, and backs off per the
provider's WebhookSecurityConfig until the attempts run out. Exhaustion is
an operator alert, never a silent drop.
"""

import random
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
import structlog

from ..core.errors import IntegrityViolation, RedeliveryExhausted, TransientError
from ..persistence.database import Database
from ..persistence.models import WebhookEvent, WebhookRetry, new_id, utcnow
from ..persistence.repository import WebhookEventRepository, WebhookRetryRepository
from .config import WebhookConfigRegistry

logger = structlog.get_logger()

ExhaustedHook = Callable[[WebhookRetry, RedeliveryExhausted], None]


class RedeliveryScheduler:
    """Creates redelivery obligations with the provider's backoff."""

    def __init__(
        self,
        db: Database,
        registry: WebhookConfigRegistry,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.registry = registry
        self.clock = clock
        self.rng = rng or random.Random()
        self.retries = WebhookRetryRepository(db)

    def schedule(self, event: WebhookEvent, consumer: str, reason: str) -> WebhookRetry:
        """Write the retry row for (event, consumer), or return the one already there."""
        policy = self.registry.get(event.provider).retry_policy
        now = self.clock()
        retry = WebhookRetry(
            id=new_id("WHR"),
            webhook_id=event.id,
            consumer=consumer,
            max_attempts=policy.max_attempts,
            next_retry_at=policy.next_retry_at(0, now, self.rng),
            failure_reason=reason[:1000],
            created_at=now,
        )
        if not self.retries.insert_if_absent(retry):
            return self.retries.get_for(event.id, consumer)
        logger.info(
            "webhook_redelivery_scheduled",
            webhook_id=event.id,
            event_id=event.event_id,
            consumer=consumer,
            next_retry_at=retry.next_retry_at.isoformat(),
            reason=reason,
        )
        return retry


class WebhookRedeliveryPoller:
    """
    Periodic worker over due WebhookRetry rows.

    Usage:
        poller = WebhookRedeliveryPoller(pipeline)
        summary = poller.run_once()
    """

    def __init__(
        self,
        pipeline: Any,
        batch_size: int = 100,
        claim_lease_seconds: int = 300,
        worker_id: Optional[str] = None,
        on_exhausted: Optional[ExhaustedHook] = None,
    ):
        self.pipeline = pipeline
        self.db = pipeline.db
        self.registry = pipeline.registry
        self.clock = pipeline.clock
        self.rng = pipeline.rng
        self.batch_size = batch_size
        self.claim_lease = timedelta(seconds=claim_lease_seconds)
        self.worker_id = worker_id or f"redeliver-{uuid.uuid4().hex[:8]}"
        self.on_exhausted = on_exhausted
        self.retries = WebhookRetryRepository(self.db)
        self.events = WebhookEventRepository(self.db)

    def run_once(self) -> Dict[str, int]:
        summary = {"claimed": 0, "delivered": 0, "rescheduled": 0, "exhausted": 0, "errors": 0}
        now = self.clock()
        stale_before = now - self.claim_lease

        for retry in self.retries.due(now, stale_before, self.batch_size):
            if not self.retries.claim(retry.id, self.worker_id, now, stale_before):
                continue
            summary["claimed"] += 1
            try:
                outcome = self._redeliver(retry)
            except IntegrityViolation:
                raise
            except Exception as e:
                summary["errors"] += 1
                logger.error("webhook_redelivery_error", retry_id=retry.id, error=str(e))
                continue
            summary[outcome] += 1

        logger.info("webhook_redelivery_poll_complete", **summary)
        return summary

    def _redeliver(self, retry: WebhookRetry) -> str:
        event = self.events.get(retry.webhook_id)
        attempt = retry.current_attempt + 1
        if event is None:
            return self._exhaust(retry, attempt, f"stored event {retry.webhook_id} is missing")

        try:
            result = self.pipeline.redeliver(event, retry.consumer)
        except IntegrityViolation:
            raise
        except Exception as e:
            # Any failure uses up an attempt.
            reason = str(e) or type(e).__name__
            if not isinstance(e, TransientError):
                logger.error(
                    "webhook_redelivery_error",
                    retry_id=retry.id,
                    webhook_id=event.id,
                    consumer=retry.consumer,
                    attempt=attempt,
                    error=reason,
                    error_type=type(e).__name__,
                )
            if attempt < retry.max_attempts:
                policy = self.registry.get(event.provider).retry_policy
                next_retry_at = policy.next_retry_at(attempt, self.clock(), self.rng)
                self.retries.reschedule(retry.id, attempt, next_retry_at, reason)
                logger.warning(
                    "webhook_redelivery_failed",
                    retry_id=retry.id,
                    webhook_id=event.id,
                    consumer=retry.consumer,
                    attempt=attempt,
                    next_retry_at=next_retry_at.isoformat(),
                    error=reason,
                )
                return "rescheduled"
            return self._exhaust(retry, attempt, reason)

        self.retries.delete(retry.id)
        logger.info(
            "webhook_redelivered",
            retry_id=retry.id,
            webhook_id=event.id,
            consumer=retry.consumer,
            attempt=attempt,
            outcome=result,
        )
        return "delivered"

    def _exhaust(self, retry: WebhookRetry, attempt: int, reason: str) -> str:
        self.retries.mark_failed(retry.id, attempt, reason, self.clock())
        error = RedeliveryExhausted(
            f"redelivery of {retry.webhook_id} to {retry.consumer} failed after {attempt} attempts: {reason}"
        )
        logger.critical(
            "webhook_redelivery_exhausted",
            retry_id=retry.id,
            webhook_id=retry.webhook_id,
            consumer=retry.consumer,
            attempts=attempt,
            error=str(error),
        )
        if self.on_exhausted is not None:
            self.on_exhausted(retry, error)
        return "exhausted"
