"""
Webhook Ingestion Pipeline

Every inbound processor notification goes through the same steps:

    1. verify the signature (provider adapter)
    2. parse the payload and check the delivery timestamp tolerance
    3. claim (provider, event_id) via an atomic insert-if-absent
    4. apply the event and mark it processed in one transaction
    5. relay it to internal HTTP consumers

A transient failure in step 4 or 5 leaves a redelivery obligation behind
instead of an error for the provider. Every outcome, including rejections
and duplicates, is appended to the security log.
"""

import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
import httpx
import structlog

from ..core.audit import SecurityLog
from ..core.errors import (
    ConsumerUnavailable,
    MalformedEvent,
    StaleOrFutureEvent,
    TransientError,
    WebhookRejected,
)
from ..core.payment import SOURCE_WEBHOOK, PaymentAttemptStateMachine
from ..persistence.database import Database
from ..persistence.models import (
    ValidationResult,
    WebhookDeduplicationRecord,
    WebhookEvent,
    new_id,
    utcnow,
)
from ..persistence.repository import (
    DeduplicationRepository,
    WebhookEventRepository,
    WebhookRetryRepository,
)
from .adapters import (
    EVENT_FAILED,
    EVENT_SUCCEEDED,
    ParsedEvent,
    get_adapter,
)
from .config import WebhookConfigRegistry
from .redelivery import RedeliveryScheduler

logger = structlog.get_logger()

OUTCOME_IGNORED = "ignored"


class IngestStatus(Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"
    DEFERRED = "deferred"      # application handed to internal redelivery
    IGNORED = "ignored"        # verified and stored, no payment meaning


@dataclass
class IngestResult:
    status: IngestStatus
    provider: str
    event_id: str
    webhook_id: Optional[str] = None
    outcome: Optional[str] = None
    deferred_consumers: List[str] = field(default_factory=list)

    @property
    def http_status(self) -> int:
        return 202 if self.status == IngestStatus.DEFERRED else 200

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "provider": self.provider,
            "event_id": self.event_id,
            "webhook_id": self.webhook_id,
            "outcome": self.outcome,
            "deferred_consumers": self.deferred_consumers,
        }


@dataclass
class RequestSource:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


# ============================================================================
# Consumers
# ============================================================================

class EventConsumer(ABC):
    """Something a verified event is handed to. Raise TransientError to get a redelivery."""

    name: str = "consumer"

    @abstractmethod
    def deliver(self, event: WebhookEvent, parsed: ParsedEvent) -> str:
        """Handle the event and return a short outcome label."""
        ...


class PaymentEventApplier(EventConsumer):
    """
    Applies payment events to the attempt state machine.

    Runs inside the pipeline's apply transaction, so the attempt and invoice
    changes commit together with the processed flag.
    """

    name = "payments"

    def __init__(self, machine: PaymentAttemptStateMachine):
        self.machine = machine

    def deliver(self, event: WebhookEvent, parsed: ParsedEvent) -> str:
        if not parsed.is_payment_event:
            return OUTCOME_IGNORED

        attempt = self.machine.find_attempt(
            attempt_id=parsed.attempt_id,
            idempotency_key=parsed.idempotency_key,
            transaction_id=parsed.transaction_id,
        )
        if attempt is None:
            # The attempt may not have recorded its transaction id yet.
            raise ConsumerUnavailable(
                f"no payment attempt matches event {parsed.event_id} "
                f"(transaction {parsed.transaction_id})"
            )

        if parsed.event_type == EVENT_SUCCEEDED:
            result = self.machine.record_success(
                attempt.id, parsed.transaction_id, parsed.raw, source=SOURCE_WEBHOOK
            )
        elif parsed.event_type == EVENT_FAILED:
            result = self.machine.record_failure(
                attempt.id,
                reason=parsed.failure_reason or "declined",
                retryable=parsed.retryable,
                transaction_id=parsed.transaction_id,
                raw=parsed.raw,
                source=SOURCE_WEBHOOK,
            )
        else:
            result = self.machine.record_processing(attempt.id, parsed.transaction_id, parsed.raw)
        return f"attempt_{result.status.value}"


class HttpRelayConsumer(EventConsumer):
    """POSTs verified events to an internal HTTP endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.name = name
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def deliver(self, event: WebhookEvent, parsed: ParsedEvent) -> str:
        body = {
            "webhook_id": event.id,
            "provider": event.provider,
            "event_id": parsed.event_id,
            "event_type": parsed.event_type,
            "provider_event_type": parsed.provider_event_type,
            "transaction_id": parsed.transaction_id,
            "attempt_id": parsed.attempt_id,
            "occurred_at": parsed.occurred_at.isoformat() if parsed.occurred_at else None,
            "payload": parsed.raw,
        }
        try:
            response = self.client.post(
                self.url,
                json=body,
                headers={"Idempotency-Key": f"{event.provider}:{parsed.event_id}"},
            )
        except httpx.HTTPError as e:
            raise ConsumerUnavailable(f"relay {self.name} unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise ConsumerUnavailable(f"relay {self.name} returned {response.status_code}")
        if response.status_code >= 400:
            logger.warning(
                "webhook_relay_rejected",
                consumer=self.name,
                webhook_id=event.id,
                status_code=response.status_code,
            )
            return "rejected"
        return "relayed"


def relays_from_urls(urls: Sequence[str], client: Optional[httpx.Client] = None) -> List[HttpRelayConsumer]:
    return [HttpRelayConsumer(f"relay-{i + 1}", url, client=client) for i, url in enumerate(urls)]


# ============================================================================
# Pipeline
# ============================================================================

class WebhookIngestionPipeline:
    """
    Verified, exactly-once application of inbound webhooks.

    Usage:
        pipeline = WebhookIngestionPipeline(db, registry, security_log, PaymentEventApplier(machine))
        result = pipeline.ingest("stripe", body, headers, RequestSource(ip="1.2.3.4"))
    """

    def __init__(
        self,
        db: Database,
        registry: WebhookConfigRegistry,
        security_log: SecurityLog,
        applier: EventConsumer,
        relays: Sequence[EventConsumer] = (),
        clock: Callable[[], datetime] = utcnow,
        worker_id: Optional[str] = None,
        processing_lease_seconds: int = 60,
        dedup_ttl_days: int = 30,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.registry = registry
        self.security_log = security_log
        self.applier = applier
        self.relays = {relay.name: relay for relay in relays}
        self.clock = clock
        self.worker_id = worker_id or f"webhook-{uuid.uuid4().hex[:8]}"
        self.processing_lease = timedelta(seconds=processing_lease_seconds)
        self.dedup_ttl = timedelta(days=dedup_ttl_days)
        self.rng = rng or random.Random()
        self.events = WebhookEventRepository(db)
        self.dedup = DeduplicationRepository(db)
        self.retries = WebhookRetryRepository(db)
        self.scheduler = RedeliveryScheduler(db, registry, clock, self.rng)

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def ingest(
        self,
        provider: str,
        body: bytes,
        headers: Mapping[str, str],
        source: Optional[RequestSource] = None,
    ) -> IngestResult:
        """
        Verify and apply one delivery.

        Raises WebhookRejected subclasses for deliveries that must not be
        trusted; anything else raised is an internal failure.
        """
        source = source or RequestSource()
        headers = {k.lower(): v for k, v in headers.items()}
        event_id, event_type = "unknown", "unknown"

        try:
            adapter = get_adapter(provider)
            config = self.registry.get(provider)
            secret = self.registry.secret(provider)
            payload = self._decode(body)
            event_id, event_type = adapter.peek(payload)
            delivery = adapter.verify(payload, headers, config, secret)
            parsed = adapter.parse(payload)
            self._check_timestamp(delivery.timestamp, config.timestamp_tolerance)
        except WebhookRejected as e:
            self._record(provider, event_type, event_id, ValidationResult(e.validation_result), source, str(e))
            raise

        try:
            event, claimed, status = self._claim(provider, parsed, delivery.signature, payload)
            if not claimed:
                self._record(
                    provider, parsed.provider_event_type, parsed.event_id,
                    ValidationResult.DUPLICATE, source, status.value,
                )
                logger.info(
                    "webhook_duplicate",
                    provider=provider,
                    event_id=parsed.event_id,
                    status=status.value,
                )
                return IngestResult(
                    status=status,
                    provider=provider,
                    event_id=parsed.event_id,
                    webhook_id=event.id if event else None,
                    outcome=event.outcome if event else None,
                )
            result = self._process(event, parsed)
        except Exception as e:
            self._record(
                provider, parsed.provider_event_type, parsed.event_id,
                ValidationResult.ERROR, source, f"{type(e).__name__}: {e}",
            )
            raise

        self._record(
            provider, parsed.provider_event_type, parsed.event_id, ValidationResult.VALID, source,
            f"deferred: {', '.join(result.deferred_consumers)}" if result.status == IngestStatus.DEFERRED else None,
        )
        return result

    def _decode(self, body: bytes) -> str:
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEvent("payload is not UTF-8") from e

    def _check_timestamp(self, timestamp: Optional[datetime], tolerance: int) -> None:
        if timestamp is None:
            raise StaleOrFutureEvent("missing or unreadable delivery timestamp")
        skew = (self.clock() - timestamp).total_seconds()
        if abs(skew) > tolerance:
            direction = "old" if skew > 0 else "in the future"
            raise StaleOrFutureEvent(f"delivery timestamp is {abs(skew):.0f}s {direction} (tolerance {tolerance}s)")

    def _claim(
        self,
        provider: str,
        parsed: ParsedEvent,
        signature: str,
        payload: str,
    ) -> Tuple[Optional[WebhookEvent], bool, IngestStatus]:
        """
        Insert-if-absent on (provider, event_id).

        Returns (event, claimed by this worker, status if not claimed).
        """
        now = self.clock()
        with self.db.transaction():
            inserted = self.dedup.insert_if_absent(WebhookDeduplicationRecord(
                provider=provider,
                event_id=parsed.event_id,
                event_type=parsed.provider_event_type,
                first_seen=now,
                last_seen=now,
                expires_at=now + self.dedup_ttl,
            ))
            if not inserted:
                self.dedup.touch(provider, parsed.event_id, now)
            event = self.events.get_by_event_id(provider, parsed.event_id)

            if event is None:
                if not inserted:
                    return None, False, IngestStatus.DUPLICATE
                event = self.events.create(WebhookEvent(
                    id=new_id("WHE"),
                    provider=provider,
                    event_id=parsed.event_id,
                    event_type=parsed.provider_event_type,
                    signature=signature,
                    payload=payload,
                    occurred_at=parsed.occurred_at,
                    claimed_by=self.worker_id,
                    claimed_at=now,
                    received_at=now,
                ))
                return event, True, IngestStatus.ACCEPTED

            if event.processed:
                return event, False, IngestStatus.DUPLICATE
            if any(not r.exhausted for r in self.retries.list_for_webhook(event.id)):
                return event, False, IngestStatus.IN_PROGRESS
            if event.claimed_at is not None and now - event.claimed_at < self.processing_lease:
                return event, False, IngestStatus.IN_PROGRESS
            if not self.events.take_over(event.id, self.worker_id, now, event.claimed_at):
                return event, False, IngestStatus.IN_PROGRESS

        logger.warning(
            "webhook_claim_taken_over",
            webhook_id=event.id,
            event_id=event.event_id,
            previous_worker=event.claimed_by,
        )
        return self.events.get(event.id), True, IngestStatus.ACCEPTED

    def _apply(self, event: WebhookEvent, parsed: ParsedEvent) -> str:
        """Run the applier and set processed in one transaction."""
        with self.db.transaction():
            current = self.events.get(event.id, for_update=True)
            if current.processed:
                return current.outcome or OUTCOME_IGNORED
            outcome = self.applier.deliver(current, parsed)
            self.events.mark_processed(event.id, outcome, self.clock())
        logger.info(
            "webhook_applied",
            webhook_id=event.id,
            provider=event.provider,
            event_id=event.event_id,
            event_type=parsed.event_type,
            outcome=outcome,
        )
        return outcome

    def _process(self, event: WebhookEvent, parsed: ParsedEvent) -> IngestResult:
        deferred: List[str] = []
        outcome: Optional[str] = None
        try:
            outcome = self._apply(event, parsed)
        except TransientError as e:
            self._defer(event, self.applier.name, e)
            deferred.append(self.applier.name)
        except Exception as e:
            self.events.record_error(event.id, f"{type(e).__name__}: {e}")
            raise

        for relay in self.relays.values():
            try:
                relay.deliver(event, parsed)
            except TransientError as e:
                self._defer(event, relay.name, e)
                deferred.append(relay.name)

        if self.applier.name in deferred:
            status = IngestStatus.DEFERRED
        elif outcome == OUTCOME_IGNORED:
            status = IngestStatus.IGNORED
        else:
            status = IngestStatus.ACCEPTED
        return IngestResult(
            status=status,
            provider=event.provider,
            event_id=event.event_id,
            webhook_id=event.id,
            outcome=outcome,
            deferred_consumers=deferred,
        )

    def _defer(self, event: WebhookEvent, consumer: str, error: Exception) -> None:
        reason = str(error) or type(error).__name__
        logger.warning(
            "webhook_consumer_failed",
            webhook_id=event.id,
            event_id=event.event_id,
            consumer=consumer,
            error=reason,
        )
        with self.db.transaction():
            if consumer == self.applier.name:
                self.events.record_error(event.id, reason)
            self.scheduler.schedule(event, consumer, reason)

    def _record(
        self,
        provider: str,
        event_type: str,
        event_id: str,
        result: ValidationResult,
        source: RequestSource,
        message: Optional[str] = None,
    ) -> None:
        self.security_log.record(
            provider=provider,
            event_type=event_type,
            event_id=event_id,
            result=result,
            error_message=message,
            source_ip=source.ip,
            user_agent=source.user_agent,
        )

    # ------------------------------------------------------------------
    # Redelivery and maintenance
    # ------------------------------------------------------------------

    def redeliver(self, event: WebhookEvent, consumer: str) -> str:
        """Replay a stored event to one consumer. TransientError means try again later."""
        parsed = get_adapter(event.provider).parse(event.payload)
        if consumer == self.applier.name:
            try:
                return self._apply(event, parsed)
            except TransientError as e:
                self.events.record_error(event.id, str(e) or type(e).__name__)
                raise
        relay = self.relays.get(consumer)
        if relay is None:
            raise ConsumerUnavailable(f"consumer {consumer!r} is not configured")
        return relay.deliver(event, parsed)

    def gc_expired(self, event_retention_days: int = 30, failed_retry_retention_days: int = 30) -> Dict[str, int]:
        """Drop expired dedup records, then old processed events and exhausted retries."""
        now = self.clock()
        with self.db.transaction():
            dedup_removed = self.dedup.delete_expired(now)
            retries_removed = self.retries.delete_failed_before(now - timedelta(days=failed_retry_retention_days))
            events_removed = self.events.delete_processed_before(now - timedelta(days=event_retention_days))
        summary = {
            "dedup_records": dedup_removed,
            "events": events_removed,
            "exhausted_retries": retries_removed,
        }
        logger.info("webhook_gc_complete", **summary)
        return summary

    def stats(self, provider: Optional[str] = None, hours: int = 24) -> Dict[str, Any]:
        since = self.clock() - timedelta(hours=hours)
        counts = self.events.stats(since, provider)
        return {
            "provider": provider,
            "hours": hours,
            **counts,
            "duplicates": self.dedup.duplicate_count(since, provider),
            "rejected": {
                result: count
                for result, count in self.security_log.entries.count_by_result(since, provider).items()
                if result not in (ValidationResult.VALID.value, ValidationResult.DUPLICATE.value)
            },
            "redeliveries": self.retries.counts(),
        }
