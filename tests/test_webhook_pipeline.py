"""
Tests for the Webhook Ingestion Pipeline

Verification, timestamp tolerance, exactly-once application, deferral to
redelivery, claim take-over, security logging and maintenance.
"""

import random
import threading
from datetime import timedelta

import pytest

from decrown_billing.core.errors import (
    InvalidSignature,
    MalformedEvent,
    StaleOrFutureEvent,
    UnknownProvider,
)
from decrown_billing.persistence.models import AttemptStatus, InvoiceStatus, ValidationResult
from decrown_billing.webhooks.config import DEFAULT_PROVIDER_CONFIGS, WebhookConfigRegistry
from decrown_billing.webhooks.pipeline import (
    EventConsumer,
    IngestStatus,
    PaymentEventApplier,
    RequestSource,
    WebhookIngestionPipeline,
)

from conftest import WEBHOOK_SECRETS, mock_event, signed_delivery


def last_log_entry(services):
    return services.security_log.entries.recent(1)[0]


class CrashingApplier(EventConsumer):
    """Fails with a non-transient error on the first delivery, then applies normally."""

    name = "payments"

    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def deliver(self, event, parsed):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("worker crashed")
        return self.inner.deliver(event, parsed)


def make_pipeline(services, applier, relays=()):
    return WebhookIngestionPipeline(
        services.db,
        services.registry,
        services.security_log,
        applier,
        relays=relays,
        clock=services.clock,
        processing_lease_seconds=60,
        rng=random.Random(3),
    )


class TestAccepted:
    """Test verified first deliveries."""

    def test_success_event_pays_invoice(self, services, invoice, clock):
        """A verified payment.succeeded settles the attempt and the invoice."""
        attempt = services.payments.create_attempt(invoice.id)
        body, headers = signed_delivery("mock", mock_event("evt_1", "payment.succeeded", attempt), clock())

        result = services.pipeline.ingest("mock", body, headers, RequestSource(ip="10.0.0.1", user_agent="mock/1.0"))

        assert result.status == IngestStatus.ACCEPTED
        assert result.http_status == 200
        assert result.outcome == "attempt_succeeded"
        assert services.payments.attempts.get(attempt.id).transaction_id == f"txn_{attempt.id}"
        assert services.invoices.get(invoice.id).status == InvoiceStatus.PAID

        event = services.pipeline.events.get(result.webhook_id)
        assert event.processed
        assert event.outcome == "attempt_succeeded"

        entry = last_log_entry(services)
        assert entry.validation_result == ValidationResult.VALID
        assert entry.event_id == "evt_1"
        assert entry.source_ip == "10.0.0.1"
        assert entry.user_agent == "mock/1.0"

    def test_failure_event_schedules_retry(self, services, invoice, processor, clock):
        """A webhook decline of an asynchronous charge goes through the retry path."""
        processor.settle_async("txn_async")
        attempt = services.payments.create_attempt(invoice.id)
        services.payments.submit(attempt.id)
        payload = mock_event("evt_2", "payment.failed", attempt, failure_reason="insufficient_funds")
        body, headers = signed_delivery("mock", payload, clock())

        result = services.pipeline.ingest("mock", body, headers)

        assert result.outcome == "attempt_failed"
        failed = services.payments.attempts.get(attempt.id)
        assert failed.status == AttemptStatus.FAILED
        assert failed.failure_reason == "insufficient_funds"
        assert services.payments.attempts.open_for(invoice.id).retry_count == 1

    def test_header_names_are_case_insensitive(self, services, invoice, clock):
        attempt = services.payments.create_attempt(invoice.id)
        body, headers = signed_delivery("mock", mock_event("evt_3", "payment.succeeded", attempt), clock())
        shouted = {k.upper(): v for k, v in headers.items()}

        result = services.pipeline.ingest("mock", body, shouted)

        assert result.status == IngestStatus.ACCEPTED

    def test_event_without_payment_meaning_is_ignored(self, services, clock):
        body, headers = signed_delivery("mock", mock_event("evt_4", "customer.updated"), clock())

        result = services.pipeline.ingest("mock", body, headers)

        assert result.status == IngestStatus.IGNORED
        assert result.http_status == 200
        assert services.pipeline.events.get(result.webhook_id).processed


class TestDuplicates:
    """Test at-most-once application of repeated deliveries."""

    def test_redelivered_event_is_not_applied_twice(self, services, invoice, clock):
        attempt = services.payments.create_attempt(invoice.id)
        body, headers = signed_delivery("mock", mock_event("evt_123", "payment.succeeded", attempt), clock())
        first = services.pipeline.ingest("mock", body, headers)

        clock.advance(minutes=5)
        body, headers = signed_delivery("mock", mock_event("evt_123", "payment.succeeded", attempt), clock())
        second = services.pipeline.ingest("mock", body, headers)

        assert second.status == IngestStatus.DUPLICATE
        assert second.http_status == 200
        assert second.webhook_id == first.webhook_id
        assert second.outcome == "attempt_succeeded"
        record = services.pipeline.dedup.get("mock", "evt_123")
        assert record.occurrence_count == 2
        assert record.last_seen == clock()
        assert last_log_entry(services).validation_result == ValidationResult.DUPLICATE

    def test_concurrent_deliveries_apply_once(self, services, invoice, clock):
        """Two simultaneous deliveries of one event: one applies, the other is a duplicate."""
        attempt = services.payments.create_attempt(invoice.id)
        body, headers = signed_delivery("mock", mock_event("evt_123", "payment.succeeded", attempt), clock())
        barrier = threading.Barrier(2)
        results, errors = [], []

        def deliver():
            barrier.wait()
            try:
                results.append(services.pipeline.ingest("mock", body, headers))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=deliver) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        statuses = sorted(r.status.value for r in results)
        assert statuses[0] == IngestStatus.ACCEPTED.value
        assert statuses[1] in (IngestStatus.DUPLICATE.value, IngestStatus.IN_PROGRESS.value)

        succeeded = [
            a for a in services.payments.attempts.list_for_invoice(invoice.id)
            if a.status == AttemptStatus.SUCCEEDED
        ]
        assert len(succeeded) == 1

        logged = sorted(e.validation_result.value for e in services.security_log.entries.recent(10))
        assert logged == ["duplicate", "valid"]
        assert services.security_log.verify().valid


class TestRejections:
    """Test deliveries that must not be trusted."""

    def test_bad_signature(self, services, clock):
        body, headers = signed_delivery("mock", mock_event("evt_bad", "payment.succeeded"), clock(), secret="wrong")

        with pytest.raises(InvalidSignature):
            services.pipeline.ingest("mock", body, headers, RequestSource(ip="203.0.113.9"))

        entry = last_log_entry(services)
        assert entry.validation_result == ValidationResult.INVALID_SIGNATURE
        assert entry.event_id == "evt_bad"
        assert entry.source_ip == "203.0.113.9"
        assert services.pipeline.events.get_by_event_id("mock", "evt_bad") is None

    def test_stale_timestamp(self, services, clock):
        """Deliveries signed more than the tolerance ago are replays."""
        sent_at = clock() - timedelta(seconds=301)
        body, headers = signed_delivery("mock", mock_event("evt_old", "payment.succeeded"), sent_at)

        with pytest.raises(StaleOrFutureEvent):
            services.pipeline.ingest("mock", body, headers)

        assert last_log_entry(services).validation_result == ValidationResult.INVALID_TIMESTAMP
        assert services.pipeline.dedup.get("mock", "evt_old") is None

    def test_future_timestamp(self, services, clock):
        sent_at = clock() + timedelta(seconds=301)
        body, headers = signed_delivery("mock", mock_event("evt_future", "payment.succeeded"), sent_at)

        with pytest.raises(StaleOrFutureEvent):
            services.pipeline.ingest("mock", body, headers)

    def test_timestamp_at_tolerance_is_accepted(self, services, clock):
        sent_at = clock() - timedelta(seconds=300)
        body, headers = signed_delivery("mock", mock_event("evt_edge", "customer.updated"), sent_at)

        assert services.pipeline.ingest("mock", body, headers).status == IngestStatus.IGNORED

    def test_missing_timestamp(self, services, clock):
        body, headers = signed_delivery("mock", mock_event("evt_nots", "payment.succeeded"), clock())
        del headers["x-webhook-timestamp"]

        with pytest.raises(StaleOrFutureEvent):
            services.pipeline.ingest("mock", body, headers)

    def test_unknown_provider(self, services, clock):
        with pytest.raises(UnknownProvider) as exc_info:
            services.pipeline.ingest("paypal", b"{}", {})

        assert exc_info.value.status_code == 404
        assert last_log_entry(services).validation_result == ValidationResult.ERROR

    def test_provider_without_secret_is_unknown(self, services, clock):
        secrets = {k: v for k, v in WEBHOOK_SECRETS.items() if k != "paymongo"}
        services.pipeline.registry = WebhookConfigRegistry(DEFAULT_PROVIDER_CONFIGS, secrets)

        with pytest.raises(UnknownProvider):
            services.pipeline.ingest("paymongo", b"{}", {})

    def test_non_utf8_body(self, services):
        with pytest.raises(MalformedEvent):
            services.pipeline.ingest("mock", b"\xff\xfe\x00", {})

    def test_signed_but_malformed(self, services, clock):
        body, headers = signed_delivery("mock", '{"type": "payment.succeeded"}', clock())

        with pytest.raises(MalformedEvent):
            services.pipeline.ingest("mock", body, headers)

        assert last_log_entry(services).event_id == "unknown"


class TestDeferral:
    """Test transient failures handed to internal redelivery."""

    def test_unknown_attempt_defers_application(self, services, clock):
        """The processor is answered with 202 and a redelivery is scheduled."""
        payload = mock_event("evt_early", "payment.succeeded", transaction_id="txn_not_yet_recorded")
        body, headers = signed_delivery("mock", payload, clock())

        result = services.pipeline.ingest("mock", body, headers)

        assert result.status == IngestStatus.DEFERRED
        assert result.http_status == 202
        assert result.deferred_consumers == ["payments"]

        event = services.pipeline.events.get(result.webhook_id)
        assert not event.processed
        assert "txn_not_yet_recorded" in event.processing_error

        retry = services.pipeline.retries.get_for(event.id, "payments")
        assert retry.current_attempt == 0
        assert retry.max_attempts == 3
        assert retry.next_retry_at == clock() + timedelta(milliseconds=1000)
        assert last_log_entry(services).validation_result == ValidationResult.VALID

    def test_redelivery_from_provider_while_deferred_is_in_progress(self, services, clock):
        payload = mock_event("evt_early", "payment.succeeded", transaction_id="txn_nope")
        body, headers = signed_delivery("mock", payload, clock())
        services.pipeline.ingest("mock", body, headers)

        clock.advance(minutes=10)
        body, headers = signed_delivery("mock", payload, clock())
        result = services.pipeline.ingest("mock", body, headers)

        assert result.status == IngestStatus.IN_PROGRESS
        assert len(services.pipeline.retries.list_for_webhook(result.webhook_id)) == 1


class TestTakeOver:
    """Test recovery of events whose handler died mid-flight."""

    def test_unexpected_error_leaves_event_claimable(self, services, invoice, clock):
        applier = CrashingApplier(PaymentEventApplier(services.payments))
        pipeline = make_pipeline(services, applier)
        attempt = services.payments.create_attempt(invoice.id)
        payload = mock_event("evt_crash", "payment.succeeded", attempt)
        body, headers = signed_delivery("mock", payload, clock())

        with pytest.raises(RuntimeError):
            pipeline.ingest("mock", body, headers)

        assert last_log_entry(services).validation_result == ValidationResult.ERROR
        event = pipeline.events.get_by_event_id("mock", "evt_crash")
        assert not event.processed
        assert "worker crashed" in event.processing_error

        clock.advance(seconds=30)
        body, headers = signed_delivery("mock", payload, clock())
        assert pipeline.ingest("mock", body, headers).status == IngestStatus.IN_PROGRESS

        clock.advance(seconds=31)
        body, headers = signed_delivery("mock", payload, clock())
        result = pipeline.ingest("mock", body, headers)

        assert result.status == IngestStatus.ACCEPTED
        assert result.outcome == "attempt_succeeded"
        assert pipeline.events.get(event.id).claimed_by == pipeline.worker_id
        assert services.invoices.get(invoice.id).status == InvoiceStatus.PAID


class TestMaintenance:
    """Test gc_expired and stats."""

    def test_gc_removes_expired_records(self, services, clock):
        body, headers = signed_delivery("mock", mock_event("evt_gc", "customer.updated"), clock())
        services.pipeline.ingest("mock", body, headers)

        assert services.pipeline.gc_expired() == {"dedup_records": 0, "events": 0, "exhausted_retries": 0}

        clock.advance(days=31)
        summary = services.pipeline.gc_expired()

        assert summary == {"dedup_records": 1, "events": 1, "exhausted_retries": 0}
        assert services.pipeline.events.get_by_event_id("mock", "evt_gc") is None

    def test_stats(self, services, invoice, clock):
        attempt = services.payments.create_attempt(invoice.id)
        body, headers = signed_delivery("mock", mock_event("evt_s1", "payment.succeeded", attempt), clock())
        services.pipeline.ingest("mock", body, headers)
        services.pipeline.ingest("mock", body, headers)
        bad_body, bad_headers = signed_delivery("mock", mock_event("evt_s2", "payment.succeeded"), clock(), secret="x")
        with pytest.raises(InvalidSignature):
            services.pipeline.ingest("mock", bad_body, bad_headers)

        stats = services.pipeline.stats(provider="mock")

        assert stats["total"] == 1
        assert stats["processed"] == 1
        assert stats["failed"] == 0
        assert stats["duplicates"] == 1
        assert stats["rejected"] == {"invalid_signature": 1}
        assert stats["redeliveries"] == {"pending": 0, "exhausted": 0}
