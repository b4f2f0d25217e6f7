"""
Inbound webhook handling: provider adapters, the ingestion pipeline and
internal redelivery.
"""

from .adapters import ParsedEvent, ProviderAdapter, get_adapter
from .config import WebhookConfigRegistry, WebhookSecurityConfig
from .pipeline import (
    EventConsumer,
    HttpRelayConsumer,
    IngestResult,
    IngestStatus,
    PaymentEventApplier,
    RequestSource,
    WebhookIngestionPipeline,
)
from .redelivery import RedeliveryScheduler, WebhookRedeliveryPoller

__all__ = [
    "ParsedEvent",
    "ProviderAdapter",
    "get_adapter",
    "WebhookConfigRegistry",
    "WebhookSecurityConfig",
    "EventConsumer",
    "HttpRelayConsumer",
    "IngestResult",
    "IngestStatus",
    "PaymentEventApplier",
    "RequestSource",
    "WebhookIngestionPipeline",
    "RedeliveryScheduler",
    "WebhookRedeliveryPoller",
]
