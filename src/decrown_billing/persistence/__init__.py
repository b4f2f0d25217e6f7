"""
Persistence Layer for the Billing Core

Supports SQLite (dev, tests) and PostgreSQL (production).
"""

from .database import Database, get_database
from .repository import (
    DeduplicationRepository,
    DunningNoticeRepository,
    InvoiceRepository,
    LedgerRepository,
    PaymentAttemptRepository,
    SecurityLogRepository,
    WebhookConfigRepository,
    WebhookEventRepository,
    WebhookRetryRepository,
)

__all__ = [
    "Database",
    "get_database",
    "DeduplicationRepository",
    "DunningNoticeRepository",
    "InvoiceRepository",
    "LedgerRepository",
    "PaymentAttemptRepository",
    "SecurityLogRepository",
    "WebhookConfigRepository",
    "WebhookEventRepository",
    "WebhookRetryRepository",
]
