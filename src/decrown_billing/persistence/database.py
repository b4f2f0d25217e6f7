"""
Database Connection Layer

Supports SQLite (dev, tests) and PostgreSQL (production) with automatic schema
migration. Every multi-row state change in the billing core runs inside
``Database.transaction()``; on SQLite that is a ``BEGIN IMMEDIATE`` write
transaction, on PostgreSQL a regular transaction combined with row locks.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Monthly usage ledgers
CREATE TABLE IF NOT EXISTS usage_ledgers (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    month TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    ride_count INTEGER NOT NULL DEFAULT 0,
    total_distance_km TEXT NOT NULL DEFAULT '0',
    total_duration_minutes INTEGER NOT NULL DEFAULT 0,
    cost_components TEXT NOT NULL DEFAULT '{}',  -- JSON object
    final_amount TEXT NOT NULL DEFAULT '0.00',
    frozen_at TEXT,
    invoiced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (account_id, month)
);

CREATE TABLE IF NOT EXISTS ledger_adjustments (
    id TEXT PRIMARY KEY,
    ledger_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    amount TEXT NOT NULL,
    reason TEXT NOT NULL,
    actor TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    FOREIGN KEY (ledger_id) REFERENCES usage_ledgers(id)
);

-- Invoices
CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    invoice_number TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL,
    ledger_id TEXT UNIQUE,
    period TEXT NOT NULL,
    line_items TEXT NOT NULL,  -- JSON array
    subtotal TEXT NOT NULL,
    tax TEXT NOT NULL,
    total TEXT NOT NULL,
    currency TEXT NOT NULL,
    due_date TEXT NOT NULL,
    status TEXT NOT NULL,
    paid_at TEXT,
    overdue_at TEXT,
    cancelled_at TEXT,
    collections_handoff_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (account_id, period),
    FOREIGN KEY (ledger_id) REFERENCES usage_ledgers(id)
);

CREATE TABLE IF NOT EXISTS invoice_corrections (
    id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    amount TEXT NOT NULL,
    reason TEXT NOT NULL,
    actor TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (invoice_id) REFERENCES invoices(id)
);

-- Payment attempts
CREATE TABLE IF NOT EXISTS payment_attempts (
    id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    processor TEXT NOT NULL,
    idempotency_key TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT,
    transaction_id TEXT,
    failure_reason TEXT,
    provider_response TEXT,  -- JSON object
    claimed_by TEXT,
    claimed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    FOREIGN KEY (invoice_id) REFERENCES invoices(id)
);

-- Inbound webhooks
CREATE TABLE IF NOT EXISTS webhook_events (
    id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    signature TEXT NOT NULL,
    payload TEXT NOT NULL,
    occurred_at TEXT,
    processed INTEGER NOT NULL DEFAULT 0,
    processed_at TEXT,
    outcome TEXT,
    processing_error TEXT,
    claimed_by TEXT,
    claimed_at TEXT,
    received_at TEXT NOT NULL,
    UNIQUE (provider, event_id)
);

CREATE TABLE IF NOT EXISTS webhook_deduplication (
    provider TEXT NOT NULL,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    occurrence_count INTEGER NOT NULL DEFAULT 1,
    expires_at TEXT NOT NULL,
    PRIMARY KEY (provider, event_id)
);

CREATE TABLE IF NOT EXISTS webhook_retries (
    id TEXT PRIMARY KEY,
    webhook_id TEXT NOT NULL,
    consumer TEXT NOT NULL,
    max_attempts INTEGER NOT NULL,
    current_attempt INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT NOT NULL,
    failure_reason TEXT,
    failed_at TEXT,
    claimed_by TEXT,
    claimed_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (webhook_id, consumer),
    FOREIGN KEY (webhook_id) REFERENCES webhook_events(id)
);

CREATE TABLE IF NOT EXISTS webhook_security_config (
    provider TEXT PRIMARY KEY,
    signature_header TEXT NOT NULL,
    timestamp_header TEXT NOT NULL,
    timestamp_tolerance INTEGER NOT NULL,
    max_retry_attempts INTEGER NOT NULL,
    retry_delay_ms INTEGER NOT NULL,
    backoff_multiplier REAL NOT NULL,
    max_retry_delay_ms INTEGER NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL
);

-- Append-only, hash-chained security log
CREATE TABLE IF NOT EXISTS webhook_security_logs (
    sequence INTEGER PRIMARY KEY,
    provider TEXT NOT NULL,
    event_type TEXT NOT NULL,
    event_id TEXT NOT NULL,
    validation_result TEXT NOT NULL,
    error_message TEXT,
    source_ip TEXT,
    user_agent TEXT,
    logged_at TEXT NOT NULL,
    prev_hash TEXT NOT NULL,
    entry_hash TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS audit_checkpoints (
    sequence INTEGER PRIMARY KEY,
    head_hash TEXT NOT NULL,
    signature TEXT NOT NULL,
    key_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Dunning
CREATE TABLE IF NOT EXISTS dunning_notices (
    id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    notice_level INTEGER NOT NULL,
    due_date TEXT NOT NULL,
    amount TEXT NOT NULL,
    message TEXT NOT NULL,
    status TEXT NOT NULL,
    delivery_method TEXT NOT NULL,
    created_at TEXT NOT NULL,
    delivered_at TEXT,
    claimed_at TEXT,
    UNIQUE (invoice_id, notice_level),
    FOREIGN KEY (invoice_id) REFERENCES invoices(id)
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- At most one open and one succeeded attempt per invoice
CREATE UNIQUE INDEX IF NOT EXISTS uq_attempt_open ON payment_attempts(invoice_id)
    WHERE status IN ('pending', 'processing');
CREATE UNIQUE INDEX IF NOT EXISTS uq_attempt_succeeded ON payment_attempts(invoice_id)
    WHERE status = 'succeeded';

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_invoices_status ON invoices(status);
CREATE INDEX IF NOT EXISTS idx_invoices_account ON invoices(account_id);
CREATE INDEX IF NOT EXISTS idx_attempts_due ON payment_attempts(status, next_retry_at);
CREATE INDEX IF NOT EXISTS idx_attempts_transaction ON payment_attempts(transaction_id);
CREATE INDEX IF NOT EXISTS idx_dedup_expires ON webhook_deduplication(expires_at);
CREATE INDEX IF NOT EXISTS idx_retries_due ON webhook_retries(next_retry_at);
CREATE INDEX IF NOT EXISTS idx_security_logs_logged ON webhook_security_logs(logged_at);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS usage_ledgers (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    month TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    ride_count INTEGER NOT NULL DEFAULT 0,
    total_distance_km NUMERIC(14,3) NOT NULL DEFAULT 0,
    total_duration_minutes INTEGER NOT NULL DEFAULT 0,
    cost_components JSONB NOT NULL DEFAULT '{}',
    final_amount NUMERIC(12,2) NOT NULL DEFAULT 0,
    frozen_at TIMESTAMPTZ,
    invoiced_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (account_id, month)
);

CREATE TABLE IF NOT EXISTS ledger_adjustments (
    id TEXT PRIMARY KEY,
    ledger_id TEXT NOT NULL REFERENCES usage_ledgers(id),
    kind TEXT NOT NULL,
    amount NUMERIC(12,2) NOT NULL,
    reason TEXT NOT NULL,
    actor TEXT NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    invoice_number TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL,
    ledger_id TEXT UNIQUE REFERENCES usage_ledgers(id),
    period TEXT NOT NULL,
    line_items JSONB NOT NULL,
    subtotal NUMERIC(12,2) NOT NULL,
    tax NUMERIC(12,2) NOT NULL,
    total NUMERIC(12,2) NOT NULL,
    currency TEXT NOT NULL,
    due_date DATE NOT NULL,
    status TEXT NOT NULL,
    paid_at TIMESTAMPTZ,
    overdue_at TIMESTAMPTZ,
    cancelled_at TIMESTAMPTZ,
    collections_handoff_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (account_id, period)
);

CREATE TABLE IF NOT EXISTS invoice_corrections (
    id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL REFERENCES invoices(id),
    kind TEXT NOT NULL,
    amount NUMERIC(12,2) NOT NULL,
    reason TEXT NOT NULL,
    actor TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_attempts (
    id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL REFERENCES invoices(id),
    amount NUMERIC(12,2) NOT NULL,
    currency TEXT NOT NULL,
    processor TEXT NOT NULL,
    idempotency_key TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at TIMESTAMPTZ,
    transaction_id TEXT,
    failure_reason TEXT,
    provider_response JSONB,
    claimed_by TEXT,
    claimed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS webhook_events (
    id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    signature TEXT NOT NULL,
    payload TEXT NOT NULL,
    occurred_at TIMESTAMPTZ,
    processed BOOLEAN NOT NULL DEFAULT FALSE,
    processed_at TIMESTAMPTZ,
    outcome TEXT,
    processing_error TEXT,
    claimed_by TEXT,
    claimed_at TIMESTAMPTZ,
    received_at TIMESTAMPTZ NOT NULL,
    UNIQUE (provider, event_id)
);

CREATE TABLE IF NOT EXISTS webhook_deduplication (
    provider TEXT NOT NULL,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    first_seen TIMESTAMPTZ NOT NULL,
    last_seen TIMESTAMPTZ NOT NULL,
    occurrence_count INTEGER NOT NULL DEFAULT 1,
    expires_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (provider, event_id)
);

CREATE TABLE IF NOT EXISTS webhook_retries (
    id TEXT PRIMARY KEY,
    webhook_id TEXT NOT NULL REFERENCES webhook_events(id),
    consumer TEXT NOT NULL,
    max_attempts INTEGER NOT NULL,
    current_attempt INTEGER NOT NULL DEFAULT 0,
    next_retry_at TIMESTAMPTZ NOT NULL,
    failure_reason TEXT,
    failed_at TIMESTAMPTZ,
    claimed_by TEXT,
    claimed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    UNIQUE (webhook_id, consumer)
);

CREATE TABLE IF NOT EXISTS webhook_security_config (
    provider TEXT PRIMARY KEY,
    signature_header TEXT NOT NULL,
    timestamp_header TEXT NOT NULL,
    timestamp_tolerance INTEGER NOT NULL,
    max_retry_attempts INTEGER NOT NULL,
    retry_delay_ms INTEGER NOT NULL,
    backoff_multiplier DOUBLE PRECISION NOT NULL,
    max_retry_delay_ms INTEGER NOT NULL,
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS webhook_security_logs (
    sequence BIGINT PRIMARY KEY,
    provider TEXT NOT NULL,
    event_type TEXT NOT NULL,
    event_id TEXT NOT NULL,
    validation_result TEXT NOT NULL,
    error_message TEXT,
    source_ip TEXT,
    user_agent TEXT,
    logged_at TIMESTAMPTZ NOT NULL,
    prev_hash TEXT NOT NULL,
    entry_hash TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS audit_checkpoints (
    sequence BIGINT PRIMARY KEY,
    head_hash TEXT NOT NULL,
    signature TEXT NOT NULL,
    key_id TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS dunning_notices (
    id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL REFERENCES invoices(id),
    account_id TEXT NOT NULL,
    notice_level INTEGER NOT NULL,
    due_date DATE NOT NULL,
    amount NUMERIC(12,2) NOT NULL,
    message TEXT NOT NULL,
    status TEXT NOT NULL,
    delivery_method TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    delivered_at TIMESTAMPTZ,
    claimed_at TIMESTAMPTZ,
    UNIQUE (invoice_id, notice_level)
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_attempt_open ON payment_attempts(invoice_id)
    WHERE status IN ('pending', 'processing');
CREATE UNIQUE INDEX IF NOT EXISTS uq_attempt_succeeded ON payment_attempts(invoice_id)
    WHERE status = 'succeeded';

CREATE INDEX IF NOT EXISTS idx_invoices_status ON invoices(status);
CREATE INDEX IF NOT EXISTS idx_invoices_account ON invoices(account_id);
CREATE INDEX IF NOT EXISTS idx_attempts_due ON payment_attempts(status, next_retry_at);
CREATE INDEX IF NOT EXISTS idx_attempts_transaction ON payment_attempts(transaction_id);
CREATE INDEX IF NOT EXISTS idx_dedup_expires ON webhook_deduplication(expires_at);
CREATE INDEX IF NOT EXISTS idx_retries_due ON webhook_retries(next_retry_at);
CREATE INDEX IF NOT EXISTS idx_security_logs_logged ON webhook_security_logs(logged_at);
"""


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction():
            db.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,))

    Queries are written with ``?`` placeholders; they are rewritten for
    psycopg2 when running against PostgreSQL. Statements issued inside
    ``transaction()`` on the same thread share one connection.
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///decrown_billing.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "decrown_billing.db"

    def _sqlite_conn(self) -> sqlite3.Connection:
        """Thread-local SQLite connection in autocommit mode with WAL enabled."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._get_sqlite_path(),
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    def _postgres_conn(self) -> Any:
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """
        Yield a connection outside of any transaction (autocommit per statement).

        Inside ``transaction()`` the transaction's connection is yielded instead.
        """
        tx_conn = getattr(self._local, "tx_conn", None)
        if tx_conn is not None:
            yield tx_conn
            return

        if not self.is_postgres:
            yield self._sqlite_conn()
            return

        conn = self._postgres_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        """
        Run a block atomically. Nested calls join the outermost transaction.

        SQLite takes the database write lock up front (BEGIN IMMEDIATE) so
        read-check-write sequences cannot interleave between workers.
        """
        if getattr(self._local, "tx_conn", None) is not None:
            self._local.depth += 1
            try:
                yield self._local.tx_conn
            finally:
                self._local.depth -= 1
            return

        conn = self._postgres_conn() if self.is_postgres else self._sqlite_conn()
        if not self.is_postgres:
            conn.execute("BEGIN IMMEDIATE")
        self._local.tx_conn = conn
        self._local.depth = 1
        try:
            yield conn
            if self.is_postgres:
                conn.commit()
            else:
                conn.execute("COMMIT")
        except BaseException:
            if self.is_postgres:
                conn.rollback()
            elif conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            self._local.tx_conn = None
            self._local.depth = 0
            if self.is_postgres:
                conn.close()

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(POSTGRES_SCHEMA_SQL)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(SCHEMA_SQL)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def _run(self, conn: Any, query: str, params: tuple) -> Any:
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(query.replace("?", "%s"), params)
            return cursor
        return conn.execute(query, params)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            cursor = self._run(conn, query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def execute_write(self, query: str, params: tuple = ()) -> int:
        """Execute a write statement and return the affected row count."""
        with self.connection() as conn:
            return self._run(conn, query, params).rowcount

    def lock_row(self, table: str, key_column: str, key: Any) -> None:
        """
        Lock one row for the rest of the current transaction.

        A no-op on SQLite, where BEGIN IMMEDIATE already serializes writers.
        """
        if not self.is_postgres:
            return
        self.execute(f"SELECT 1 FROM {table} WHERE {key_column} = ? FOR UPDATE", (key,))

    def advisory_lock(self, name: str) -> None:
        """Serialize a named critical section for the current transaction."""
        if not self.is_postgres:
            return
        self.execute("SELECT pg_advisory_xact_lock(hashtext(?))", (name,))

    def close(self) -> None:
        """Close database connections."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
