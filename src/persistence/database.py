"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema migration.

Two ways in:
- ``execute()`` runs a single autocommitted statement (reads, append-only writes).
- ``transaction()`` opens a write transaction for read-modify-write units.
  On SQLite it starts with ``BEGIN IMMEDIATE`` so the write lock is held
  before the first read; on PostgreSQL callers lock rows with
  ``Transaction.for_update``.
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
-- Quota grants (one row per credit allocation)
CREATE TABLE IF NOT EXISTS quota_grants (
    grant_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    remaining INTEGER NOT NULL CHECK (remaining >= 0 AND remaining <= amount),
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'manual',
    note TEXT,
    payment_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Uncovered consumption
CREATE TABLE IF NOT EXISTS quota_debts (
    debt_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    shortfall_amount INTEGER NOT NULL CHECK (shortfall_amount > 0),
    created_at TEXT NOT NULL
);

-- Usage audit trail
CREATE TABLE IF NOT EXISTS quota_usage (
    usage_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount_debited INTEGER NOT NULL,
    grants_drawn TEXT NOT NULL,  -- JSON object grant_id -> amount
    debt_amount INTEGER NOT NULL DEFAULT 0,
    metadata TEXT,  -- JSON object
    created_at TEXT NOT NULL
);

-- Payment state machine
CREATE TABLE IF NOT EXISTS payments (
    payment_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    product_id TEXT NOT NULL,
    source TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'waiting',
    environment TEXT,
    purchase_at TEXT,
    provider_fields TEXT,  -- JSON object
    note TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Outbox events
CREATE TABLE IF NOT EXISTS events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,  -- JSON object
    status TEXT NOT NULL DEFAULT 'waiting',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes
CREATE UNIQUE INDEX IF NOT EXISTS uq_grants_payment_source ON quota_grants(payment_id, source);
CREATE INDEX IF NOT EXISTS idx_grants_user_period ON quota_grants(user_id, period_end);
CREATE INDEX IF NOT EXISTS idx_debts_user ON quota_debts(user_id);
CREATE INDEX IF NOT EXISTS idx_usage_user_created ON quota_usage(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_payments_user ON payments(user_id);
CREATE INDEX IF NOT EXISTS idx_events_status ON events(status, created_at);
"""

POSTGRES_SCHEMA_SQL = """
-- Quota grants
CREATE TABLE IF NOT EXISTS quota_grants (
    grant_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount BIGINT NOT NULL CHECK (amount > 0),
    remaining BIGINT NOT NULL CHECK (remaining >= 0 AND remaining <= amount),
    period_start TIMESTAMPTZ NOT NULL,
    period_end TIMESTAMPTZ NOT NULL,
    source TEXT NOT NULL DEFAULT 'manual',
    note TEXT,
    payment_id TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Debts
CREATE TABLE IF NOT EXISTS quota_debts (
    debt_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    shortfall_amount BIGINT NOT NULL CHECK (shortfall_amount > 0),
    created_at TIMESTAMPTZ NOT NULL
);

-- Usage audit trail
CREATE TABLE IF NOT EXISTS quota_usage (
    usage_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount_debited BIGINT NOT NULL,
    grants_drawn JSONB NOT NULL,
    debt_amount BIGINT NOT NULL DEFAULT 0,
    metadata JSONB,
    created_at TIMESTAMPTZ NOT NULL
);

-- Payments
CREATE TABLE IF NOT EXISTS payments (
    payment_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    product_id TEXT NOT NULL,
    source TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'waiting',
    environment TEXT,
    purchase_at TIMESTAMPTZ,
    provider_fields JSONB,
    note TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Outbox events
CREATE TABLE IF NOT EXISTS events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    payload JSONB NOT NULL,
    status TEXT NOT NULL DEFAULT 'waiting',
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE UNIQUE INDEX IF NOT EXISTS uq_grants_payment_source ON quota_grants(payment_id, source);
CREATE INDEX IF NOT EXISTS idx_grants_user_period ON quota_grants(user_id, period_end);
CREATE INDEX IF NOT EXISTS idx_debts_user ON quota_debts(user_id);
CREATE INDEX IF NOT EXISTS idx_usage_user_created ON quota_usage(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_payments_user ON payments(user_id);
CREATE INDEX IF NOT EXISTS idx_events_status ON events(status, created_at);
"""


class StorageError(Exception):
    """Raised when a storage operation fails. The transaction was rolled back."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string, so stored values sort chronologically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept both SQLite strings and PostgreSQL datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Transaction:
    """
    Handle bound to one open database transaction.

    Queries use ``?`` placeholders for both backends.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self._conn = conn
        self.is_postgres = is_postgres

    @property
    def for_update(self) -> str:
        """Row-lock suffix for SELECTs inside the transaction."""
        # SQLite already holds the database write lock (BEGIN IMMEDIATE)
        return " FOR UPDATE" if self.is_postgres else ""

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        if self.is_postgres:
            cursor = self._conn.cursor()
            cursor.execute(query.replace("?", "%s"), params)
        else:
            cursor = self._conn.execute(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def execute_rowcount(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the number of affected rows."""
        if self.is_postgres:
            cursor = self._conn.cursor()
            cursor.execute(query.replace("?", "%s"), params)
        else:
            cursor = self._conn.execute(query, params)
        return cursor.rowcount


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.execute("SELECT * FROM quota_grants WHERE user_id = ?", (user_id,))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///quota_ledger.db"
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
        return "quota_ledger.db"

    def _sqlite_conn(self) -> sqlite3.Connection:
        """Thread-local SQLite connection in autocommit mode."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,  # transactions are opened explicitly
            )
            conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return self._local.conn

    def _postgres_conn(self) -> Any:
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)

    def _driver_errors(self) -> tuple:
        if self.is_postgres:
            import psycopg2
            return (psycopg2.Error,)
        return (sqlite3.Error,)

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            conn = self._postgres_conn()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        else:
            yield self._sqlite_conn()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """
        Run a unit of work atomically.

        Any exception (cancellation included) rolls the whole unit back.
        Driver errors are re-raised as StorageError.
        """
        errors = self._driver_errors()
        if self.is_postgres:
            conn = self._postgres_conn()
        else:
            conn = self._sqlite_conn()

        try:
            if not self.is_postgres:
                conn.execute("BEGIN IMMEDIATE")
            yield Transaction(conn, self.is_postgres)
            conn.commit()
        except errors as e:
            self._rollback(conn)
            logger.error("transaction_failed", error=str(e))
            raise StorageError(str(e)) from e
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            if self.is_postgres:
                conn.close()

    def _rollback(self, conn: Any) -> None:
        try:
            conn.rollback()
        except self._driver_errors() as e:
            logger.warning("rollback_failed", error=str(e))

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                else:
                    conn.executescript(schema)

                # Record schema version
                now = format_timestamp(utcnow())
                if self.is_postgres:
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        try:
            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(query.replace("?", "%s"), params)
                else:
                    cursor = conn.execute(query, params)
                if cursor.description:
                    return [dict(row) for row in cursor.fetchall()]
                return []
        except self._driver_errors() as e:
            raise StorageError(str(e)) from e

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
