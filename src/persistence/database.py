"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema creation.

Every write runs inside a Transaction. On SQLite a write transaction starts
with BEGIN IMMEDIATE, so writers from any thread or process are serialized
on the database file; on PostgreSQL the conditional balance update re-checks
its predicate after taking the row lock. Driver-level operational failures
surface as StorageUnavailable.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, List, Optional
from datetime import datetime, timezone
import threading
import structlog

from core.errors import StorageUnavailable

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Tenant accounts (directory)
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT,
    name TEXT,
    created_at TEXT NOT NULL
);

-- Published stores (directory)
CREATE TABLE IF NOT EXISTS stores (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    owner_account_id TEXT,
    published INTEGER NOT NULL DEFAULT 0,
    deactivation_reason TEXT,
    deactivated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Custom domains (directory)
CREATE TABLE IF NOT EXISTS custom_domains (
    id TEXT PRIMARY KEY,
    domain TEXT NOT NULL,
    store_id TEXT,
    is_active INTEGER NOT NULL DEFAULT 0,
    verification_status TEXT NOT NULL DEFAULT 'pending',
    deactivation_reason TEXT,
    deactivated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Per-account balance (the one contended row)
CREATE TABLE IF NOT EXISTS credit_balances (
    account_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    total_purchased INTEGER NOT NULL DEFAULT 0,
    total_bonus INTEGER NOT NULL DEFAULT 0,
    total_used INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Usage ledger (append-only)
CREATE TABLE IF NOT EXISTS credit_usage (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    entity_id TEXT,
    credits_used INTEGER NOT NULL,
    usage_type TEXT NOT NULL,
    reference_id TEXT,
    reference_type TEXT,
    description TEXT NOT NULL,
    metadata TEXT,  -- JSON object
    created_at TEXT NOT NULL
);

-- Purchases and bonuses
CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    transaction_type TEXT NOT NULL,
    amount_usd_cents INTEGER NOT NULL DEFAULT 0,
    credits_purchased INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    payment_intent_id TEXT,
    charge_id TEXT,
    failure_reason TEXT,
    metadata TEXT,  -- JSON object
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

-- Rate catalog
CREATE TABLE IF NOT EXISTS service_credit_costs (
    id TEXT PRIMARY KEY,
    service_key TEXT NOT NULL UNIQUE,
    service_name TEXT NOT NULL,
    service_category TEXT NOT NULL DEFAULT 'other',
    description TEXT,
    cost_per_unit INTEGER NOT NULL,
    billing_type TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_visible INTEGER NOT NULL DEFAULT 1,
    display_order INTEGER NOT NULL DEFAULT 0,
    metadata TEXT,  -- JSON object
    updated_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Uptime log: one row per entity per billing day
CREATE TABLE IF NOT EXISTS daily_charges (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_name TEXT,
    account_id TEXT NOT NULL,
    charged_date TEXT NOT NULL,
    credits_charged INTEGER NOT NULL,
    balance_before INTEGER,
    balance_after INTEGER,
    usage_id TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (entity_id, charged_date)
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_stores_published ON stores(published);
CREATE INDEX IF NOT EXISTS idx_domains_active ON custom_domains(is_active, verification_status);
CREATE INDEX IF NOT EXISTS idx_usage_account ON credit_usage(account_id, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_type ON credit_usage(usage_type);
CREATE INDEX IF NOT EXISTS idx_transactions_account ON credit_transactions(account_id, created_at);
CREATE INDEX IF NOT EXISTS idx_services_category ON service_credit_costs(service_category);
CREATE INDEX IF NOT EXISTS idx_daily_charges_account ON daily_charges(account_id, charged_date);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT,
    name TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stores (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    owner_account_id TEXT,
    published INTEGER NOT NULL DEFAULT 0,
    deactivation_reason TEXT,
    deactivated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS custom_domains (
    id TEXT PRIMARY KEY,
    domain TEXT NOT NULL,
    store_id TEXT,
    is_active INTEGER NOT NULL DEFAULT 0,
    verification_status TEXT NOT NULL DEFAULT 'pending',
    deactivation_reason TEXT,
    deactivated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_balances (
    account_id TEXT PRIMARY KEY,
    balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0),
    total_purchased BIGINT NOT NULL DEFAULT 0,
    total_bonus BIGINT NOT NULL DEFAULT 0,
    total_used BIGINT NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_usage (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    entity_id TEXT,
    credits_used BIGINT NOT NULL,
    usage_type TEXT NOT NULL,
    reference_id TEXT,
    reference_type TEXT,
    description TEXT NOT NULL,
    metadata JSONB,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    transaction_type TEXT NOT NULL,
    amount_usd_cents BIGINT NOT NULL DEFAULT 0,
    credits_purchased BIGINT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    payment_intent_id TEXT,
    charge_id TEXT,
    failure_reason TEXT,
    metadata JSONB,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS service_credit_costs (
    id TEXT PRIMARY KEY,
    service_key TEXT NOT NULL UNIQUE,
    service_name TEXT NOT NULL,
    service_category TEXT NOT NULL DEFAULT 'other',
    description TEXT,
    cost_per_unit BIGINT NOT NULL,
    billing_type TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_visible INTEGER NOT NULL DEFAULT 1,
    display_order INTEGER NOT NULL DEFAULT 0,
    metadata JSONB,
    updated_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS daily_charges (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_name TEXT,
    account_id TEXT NOT NULL,
    charged_date TEXT NOT NULL,
    credits_charged BIGINT NOT NULL,
    balance_before BIGINT,
    balance_after BIGINT,
    usage_id TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (entity_id, charged_date)
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_stores_published ON stores(published);
CREATE INDEX IF NOT EXISTS idx_domains_active ON custom_domains(is_active, verification_status);
CREATE INDEX IF NOT EXISTS idx_usage_account ON credit_usage(account_id, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_type ON credit_usage(usage_type);
CREATE INDEX IF NOT EXISTS idx_transactions_account ON credit_transactions(account_id, created_at);
CREATE INDEX IF NOT EXISTS idx_services_category ON service_credit_costs(service_category);
CREATE INDEX IF NOT EXISTS idx_daily_charges_account ON daily_charges(account_id, charged_date);
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Transaction:
    """
    A single database transaction.

    Queries use "?" placeholders on both backends. Callbacks registered
    with after_commit run once the commit succeeded; a failing callback is
    logged and never undoes or fails the transaction.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self.conn = conn
        self.is_postgres = is_postgres
        self.rowcount = 0
        self._rollback_only = False
        self._after_commit: List[Callable[[], None]] = []

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        if self.is_postgres:
            cursor = self.conn.cursor()
            cursor.execute(query.replace("?", "%s"), params)
        else:
            cursor = self.conn.execute(query, params)
        self.rowcount = cursor.rowcount
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def execute_update(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the number of affected rows."""
        self.execute(query, params)
        return self.rowcount

    def set_rollback_only(self) -> None:
        """Discard every write of this transaction when the block exits."""
        self._rollback_only = True

    @property
    def rollback_only(self) -> bool:
        return self._rollback_only

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)

    def _run_after_commit(self) -> None:
        for callback in self._after_commit:
            try:
                callback()
            except Exception as e:
                logger.error("after_commit_callback_failed", callback=getattr(callback, "__name__", repr(callback)), error=str(e))


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database("sqlite:///ledger.db")
        db.initialize()
        with db.transaction() as tx:
            tx.execute("SELECT * FROM credit_balances WHERE account_id = ?", (account_id,))
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///credit_ledger.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._lock = threading.Lock()
        self._initialized = False

        # One shared connection for in-memory SQLite, otherwise each thread would see its own database
        self._is_memory = not self.is_postgres and self._get_sqlite_path() == ":memory:"
        self._memory_conn: Optional[sqlite3.Connection] = None
        self._memory_lock = threading.RLock()

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "credit_ledger.db"

    def _open_sqlite(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._get_sqlite_path(),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,  # transactions are managed explicitly
        )
        conn.row_factory = sqlite3.Row
        if not self._is_memory:
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection, one per thread (WAL mode)."""
        try:
            if self._is_memory:
                with self._memory_lock:
                    if self._memory_conn is None:
                        self._memory_conn = self._open_sqlite()
                    yield self._memory_conn
                return

            if getattr(self._local, "conn", None) is None:
                self._local.conn = self._open_sqlite()
            yield self._local.conn
        except sqlite3.OperationalError as e:
            logger.error("database_unavailable", backend="sqlite", error=str(e))
            raise StorageUnavailable(f"SQLite operational error: {e}") from e

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        try:
            conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        except psycopg2.OperationalError as e:
            logger.error("database_unavailable", backend="postgres", error=str(e))
            raise StorageUnavailable(f"PostgreSQL connection failed: {e}") from e

        try:
            yield conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            logger.error("database_unavailable", backend="postgres", error=str(e))
            raise StorageUnavailable(f"PostgreSQL operational error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """
        Run a block as one atomic unit.

        Commits when the block exits normally, rolls back on exception or
        when the block called set_rollback_only().
        """
        with self.connection() as conn:
            tx = Transaction(conn, self.is_postgres)
            if not self.is_postgres:
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield tx
            except BaseException:
                self._rollback(conn)
                raise

            if tx.rollback_only:
                self._rollback(conn)
                return
            self._commit(conn)

        tx._run_after_commit()

    @contextmanager
    def joined(self, tx: Optional[Transaction] = None) -> Generator[Transaction, None, None]:
        """Join the caller's transaction if one is given, else open a new one."""
        if tx is not None:
            yield tx
            return
        with self.transaction() as own:
            yield own

    def _commit(self, conn: Any) -> None:
        if self.is_postgres:
            conn.commit()
        else:
            conn.execute("COMMIT")

    def _rollback(self, conn: Any) -> None:
        if self.is_postgres:
            conn.rollback()
        elif conn.in_transaction:
            conn.execute("ROLLBACK")

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
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, utc_now())
                    )
                    conn.commit()
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, utc_now())
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a single query in its own transaction."""
        with self.transaction() as tx:
            return tx.execute(query, params)

    def execute_update(self, query: str, params: tuple = ()) -> int:
        """Execute a single write in its own transaction and return the row count."""
        with self.transaction() as tx:
            return tx.execute_update(query, params)

    def close(self) -> None:
        """Close database connections."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None
