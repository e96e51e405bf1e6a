"""SQLite-backed event store: the single source of truth for synced events."""

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..models import Event

logger = logging.getLogger(__name__)

# Schema for the event table. Timestamps are fixed-width UTC ISO-8601 text,
# so comparing them as strings orders them in time.
SCHEMA = """
CREATE TABLE IF NOT EXISTS app_events (
    tenant_id TEXT NOT NULL,
    id TEXT NOT NULL,
    title TEXT NOT NULL,
    notes TEXT,
    event_date TEXT,
    event_type TEXT NOT NULL,
    difficulty TEXT NOT NULL,
    duration_minutes INTEGER NOT NULL DEFAULT 15 CHECK (duration_minutes >= 1),
    start_at TEXT,
    end_at TEXT,
    color TEXT,
    status TEXT,
    provider TEXT,
    account_id TEXT,
    google_id TEXT,
    outlook_id TEXT,
    ics_uid TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    integration_date TEXT,
    PRIMARY KEY (tenant_id, id)
);

CREATE INDEX IF NOT EXISTS idx_app_events_tenant_updated
    ON app_events(tenant_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_app_events_tenant_integration
    ON app_events(tenant_id, integration_date, updated_at);
"""


# Binding an integer outside SQLite's 64-bit range raises OverflowError
# rather than sqlite3.Error.
DB_ERRORS = (sqlite3.Error, OverflowError)


class StoreError(RuntimeError):
    """A store operation failed; the enclosing transaction was rolled back."""


class EventStore:
    """Durable table of events keyed by (tenant, client-generated id).

    Every write goes through :meth:`transaction`, which takes SQLite's write
    lock up front (``BEGIN IMMEDIATE``) so concurrent batches against the
    same database file are serialized rather than interleaved.
    """

    def __init__(self, db_path: str | Path, timeout: float = 30.0):
        """Initialize the event store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            timeout: Seconds to wait for the database lock before failing.
        """
        self.db_path = Path(db_path).expanduser()
        self.timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode: transactions are opened explicitly.
        self._conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)

        logger.info(f"EventStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("EventStore connection closed")

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of statements as one atomic unit.

        Raises:
            StoreError: If any statement or the commit fails. Nothing from
                the block is persisted in that case.
        """
        with self._lock:
            conn = self._ensure_connected()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreError(f"Could not begin transaction: {e}") from e

            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException as e:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error:
                    logger.warning("Rollback failed", exc_info=True)
                if isinstance(e, DB_ERRORS):
                    raise StoreError(f"Transaction failed: {e}") from e
                raise

    def query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Run a read-only statement and return all rows."""
        with self._lock:
            conn = self._ensure_connected()
            try:
                return conn.execute(sql, params).fetchall()
            except DB_ERRORS as e:
                raise StoreError(f"Query failed: {e}") from e

    def get(self, tenant_id: str, event_id: str) -> Event | None:
        """Fetch one event, or None if it does not exist."""
        rows = self.query(
            "SELECT * FROM app_events WHERE tenant_id = ? AND id = ?",
            (tenant_id, event_id),
        )
        return Event.from_row(rows[0]) if rows else None

    def count(self, tenant_id: str) -> int:
        """Number of events stored for a tenant."""
        rows = self.query(
            "SELECT COUNT(*) FROM app_events WHERE tenant_id = ?", (tenant_id,)
        )
        return rows[0][0]

    def get_stats(self, tenant_id: str) -> dict[str, Any]:
        """Get store statistics for a tenant.

        Returns:
            Dictionary with row counts and the newest ``updated_at``.
        """
        row = self.query(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN integration_date IS NULL THEN 1 ELSE 0 END)
                    AS pending,
                MAX(updated_at) AS latest
            FROM app_events
            WHERE tenant_id = ?
            """,
            (tenant_id,),
        )[0]

        stats = {
            "tenant_id": tenant_id,
            "total_events": row["total"],
            "pending_integration": row["pending"] or 0,
            "latest_updated_at": row["latest"],
        }

        if str(self.db_path) != ":memory:" and self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats
