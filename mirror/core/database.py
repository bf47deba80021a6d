"""mirror.core.database

The event log is the truth; everything else in this file is derived from it
and can be thrown away and rebuilt.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from mirror.core.exceptions import EventStoreError

SCHEMA_VERSION = 1

SCHEMA = """
-- ============================================================
-- Schema Version Tracking
-- ============================================================
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now'))
);

-- ============================================================
-- Chain Events (append-only; rows leave only on reorg rollback)
-- ============================================================
CREATE TABLE IF NOT EXISTS chain_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chain TEXT NOT NULL,
    network_id INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    block_hash TEXT,
    log_index INTEGER,
    transaction_hash TEXT,
    atxuid INTEGER,
    event_index INTEGER,
    type TEXT NOT NULL,
    node TEXT,
    payload TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    CHECK (log_index IS NOT NULL OR atxuid IS NOT NULL)
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_chain_events_log
    ON chain_events(chain, network_id, block_number, log_index)
    WHERE log_index IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS uq_chain_events_atxuid
    ON chain_events(chain, network_id, atxuid, event_index)
    WHERE atxuid IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_chain_events_node ON chain_events(node);
CREATE INDEX IF NOT EXISTS idx_chain_events_block ON chain_events(chain, network_id, block_number);

-- ============================================================
-- Sync Checkpoints (one row per chain/network)
-- ============================================================
CREATE TABLE IF NOT EXISTS sync_checkpoints (
    chain TEXT NOT NULL,
    network_id INTEGER NOT NULL,
    last_block_number INTEGER NOT NULL DEFAULT 0,
    last_block_hash TEXT,
    last_atxuid INTEGER,
    last_event_id INTEGER,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (chain, network_id)
);

-- ============================================================
-- Block hash history (reorg reference points)
-- ============================================================
CREATE TABLE IF NOT EXISTS block_hashes (
    chain TEXT NOT NULL,
    network_id INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    block_hash TEXT NOT NULL,
    PRIMARY KEY (chain, network_id, block_number)
);

-- ============================================================
-- Domain projection (derived; rebuilt from chain_events)
-- ============================================================
CREATE TABLE IF NOT EXISTS domains (
    node TEXT PRIMARY KEY,
    name TEXT,
    parent_node TEXT,
    level INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_domains_name ON domains(name);
CREATE INDEX IF NOT EXISTS idx_domains_parent ON domains(parent_node);

CREATE TABLE IF NOT EXISTS domain_resolutions (
    node TEXT NOT NULL,
    chain TEXT NOT NULL,
    network_id INTEGER NOT NULL,
    owner_address TEXT,
    resolver_address TEXT,
    registry_address TEXT,
    records TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (node, chain, network_id)
);

CREATE INDEX IF NOT EXISTS idx_resolutions_owner ON domain_resolutions(owner_address);

CREATE TABLE IF NOT EXISTS domain_reverse_resolutions (
    node TEXT NOT NULL,
    chain TEXT NOT NULL,
    network_id INTEGER NOT NULL,
    reverse_address TEXT NOT NULL,
    PRIMARY KEY (node, chain, network_id),
    UNIQUE (reverse_address, chain, network_id)
);
"""

PROJECTION_TABLES = ("domain_reverse_resolutions", "domain_resolutions", "domains")


def _iso_to_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def utcnow_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class Database:
    """SQLite file shared by every mirror loop.

    Writes go through :meth:`transaction`. Reads outside a transaction see
    only committed state.
    """

    db_path: Path

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transaction boundaries are explicit.
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _init_schema(self) -> None:
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.executescript(SCHEMA)
        self.conn.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
        )

    def schema_version(self) -> int:
        row = self.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return int(row[0] or 0)

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Scoped write transaction.

        Nested use joins the outer transaction; only the outermost scope
        commits or rolls back.
        """

        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return

            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise EventStoreError(f"cannot begin transaction: {e}") from e
            self._depth = 1
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")
            finally:
                self._depth = 0

    def clear_projection(self) -> None:
        with self.transaction() as conn:
            for table in PROJECTION_TABLES:
                conn.execute(f"DELETE FROM {table}")
