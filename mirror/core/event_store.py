"""mirror.core.event_store

Append-only, idempotent log of normalized chain events.

Duplicates are not errors. Re-fetching a range that is already stored is the
normal way to resume after a crash, so overlapping appends insert nothing.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from mirror.core.database import Database
from mirror.core.events import canonical_json
from mirror.core.exceptions import EventStoreError
from mirror.core.models import ChainEvent, Cursor, SequenceCursor, SyncCheckpoint, order_events

_INSERT = """
INSERT OR IGNORE INTO chain_events (
    chain, network_id, block_number, block_hash, log_index, transaction_hash,
    atxuid, event_index, type, node, payload
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

# Height rows sort by (block, log); sequence rows by (atxuid, event_index).
_ORDER = """
ORDER BY chain, network_id,
    CASE WHEN atxuid IS NULL THEN block_number ELSE atxuid END,
    CASE WHEN atxuid IS NULL THEN log_index ELSE COALESCE(event_index, 0) END
"""


@dataclass
class EventStore:
    db: Database

    def append(self, events: Iterable[ChainEvent]) -> list[ChainEvent]:
        """Insert events, ignoring ones already stored.

        Returns only the rows actually inserted, in ordering-key order, with
        their ids set.
        """

        inserted: list[ChainEvent] = []
        with self.db.transaction() as conn:
            for ev in order_events(list(events)):
                try:
                    cur = conn.execute(
                        _INSERT,
                        (
                            str(ev.chain),
                            ev.network_id,
                            ev.block_number,
                            ev.block_hash,
                            ev.log_index,
                            ev.transaction_hash,
                            ev.atxuid,
                            ev.event_index if ev.atxuid is None else (ev.event_index or 0),
                            str(ev.type),
                            ev.node,
                            canonical_json(ev.payload),
                        ),
                    )
                except sqlite3.Error as e:
                    raise EventStoreError(f"cannot store event {ev.identity}: {e}") from e
                if cur.rowcount == 1:
                    inserted.append(ev.model_copy(update={"id": int(cur.lastrowid)}))
        return inserted

    def pending(
        self,
        chain: str,
        network_id: int,
        after: SyncCheckpoint,
        upto: Cursor,
    ) -> list[ChainEvent]:
        """Stored events strictly after ``after`` and up to ``upto``."""

        if isinstance(upto, SequenceCursor):
            last = -1 if after.last_atxuid is None else after.last_atxuid
            q = (
                "SELECT * FROM chain_events WHERE chain = ? AND network_id = ? "
                "AND atxuid IS NOT NULL AND atxuid > ? AND atxuid < ?"
            )
            params: tuple[Any, ...] = (str(chain), network_id, last, upto.atxuid)
        else:
            q = (
                "SELECT * FROM chain_events WHERE chain = ? AND network_id = ? "
                "AND log_index IS NOT NULL AND block_number > ? AND block_number <= ?"
            )
            params = (str(chain), network_id, after.last_block_number, upto.block_number)
        rows = self.db.conn.execute(q + _ORDER, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def iter_ordered(
        self,
        chain: str | None = None,
        network_id: int | None = None,
    ) -> Iterator[ChainEvent]:
        """Full log in replay order."""

        q = "SELECT * FROM chain_events WHERE 1=1"
        params: list[Any] = []
        if chain is not None:
            q += " AND chain = ?"
            params.append(str(chain))
        if network_id is not None:
            q += " AND network_id = ?"
            params.append(network_id)
        # fetchall: callers may write while iterating
        rows = self.db.conn.execute(q + _ORDER, tuple(params)).fetchall()
        for r in rows:
            yield self._row_to_event(r)

    def delete_after(self, chain: str, network_id: int, block_number: int) -> int:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM chain_events WHERE chain = ? AND network_id = ? AND block_number > ?",
                (str(chain), network_id, block_number),
            )
            return int(cur.rowcount)

    def latest_event_blocks(
        self,
        chain: str,
        network_id: int,
        floor: int,
        ceiling: int,
    ) -> list[tuple[int, str]]:
        """Distinct ``(block_number, block_hash)`` seen on events, highest first."""

        rows = self.db.conn.execute(
            """
            SELECT DISTINCT block_number, block_hash FROM chain_events
            WHERE chain = ? AND network_id = ? AND block_hash IS NOT NULL
              AND block_number >= ? AND block_number <= ?
            ORDER BY block_number DESC
            """,
            (str(chain), network_id, floor, ceiling),
        ).fetchall()
        return [(int(r[0]), str(r[1])) for r in rows]

    def count(self, chain: str | None = None, network_id: int | None = None) -> int:
        q = "SELECT COUNT(*) FROM chain_events WHERE 1=1"
        params: list[Any] = []
        if chain is not None:
            q += " AND chain = ?"
            params.append(str(chain))
        if network_id is not None:
            q += " AND network_id = ?"
            params.append(network_id)
        row = self.db.conn.execute(q, tuple(params)).fetchone()
        return int(row[0])

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> ChainEvent:
        return ChainEvent(
            id=int(row["id"]),
            chain=row["chain"],
            network_id=int(row["network_id"]),
            block_number=int(row["block_number"]),
            block_hash=row["block_hash"],
            log_index=row["log_index"],
            transaction_hash=row["transaction_hash"],
            atxuid=row["atxuid"],
            event_index=row["event_index"],
            type=str(row["type"]),
            node=row["node"],
            payload=json.loads(row["payload"]),
        )
