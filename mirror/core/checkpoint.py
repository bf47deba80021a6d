"""mirror.core.checkpoint

Per chain/network sync position, plus a short history of block hashes so
the reorg detector has something to compare against at heights that
carried no registry events.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass

from mirror.core.database import Database, _iso_to_dt, utcnow_iso
from mirror.core.event_store import EventStore
from mirror.core.models import SyncCheckpoint

DEFAULT_HISTORY_DEPTH = 128


@dataclass
class CheckpointStore:
    db: Database
    history_depth: int = DEFAULT_HISTORY_DEPTH

    def read(self, chain: str, network_id: int) -> SyncCheckpoint | None:
        row = self.db.conn.execute(
            "SELECT * FROM sync_checkpoints WHERE chain = ? AND network_id = ?",
            (str(chain), network_id),
        ).fetchone()
        return None if row is None else self._row_to_checkpoint(row)

    def all(self) -> list[SyncCheckpoint]:
        rows = self.db.conn.execute(
            "SELECT * FROM sync_checkpoints ORDER BY chain, network_id"
        ).fetchall()
        return [self._row_to_checkpoint(r) for r in rows]

    def advance(
        self,
        checkpoint: SyncCheckpoint,
        applied_event_ids: Iterable[int] = (),
    ) -> SyncCheckpoint:
        """Persist ``checkpoint``.

        Call inside the transaction that flushed the projection for the same
        events, so position and state commit together.
        """

        ids = [i for i in applied_event_ids if i is not None]
        last_event_id = max(ids) if ids else checkpoint.last_event_id
        now = utcnow_iso()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_checkpoints (
                    chain, network_id, last_block_number, last_block_hash,
                    last_atxuid, last_event_id, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(chain, network_id) DO UPDATE SET
                    last_block_number = excluded.last_block_number,
                    last_block_hash = excluded.last_block_hash,
                    last_atxuid = excluded.last_atxuid,
                    last_event_id = excluded.last_event_id,
                    updated_at = excluded.updated_at
                """,
                (
                    checkpoint.chain,
                    checkpoint.network_id,
                    checkpoint.last_block_number,
                    checkpoint.last_block_hash,
                    checkpoint.last_atxuid,
                    last_event_id,
                    now,
                ),
            )
            if checkpoint.last_block_hash is not None:
                self._remember_hash(
                    conn,
                    checkpoint.chain,
                    checkpoint.network_id,
                    checkpoint.last_block_number,
                    checkpoint.last_block_hash,
                )
        return SyncCheckpoint(
            chain=checkpoint.chain,
            network_id=checkpoint.network_id,
            last_block_number=checkpoint.last_block_number,
            last_block_hash=checkpoint.last_block_hash,
            last_atxuid=checkpoint.last_atxuid,
            last_event_id=last_event_id,
            updated_at=_iso_to_dt(now),
        )

    def rewind(
        self,
        chain: str,
        network_id: int,
        block_number: int,
        block_hash: str | None,
    ) -> SyncCheckpoint:
        """Move a height checkpoint back to ``block_number`` after a reorg."""

        with self.db.transaction() as conn:
            conn.execute(
                "DELETE FROM block_hashes WHERE chain = ? AND network_id = ? AND block_number > ?",
                (str(chain), network_id, block_number),
            )
            row = conn.execute(
                "SELECT MAX(id) FROM chain_events WHERE chain = ? AND network_id = ?",
                (str(chain), network_id),
            ).fetchone()
            last_event_id = None if row is None or row[0] is None else int(row[0])
            checkpoint = SyncCheckpoint(
                chain=str(chain),
                network_id=network_id,
                last_block_number=block_number,
                last_block_hash=block_hash,
                last_event_id=last_event_id,
            )
            return self.advance(checkpoint)

    def known_hashes(
        self,
        chain: str,
        network_id: int,
        floor: int,
        ceiling: int,
    ) -> list[tuple[int, str]]:
        """Reference ``(block_number, hash)`` pairs in ``[floor, ceiling]``, highest first.

        Hash history wins over event rows at the same height.
        """

        found = dict(EventStore(self.db).latest_event_blocks(chain, network_id, floor, ceiling))
        for r in self.db.conn.execute(
            """
            SELECT block_number, block_hash FROM block_hashes
            WHERE chain = ? AND network_id = ? AND block_number BETWEEN ? AND ?
            """,
            (str(chain), network_id, floor, ceiling),
        ):
            found[int(r[0])] = str(r[1])
        return sorted(found.items(), reverse=True)

    def _remember_hash(
        self,
        conn: sqlite3.Connection,
        chain: str,
        network_id: int,
        block_number: int,
        block_hash: str,
    ) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO block_hashes (chain, network_id, block_number, block_hash) "
            "VALUES (?, ?, ?, ?)",
            (chain, network_id, block_number, block_hash),
        )
        conn.execute(
            "DELETE FROM block_hashes WHERE chain = ? AND network_id = ? AND block_number < ?",
            (chain, network_id, block_number - self.history_depth),
        )

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> SyncCheckpoint:
        return SyncCheckpoint(
            chain=str(row["chain"]),
            network_id=int(row["network_id"]),
            last_block_number=int(row["last_block_number"]),
            last_block_hash=row["last_block_hash"],
            last_atxuid=row["last_atxuid"],
            last_event_id=row["last_event_id"],
            updated_at=_iso_to_dt(row["updated_at"]),
        )
