"""mirror.core.models

Core records.

A chain event is immutable once stored. A checkpoint is the only thing that
moves, and it only moves forward (or back, when the chain says so).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from mirror.core.events import Chain


@dataclass(frozen=True, slots=True)
class HeightCursor:
    """Position on a height-cursor chain: the last fully mirrored block."""

    block_number: int
    block_hash: str | None = None


@dataclass(frozen=True, slots=True)
class SequenceCursor:
    """Position on a sequence-cursor chain: the next ``atxuid`` to request."""

    atxuid: int
    block_number: int = 0


Cursor = HeightCursor | SequenceCursor


class ChainEvent(BaseModel):
    """One normalized registry event."""

    id: int | None = None
    chain: Chain
    network_id: int
    block_number: int
    log_index: int | None = None
    transaction_hash: str | None = None
    atxuid: int | None = None
    event_index: int | None = None
    type: str
    node: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    block_hash: str | None = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def has_position(self) -> ChainEvent:
        if self.log_index is None and self.atxuid is None:
            raise ValueError("event needs a log_index (height chains) or an atxuid (sequence chains)")
        return self

    @property
    def sort_key(self) -> tuple[int, int]:
        """Order within one chain/network."""

        if self.atxuid is not None:
            return (self.atxuid, self.event_index or 0)
        return (self.block_number, self.log_index if self.log_index is not None else -1)

    @property
    def identity(self) -> tuple[Any, ...]:
        """The storage uniqueness key."""

        if self.atxuid is not None:
            return (str(self.chain), self.network_id, "atxuid", self.atxuid, self.event_index or 0)
        return (str(self.chain), self.network_id, "log", self.block_number, self.log_index)


def order_events(events: list[ChainEvent]) -> list[ChainEvent]:
    return sorted(events, key=lambda e: (str(e.chain), e.network_id, e.sort_key))


@dataclass(frozen=True, slots=True)
class SyncCheckpoint:
    """Last chain position whose events are fully applied to the projection."""

    chain: str
    network_id: int
    last_block_number: int = 0
    last_block_hash: str | None = None
    last_atxuid: int | None = None
    last_event_id: int | None = None
    updated_at: datetime | None = None

    @classmethod
    def initial(
        cls,
        chain: str,
        network_id: int,
        *,
        start_block: int = 0,
        start_atxuid: int | None = None,
    ) -> SyncCheckpoint:
        return cls(
            chain=str(chain),
            network_id=network_id,
            last_block_number=max(start_block - 1, 0),
            last_atxuid=None if start_atxuid is None else start_atxuid - 1,
        )

    def height_cursor(self) -> HeightCursor:
        return HeightCursor(self.last_block_number, self.last_block_hash)

    def sequence_cursor(self) -> SequenceCursor:
        last = -1 if self.last_atxuid is None else self.last_atxuid
        return SequenceCursor(atxuid=last + 1, block_number=self.last_block_number)

    def cursor(self, kind: str) -> Cursor:
        return self.sequence_cursor() if kind == "sequence" else self.height_cursor()

    def advanced_to(self, cursor: Cursor, *, last_event_id: int | None = None) -> SyncCheckpoint:
        event_id = last_event_id if last_event_id is not None else self.last_event_id
        if isinstance(cursor, SequenceCursor):
            return replace(
                self,
                last_atxuid=cursor.atxuid - 1,
                last_block_number=max(self.last_block_number, cursor.block_number),
                last_event_id=event_id,
            )
        return replace(
            self,
            last_block_number=cursor.block_number,
            last_block_hash=cursor.block_hash,
            last_event_id=event_id,
        )
