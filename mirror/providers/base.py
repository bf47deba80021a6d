"""mirror.providers.base

Providers are the mirror's only contact with a chain.

They read registry history from upstream, translate it into the event
contract, and report how far they got. Storage, projection and checkpointing
happen elsewhere; a provider never writes anything.

Fetch protocol:
- take a cursor (where the mirror is)
- return normalized events after it and the cursor they reach
- raise ``TransientProviderError`` for anything worth retrying
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol, runtime_checkable

from mirror.core.client import DataClient
from mirror.core.config import ChainConfig
from mirror.core.metrics import MetricsRegistry
from mirror.core.models import ChainEvent, Cursor

CursorKind = Literal["height", "sequence"]


@dataclass(frozen=True, slots=True)
class ProviderContext:
    """Shared context injected into every provider."""

    chain: ChainConfig
    client: DataClient
    metrics: MetricsRegistry
    logger: logging.Logger


@dataclass(frozen=True, slots=True)
class FetchResult:
    events: list[ChainEvent] = field(default_factory=list)
    cursor: Cursor | None = None


@runtime_checkable
class ChainProvider(Protocol):
    name: str
    cursor_kind: CursorKind

    async def fetch_events(self, since: Cursor, max_count: int) -> FetchResult: ...

    async def current_cursor(self) -> Cursor: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class BlockHashSource(Protocol):
    """Height-cursor providers can tell what hash a height has right now."""

    async def block_hash(self, block_number: int) -> str | None: ...
