"""mirror.sync.scheduler

Mirror Scheduler: one loop per (chain, network), all sharing one database.

A cycle is:
1. read the checkpoint (or the configured starting point)
2. height chains: ask the reorg detector; roll back if the chain forked
3. fetch events after the checkpoint (retried with backoff on transient errors)
4. transaction 1: append to the event store
5. transaction 2: project the pending events, flush, advance the checkpoint

Nothing awaits inside a transaction, so a stop request only ever lands
between cycles.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

from mirror.core.checkpoint import CheckpointStore
from mirror.core.client import ClientConfig, DataClient
from mirror.core.config import ChainConfig, Config, SchedulerConfig
from mirror.core.database import Database
from mirror.core.event_store import EventStore
from mirror.core.exceptions import (
    EventStoreError,
    ProjectionError,
    ProviderError,
    ReorgTooDeepError,
    TransientProviderError,
)
from mirror.core.metrics import REGISTRY, MetricsRegistry
from mirror.core.models import Cursor, HeightCursor, SequenceCursor, SyncCheckpoint
from mirror.core.projection_store import StoredProjection, rebuild_projection
from mirror.core.projections import DomainProjector
from mirror.providers.base import BlockHashSource, ChainProvider, ProviderContext
from mirror.providers.registry import build_provider
from mirror.sync.reorg import ReorgDetector, ReorgRollback

T = TypeVar("T")


class LoopStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    HALTED = "halted"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class CycleResult:
    chain: str
    network_id: int
    fetched: int
    inserted: int
    applied: int
    skipped: Counter[str] = field(default_factory=Counter)
    cursor: Cursor | None = None
    rolled_back_to: int | None = None
    duration_ms: int = 0


class MirrorLoop:
    """Mirrors one (chain, network) into the shared database."""

    def __init__(
        self,
        *,
        chain: ChainConfig,
        provider: ChainProvider,
        db: Database,
        settings: SchedulerConfig | None = None,
        projector: DomainProjector | None = None,
        metrics: MetricsRegistry | None = None,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.chain = chain
        self.provider = provider
        self.db = db
        self.settings = settings or SchedulerConfig()
        self.metrics = metrics or REGISTRY
        self.logger = logger or logging.getLogger(f"mirror.loop.{chain.key}")
        self.projector = projector or DomainProjector(metrics=self.metrics, logger=self.logger)
        self.events = EventStore(db)
        self.checkpoints = CheckpointStore(db, history_depth=max(chain.max_reorg_depth * 2, 16))
        self.detector: ReorgDetector | None = None
        if provider.cursor_kind == "height" and isinstance(provider, BlockHashSource):
            self.detector = ReorgDetector(
                provider, self.checkpoints, max_depth=chain.max_reorg_depth, logger=self.logger
            )
        self._sleep = sleep
        self.status = LoopStatus.IDLE
        self.last_error: str | None = None

    @property
    def key(self) -> str:
        return self.chain.key

    @property
    def batch_size(self) -> int:
        return self.chain.batch_size or self.settings.batch_size

    def initial_checkpoint(self) -> SyncCheckpoint:
        return SyncCheckpoint.initial(
            self.chain.chain,
            self.chain.network_id,
            start_block=self.chain.start_block,
            start_atxuid=self.chain.start_atxuid if self.provider.cursor_kind == "sequence" else None,
        )

    def read_checkpoint(self) -> SyncCheckpoint:
        return self.checkpoints.read(self.chain.chain, self.chain.network_id) or self.initial_checkpoint()

    # --- cycle ---

    async def run_cycle(self) -> CycleResult:
        """One full cycle. Errors propagate; :meth:`step` applies the loop policy."""

        start = time.perf_counter()
        checkpoint = self.read_checkpoint()

        rolled_back_to: int | None = None
        if self.detector is not None:
            rollback = await self._with_retries(lambda: self.detector.check(checkpoint), "reorg_check")
            if rollback is not None:
                checkpoint = self.apply_rollback(rollback)
                rolled_back_to = rollback.block_number

        since = checkpoint.cursor(self.provider.cursor_kind)
        fetched = await self._with_retries(
            lambda: self.provider.fetch_events(since, self.batch_size), "fetch_events"
        )
        cursor = fetched.cursor or since

        # txn 1
        inserted = self.events.append(fetched.events)

        # txn 2
        with self.db.transaction():
            pending = self.events.pending(self.chain.chain, self.chain.network_id, checkpoint, cursor)
            state = StoredProjection(self.db)
            projection = self.projector.apply(state, pending)
            state.flush()
            self.checkpoints.advance(checkpoint.advanced_to(cursor), [e.id for e in pending if e.id])

        self.metrics.counter("mirror.events_inserted").inc(len(inserted))
        self.metrics.counter("mirror.events_applied").inc(projection.applied)
        await self._update_lag(cursor)

        result = CycleResult(
            chain=str(self.chain.chain),
            network_id=self.chain.network_id,
            fetched=len(fetched.events),
            inserted=len(inserted),
            applied=projection.applied,
            skipped=projection.skipped,
            cursor=cursor,
            rolled_back_to=rolled_back_to,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        self.logger.info(
            "mirror_cycle",
            extra={
                "chain": self.key,
                "fetched": result.fetched,
                "inserted": result.inserted,
                "applied": result.applied,
                "skipped": projection.skipped_total,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    def apply_rollback(self, rollback: ReorgRollback) -> SyncCheckpoint:
        """Drop events past the fork, rewind, rebuild. One transaction."""

        with self.db.transaction():
            deleted = self.events.delete_after(self.chain.chain, self.chain.network_id, rollback.block_number)
            checkpoint = self.checkpoints.rewind(
                self.chain.chain, self.chain.network_id, rollback.block_number, rollback.block_hash
            )
            rebuild_projection(self.db, self.events, self.projector, checkpoints=self.checkpoints.all())
        self.metrics.counter("mirror.reorgs").inc()
        self.logger.warning(
            "reorg_rolled_back",
            extra={
                "chain": self.key,
                "block_number": rollback.block_number,
                "depth": rollback.depth,
                "events_deleted": deleted,
            },
        )
        return checkpoint

    async def _with_retries(self, fn: Callable[[], Awaitable[T]], op: str) -> T:
        attempts = self.settings.max_retries + 1
        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(fn(), timeout=self.settings.fetch_timeout_s)
            except (TransientProviderError, TimeoutError) as e:
                if attempt + 1 >= attempts:
                    raise TransientProviderError(f"{self.key} {op}: gave up after {attempts} attempts: {e!r}") from e
                delay = min(self.settings.backoff_base_s * 2**attempt, self.settings.backoff_max_s)
                self.logger.warning(
                    "mirror_retry",
                    extra={"chain": self.key, "op": op, "attempt": attempt + 1, "delay_s": delay, "error": repr(e)},
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    async def _update_lag(self, cursor: Cursor) -> None:
        try:
            head = await asyncio.wait_for(self.provider.current_cursor(), timeout=self.settings.fetch_timeout_s)
        except (ProviderError, TimeoutError) as e:
            self.logger.debug("mirror_lag_unavailable", extra={"chain": self.key, "error": repr(e)})
            return
        if isinstance(head, SequenceCursor) and isinstance(cursor, SequenceCursor):
            lag = head.atxuid - cursor.atxuid
        elif isinstance(head, HeightCursor) and isinstance(cursor, HeightCursor):
            lag = head.block_number - cursor.block_number
        else:
            return
        self.metrics.lag_gauge(str(self.chain.chain), self.chain.network_id).set(max(lag, 0))

    # --- loop policy ---

    async def step(self) -> CycleResult | None:
        """Run one cycle under the loop's error policy. ``None`` when it failed."""

        if self.status == LoopStatus.HALTED:
            return None
        self.status = LoopStatus.RUNNING
        try:
            result = await self.run_cycle()
        except ReorgTooDeepError as e:
            self.status = LoopStatus.HALTED
            self.last_error = str(e)
            self.metrics.counter("mirror.cycle_failures").inc()
            self.logger.critical("mirror_loop_halted", extra={"chain": self.key, "error": str(e)})
            return None
        except TransientProviderError as e:
            self._failed(e, logging.WARNING)
            return None
        except (ProviderError, ProjectionError, EventStoreError) as e:
            self._failed(e, logging.ERROR)
            return None
        self.status = LoopStatus.IDLE
        self.last_error = None
        return result

    def _failed(self, e: Exception, level: int) -> None:
        self.status = LoopStatus.IDLE
        self.last_error = f"{type(e).__name__}: {e}"
        self.metrics.counter("mirror.cycle_failures").inc()
        self.logger.log(level, "mirror_cycle_failed", extra={"chain": self.key, "error": self.last_error})

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self.step()
            if self.status == LoopStatus.HALTED:
                return
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.settings.poll_interval_s)
        self.status = LoopStatus.STOPPED


class MirrorScheduler:
    """Runs every configured loop concurrently."""

    def __init__(self, loops: list[MirrorLoop], *, logger: logging.Logger | None = None) -> None:
        self.loops = loops
        self.logger = logger or logging.getLogger("mirror.scheduler")
        self._stop = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: Config,
        db: Database,
        *,
        metrics: MetricsRegistry | None = None,
        logger: logging.Logger | None = None,
        only: str | None = None,
    ) -> MirrorScheduler:
        metrics = metrics or REGISTRY
        logger = logger or logging.getLogger("mirror")
        projector = DomainProjector(metrics=metrics, logger=logger.getChild("projector"))
        loops: list[MirrorLoop] = []
        for chain in config.enabled_chains():
            if only is not None and only not in (str(chain.chain), chain.key):
                continue
            chain_logger = logger.getChild(chain.key)
            client = DataClient(ClientConfig.from_settings(config.client))
            provider = build_provider(
                ProviderContext(chain=chain, client=client, metrics=metrics, logger=chain_logger)
            )
            loops.append(
                MirrorLoop(
                    chain=chain,
                    provider=provider,
                    db=db,
                    settings=config.scheduler,
                    projector=projector,
                    metrics=metrics,
                    logger=chain_logger,
                )
            )
        return cls(loops, logger=logger)

    async def run_once(self) -> list[CycleResult | None]:
        return list(await asyncio.gather(*(loop.step() for loop in self.loops)))

    async def run(self) -> None:
        self._stop.clear()
        self.logger.info("mirror_scheduler_started", extra={"loops": [loop.key for loop in self.loops]})
        await asyncio.gather(*(self._supervise(loop) for loop in self.loops))
        self.logger.info("mirror_scheduler_stopped")

    async def _supervise(self, loop: MirrorLoop) -> None:
        """Run one loop; an unexpected error halts that chain only."""

        try:
            await loop.run(self._stop)
        except Exception as e:
            loop.status = LoopStatus.HALTED
            loop.last_error = f"{type(e).__name__}: {e}"
            self.logger.exception("mirror_loop_crashed", extra={"chain": loop.key, "error": loop.last_error})

    def stop(self) -> None:
        self._stop.set()

    async def aclose(self) -> None:
        for loop in self.loops:
            await loop.provider.aclose()
