"""mirror.sync.reorg

Reorg Detector for height-cursor chains.

The checkpoint remembers the hash of the last mirrored block. If the chain
now reports a different hash at that height, walk back over heights whose
hash we recorded until the chain agrees again. That height is the fork point.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mirror.core.checkpoint import CheckpointStore
from mirror.core.exceptions import ReorgTooDeepError
from mirror.core.models import SyncCheckpoint
from mirror.providers.base import BlockHashSource

DEFAULT_MAX_REORG_DEPTH = 50


@dataclass(frozen=True, slots=True)
class ReorgRollback:
    """Last height on which the mirror and the chain agree."""

    block_number: int
    block_hash: str
    depth: int


def _same(a: str | None, b: str | None) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


class ReorgDetector:
    def __init__(
        self,
        source: BlockHashSource,
        checkpoints: CheckpointStore,
        *,
        max_depth: int = DEFAULT_MAX_REORG_DEPTH,
        logger: logging.Logger | None = None,
    ) -> None:
        self.source = source
        self.checkpoints = checkpoints
        self.max_depth = max_depth
        self.logger = logger or logging.getLogger(__name__)

    async def check(self, checkpoint: SyncCheckpoint) -> ReorgRollback | None:
        """``None`` when the chain still agrees with ``checkpoint``.

        Raises:
            ReorgTooDeepError: no agreeing height within ``max_depth``.
        """

        if checkpoint.last_block_hash is None:
            return None

        height = checkpoint.last_block_number
        current = await self.source.block_hash(height)
        if _same(current, checkpoint.last_block_hash):
            return None

        self.logger.warning(
            "reorg_detected",
            extra={
                "chain": checkpoint.chain,
                "network_id": checkpoint.network_id,
                "block_number": height,
                "stored_hash": checkpoint.last_block_hash,
                "chain_hash": current,
            },
        )

        floor = max(height - self.max_depth, 0)
        for number, known in self.checkpoints.known_hashes(
            checkpoint.chain, checkpoint.network_id, floor, height - 1
        ):
            if _same(await self.source.block_hash(number), known):
                return ReorgRollback(block_number=number, block_hash=known.lower(), depth=height - number)

        raise ReorgTooDeepError(
            f"{checkpoint.chain}:{checkpoint.network_id}: no common ancestor within "
            f"{self.max_depth} blocks of {height}"
        )
