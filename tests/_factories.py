"""Builders and fake providers shared by unit and integration tests."""

from __future__ import annotations

import hashlib
from typing import Any

from mirror.core.exceptions import TransientProviderError
from mirror.core.models import ChainEvent, HeightCursor, SequenceCursor
from mirror.core.namehash import eip137_namehash, zns_namehash
from mirror.providers.base import FetchResult

REGISTRY = "0x049aba7510f45ba5b64ea9e658e342f904db358d"
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
CAROL = "0x" + "c4" * 20


def block_hash(n: int, fork: str = "main") -> str:
    return "0x" + hashlib.sha256(f"{fork}:{n}".encode()).hexdigest()


def eth_node(name: str) -> str:
    return eip137_namehash(name)


def zil_node(name: str) -> str:
    return zns_namehash(name)


def height_event(
    block: int,
    log_index: int,
    type: str,
    node: str | None = None,
    payload: dict[str, Any] | None = None,
    *,
    chain: str = "ETH",
    network_id: int = 1,
    fork: str = "main",
) -> ChainEvent:
    return ChainEvent(
        chain=chain,
        network_id=network_id,
        block_number=block,
        block_hash=block_hash(block, fork),
        log_index=log_index,
        transaction_hash="0x" + hashlib.sha256(f"tx:{block}:{log_index}".encode()).hexdigest(),
        type=type,
        node=node,
        payload=payload or {},
    )


def seq_event(
    atxuid: int,
    event_index: int,
    type: str,
    node: str | None = None,
    payload: dict[str, Any] | None = None,
    *,
    block: int = 100,
) -> ChainEvent:
    return ChainEvent(
        chain="ZIL",
        network_id=1,
        block_number=block + atxuid,
        atxuid=atxuid,
        event_index=event_index,
        type=type,
        node=node,
        payload=payload or {},
    )


def alice_crypto_events() -> list[ChainEvent]:
    """Mint alice.crypto to ALICE, name it, set a record."""

    node = eth_node("alice.crypto")
    return [
        height_event(10, 0, "transfer", node, {"owner": ALICE, "registry": REGISTRY, "minted": True, "resolver": REGISTRY}),
        height_event(10, 1, "new", node, {"name": "alice.crypto", "registry": REGISTRY, "resolver": REGISTRY}),
        height_event(11, 0, "record-set", node, {"key": "crypto.ETH.address", "value": ALICE}),
    ]


class FakeHeightProvider:
    """In-memory height chain. ``events`` may be swapped to simulate a reorg."""

    name = "fake-evm"
    cursor_kind = "height"

    def __init__(self, events: list[ChainEvent], head: int, *, fork: str = "main") -> None:
        self.events = list(events)
        self.head = head
        self.fork = fork
        self.forks: dict[int, str] = {}
        self.fail_next = 0
        self.fetch_calls = 0

    def reorg(self, from_block: int, events: list[ChainEvent], fork: str) -> None:
        """Replace history above ``from_block`` with ``events`` on ``fork``."""

        self.events = [e for e in self.events if e.block_number <= from_block] + list(events)
        for n in range(from_block + 1, self.head + 1):
            self.forks[n] = fork

    async def block_hash(self, block_number: int) -> str | None:
        if block_number > self.head:
            return None
        return block_hash(block_number, self.forks.get(block_number, self.fork))

    async def current_cursor(self) -> HeightCursor:
        return HeightCursor(self.head)

    async def fetch_events(self, since: HeightCursor, max_count: int) -> FetchResult:
        self.fetch_calls += 1
        if self.fail_next:
            self.fail_next -= 1
            raise TransientProviderError("simulated outage")
        if since.block_number >= self.head:
            return FetchResult(events=[], cursor=since)
        to = min(since.block_number + max_count, self.head)
        batch = [e for e in self.events if since.block_number < e.block_number <= to]
        return FetchResult(events=batch, cursor=HeightCursor(to, await self.block_hash(to)))

    async def aclose(self) -> None:
        return None


class FakeSequenceProvider:
    """In-memory sequence chain keyed by atxuid; missing ids act as gaps."""

    name = "fake-zil"
    cursor_kind = "sequence"

    def __init__(self, txs: dict[int, list[ChainEvent]]) -> None:
        self.txs = dict(txs)

    async def current_cursor(self) -> SequenceCursor:
        return SequenceCursor(max(self.txs, default=-1) + 1)

    async def fetch_events(self, since: SequenceCursor, max_count: int) -> FetchResult:
        expected = since.atxuid
        events: list[ChainEvent] = []
        for atxuid in sorted(a for a in self.txs if since.atxuid <= a < since.atxuid + max_count):
            if atxuid != expected:
                break
            events.extend(self.txs[atxuid])
            expected += 1
        return FetchResult(events=events, cursor=SequenceCursor(expected))

    async def aclose(self) -> None:
        return None


def projection_snapshot(db) -> dict[str, list[tuple]]:
    """Every projection row, order-independent, without timestamps."""

    conn = db.conn
    return {
        "domains": [tuple(r) for r in conn.execute("SELECT node, name, parent_node, level FROM domains ORDER BY node")],
        "resolutions": [
            tuple(r)
            for r in conn.execute(
                "SELECT node, chain, network_id, owner_address, resolver_address, registry_address, records "
                "FROM domain_resolutions ORDER BY node, chain, network_id"
            )
        ],
        "reverse": [
            tuple(r)
            for r in conn.execute(
                "SELECT node, chain, network_id, reverse_address FROM domain_reverse_resolutions "
                "ORDER BY reverse_address, chain, network_id"
            )
        ],
    }
