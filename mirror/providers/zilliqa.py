"""mirror.providers.zilliqa

Sequence-cursor provider for the Zilliqa naming registry.

History comes from ViewBlock's address transaction listing, keyed by the
account transaction id ``atxuid``. Resolver records are read from the
resolver contract over Zilliqa JSON-RPC at fetch time.

The cursor never skips: if ViewBlock returns ids 0, 1, 3 the mirror keeps 0
and 1 and asks for 2 again next cycle.
"""

from __future__ import annotations

import re
from typing import Any

import bech32

from mirror.core.client import JsonRpcClient
from mirror.core.events import EventType, normalize_address
from mirror.core.exceptions import ConfigError, MalformedEventError
from mirror.core.models import ChainEvent, SequenceCursor
from mirror.core.namehash import zns_childhash
from mirror.providers.base import FetchResult, ProviderContext
from mirror.providers.registry import register

_UPPER = re.compile(r"[A-Z]")


def is_valid_label(label: str | None) -> bool:
    return bool(label) and "." not in label and not _UPPER.search(label)


def to_hex_address(value: str | None) -> str | None:
    """Bech32 (``zil1…``) or hex address to lowercase 0x-hex; null becomes ``None``."""

    if not value:
        return None
    value = str(value).strip()
    if value.lower().startswith("zil1"):
        hrp, data = bech32.bech32_decode(value.lower())
        if hrp != "zil" or data is None:
            raise MalformedEventError(f"invalid bech32 address: {value}")
        raw = bech32.convertbits(data, 5, 8, False)
        if raw is None or len(raw) != 20:
            raise MalformedEventError(f"invalid bech32 address: {value}")
        return normalize_address("0x" + bytes(raw).hex())
    return normalize_address(value)


def _block_height(tx: dict[str, Any], default: int) -> int:
    try:
        return int(tx.get("blockHeight") or default)
    except (ValueError, TypeError) as e:
        raise MalformedEventError(f"transaction {tx.get('hash')} has blockHeight {tx.get('blockHeight')!r}") from e


def _atxuid(tx: dict[str, Any]) -> int:
    try:
        return int(tx["atxuid"])
    except (KeyError, ValueError, TypeError) as e:
        raise MalformedEventError(f"transaction {tx.get('hash')} has atxuid {tx.get('atxuid')!r}") from e


@register("zilliqa", cursor_kind="sequence")
class ZilliqaProvider:
    """ZNS registry transactions from ViewBlock plus resolver state from Zilliqa RPC."""

    name: str
    cursor_kind: str

    def __init__(self, ctx: ProviderContext) -> None:
        self.ctx = ctx
        self.chain = ctx.chain
        self.api_key = ctx.chain.api_key()
        if not self.api_key:
            raise ConfigError(f"{ctx.chain.key}: viewblock_api_key (or MIRROR_VIEWBLOCK_API_KEY) is not set")
        if not ctx.chain.registry_address:
            raise ConfigError(f"{ctx.chain.key}: registry_address is not set")
        self.registry = ctx.chain.registry_address.lower()
        self.rpc = JsonRpcClient(ctx.client, ctx.chain.rpc_url)

    async def aclose(self) -> None:
        await self.ctx.client.aclose()

    @property
    def _txs_url(self) -> str:
        return f"{self.chain.viewblock_url.rstrip('/')}/addresses/{self.registry}/txs"

    async def _list_txs(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Listed transactions with an ``atxuid``, ascending."""

        data = await self.ctx.client.request_json(
            "GET",
            self._txs_url,
            params={"network": self.chain.network, **params},
            headers={"X-APIKEY": self.api_key},
            expected=list,
        )
        txs = [tx for tx in data if isinstance(tx, dict) and tx.get("atxuid") is not None]
        return sorted(txs, key=_atxuid)

    async def current_cursor(self) -> SequenceCursor:
        txs = await self._list_txs({})
        if not txs:
            return SequenceCursor(atxuid=0)
        newest = txs[-1]
        return SequenceCursor(atxuid=_atxuid(newest) + 1, block_number=_block_height(newest, 0))

    async def resolver_records(self, resolver: str | None) -> dict[str, str]:
        if resolver is None:
            return {}
        result = await self.rpc.call(
            "GetSmartContractSubState", [resolver.removeprefix("0x"), "records", []]
        )
        records = (result or {}).get("records") if isinstance(result, dict) else None
        if not isinstance(records, dict):
            return {}
        return {str(k): str(v) for k, v in records.items()}

    async def fetch_events(self, since: SequenceCursor, max_count: int) -> FetchResult:
        count = max(max_count, 1)
        txs = await self._list_txs({"events": "true", "atxuidFrom": since.atxuid, "atxuidTo": since.atxuid + count - 1})

        expected = since.atxuid
        block_number = since.block_number
        kept: list[dict[str, Any]] = []
        for tx in txs:
            atxuid = _atxuid(tx)
            if atxuid < expected:
                continue
            if atxuid != expected:
                self.ctx.logger.warning(
                    "zilliqa_atxuid_gap",
                    extra={"chain": self.chain.key, "expected": expected, "got": atxuid},
                )
                break
            kept.append(tx)
            expected += 1
            block_number = _block_height(tx, block_number)

        events: list[ChainEvent] = []
        for tx in kept:
            events.extend(await self.normalize_tx(tx))
        return FetchResult(events=events, cursor=SequenceCursor(atxuid=expected, block_number=block_number))

    async def normalize_tx(self, tx: dict[str, Any]) -> list[ChainEvent]:
        """All normalized events of one transaction, oldest first.

        Raises:
            MalformedEventError: the transaction or one of its events does not
                have the shape ViewBlock documents.
        """

        atxuid = _atxuid(tx)
        raw_events = tx.get("events") or []
        if not isinstance(raw_events, list):
            raise MalformedEventError(f"atxuid {atxuid}: events are a {type(raw_events).__name__}")
        base = {
            "chain": self.chain.chain,
            "network_id": self.chain.network_id,
            "block_number": _block_height(tx, 0),
            "transaction_hash": tx.get("hash"),
            "atxuid": atxuid,
        }
        out: list[ChainEvent] = []
        # ViewBlock lists a transaction's events newest first.
        for raw in reversed(raw_events):
            for etype, node, payload in await self._normalize_event(raw, atxuid):
                try:
                    out.append(ChainEvent(**base, event_index=len(out), type=str(etype), node=node, payload=payload))
                except ValueError as e:
                    raise MalformedEventError(f"atxuid {atxuid}: {e}") from e
        return out

    async def _normalize_event(self, raw: Any, atxuid: int) -> list[tuple[str, str | None, dict[str, Any]]]:
        if not isinstance(raw, dict):
            raise MalformedEventError(f"atxuid {atxuid}: event is a {type(raw).__name__}, not an object")
        name = str(raw.get("name") or "unknown")
        params = raw.get("params") or {}
        if not isinstance(params, dict):
            raise MalformedEventError(f"atxuid {atxuid}: {name} params are a {type(params).__name__}")

        if name == "NewDomain":
            parent, label = params.get("parent"), params.get("label")
            if not isinstance(label, str) or not is_valid_label(label):
                raise MalformedEventError(f"atxuid {atxuid}: invalid domain label {label!r} under {parent}")
            if not parent:
                raise MalformedEventError(f"atxuid {atxuid}: NewDomain without parent")
            try:
                node = zns_childhash(str(parent).lower(), label)
            except ValueError as e:
                raise MalformedEventError(f"atxuid {atxuid}: bad parent node {parent}") from e
            return [
                (EventType.NEW, node, {"label": label, "parent_node": str(parent).lower(), "registry": self.registry})
            ]

        if name == "Configured":
            node = params.get("node")
            if not node:
                raise MalformedEventError(f"atxuid {atxuid}: Configured without node")
            node = str(node).lower()
            owner = to_hex_address(params.get("owner"))
            if owner is None:
                return [(EventType.BURN, node, {"registry": self.registry})]
            resolver = to_hex_address(params.get("resolver"))
            records = await self.resolver_records(resolver)
            return [
                (EventType.TRANSFER, node, {"owner": owner, "registry": self.registry}),
                (EventType.RESOLVER_SET, node, {"resolver": resolver}),
                (EventType.RECORDS_RESET, node, {"records": records}),
            ]

        node = params.get("node")
        return [(name, str(node).lower() if node else None, dict(params))]
