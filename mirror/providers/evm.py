"""mirror.providers.evm

Height-cursor provider for EVM registries (UNS and CNS).

Reads registry logs with ``eth_getLogs`` over confirmed block ranges and
decodes them into the event contract. Only blocks at least
``confirmation_blocks`` behind the head are read; shallower reorgs are the
reorg detector's job. CNS resolver records are read with ``eth_call``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from mirror.core.client import JsonRpcClient, JsonRpcError
from mirror.core.events import Chain, EventType, normalize_address
from mirror.core.exceptions import MalformedEventError, TransientProviderError
from mirror.core.models import ChainEvent, HeightCursor, order_events
from mirror.core.namehash import eip137_namehash, token_id_to_node
from mirror.providers.base import FetchResult, ProviderContext
from mirror.providers.registry import register


def _topic(signature: str) -> str:
    return "0x" + keccak(text=signature).hex()


SIGNATURES = {
    "Transfer": "Transfer(address,address,uint256)",
    "Approval": "Approval(address,address,uint256)",
    "ApprovalForAll": "ApprovalForAll(address,address,bool)",
    "NewURI": "NewURI(uint256,string)",
    "NewURIPrefix": "NewURIPrefix(string)",
    "NewKey": "NewKey(uint256,string,string)",
    "Set": "Set(uint256,string,string,string,string)",
    "ResetRecords": "ResetRecords(uint256)",
    "Resolve": "Resolve(uint256,address)",
    "Sync": "Sync(address,uint256,uint256)",
    "SetReverse": "SetReverse(address,uint256)",
    "RemoveReverse": "RemoveReverse(address)",
}

TOPICS: dict[str, str] = {_topic(sig): name for name, sig in SIGNATURES.items()}


def _hex_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _data_bytes(data: str | None) -> bytes:
    if not data or data == "0x":
        return b""
    return bytes.fromhex(data[2:] if data.startswith("0x") else data)


class _Log:
    """A raw log plus the registry it came from."""

    __slots__ = ("raw", "topics", "registry", "kind")

    def __init__(self, raw: dict[str, Any], kind: str) -> None:
        topics = raw.get("topics") or []
        if not isinstance(topics, list):
            raise MalformedEventError(f"log topics are a {type(topics).__name__}, not a list")
        self.raw = raw
        self.topics = [str(t).lower() for t in topics]
        self.registry = str(raw.get("address", "")).lower()
        self.kind = kind

    def need_topics(self, n: int, event: str) -> None:
        if len(self.topics) < n:
            raise MalformedEventError(
                f"{event} log at block {self.raw.get('blockNumber')} index {self.raw.get('logIndex')} "
                f"has {len(self.topics)} topics, expected {n}"
            )

    def token_node(self, index: int) -> str:
        return token_id_to_node(_hex_int(self.topics[index]))

    def decode_data(self, types: list[str], event: str) -> tuple[Any, ...]:
        try:
            return tuple(abi_decode(types, _data_bytes(self.raw.get("data"))))
        except (DecodingError, ValueError) as e:
            raise MalformedEventError(f"{event}: cannot decode log data: {e}") from e


Decoded = tuple[str, str | None, dict[str, Any]]


def _transfer(log: _Log) -> Decoded:
    log.need_topics(4, "Transfer")
    sender = normalize_address(_topic_address(log.topics[1]))
    to = normalize_address(_topic_address(log.topics[2]))
    node = log.token_node(3)
    if to is None:
        return EventType.BURN, node, {"registry": log.registry}
    minted = sender is None
    payload: dict[str, Any] = {"owner": to, "registry": log.registry, "minted": minted}
    if minted and log.kind == "uns":
        payload["resolver"] = log.registry
    return EventType.TRANSFER, node, payload


def _new_uri(log: _Log) -> Decoded:
    log.need_topics(2, "NewURI")
    node = log.token_node(1)
    (uri,) = log.decode_data(["string"], "NewURI")
    if eip137_namehash(uri) != node:
        raise MalformedEventError(f"NewURI name {uri!r} does not hash to token {node}")
    payload: dict[str, Any] = {"name": uri, "registry": log.registry}
    if log.kind == "uns":
        payload["resolver"] = log.registry
    return EventType.NEW, node, payload


def _set(log: _Log) -> Decoded:
    log.need_topics(2, "Set")
    key, value = log.decode_data(["string", "string"], "Set")
    return EventType.RECORD_SET, log.token_node(1), {"key": key, "value": value}


def _reset_records(log: _Log) -> Decoded:
    log.need_topics(2, "ResetRecords")
    return EventType.RECORDS_RESET, log.token_node(1), {"records": {}}


def _resolve(log: _Log) -> Decoded:
    log.need_topics(3, "Resolve")
    resolver = normalize_address(_topic_address(log.topics[2]))
    return EventType.RESOLVER_SET, log.token_node(1), {"resolver": resolver}


def _set_reverse(log: _Log) -> Decoded:
    log.need_topics(3, "SetReverse")
    address = _topic_address(log.topics[1])
    return EventType.REVERSE_SET, log.token_node(2), {"address": address}


def _remove_reverse(log: _Log) -> Decoded:
    log.need_topics(2, "RemoveReverse")
    return EventType.REVERSE_REMOVED, None, {"address": _topic_address(log.topics[1])}


def _approval(log: _Log) -> Decoded:
    log.need_topics(4, "Approval")
    return (
        EventType.APPROVAL,
        log.token_node(3),
        {"owner": _topic_address(log.topics[1]), "approved": _topic_address(log.topics[2])},
    )


def _approval_for_all(log: _Log) -> Decoded:
    log.need_topics(3, "ApprovalForAll")
    (approved,) = log.decode_data(["bool"], "ApprovalForAll")
    return (
        EventType.APPROVAL_FOR_ALL,
        None,
        {
            "owner": _topic_address(log.topics[1]),
            "operator": _topic_address(log.topics[2]),
            "approved": bool(approved),
        },
    )


def _new_uri_prefix(log: _Log) -> Decoded:
    (prefix,) = log.decode_data(["string"], "NewURIPrefix")
    return EventType.NEW_URI_PREFIX, None, {"prefix": prefix}


def _new_key(log: _Log) -> Decoded:
    log.need_topics(2, "NewKey")
    (key,) = log.decode_data(["string"], "NewKey")
    return EventType.NEW_KEY, log.token_node(1), {"key": key}


def _sync(log: _Log) -> Decoded:
    log.need_topics(4, "Sync")
    payload = {
        "resolver": normalize_address(_topic_address(log.topics[1])),
        "update_id": hex(_hex_int(log.topics[2])),
        "registry": log.registry,
    }
    return "Sync", log.token_node(3), payload


DECODERS: dict[str, Callable[[_Log], Decoded]] = {
    "Transfer": _transfer,
    "NewURI": _new_uri,
    "Set": _set,
    "ResetRecords": _reset_records,
    "Resolve": _resolve,
    "SetReverse": _set_reverse,
    "RemoveReverse": _remove_reverse,
    "Approval": _approval,
    "ApprovalForAll": _approval_for_all,
    "NewURIPrefix": _new_uri_prefix,
    "NewKey": _new_key,
    "Sync": _sync,
}


def decode_log(raw: dict[str, Any], *, chain: Chain, network_id: int, kind: str = "uns") -> ChainEvent:
    """Translate one ``eth_getLogs`` entry into a ``ChainEvent``.

    Raises:
        MalformedEventError: missing topics, undecodable topics or data, missing
            position fields, or a ``NewURI`` whose name does not hash to its token.
    """

    if not isinstance(raw, dict):
        raise MalformedEventError(f"log entry is a {type(raw).__name__}, not an object")

    try:
        log = _Log(raw, kind)
        name = TOPICS.get(log.topics[0]) if log.topics else None
        if name is None:
            etype, node, payload = "unknown", None, {"topics": log.topics, "data": raw.get("data")}
        else:
            etype, node, payload = DECODERS[name](log)

        return ChainEvent(
            chain=chain,
            network_id=network_id,
            block_number=_hex_int(raw["blockNumber"]),
            block_hash=str(raw["blockHash"]).lower() if raw.get("blockHash") else None,
            log_index=_hex_int(raw["logIndex"]),
            transaction_hash=raw.get("transactionHash"),
            type=str(etype),
            node=node,
            payload=payload,
        )
    except (KeyError, ValueError, TypeError, AttributeError, IndexError) as e:
        raise MalformedEventError(
            f"undecodable log at block {raw.get('blockNumber')} index {raw.get('logIndex')}: {e}"
        ) from e


def _selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


GET_MANY = _selector("getMany(string[],uint256)")
GET = _selector("get(string,uint256)")
HASH_TO_KEY = _selector("hashToKey(uint256)")

RECORDS_PER_CALL = 100


def _key_hash(key: str) -> int:
    return int.from_bytes(keccak(text=key), "big")


def _reverted(e: JsonRpcError) -> bool:
    return e.code == 3 or "revert" in e.rpc_message.lower()


@register("evm", cursor_kind="height")
class EvmProvider:
    """UNS/CNS registry logs from an Ethereum-compatible JSON-RPC node.

    CNS keeps records on separate resolver contracts. ``Resolve`` and
    ``Sync`` logs from a CNS registry are completed with resolver state read
    by ``eth_call`` at the log's block, so replaying the stored events
    never needs the node again.
    """

    name: str
    cursor_kind: str

    def __init__(self, ctx: ProviderContext) -> None:
        self.ctx = ctx
        self.chain = ctx.chain
        self.rpc = JsonRpcClient(ctx.client, ctx.chain.rpc_url)
        self.registries: dict[str, str] = {r.address: r.kind for r in ctx.chain.registries}
        self.key_hashes: dict[int, str] = {_key_hash(k): k for k in ctx.chain.record_keys}

    async def aclose(self) -> None:
        await self.ctx.client.aclose()

    async def head(self) -> int:
        """Highest block considered final enough to read."""

        result = await self.rpc.call("eth_blockNumber")
        try:
            latest = _hex_int(result)
        except (ValueError, TypeError) as e:
            raise MalformedEventError(f"eth_blockNumber returned {result!r}") from e
        return max(latest - self.chain.confirmation_blocks, 0)

    async def block_hash(self, block_number: int) -> str | None:
        block = await self.rpc.call("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            return None
        if not isinstance(block, dict) or not block.get("hash"):
            raise MalformedEventError(f"block {block_number} from {self.chain.key} has no hash")
        return str(block["hash"]).lower()

    async def current_cursor(self) -> HeightCursor:
        return HeightCursor(block_number=await self.head())

    async def _call(self, to: str, data: bytes, block: int, types: list[str]) -> tuple[Any, ...]:
        result = await self.rpc.call("eth_call", [{"to": to, "data": "0x" + data.hex()}, hex(block)])
        try:
            return tuple(abi_decode(types, _data_bytes(result)))
        except (DecodingError, ValueError, TypeError, AttributeError) as e:
            raise MalformedEventError(f"eth_call to {to} at block {block}: cannot decode {result!r}") from e

    async def resolver_records(self, resolver: str | None, node: str, block: int) -> dict[str, str]:
        """Configured record keys that are set on ``resolver`` for ``node``."""

        keys = list(self.chain.record_keys)
        if resolver is None or not keys:
            return {}
        token_id = int(node, 16)
        records: dict[str, str] = {}
        for i in range(0, len(keys), RECORDS_PER_CALL):
            page = keys[i : i + RECORDS_PER_CALL]
            try:
                (values,) = await self._call(
                    resolver, GET_MANY + abi_encode(["string[]", "uint256"], [page, token_id]), block, ["string[]"]
                )
            except JsonRpcError as e:
                if not _reverted(e):
                    raise
                return {}
            records.update((k, v) for k, v in zip(page, values) if v)
        return records

    async def _record_key(self, resolver: str, update_id: int, block: int) -> str | None:
        key = self.key_hashes.get(update_id)
        if key is not None:
            return key
        # Legacy resolvers have no hashToKey and revert.
        try:
            (key,) = await self._call(resolver, HASH_TO_KEY + abi_encode(["uint256"], [update_id]), block, ["string"])
        except JsonRpcError as e:
            if not _reverted(e):
                raise
            return None
        return key or None

    async def _sync_records(self, event: ChainEvent) -> ChainEvent:
        resolver = event.payload.get("resolver")
        update_id = int(event.payload["update_id"], 16)
        if update_id == 0 or resolver is None:
            return event.model_copy(update={"type": str(EventType.RECORDS_RESET), "payload": {"records": {}}})

        key = await self._record_key(resolver, update_id, event.block_number)
        if key is None:
            self.ctx.logger.warning(
                "cns_record_key_unknown",
                extra={"chain": self.chain.key, "resolver": resolver, "update_id": event.payload["update_id"]},
            )
            return event

        try:
            data = GET + abi_encode(["string", "uint256"], [key, int(event.node, 16)])
            (value,) = await self._call(resolver, data, event.block_number, ["string"])
        except JsonRpcError as e:
            if not _reverted(e):
                raise
            return event.model_copy(update={"type": str(EventType.RECORDS_RESET), "payload": {"records": {}}})
        return event.model_copy(update={"type": str(EventType.RECORD_SET), "payload": {"key": key, "value": value}})

    async def with_resolver_state(self, event: ChainEvent) -> ChainEvent:
        """Fill in records for a CNS ``resolver-set`` or ``Sync`` event."""

        if event.type == EventType.RESOLVER_SET and event.node:
            records = await self.resolver_records(event.payload.get("resolver"), event.node, event.block_number)
            return event.model_copy(update={"payload": {**event.payload, "records": records}})
        if event.type == "Sync" and event.node:
            return await self._sync_records(event)
        return event

    async def fetch_events(self, since: HeightCursor, max_count: int) -> FetchResult:
        head = await self.head()
        if since.block_number >= head:
            return FetchResult(events=[], cursor=since)

        from_block = since.block_number + 1
        to_block = min(since.block_number + max(max_count, 1), head)
        logs = await self.rpc.call(
            "eth_getLogs",
            [
                {
                    "address": sorted(self.registries),
                    "fromBlock": hex(from_block),
                    "toBlock": hex(to_block),
                }
            ],
        )
        if not isinstance(logs, list):
            raise TransientProviderError(f"eth_getLogs returned {type(logs).__name__}")

        events: list[ChainEvent] = []
        for raw in logs:
            if isinstance(raw, dict) and raw.get("removed"):
                continue
            kind = self.registries.get(str(raw.get("address", "")).lower(), "uns") if isinstance(raw, dict) else "uns"
            event = decode_log(raw, chain=self.chain.chain, network_id=self.chain.network_id, kind=kind)
            if kind == "cns":
                event = await self.with_resolver_state(event)
            events.append(event)

        to_hash = await self.block_hash(to_block)
        if to_hash is None:
            raise TransientProviderError(f"block {to_block} not available from {self.chain.key}")

        self.ctx.logger.debug(
            "evm_fetch",
            extra={"chain": self.chain.key, "from_block": from_block, "to_block": to_block, "logs": len(events)},
        )
        return FetchResult(events=order_events(events), cursor=HeightCursor(to_block, to_hash))
