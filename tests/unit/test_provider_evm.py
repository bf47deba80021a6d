from __future__ import annotations

import json
import logging

import httpx
import pytest
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import keccak

from mirror.core.client import ClientConfig, DataClient
from mirror.core.config import ChainConfig, RegistryConfig
from mirror.core.exceptions import MalformedEventError
from mirror.core.metrics import MetricsRegistry
from mirror.core.models import HeightCursor
from mirror.providers.base import BlockHashSource, ChainProvider, ProviderContext
from mirror.providers.evm import GET, GET_MANY, HASH_TO_KEY, SIGNATURES, EvmProvider, _topic, decode_log
from tests._factories import ALICE, BOB, REGISTRY, block_hash, eth_node

NULL_TOPIC = "0x" + "00" * 32


def _addr_topic(address: str) -> str:
    return "0x" + "00" * 12 + address[2:]


def _log(
    event: str, topics: list[str], data: bytes = b"", *, block: int = 10, index: int = 0, address: str = REGISTRY
) -> dict:
    return {
        "address": address,
        "topics": [_topic(SIGNATURES[event]), *topics],
        "data": "0x" + data.hex(),
        "blockNumber": hex(block),
        "blockHash": block_hash(block),
        "logIndex": hex(index),
        "transactionHash": "0x" + "11" * 32,
        "removed": False,
    }


def _decode(raw: dict, kind: str = "uns"):
    return decode_log(raw, chain="ETH", network_id=1, kind=kind)


def test_mint_transfer() -> None:
    node = eth_node("alice.crypto")
    ev = _decode(_log("Transfer", [NULL_TOPIC, _addr_topic(ALICE), node]))
    assert ev.type == "transfer"
    assert ev.node == node
    assert ev.payload == {"owner": ALICE, "registry": REGISTRY, "minted": True, "resolver": REGISTRY}
    assert (ev.block_number, ev.log_index, ev.block_hash) == (10, 0, block_hash(10))


def test_cns_mint_has_no_implicit_resolver() -> None:
    node = eth_node("alice.crypto")
    ev = _decode(_log("Transfer", [NULL_TOPIC, _addr_topic(ALICE), node]), kind="cns")
    assert "resolver" not in ev.payload


def test_transfer_to_null_is_burn() -> None:
    node = eth_node("alice.crypto")
    ev = _decode(_log("Transfer", [_addr_topic(ALICE), NULL_TOPIC, node]))
    assert ev.type == "burn"
    assert ev.payload == {"registry": REGISTRY}


def test_new_uri() -> None:
    node = eth_node("alice.crypto")
    ev = _decode(_log("NewURI", [node], abi_encode(["string"], ["alice.crypto"])))
    assert ev.type == "new"
    assert ev.payload["name"] == "alice.crypto"


def test_new_uri_must_hash_to_token() -> None:
    with pytest.raises(MalformedEventError):
        _decode(_log("NewURI", [eth_node("bob.crypto")], abi_encode(["string"], ["alice.crypto"])))


def test_set_record() -> None:
    node = eth_node("alice.crypto")
    key_topic = "0x" + "22" * 32
    data = abi_encode(["string", "string"], ["crypto.ETH.address", ALICE])
    ev = _decode(_log("Set", [node, key_topic, "0x" + "33" * 32], data))
    assert ev.type == "record-set"
    assert ev.payload == {"key": "crypto.ETH.address", "value": ALICE}


def test_resolve_and_reverse() -> None:
    node = eth_node("alice.crypto")
    assert _decode(_log("Resolve", [node, _addr_topic(BOB)])).payload == {"resolver": BOB}

    rev = _decode(_log("SetReverse", [_addr_topic(ALICE), node]))
    assert (rev.type, rev.node, rev.payload) == ("reverse-set", node, {"address": ALICE})

    removed = _decode(_log("RemoveReverse", [_addr_topic(ALICE)]))
    assert (removed.type, removed.node) == ("reverse-removed", None)


def test_unknown_topic_is_passed_through() -> None:
    raw = _log("Transfer", [])
    raw["topics"] = ["0x" + "99" * 32]
    ev = _decode(raw)
    assert ev.type == "unknown"


def test_missing_topics_and_bad_data_are_malformed() -> None:
    with pytest.raises(MalformedEventError):
        _decode(_log("Transfer", [NULL_TOPIC]))
    with pytest.raises(MalformedEventError):
        _decode(_log("Set", [eth_node("alice.crypto")], b"\x01\x02"))


def _provider(handler, chain: ChainConfig) -> EvmProvider:
    client = DataClient(ClientConfig(rate_limit_rps=1000.0, max_retries=0), transport=httpx.MockTransport(handler))
    ctx = ProviderContext(chain=chain, client=client, metrics=MetricsRegistry(), logger=logging.getLogger("test.evm"))
    return EvmProvider(ctx)


@pytest.mark.anyio
async def test_fetch_events_over_json_rpc(eth_chain: ChainConfig) -> None:
    node = eth_node("alice.crypto")
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append(body)
        method = body["method"]
        if method == "eth_blockNumber":
            result = hex(20)
        elif method == "eth_getLogs":
            result = [
                _log("NewURI", [node], abi_encode(["string"], ["alice.crypto"]), block=12, index=1),
                _log("Transfer", [NULL_TOPIC, _addr_topic(ALICE), node], block=12, index=0),
                {**_log("Resolve", [node, _addr_topic(BOB)], block=13), "removed": True},
            ]
        elif method == "eth_getBlockByNumber":
            result = {"hash": block_hash(int(body["params"][0], 16))}
        else:
            raise AssertionError(method)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    provider = _provider(handler, eth_chain)
    try:
        assert isinstance(provider, ChainProvider)
        assert isinstance(provider, BlockHashSource)
        result = await provider.fetch_events(HeightCursor(10), 5)
    finally:
        await provider.aclose()

    logs_call = next(c for c in seen if c["method"] == "eth_getLogs")
    assert logs_call["params"][0] == {"address": [REGISTRY], "fromBlock": hex(11), "toBlock": hex(15)}
    assert [e.type for e in result.events] == ["transfer", "new"]
    assert result.cursor == HeightCursor(15, block_hash(15))


@pytest.mark.anyio
async def test_fetch_at_head_returns_same_cursor(eth_chain: ChainConfig) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["method"] == "eth_blockNumber"
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": hex(20)})

    provider = _provider(handler, eth_chain.model_copy(update={"confirmation_blocks": 5}))
    try:
        since = HeightCursor(15, block_hash(15))
        result = await provider.fetch_events(since, 100)
        assert await provider.current_cursor() == HeightCursor(15)
    finally:
        await provider.aclose()
    assert result.events == []
    assert result.cursor == since


@pytest.mark.parametrize(
    "raw",
    [
        "not-a-log",
        _log("Transfer", [NULL_TOPIC, _addr_topic(ALICE), "0xnothex"]),
        {**_log("Transfer", [NULL_TOPIC, _addr_topic(ALICE), eth_node("alice.crypto")]), "logIndex": None},
        {k: v for k, v in _log("ResetRecords", [eth_node("alice.crypto")]).items() if k != "blockNumber"},
        {**_log("ResetRecords", [eth_node("alice.crypto")]), "topics": "0xabc"},
    ],
)
def test_bad_log_shapes_are_malformed(raw) -> None:
    with pytest.raises(MalformedEventError):
        _decode(raw)


def _rpc_handler(results: dict):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        result = results[body["method"]]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return handler


@pytest.mark.anyio
async def test_block_without_hash_is_malformed(eth_chain: ChainConfig) -> None:
    provider = _provider(_rpc_handler({"eth_getBlockByNumber": {"number": "0xa"}}), eth_chain)
    try:
        with pytest.raises(MalformedEventError):
            await provider.block_hash(10)
    finally:
        await provider.aclose()


@pytest.mark.anyio
async def test_non_hex_head_is_malformed(eth_chain: ChainConfig) -> None:
    provider = _provider(_rpc_handler({"eth_blockNumber": "latest"}), eth_chain)
    try:
        with pytest.raises(MalformedEventError):
            await provider.head()
    finally:
        await provider.aclose()


CNS = "0xd1e5b0ff1287aa9f9a268759062e4ab08b9dacbe"
RESOLVER = "0xb66dce2da6afaaa98f2013446dbcb0f4b0ab2842"


class _CnsNode:
    """JSON-RPC node serving one CNS registry and one resolver."""

    def __init__(
        self, logs: list[dict], records: dict[str, str], *, hash_to_key: dict[int, str] | None = None
    ) -> None:
        self.logs = logs
        self.records = records
        self.hash_to_key = hash_to_key or {}
        self.calls: list[dict] = []

    def _reply(self, body: dict, result) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def _revert(self, body: dict) -> httpx.Response:
        err = {"code": 3, "message": "execution reverted"}
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": err})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        if method == "eth_blockNumber":
            return self._reply(body, hex(20))
        if method == "eth_getLogs":
            return self._reply(body, self.logs)
        if method == "eth_getBlockByNumber":
            return self._reply(body, {"hash": block_hash(int(body["params"][0], 16))})
        assert method == "eth_call"
        self.calls.append(body["params"])
        call, block = body["params"]
        assert call["to"] == RESOLVER
        data = bytes.fromhex(call["data"][2:])
        selector, args = data[:4], data[4:]
        if selector == GET_MANY:
            keys, _token = abi_decode(["string[]", "uint256"], args)
            values = [self.records.get(k, "") for k in keys]
            return self._reply(body, "0x" + abi_encode(["string[]"], [values]).hex())
        if selector == GET:
            key, _token = abi_decode(["string", "uint256"], args)
            if key not in self.records:
                return self._revert(body)
            return self._reply(body, "0x" + abi_encode(["string"], [self.records[key]]).hex())
        if selector == HASH_TO_KEY:
            (key_hash,) = abi_decode(["uint256"], args)
            if key_hash not in self.hash_to_key:
                return self._revert(body)
            return self._reply(body, "0x" + abi_encode(["string"], [self.hash_to_key[key_hash]]).hex())
        raise AssertionError(selector.hex())


def _cns_chain(eth_chain: ChainConfig) -> ChainConfig:
    return eth_chain.model_copy(update={"registries": [RegistryConfig(address=CNS, kind="cns")]})


def _sync_log(node: str, update_id: int, *, block: int, resolver: str = RESOLVER) -> dict:
    topics = [_addr_topic(resolver), "0x" + update_id.to_bytes(32, "big").hex(), node]
    return _log("Sync", topics, block=block, address=CNS)


def _key_hash(key: str) -> int:
    return int.from_bytes(keccak(text=key), "big")


@pytest.mark.anyio
async def test_cns_resolve_loads_resolver_records(eth_chain: ChainConfig) -> None:
    node = eth_node("alice.crypto")
    upstream = _CnsNode(
        [_log("Resolve", [node, _addr_topic(RESOLVER)], block=12, address=CNS)],
        {"crypto.ETH.address": ALICE, "crypto.BTC.address": "bc1qalice"},
    )
    provider = _provider(upstream, _cns_chain(eth_chain))
    try:
        result = await provider.fetch_events(HeightCursor(10), 5)
    finally:
        await provider.aclose()

    (event,) = result.events
    assert event.type == "resolver-set"
    assert event.payload == {
        "resolver": RESOLVER,
        "records": {"crypto.ETH.address": ALICE, "crypto.BTC.address": "bc1qalice"},
    }
    assert upstream.calls[0][1] == hex(12)


@pytest.mark.anyio
async def test_cns_sync_reads_one_record(eth_chain: ChainConfig) -> None:
    node = eth_node("alice.crypto")
    upstream = _CnsNode(
        [
            _sync_log(node, _key_hash("crypto.ETH.address"), block=12),
            _sync_log(node, _key_hash("social.picture.value"), block=13),
        ],
        {"crypto.ETH.address": BOB, "social.picture.value": "ipfs://pic"},
        hash_to_key={_key_hash("social.picture.value"): "social.picture.value"},
    )
    provider = _provider(upstream, _cns_chain(eth_chain))
    try:
        result = await provider.fetch_events(HeightCursor(10), 5)
    finally:
        await provider.aclose()

    assert [(e.type, e.node, e.payload) for e in result.events] == [
        ("record-set", node, {"key": "crypto.ETH.address", "value": BOB}),
        ("record-set", node, {"key": "social.picture.value", "value": "ipfs://pic"}),
    ]


@pytest.mark.anyio
async def test_cns_sync_resets_or_skips(eth_chain: ChainConfig) -> None:
    node = eth_node("alice.crypto")
    upstream = _CnsNode(
        [
            _sync_log(node, 0, block=11),
            _sync_log(node, _key_hash("crypto.LTC.address"), block=12),
            _sync_log(node, 12345, block=13),
        ],
        {},
    )
    provider = _provider(upstream, _cns_chain(eth_chain))
    try:
        result = await provider.fetch_events(HeightCursor(10), 5)
    finally:
        await provider.aclose()

    reset, reverted, unknown = result.events
    assert (reset.type, reset.payload) == ("records-reset", {"records": {}})
    # get() reverts when the resolver has nothing under the key
    assert (reverted.type, reverted.payload) == ("records-reset", {"records": {}})
    assert unknown.type == "Sync"
    assert unknown.payload["update_id"] == hex(12345)


@pytest.mark.anyio
async def test_uns_logs_need_no_resolver_calls(eth_chain: ChainConfig) -> None:
    node = eth_node("alice.crypto")
    upstream = _CnsNode([_log("Resolve", [node, _addr_topic(RESOLVER)], block=12)], {})
    provider = _provider(upstream, eth_chain)
    try:
        result = await provider.fetch_events(HeightCursor(10), 5)
    finally:
        await provider.aclose()
    assert result.events[0].payload == {"resolver": RESOLVER}
    assert upstream.calls == []
