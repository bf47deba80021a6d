"""mirror.core.namehash

Content-addressed domain identifiers.

EIP-137 hashes labels with keccak-256; the Zilliqa naming service uses the
same recursion over sha-256. Same name, different node.
"""

from __future__ import annotations

import hashlib
from typing import Literal

from eth_utils import keccak

Scheme = Literal["eip137", "zns"]

_ZERO_NODE = b"\x00" * 32


def _to_hex(node: bytes) -> str:
    return "0x" + node.hex()


def _from_hex(node: str) -> bytes:
    raw = bytes.fromhex(node[2:] if node.startswith("0x") else node)
    if len(raw) != 32:
        raise ValueError(f"expected 32-byte node, got {node}")
    return raw


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _labels(name: str) -> list[str]:
    return [label for label in name.split(".") if label] if name else []


def eip137_namehash(name: str) -> str:
    node = _ZERO_NODE
    for label in reversed(_labels(name)):
        node = keccak(node + keccak(text=label))
    return _to_hex(node)


def zns_namehash(name: str) -> str:
    node = _ZERO_NODE
    for label in reversed(_labels(name)):
        node = _sha256(node + _sha256(label.encode("utf-8")))
    return _to_hex(node)


def zns_childhash(parent_node: str, label: str) -> str:
    return _to_hex(_sha256(_from_hex(parent_node) + _sha256(label.encode("utf-8"))))


def namehash(name: str, scheme: Scheme) -> str:
    return zns_namehash(name) if scheme == "zns" else eip137_namehash(name)


def node_scheme(name: str, node: str) -> Scheme | None:
    """Which scheme produced ``node`` for ``name`` (``None`` when neither does)."""

    if eip137_namehash(name) == node:
        return "eip137"
    if zns_namehash(name) == node:
        return "zns"
    return None


def token_id_to_node(token_id: int | str) -> str:
    """ERC-721 token id (int or hex string) to a 0x-prefixed 64-hex node."""

    value = int(token_id, 16) if isinstance(token_id, str) else int(token_id)
    if value < 0 or value >= 2**256:
        raise ValueError(f"token id out of range: {token_id}")
    return "0x" + format(value, "064x")
