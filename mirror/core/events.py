"""mirror.core.events

The event contract is the primitive.

Every chain speaks its own dialect. Providers translate into this vocabulary;
the projector only ever reads this vocabulary.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from mirror import NULL_ADDRESS
from mirror.core.exceptions import MalformedEventError


class Chain(StrEnum):
    ETH = "ETH"
    MATIC = "MATIC"
    ZIL = "ZIL"


class EventType(StrEnum):
    """Normalized registry event vocabulary."""

    # Domain lifecycle
    NEW = "new"
    MINT = "mint"
    TRANSFER = "transfer"
    BURN = "burn"
    RESET = "reset"

    # Resolution
    RESOLVER_SET = "resolver-set"
    RECORD_SET = "record-set"
    RECORDS_RESET = "records-reset"

    # Reverse resolution
    REVERSE_SET = "reverse-set"
    REVERSE_REMOVED = "reverse-removed"

    # Registry bookkeeping with no projection effect
    APPROVAL = "approval"
    APPROVAL_FOR_ALL = "approval-for-all"
    NEW_URI_PREFIX = "new-uri-prefix"
    NEW_KEY = "new-key"


NO_OP_TYPES = frozenset(
    {
        EventType.APPROVAL,
        EventType.APPROVAL_FOR_ALL,
        EventType.NEW_URI_PREFIX,
        EventType.NEW_KEY,
    }
)

ROOT_TLDS = ("crypto", "coin", "wallet", "blockchain", "bitcoin", "x", "888", "nft", "dao", "zil")

SUPPORTED_RECORD_PREFIXES = (
    "crypto.",
    "dns.",
    "dweb.",
    "ipfs.",
    "browser.",
    "social.",
    "whois.",
    "gundb.",
    "forwarding.",
    "validation.",
    "profile.",
)


# Keys read from a CNS resolver when a domain is pointed at it.
DEFAULT_RECORD_KEYS = (
    "crypto.BTC.address",
    "crypto.ETH.address",
    "crypto.LTC.address",
    "crypto.XRP.address",
    "crypto.ZIL.address",
    "crypto.BCH.address",
    "crypto.USDT.version.ERC20.address",
    "crypto.MATIC.version.MATIC.address",
    "ipfs.html.value",
    "ipfs.redirect_domain.value",
    "dweb.ipfs.hash",
    "browser.redirect_url",
    "dns.A",
    "dns.AAAA",
    "dns.ttl",
    "whois.email.value",
    "social.twitter.username",
)


def is_supported_record_key(key: str) -> bool:
    return bool(key) and key.startswith(SUPPORTED_RECORD_PREFIXES)


def canonical_json(obj: Any) -> str:
    """Deterministic JSON for storage and comparison."""

    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def normalize_address(value: str | None) -> str | None:
    """Lowercase hex address; the null address and empty values become ``None``."""

    if not value:
        return None
    addr = str(value).lower()
    if not addr.startswith("0x"):
        addr = "0x" + addr
    return None if addr == NULL_ADDRESS else addr


# -----------------
# Typed payloads
# -----------------


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class NewDomainPayload(_Payload):
    """``new``/``mint``: either a full ``name`` or a ``label`` under ``parent_node``."""

    name: str | None = None
    label: str | None = None
    parent_node: str | None = None
    owner: str | None = None
    resolver: str | None = None
    registry: str | None = None

    @model_validator(mode="after")
    def name_or_label(self) -> NewDomainPayload:
        if not self.name and not (self.label and self.parent_node):
            raise ValueError("new domain needs a name or a label with parent_node")
        return self


class TransferPayload(_Payload):
    owner: str
    registry: str | None = None
    resolver: str | None = None
    minted: bool = False


class BurnPayload(_Payload):
    registry: str | None = None


class ResolverSetPayload(_Payload):
    """``records``, when present, replaces the records read from the new resolver."""

    resolver: str | None = None
    records: dict[str, str] | None = None


class RecordSetPayload(_Payload):
    key: str
    value: str


class RecordsResetPayload(_Payload):
    records: dict[str, str] = {}


class ReversePayload(_Payload):
    address: str


PAYLOAD_MODELS: dict[str, type[_Payload]] = {
    EventType.NEW: NewDomainPayload,
    EventType.MINT: NewDomainPayload,
    EventType.TRANSFER: TransferPayload,
    EventType.BURN: BurnPayload,
    EventType.RESET: BurnPayload,
    EventType.RESOLVER_SET: ResolverSetPayload,
    EventType.RECORD_SET: RecordSetPayload,
    EventType.RECORDS_RESET: RecordsResetPayload,
    EventType.REVERSE_SET: ReversePayload,
    EventType.REVERSE_REMOVED: ReversePayload,
}

# Types whose events must target a domain node.
NODE_TYPES = frozenset(PAYLOAD_MODELS) - {EventType.REVERSE_REMOVED}


def parse_payload(event_type: str, payload: dict[str, Any]) -> _Payload | None:
    """Validate a payload against its type's model.

    Returns ``None`` for types without a model (no-ops and unknown upstream names).

    Raises:
        MalformedEventError: payload does not fit the model.
    """

    model = PAYLOAD_MODELS.get(event_type)
    if model is None:
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedEventError(f"invalid {event_type} payload: {e.errors()}") from e
