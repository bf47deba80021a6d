"""mirror.core.projections

Domain Projector: a pure fold of ordered chain events into domain state.

The projector never talks to a chain or a database. It reads and writes a
``ProjectionState``; whether that state lives in memory or is backed by
SQLite (``mirror.core.projection_store.StoredProjection``) is not its concern.
"""

from __future__ import annotations

import copy
import logging
from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field

from mirror.core.events import (
    NO_OP_TYPES,
    NODE_TYPES,
    PAYLOAD_MODELS,
    ROOT_TLDS,
    BurnPayload,
    EventType,
    NewDomainPayload,
    RecordSetPayload,
    RecordsResetPayload,
    ResolverSetPayload,
    ReversePayload,
    TransferPayload,
    is_supported_record_key,
    normalize_address,
    parse_payload,
)
from mirror.core.exceptions import MalformedEventError, ProjectionError
from mirror.core.metrics import REGISTRY, MetricsRegistry
from mirror.core.models import ChainEvent
from mirror.core.namehash import eip137_namehash, namehash, node_scheme, zns_namehash

ROOT_NODE = "0x" + "00" * 32

# Root TLD nodes under either hashing scheme.
_TLD_BY_NODE: dict[str, str] = {
    **{eip137_namehash(t): t for t in ROOT_TLDS},
    **{zns_namehash(t): t for t in ROOT_TLDS},
}

ResolutionKey = tuple[str, int]
ReverseKey = tuple[str, str, int]


@dataclass
class DomainResolution:
    owner: str | None = None
    resolver: str | None = None
    registry: str | None = None
    records: dict[str, str] = field(default_factory=dict)

    def clear(self) -> None:
        self.owner = None
        self.resolver = None
        self.registry = None
        self.records = {}


@dataclass
class Domain:
    node: str
    name: str | None = None
    parent: str | None = None
    resolutions: dict[ResolutionKey, DomainResolution] = field(default_factory=dict)

    @property
    def level(self) -> int:
        return len(self.name.split(".")) if self.name else 0

    @property
    def parent_name(self) -> str | None:
        if not self.name or "." not in self.name:
            return None
        return self.name.split(".", 1)[1]

    def resolution(self, chain: str, network_id: int) -> DomainResolution:
        key = (str(chain), network_id)
        if key not in self.resolutions:
            self.resolutions[key] = DomainResolution()
        return self.resolutions[key]


class ProjectionState:
    """In-memory domain state with the lookups the projector needs."""

    def __init__(self) -> None:
        self.domains: dict[str, Domain] = {}
        self.reverse: dict[ReverseKey, str] = {}
        self.reverse_by_node: dict[ReverseKey, str] = {}
        self._names: dict[str, set[str]] = defaultdict(set)
        self._children: dict[str, set[str]] = defaultdict(set)

    # --- lookups (StoredProjection loads misses from SQLite) ---

    def get_domain(self, node: str) -> Domain | None:
        return self.domains.get(node)

    def domains_named(self, name: str) -> set[str]:
        return set(self._names.get(name, ()))

    def children_of(self, parent_name: str) -> set[str]:
        return set(self._children.get(parent_name, ()))

    def reverse_for_address(self, address: str, chain: str, network_id: int) -> str | None:
        return self.reverse.get((address, str(chain), network_id))

    def reverse_for_node(self, node: str, chain: str, network_id: int) -> str | None:
        return self.reverse_by_node.get((node, str(chain), network_id))

    # --- mutation ---

    def touch(self, domain: Domain) -> None:
        """Mark a domain as changed."""

    def ensure_domain(self, node: str) -> Domain:
        domain = self.get_domain(node)
        if domain is None:
            domain = Domain(node=node)
            self.domains[node] = domain
            self.touch(domain)
        return domain

    def index(self, domain: Domain) -> None:
        if domain.name:
            self._names[domain.name].add(domain.node)
            if domain.parent_name:
                self._children[domain.parent_name].add(domain.node)

    def set_name(self, domain: Domain, name: str) -> None:
        if domain.name == name:
            return
        if domain.name:
            self._names[domain.name].discard(domain.node)
            if domain.parent_name:
                self._children[domain.parent_name].discard(domain.node)
        domain.name = name
        self.index(domain)
        self.touch(domain)

    def put_reverse(self, address: str, chain: str, network_id: int, node: str) -> None:
        self.reverse[(address, str(chain), network_id)] = node
        self.reverse_by_node[(node, str(chain), network_id)] = address

    def drop_reverse(self, address: str, chain: str, network_id: int) -> str | None:
        node = self.reverse.pop((address, str(chain), network_id), None)
        if node is not None:
            self.reverse_by_node.pop((node, str(chain), network_id), None)
        return node

    def copy(self) -> ProjectionState:
        return copy.deepcopy(self)

    def divergent_names(self) -> dict[str, list[str]]:
        return {name: sorted(nodes) for name, nodes in sorted(self._names.items()) if len(nodes) > 1}


@dataclass
class ProjectionResult:
    applied: int = 0
    ignored: int = 0
    skipped: Counter[str] = field(default_factory=Counter)

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())


class DomainProjector:
    """Applies ordered events to a ``ProjectionState``.

    Unknown event types and unsupported record keys are skipped and counted,
    never fatal. A payload that does not fit its type raises ``ProjectionError``.
    """

    def __init__(
        self,
        *,
        metrics: MetricsRegistry | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.metrics = metrics or REGISTRY
        self.logger = logger or logging.getLogger(__name__)

    def apply(self, state: ProjectionState, events: Iterable[ChainEvent]) -> ProjectionResult:
        result = ProjectionResult()
        for event in events:
            outcome = self._apply_one(state, event)
            if outcome is None:
                result.applied += 1
            elif outcome == "ignored":
                result.ignored += 1
            else:
                result.skipped[outcome] += 1
                self.metrics.counter("projector.skipped").inc()
                self.metrics.counter(f"projector.skipped.{outcome}").inc()
        return result

    # --- dispatch ---

    def _apply_one(self, state: ProjectionState, event: ChainEvent) -> str | None:
        """Returns ``None`` when applied, ``"ignored"`` for no-ops, else a skip reason."""

        if event.type in NO_OP_TYPES:
            return "ignored"
        if event.type not in PAYLOAD_MODELS:
            self.logger.info(
                "projector_unknown_event_type",
                extra={"type": event.type, "chain": str(event.chain), "event_id": event.id},
            )
            return f"unknown:{event.type}"

        try:
            payload = parse_payload(event.type, event.payload)
        except MalformedEventError as e:
            raise ProjectionError(f"event {event.id} ({event.type}): {e}") from e

        if event.type in NODE_TYPES and not event.node:
            raise ProjectionError(f"event {event.id} ({event.type}) has no node")

        chain, net = str(event.chain), event.network_id
        match event.type:
            case EventType.NEW | EventType.MINT:
                assert isinstance(payload, NewDomainPayload)
                return self._on_new(state, event, payload)
            case EventType.TRANSFER:
                assert isinstance(payload, TransferPayload)
                domain = state.ensure_domain(event.node)
                res = domain.resolution(chain, net)
                res.owner = normalize_address(payload.owner)
                if payload.registry:
                    res.registry = normalize_address(payload.registry)
                if payload.resolver:
                    res.resolver = normalize_address(payload.resolver)
                state.touch(domain)
            case EventType.RESOLVER_SET:
                assert isinstance(payload, ResolverSetPayload)
                domain = state.ensure_domain(event.node)
                res = domain.resolution(chain, net)
                res.resolver = normalize_address(payload.resolver)
                if payload.records is not None:
                    res.records = {k: v for k, v in payload.records.items() if is_supported_record_key(k)}
                state.touch(domain)
            case EventType.RECORD_SET:
                assert isinstance(payload, RecordSetPayload)
                domain = state.ensure_domain(event.node)
                if not is_supported_record_key(payload.key):
                    return "unsupported-record-key"
                domain.resolution(chain, net).records[payload.key] = payload.value
                state.touch(domain)
            case EventType.RECORDS_RESET:
                assert isinstance(payload, RecordsResetPayload)
                domain = state.ensure_domain(event.node)
                domain.resolution(chain, net).records = {
                    k: v for k, v in payload.records.items() if is_supported_record_key(k)
                }
                state.touch(domain)
            case EventType.REVERSE_SET:
                assert isinstance(payload, ReversePayload)
                return self._on_reverse_set(state, event, payload)
            case EventType.REVERSE_REMOVED:
                assert isinstance(payload, ReversePayload)
                address = normalize_address(payload.address)
                if address is not None:
                    state.drop_reverse(address, chain, net)
            case EventType.BURN | EventType.RESET:
                assert isinstance(payload, BurnPayload)
                domain = state.ensure_domain(event.node)
                domain.resolution(chain, net).clear()
                state.touch(domain)
        return None

    # --- handlers ---

    def _on_new(self, state: ProjectionState, event: ChainEvent, payload: NewDomainPayload) -> str | None:
        name = payload.name
        if not name:
            parent_name = self._name_of_node(state, payload.parent_node or "")
            if parent_name is None:
                self.logger.warning(
                    "projector_orphan_new",
                    extra={"node": event.node, "parent_node": payload.parent_node, "event_id": event.id},
                )
                return "orphan-new"
            name = f"{payload.label}.{parent_name}" if parent_name else str(payload.label)

        domain = state.ensure_domain(event.node)
        state.set_name(domain, name)
        self._check_divergent(state, name)

        if payload.owner or payload.resolver or payload.registry:
            res = domain.resolution(str(event.chain), event.network_id)
            if payload.owner:
                res.owner = normalize_address(payload.owner)
            if payload.resolver:
                res.resolver = normalize_address(payload.resolver)
            if payload.registry:
                res.registry = normalize_address(payload.registry)

        self._link_parent(state, domain)
        for child_node in sorted(state.children_of(name)):
            child = state.get_domain(child_node)
            if child is not None:
                self._link_parent(state, child)
        state.touch(domain)
        return None

    def _on_reverse_set(self, state: ProjectionState, event: ChainEvent, payload: ReversePayload) -> str | None:
        chain, net = str(event.chain), event.network_id
        address = normalize_address(payload.address)
        if address is None:
            return "null-reverse-address"
        state.ensure_domain(event.node)
        # One address, one node; one node, one address.
        if state.reverse_for_address(address, chain, net) is not None:
            state.drop_reverse(address, chain, net)
        previous = state.reverse_for_node(event.node, chain, net)
        if previous is not None:
            state.drop_reverse(previous, chain, net)
        state.put_reverse(address, chain, net, event.node)
        return None

    # --- naming helpers ---

    @staticmethod
    def _name_of_node(state: ProjectionState, node: str) -> str | None:
        """Name for a parent node; ``""`` for the root."""

        if node == ROOT_NODE:
            return ""
        parent = state.get_domain(node)
        if parent is not None and parent.name:
            return parent.name
        return _TLD_BY_NODE.get(node)

    def _choose_parent(self, state: ProjectionState, child: Domain) -> str | None:
        parent_name = child.parent_name
        if parent_name is None:
            return None
        scheme = node_scheme(child.name or "", child.node)
        candidates = state.domains_named(parent_name)
        preferred = namehash(parent_name, scheme) if scheme else None
        if preferred is not None and preferred in candidates:
            return preferred
        if preferred is not None and parent_name in ROOT_TLDS:
            tld = state.ensure_domain(preferred)
            state.set_name(tld, parent_name)
            return preferred
        if candidates:
            return min(candidates)
        return None

    def _link_parent(self, state: ProjectionState, domain: Domain) -> None:
        parent = self._choose_parent(state, domain)
        if parent != domain.parent:
            domain.parent = parent
            state.touch(domain)

    def _check_divergent(self, state: ProjectionState, name: str) -> None:
        nodes = state.domains_named(name)
        if len(nodes) > 1:
            self.logger.warning("divergent_node_for_name", extra={"domain": name, "nodes": sorted(nodes)})
            self.metrics.counter("projector.divergent_node_for_name").inc()


def fold(
    state: ProjectionState,
    events: Iterable[ChainEvent],
    projector: DomainProjector | None = None,
) -> ProjectionState:
    """Return a new state with ``events`` applied; ``state`` is left untouched."""

    new_state = state.copy()
    (projector or DomainProjector()).apply(new_state, events)
    return new_state
