from __future__ import annotations

import pytest

from mirror.core.exceptions import ProjectionError
from mirror.core.metrics import MetricsRegistry
from mirror.core.projections import ROOT_NODE, DomainProjector, ProjectionState, fold
from tests._factories import (
    ALICE,
    BOB,
    CAROL,
    REGISTRY,
    alice_crypto_events,
    eth_node,
    height_event,
    seq_event,
    zil_node,
)


def _projector(metrics: MetricsRegistry) -> DomainProjector:
    return DomainProjector(metrics=metrics)


def test_alice_crypto(metrics: MetricsRegistry) -> None:
    state = fold(ProjectionState(), alice_crypto_events(), _projector(metrics))

    node = eth_node("alice.crypto")
    domain = state.get_domain(node)
    assert domain is not None
    assert domain.name == "alice.crypto"
    assert domain.parent == eth_node("crypto")
    res = domain.resolutions[("ETH", 1)]
    assert res.owner == ALICE
    assert res.registry == REGISTRY
    assert res.resolver == REGISTRY
    assert res.records == {"crypto.ETH.address": ALICE}

    tld = state.get_domain(eth_node("crypto"))
    assert tld is not None and tld.name == "crypto" and tld.parent is None


def test_fold_leaves_input_untouched() -> None:
    base = ProjectionState()
    after = fold(base, alice_crypto_events())
    assert base.domains == {}
    assert after.domains


def test_fold_is_deterministic() -> None:
    a = fold(ProjectionState(), alice_crypto_events())
    b = fold(ProjectionState(), alice_crypto_events())
    assert a.domains == b.domains
    assert a.reverse == b.reverse


def test_unsupported_record_key_is_skipped(metrics: MetricsRegistry) -> None:
    node = eth_node("alice.crypto")
    state = ProjectionState()
    result = _projector(metrics).apply(
        state,
        alice_crypto_events() + [height_event(12, 0, "record-set", node, {"key": "custom.thing", "value": "x"})],
    )
    assert result.skipped["unsupported-record-key"] == 1
    assert "custom.thing" not in state.get_domain(node).resolutions[("ETH", 1)].records
    assert metrics.counter("projector.skipped.unsupported-record-key").value == 1


def test_unknown_type_is_counted_not_fatal(metrics: MetricsRegistry) -> None:
    node = eth_node("alice.crypto")
    result = _projector(metrics).apply(
        ProjectionState(),
        [height_event(1, 0, "Upgraded", node, {"impl": "0x1"}), height_event(1, 1, "unknown", None, {})],
    )
    assert result.applied == 0
    assert result.skipped == {"unknown:Upgraded": 1, "unknown:unknown": 1}
    assert metrics.counter("projector.skipped").value == 2
    assert metrics.counters_with_prefix("projector.skipped.") == {"unknown:Upgraded": 1, "unknown:unknown": 1}


def test_no_op_types_are_ignored(metrics: MetricsRegistry) -> None:
    node = eth_node("alice.crypto")
    state = ProjectionState()
    result = _projector(metrics).apply(
        state,
        [
            height_event(1, 0, "approval", node, {"approved": BOB}),
            height_event(1, 1, "approval-for-all", None, {"operator": BOB}),
            height_event(1, 2, "new-uri-prefix", None, {"prefix": "https://x"}),
            height_event(1, 3, "new-key", None, {"key": "crypto.BTC.address"}),
        ],
    )
    assert result.ignored == 4
    assert result.skipped_total == 0
    assert state.domains == {}


def test_records_reset_keeps_supported_keys() -> None:
    node = eth_node("alice.crypto")
    events = alice_crypto_events() + [
        height_event(
            12,
            0,
            "records-reset",
            node,
            {"records": {"crypto.BTC.address": "bc1q", "private.note": "hi"}},
        )
    ]
    state = fold(ProjectionState(), events)
    assert state.get_domain(node).resolutions[("ETH", 1)].records == {"crypto.BTC.address": "bc1q"}


def test_burn_clears_resolution_but_keeps_name() -> None:
    node = eth_node("alice.crypto")
    events = alice_crypto_events() + [height_event(12, 0, "burn", node, {"registry": REGISTRY})]
    state = fold(ProjectionState(), events)
    domain = state.get_domain(node)
    assert domain.name == "alice.crypto"
    res = domain.resolutions[("ETH", 1)]
    assert (res.owner, res.resolver, res.registry, res.records) == (None, None, None, {})


def test_transfer_to_null_address_clears_owner() -> None:
    node = eth_node("alice.crypto")
    events = alice_crypto_events() + [height_event(12, 0, "transfer", node, {"owner": "0x" + "00" * 20})]
    state = fold(ProjectionState(), events)
    assert state.get_domain(node).resolutions[("ETH", 1)].owner is None


def test_resolutions_are_per_chain() -> None:
    node = eth_node("alice.crypto")
    events = alice_crypto_events() + [
        height_event(50, 0, "transfer", node, {"owner": BOB}, chain="MATIC", network_id=137),
    ]
    state = fold(ProjectionState(), events)
    domain = state.get_domain(node)
    assert domain.resolutions[("ETH", 1)].owner == ALICE
    assert domain.resolutions[("MATIC", 137)].owner == BOB


def test_reverse_set_supersedes_both_directions() -> None:
    a = eth_node("alice.crypto")
    b = eth_node("bob.crypto")
    events = [
        height_event(1, 0, "new", a, {"name": "alice.crypto"}),
        height_event(1, 1, "new", b, {"name": "bob.crypto"}),
        height_event(2, 0, "reverse-set", a, {"address": ALICE}),
        # ALICE now points at bob.crypto
        height_event(3, 0, "reverse-set", b, {"address": ALICE}),
        # bob.crypto is claimed by CAROL, so ALICE loses it
        height_event(4, 0, "reverse-set", b, {"address": CAROL}),
    ]
    state = fold(ProjectionState(), events)
    assert state.reverse_for_address(ALICE, "ETH", 1) is None
    assert state.reverse_for_address(CAROL, "ETH", 1) == b
    assert state.reverse_for_node(a, "ETH", 1) is None
    assert state.reverse_for_node(b, "ETH", 1) == CAROL


def test_reverse_removed() -> None:
    a = eth_node("alice.crypto")
    events = [
        height_event(1, 0, "new", a, {"name": "alice.crypto"}),
        height_event(2, 0, "reverse-set", a, {"address": ALICE}),
        height_event(3, 0, "reverse-removed", None, {"address": ALICE}),
    ]
    state = fold(ProjectionState(), events)
    assert state.reverse == {}
    assert state.reverse_by_node == {}


def test_null_reverse_address_is_skipped() -> None:
    a = eth_node("alice.crypto")
    result = DomainProjector().apply(
        ProjectionState(), [height_event(2, 0, "reverse-set", a, {"address": "0x" + "00" * 20})]
    )
    assert result.skipped["null-reverse-address"] == 1


def test_zil_new_from_root_and_child() -> None:
    zil = zil_node("zil")
    alice = zil_node("alice.zil")
    events = [
        seq_event(0, 0, "new", zil, {"label": "zil", "parent_node": ROOT_NODE}),
        seq_event(1, 0, "new", alice, {"label": "alice", "parent_node": zil}),
        seq_event(1, 1, "transfer", alice, {"owner": ALICE}),
    ]
    state = fold(ProjectionState(), events)
    assert state.get_domain(zil).name == "zil"
    domain = state.get_domain(alice)
    assert domain.name == "alice.zil"
    assert domain.parent == zil
    assert domain.resolutions[("ZIL", 1)].owner == ALICE


def test_zil_child_of_known_tld_without_tld_event() -> None:
    alice = zil_node("alice.zil")
    state = fold(ProjectionState(), [seq_event(1, 0, "new", alice, {"label": "alice", "parent_node": zil_node("zil")})])
    assert state.get_domain(alice).name == "alice.zil"


def test_orphan_new_is_skipped() -> None:
    child = zil_node("a.b.zil")
    result = DomainProjector().apply(
        ProjectionState(), [seq_event(1, 0, "new", child, {"label": "a", "parent_node": zil_node("b.zil")})]
    )
    assert result.skipped["orphan-new"] == 1


def test_divergent_nodes_for_one_name(metrics: MetricsRegistry) -> None:
    events = [
        height_event(1, 0, "new", eth_node("alice.crypto"), {"name": "alice.crypto"}),
        height_event(2, 0, "new", "0x" + "ab" * 32, {"name": "alice.crypto"}),
    ]
    state = ProjectionState()
    _projector(metrics).apply(state, events)
    assert state.divergent_names() == {"alice.crypto": sorted([eth_node("alice.crypto"), "0x" + "ab" * 32])}
    assert metrics.counter("projector.divergent_node_for_name").value == 1


def test_child_before_parent_is_relinked() -> None:
    parent = eth_node("alice.crypto")
    child = eth_node("pay.alice.crypto")
    events = [
        height_event(1, 0, "new", child, {"name": "pay.alice.crypto"}),
        height_event(2, 0, "new", parent, {"name": "alice.crypto"}),
    ]
    state = fold(ProjectionState(), events)
    assert state.get_domain(child).parent == parent


def test_malformed_payload_raises() -> None:
    node = eth_node("alice.crypto")
    with pytest.raises(ProjectionError):
        DomainProjector().apply(ProjectionState(), [height_event(1, 0, "record-set", node, {"key": "crypto.ETH.address"})])


def test_node_type_without_node_raises() -> None:
    with pytest.raises(ProjectionError):
        DomainProjector().apply(ProjectionState(), [height_event(1, 0, "transfer", None, {"owner": ALICE})])


def test_resolver_set_with_records_replaces_them(metrics: MetricsRegistry) -> None:
    node = eth_node("alice.crypto")
    resolver = "0x" + "5e" * 20
    events = [
        *alice_crypto_events(),
        height_event(12, 0, "resolver-set", node, {"resolver": resolver}),
    ]
    state = fold(ProjectionState(), events, _projector(metrics))
    res = state.get_domain(node).resolutions[("ETH", 1)]
    assert res.resolver == resolver
    assert res.records == {"crypto.ETH.address": ALICE}

    moved = height_event(
        13, 0, "resolver-set", node, {"resolver": REGISTRY, "records": {"crypto.BTC.address": "bc1q", "nope": "x"}}
    )
    state = fold(state, [moved], _projector(metrics))
    res = state.get_domain(node).resolutions[("ETH", 1)]
    assert res.resolver == REGISTRY
    assert res.records == {"crypto.BTC.address": "bc1q"}
