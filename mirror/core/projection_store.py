"""mirror.core.projection_store

SQLite side of the domain projection.

``StoredProjection`` is a ``ProjectionState`` that loads rows on demand and
remembers what it changed, so a cycle only touches the domains its events
name. ``rebuild_projection`` throws the tables away and replays the log.
``ProjectionReader`` is the read side for the metadata API.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass

from mirror.core.database import Database
from mirror.core.event_store import EventStore
from mirror.core.events import canonical_json
from mirror.core.models import ChainEvent, SyncCheckpoint
from mirror.core.projections import (
    Domain,
    DomainProjector,
    DomainResolution,
    ProjectionResult,
    ProjectionState,
    ReverseKey,
)


def _load_domain(conn: sqlite3.Connection, node: str) -> Domain | None:
    row = conn.execute("SELECT node, name, parent_node FROM domains WHERE node = ?", (node,)).fetchone()
    if row is None:
        return None
    domain = Domain(node=str(row["node"]), name=row["name"], parent=row["parent_node"])
    for r in conn.execute(
        "SELECT * FROM domain_resolutions WHERE node = ? ORDER BY chain, network_id", (node,)
    ):
        domain.resolutions[(str(r["chain"]), int(r["network_id"]))] = DomainResolution(
            owner=r["owner_address"],
            resolver=r["resolver_address"],
            registry=r["registry_address"],
            records=json.loads(r["records"] or "{}"),
        )
    return domain


def write_domain(conn: sqlite3.Connection, domain: Domain) -> None:
    conn.execute(
        """
        INSERT INTO domains (node, name, parent_node, level, updated_at)
        VALUES (?, ?, ?, ?, datetime('now'))
        ON CONFLICT(node) DO UPDATE SET
            name = excluded.name,
            parent_node = excluded.parent_node,
            level = excluded.level,
            updated_at = excluded.updated_at
        """,
        (domain.node, domain.name, domain.parent, domain.level),
    )
    for (chain, net), res in domain.resolutions.items():
        conn.execute(
            """
            INSERT OR REPLACE INTO domain_resolutions (
                node, chain, network_id, owner_address, resolver_address, registry_address, records
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (domain.node, chain, net, res.owner, res.resolver, res.registry, canonical_json(res.records)),
        )


def write_state(conn: sqlite3.Connection, state: ProjectionState) -> None:
    for node in sorted(state.domains):
        write_domain(conn, state.domains[node])
    for (address, chain, net), node in sorted(state.reverse.items()):
        conn.execute(
            "INSERT INTO domain_reverse_resolutions (node, chain, network_id, reverse_address) "
            "VALUES (?, ?, ?, ?)",
            (node, chain, net, address),
        )


class StoredProjection(ProjectionState):
    """Projection state backed by the ``domains*`` tables.

    Nothing is written until :meth:`flush`, which must run inside the cycle's
    projection transaction.
    """

    def __init__(self, db: Database) -> None:
        super().__init__()
        self.db = db
        self._missing: set[str] = set()
        self._loaded_names: set[str] = set()
        self._loaded_children: set[str] = set()
        self._dirty: set[str] = set()
        self._reverse_addr_touched: set[ReverseKey] = set()
        self._reverse_node_touched: set[ReverseKey] = set()
        self._reverse_addr_checked: set[ReverseKey] = set()
        self._reverse_node_checked: set[ReverseKey] = set()

    # --- lookups ---

    def get_domain(self, node: str) -> Domain | None:
        domain = self.domains.get(node)
        if domain is not None or node in self._missing:
            return domain
        domain = _load_domain(self.db.conn, node)
        if domain is None:
            self._missing.add(node)
            return None
        self.domains[node] = domain
        self.index(domain)
        return domain

    def domains_named(self, name: str) -> set[str]:
        if name not in self._loaded_names:
            self._loaded_names.add(name)
            for r in self.db.conn.execute("SELECT node FROM domains WHERE name = ?", (name,)):
                self.get_domain(str(r[0]))
        return super().domains_named(name)

    def children_of(self, parent_name: str) -> set[str]:
        if parent_name not in self._loaded_children:
            self._loaded_children.add(parent_name)
            suffix = "." + parent_name
            level = len(parent_name.split(".")) + 1
            for r in self.db.conn.execute(
                "SELECT node FROM domains WHERE level = ? AND substr(name, -?) = ?",
                (level, len(suffix), suffix),
            ):
                self.get_domain(str(r[0]))
        return super().children_of(parent_name)

    def reverse_for_address(self, address: str, chain: str, network_id: int) -> str | None:
        key = (address, str(chain), network_id)
        if key not in self._reverse_addr_checked and key not in self._reverse_addr_touched:
            self._reverse_addr_checked.add(key)
            row = self.db.conn.execute(
                "SELECT node FROM domain_reverse_resolutions "
                "WHERE reverse_address = ? AND chain = ? AND network_id = ?",
                key,
            ).fetchone()
            if row is not None:
                self._cache_reverse(address, str(chain), network_id, str(row[0]))
        return super().reverse_for_address(address, chain, network_id)

    def reverse_for_node(self, node: str, chain: str, network_id: int) -> str | None:
        key = (node, str(chain), network_id)
        if key not in self._reverse_node_checked and key not in self._reverse_node_touched:
            self._reverse_node_checked.add(key)
            row = self.db.conn.execute(
                "SELECT reverse_address FROM domain_reverse_resolutions "
                "WHERE node = ? AND chain = ? AND network_id = ?",
                key,
            ).fetchone()
            if row is not None:
                self._cache_reverse(str(row[0]), str(chain), network_id, node)
        return super().reverse_for_node(node, chain, network_id)

    def _cache_reverse(self, address: str, chain: str, network_id: int, node: str) -> None:
        addr_key = (address, chain, network_id)
        node_key = (node, chain, network_id)
        # in-memory changes win over what is on disk
        if addr_key in self._reverse_addr_touched or node_key in self._reverse_node_touched:
            return
        self._reverse_addr_checked.add(addr_key)
        self._reverse_node_checked.add(node_key)
        super().put_reverse(address, chain, network_id, node)

    # --- mutation ---

    def touch(self, domain: Domain) -> None:
        self._dirty.add(domain.node)
        self._missing.discard(domain.node)

    def put_reverse(self, address: str, chain: str, network_id: int, node: str) -> None:
        super().put_reverse(address, chain, network_id, node)
        self._reverse_addr_touched.add((address, str(chain), network_id))
        self._reverse_node_touched.add((node, str(chain), network_id))

    def drop_reverse(self, address: str, chain: str, network_id: int) -> str | None:
        self.reverse_for_address(address, chain, network_id)
        node = super().drop_reverse(address, chain, network_id)
        self._reverse_addr_touched.add((address, str(chain), network_id))
        if node is not None:
            self._reverse_node_touched.add((node, str(chain), network_id))
        return node

    def copy(self) -> ProjectionState:
        raise TypeError("StoredProjection is bound to a database; fold an in-memory ProjectionState")

    @property
    def dirty_nodes(self) -> set[str]:
        return set(self._dirty)

    def flush(self) -> int:
        """Write changed rows. Returns the number of domains written."""

        with self.db.transaction() as conn:
            for address, chain, net in sorted(self._reverse_addr_touched):
                conn.execute(
                    "DELETE FROM domain_reverse_resolutions "
                    "WHERE reverse_address = ? AND chain = ? AND network_id = ?",
                    (address, chain, net),
                )
            for node, chain, net in sorted(self._reverse_node_touched):
                conn.execute(
                    "DELETE FROM domain_reverse_resolutions WHERE node = ? AND chain = ? AND network_id = ?",
                    (node, chain, net),
                )
            rows: set[tuple[str, str, str, int]] = set()
            for address, chain, net in self._reverse_addr_touched:
                node = self.reverse.get((address, chain, net))
                if node is not None:
                    rows.add((node, address, chain, net))
            for node, chain, net in self._reverse_node_touched:
                address = self.reverse_by_node.get((node, chain, net))
                if address is not None:
                    rows.add((node, address, chain, net))
            for node, address, chain, net in sorted(rows):
                conn.execute(
                    "INSERT INTO domain_reverse_resolutions (node, chain, network_id, reverse_address) "
                    "VALUES (?, ?, ?, ?)",
                    (node, chain, net, address),
                )
            for node in sorted(self._dirty):
                write_domain(conn, self.domains[node])
            written = len(self._dirty)
        self._dirty.clear()
        self._reverse_addr_checked |= self._reverse_addr_touched
        self._reverse_node_checked |= self._reverse_node_touched
        self._reverse_addr_touched.clear()
        self._reverse_node_touched.clear()
        return written


def _applied(event: ChainEvent, checkpoint: SyncCheckpoint | None) -> bool:
    if checkpoint is None:
        return False
    if event.atxuid is not None:
        return checkpoint.last_atxuid is not None and event.atxuid <= checkpoint.last_atxuid
    return event.block_number <= checkpoint.last_block_number


def rebuild_projection(
    db: Database,
    events: EventStore,
    projector: DomainProjector | None = None,
    *,
    checkpoints: Iterable[SyncCheckpoint] | None = None,
) -> ProjectionResult:
    """Drop the projection and replay the event log into it.

    With ``checkpoints``, only events at or behind their chain's checkpoint
    are replayed (stored but unapplied events stay pending). Joins the
    caller's transaction when there is one.
    """

    projector = projector or DomainProjector()
    log: Iterable[ChainEvent] = events.iter_ordered()
    if checkpoints is not None:
        by_chain = {(cp.chain, cp.network_id): cp for cp in checkpoints}
        log = (e for e in log if _applied(e, by_chain.get((str(e.chain), e.network_id))))
    state = ProjectionState()
    result = projector.apply(state, log)
    with db.transaction() as conn:
        db.clear_projection()
        write_state(conn, state)
    return result


@dataclass
class ProjectionReader:
    """Committed projection rows, for the metadata API."""

    db: Database

    def get_domain(self, node: str) -> Domain | None:
        return _load_domain(self.db.conn, node)

    def find_domains(self, name: str) -> list[Domain]:
        rows = self.db.conn.execute("SELECT node FROM domains WHERE name = ? ORDER BY node", (name,))
        return [d for d in (_load_domain(self.db.conn, str(r[0])) for r in rows.fetchall()) if d]

    def reverse_lookup(self, address: str, chain: str, network_id: int) -> Domain | None:
        row = self.db.conn.execute(
            "SELECT node FROM domain_reverse_resolutions "
            "WHERE reverse_address = ? AND chain = ? AND network_id = ?",
            (address.lower(), str(chain), network_id),
        ).fetchone()
        return None if row is None else _load_domain(self.db.conn, str(row[0]))

    def divergent_names(self) -> dict[str, list[str]]:
        rows = self.db.conn.execute(
            """
            SELECT name, node FROM domains
            WHERE name IN (SELECT name FROM domains WHERE name IS NOT NULL
                           GROUP BY name HAVING COUNT(*) > 1)
            ORDER BY name, node
            """
        ).fetchall()
        out: dict[str, list[str]] = {}
        for r in rows:
            out.setdefault(str(r[0]), []).append(str(r[1]))
        return out

    def count_domains(self) -> int:
        return int(self.db.conn.execute("SELECT COUNT(*) FROM domains").fetchone()[0])
