"""Frozen views of the graph store for read-only consumers.

Analytics and path queries run over a :class:`GraphSnapshot` captured at
entry. Mutations that land while a long computation is in progress never
reach the adjacency it is walking, and the snapshot's ``change_counter``
tells caches which store version a result belongs to.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

import networkx as nx

from casegraph.errors import Cancelled, NotFound
from casegraph.graph.models import Entity, Link

if TYPE_CHECKING:
    from casegraph.graph.store import GraphStore

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag checked at outer-loop boundaries."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""

    def cancel(self, reason: str = "") -> None:
        self._cancelled = True
        self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self, stage: str = "") -> None:
        if self._cancelled:
            raise Cancelled(
                f"Operation cancelled{' during ' + stage if stage else ''}",
                stage=stage, reason=self._reason,
            )


def check_cancelled(token: CancelToken | None, stage: str = "") -> None:
    if token is not None:
        token.raise_if_cancelled(stage)


@dataclass(frozen=True)
class GraphSnapshot:
    """Immutable copy of the store at one change-counter value.

    Attributes
    ----------
    change_counter:
        Store version the snapshot was taken at.
    entities, links:
        Private copies of every record, in insertion order.
    incidence:
        Entity id → incident link ids, in link insertion order.
    adjacency:
        Entity id → distinct neighbor ids (links treated as undirected),
        in the order the connecting links were inserted.
    """

    change_counter: int
    entities: Mapping[str, Entity]
    links: Mapping[str, Link]
    incidence: Mapping[str, tuple[str, ...]]
    adjacency: Mapping[str, tuple[str, ...]]

    @classmethod
    def capture(cls, store: "GraphStore") -> "GraphSnapshot":
        entities = {e.id: e for e in store.entities()}
        links = {l.id: l for l in store.links()}
        incidence: dict[str, list[str]] = {eid: [] for eid in entities}
        adjacency: dict[str, dict[str, None]] = {eid: {} for eid in entities}
        for link in links.values():
            incidence[link.source].append(link.id)
            incidence[link.target].append(link.id)
            adjacency[link.source].setdefault(link.target, None)
            adjacency[link.target].setdefault(link.source, None)
        return cls(
            change_counter=store.change_counter,
            entities=MappingProxyType(entities),
            links=MappingProxyType(links),
            incidence=MappingProxyType({k: tuple(v) for k, v in incidence.items()}),
            adjacency=MappingProxyType({k: tuple(v) for k, v in adjacency.items()}),
        )

    # -- Lookups -------------------------------------------------------------

    @property
    def entity_count(self) -> int:
        return len(self.entities)

    @property
    def link_count(self) -> int:
        return len(self.links)

    def require(self, entity_id: str) -> Entity:
        try:
            return self.entities[entity_id]
        except KeyError:
            raise NotFound(f"Entity {entity_id!r} not found", id=entity_id) from None

    def degree(self, entity_id: str) -> int:
        """Number of incident links (multi-edges counted individually)."""
        return len(self.incidence.get(entity_id, ()))

    def neighbors(self, entity_id: str) -> tuple[str, ...]:
        return self.adjacency.get(entity_id, ())

    # -- NetworkX views ------------------------------------------------------

    def to_networkx(self) -> nx.MultiDiGraph:
        """Directed multigraph with entity and link attributes on nodes/edges."""
        graph = nx.MultiDiGraph()
        for entity in self.entities.values():
            graph.add_node(
                entity.id,
                type=entity.type,
                label=entity.label,
                properties=dict(entity.properties),
            )
        for link in self.links.values():
            graph.add_edge(
                link.source,
                link.target,
                key=link.id,
                type=link.type,
                label=link.label,
                weight=link.strength,
            )
        return graph

    def to_simple_graph(self) -> nx.Graph:
        """Undirected simple graph; parallel links collapse to one edge.

        Edges are added in link insertion order, so every node's neighbor
        order in the result matches :attr:`adjacency`.
        """
        graph = nx.Graph()
        graph.add_nodes_from(self.entities)
        for link in self.links.values():
            if not graph.has_edge(link.source, link.target):
                graph.add_edge(link.source, link.target)
        return graph
