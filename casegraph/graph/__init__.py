"""Investigation graph core.

Typed entities and links in a transactional store, with queries,
analytics and rule-based relationship proposals over frozen snapshots.

Usage::

    from casegraph.graph import GraphStore, SchemaRegistry, AnalyticsEngine

    store = GraphStore(SchemaRegistry())
    a = store.add_entity("person", label="Viktor Petrov")
    b = store.add_entity("organization", label="Sunrise Holdings Ltd")
    store.add_link(a.id, b.id, "related")

    analytics = AnalyticsEngine(store)
    analytics.betweenness_centrality().top(5)
"""

from casegraph.graph.models import Entity, EntityType, Link, LinkType, Position, SourceRef
from casegraph.graph.schema import SchemaRegistry
from casegraph.graph.snapshot import CancelToken, GraphSnapshot
from casegraph.graph.store import GraphStore
from casegraph.graph.query import FilterSpec, QueryEngine
from casegraph.graph.algorithms import AnalyticsEngine
from casegraph.graph.matrix import RelationshipMatrix

__all__ = [
    "Entity",
    "EntityType",
    "Link",
    "LinkType",
    "Position",
    "SourceRef",
    "SchemaRegistry",
    "CancelToken",
    "GraphSnapshot",
    "GraphStore",
    "FilterSpec",
    "QueryEngine",
    "AnalyticsEngine",
    "RelationshipMatrix",
]
