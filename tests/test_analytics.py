"""Tests for casegraph.graph.algorithms — centralities, communities, patterns.

Tests cover:
  - Centrality scores on small known graphs (path, triangle, directed cycle)
  - Greedy modularity and edge-betweenness community detection
  - Hub, hierarchy and cycle pattern detection
  - Summary statistics
  - Caching by change counter, analytics:completed events, cancellation
"""

import math

import pytest

from casegraph.errors import Cancelled
from casegraph.events.bus import EventBus
from casegraph.graph.algorithms import (
    AnalyticsEngine,
    find_cycles,
    greedy_modularity_communities,
    modularity,
)
from casegraph.graph.schema import SchemaRegistry
from casegraph.graph.snapshot import CancelToken, GraphSnapshot
from casegraph.graph.store import GraphStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(bus) -> GraphStore:
    return GraphStore(SchemaRegistry(), bus)


@pytest.fixture
def engine(store) -> AnalyticsEngine:
    return AnalyticsEngine(store)


def build(store: GraphStore, nodes, edges, link_type: str = "related") -> GraphStore:
    for eid in nodes:
        store.add_entity("default", label=eid, id=eid)
    for source, target in edges:
        store.add_link(source, target, link_type)
    return store


@pytest.fixture
def two_triangles(store) -> GraphStore:
    """Two triangles joined by a single bridge a3–b1."""
    return build(
        store,
        ["a1", "a2", "a3", "b1", "b2", "b3"],
        [("a1", "a2"), ("a2", "a3"), ("a1", "a3"),
         ("b1", "b2"), ("b2", "b3"), ("b1", "b3"),
         ("a3", "b1")],
    )


# ---------------------------------------------------------------------------
# Centralities
# ---------------------------------------------------------------------------


class TestCentrality:
    def test_degree(self, store, engine):
        build(store, "ABC", [("A", "B"), ("B", "C"), ("A", "B")])
        assert engine.degree_centrality().scores == {"A": 2.0, "B": 3.0, "C": 1.0}

    def test_betweenness_on_path(self, store, engine):
        build(store, "ABC", [("A", "B"), ("B", "C")])
        assert engine.betweenness_centrality().scores == {"A": 0.0, "B": 1.0, "C": 0.0}

    def test_closeness_on_path(self, store, engine):
        build(store, "ABC", [("A", "B"), ("B", "C")])
        scores = engine.closeness_centrality().scores
        assert scores["B"] == pytest.approx(1.0)
        assert scores["A"] == pytest.approx(2 / 3)

    def test_closeness_isolated_is_zero(self, store, engine):
        build(store, "AB", [])
        assert engine.closeness_centrality().scores == {"A": 0.0, "B": 0.0}

    def test_betweenness_collapses_parallel_links(self, store, engine):
        build(store, "ABC", [("A", "B"), ("B", "A"), ("B", "C")])
        assert engine.betweenness_centrality().scores == {"A": 0.0, "B": 1.0, "C": 0.0}

    def test_closeness_per_component(self, store, engine):
        build(store, "ABCDE", [("A", "B"), ("C", "D"), ("D", "E")])
        scores = engine.closeness_centrality().scores
        assert scores["A"] == pytest.approx(1.0)
        assert scores["D"] == pytest.approx(1.0)
        assert scores["C"] == pytest.approx(2 / 3)

    def test_pagerank_on_directed_cycle(self, store, engine):
        build(store, "ABC", [("A", "B"), ("B", "C"), ("C", "A")])
        result = engine.pagerank()
        assert sum(result.scores.values()) == pytest.approx(1.0)
        for score in result.scores.values():
            assert score == pytest.approx(1 / 3)
        assert result.parameters == {"damping": 0.85, "iterations": 100}

    def test_pagerank_follows_direction(self, store, engine):
        build(store, "ABC", [("A", "C"), ("B", "C")])
        top, _ = engine.pagerank().top(1)[0]
        assert top == "C"

    def test_eigenvector_on_triangle(self, store, engine):
        build(store, "ABC", [("A", "B"), ("B", "C"), ("A", "C")])
        for score in engine.eigenvector_centrality().scores.values():
            assert score == pytest.approx(1 / math.sqrt(3))

    def test_dispatch_and_unknown_metric(self, store, engine):
        build(store, "AB", [("A", "B")])
        assert engine.centrality("degree").metric == "degree"
        with pytest.raises(ValueError):
            engine.centrality("harmonic")

    def test_top_keeps_insertion_order_on_ties(self, store, engine):
        build(store, "ABC", [("A", "B"), ("B", "C")])
        assert engine.degree_centrality().top(3) == [("B", 2.0), ("A", 1.0), ("C", 1.0)]

    def test_empty_graph(self, engine):
        assert engine.degree_centrality().scores == {}
        assert engine.pagerank().scores == {}
        assert engine.betweenness_centrality().scores == {}


# ---------------------------------------------------------------------------
# Communities
# ---------------------------------------------------------------------------


class TestCommunities:
    def test_greedy_finds_two_triangles(self, two_triangles, engine):
        result = engine.communities()
        assert result.algorithm == "greedy_modularity"
        assert result.clusters == [["a1", "a2", "a3"], ["b1", "b2", "b3"]]
        assert result.assignment["a1"] == 0
        assert result.assignment["b3"] == 1
        assert result.modularity == pytest.approx(5 / 14)

    def test_modularity_history_non_decreasing(self, two_triangles):
        snap = GraphSnapshot.capture(two_triangles)
        assignment, history, passes = greedy_modularity_communities(snap, max_iterations=10)
        assert passes >= 1
        assert all(later >= earlier for earlier, later in zip(history, history[1:]))
        assert history[-1] == pytest.approx(modularity(snap, assignment))

    def test_edge_betweenness_splits_at_bridge(self, two_triangles, engine):
        result = engine.communities(algorithm="edge_betweenness")
        assert result.clusters == [["a1", "a2", "a3"], ["b1", "b2", "b3"]]
        assert result.iterations == 1

    def test_unknown_algorithm(self, engine):
        with pytest.raises(ValueError):
            engine.communities(algorithm="louvain")

    def test_empty_graph(self, engine):
        result = engine.communities()
        assert result.clusters == []
        assert result.modularity == 0.0

    def test_isolated_entities_are_singletons(self, store, engine):
        build(store, "AB", [])
        assert engine.communities().clusters == [["A"], ["B"]]


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------


class TestPatterns:
    def test_star_hub(self, store, engine):
        leaves = [f"L{i}" for i in range(10)]
        build(store, ["X", *leaves], [("X", leaf) for leaf in leaves])
        report = engine.detect_patterns()
        hubs = report.of_type("hub")
        assert len(hubs) == 1
        assert hubs[0].entities == ["X", *leaves]
        assert hubs[0].confidence == pytest.approx(1.0)
        assert report.of_type("cycle") == []
        assert report.of_type("hierarchy") == []

    def test_small_degree_is_not_a_hub(self, store, engine):
        build(store, "ABC", [("A", "B"), ("B", "C")])
        assert engine.detect_patterns().of_type("hub") == []

    def test_hierarchy(self, store, engine):
        build(store, ["E1", "S1", "S2"], [("S1", "E1"), ("S2", "E1")], link_type="hierarchical")
        hierarchies = engine.detect_patterns().of_type("hierarchy")
        assert len(hierarchies) == 1
        assert hierarchies[0].entities == ["E1", "S1", "S2"]
        assert hierarchies[0].confidence == 1.0

    def test_triangle_cycle(self, store, engine):
        build(store, "ABC", [("A", "B"), ("B", "C"), ("C", "A")])
        cycles = engine.detect_patterns().of_type("cycle")
        assert [c.entities for c in cycles] == [["A", "B", "C"]]
        assert cycles[0].confidence == pytest.approx(1 / 3 + 0.3)

    def test_square_with_diagonal(self, store):
        build(store, "ABCD", [("A", "B"), ("B", "C"), ("C", "D"), ("D", "A"), ("A", "C")])
        cycles = find_cycles(GraphSnapshot.capture(store), 3, 6)
        assert cycles == [("A", "B", "C"), ("A", "C", "D"), ("A", "B", "C", "D")]

    def test_parallel_links_are_not_cycles(self, store):
        build(store, "AB", [("A", "B"), ("B", "A")])
        assert find_cycles(GraphSnapshot.capture(store), 3, 6) == []


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


class TestStatistics:
    def test_summary_numbers(self, store, engine):
        build(store, "ABCD", [("A", "B"), ("B", "C"), ("A", "C")])
        stats = engine.statistics()
        assert stats.entity_count == 4
        assert stats.link_count == 3
        assert stats.density == pytest.approx(0.5)
        assert stats.average_degree == pytest.approx(1.5)
        assert stats.max_degree == 2
        assert stats.component_count == 2
        assert stats.largest_component_size == 3
        assert stats.isolated_count == 1
        assert stats.entity_type_counts == {"default": 4}
        assert stats.link_type_counts == {"related": 3}
        assert stats.top_connected[0].degree == 2

    def test_empty_graph(self, engine):
        stats = engine.statistics()
        assert stats.entity_count == 0
        assert stats.density == 0.0
        assert stats.component_count == 0

    def test_density_counts_parallel_links(self, store, engine):
        build(store, "ABC", [("A", "B"), ("B", "A"), ("B", "C")])
        assert engine.statistics().density == pytest.approx(1.0)

    def test_to_dict(self, store, engine):
        build(store, "AB", [("A", "B")])
        data = engine.statistics().to_dict()
        assert data["entity_count"] == 2
        assert data["top_connected"][0]["id"] == "A"


# ---------------------------------------------------------------------------
# Caching, events, cancellation
# ---------------------------------------------------------------------------


class TestCaching:
    def test_result_cached_until_store_changes(self, bus, store, engine):
        completed = []
        bus.subscribe("analytics:completed", completed.append)
        build(store, "AB", [("A", "B")])

        first = engine.degree_centrality()
        assert engine.degree_centrality() is first
        assert len(completed) == 1
        assert completed[0].payload["analytic"] == "degree"

        store.add_entity("default", id="C")
        second = engine.degree_centrality()
        assert second is not first
        assert second.change_counter == store.change_counter
        assert "C" in second.scores
        assert len(completed) == 2

    def test_analyze_runs_everything(self, two_triangles, engine):
        report = engine.analyze()
        assert set(report.centralities) == {
            "degree", "betweenness", "closeness", "pagerank", "eigenvector",
        }
        assert report.change_counter == two_triangles.change_counter
        assert len(report.communities.clusters) == 2

    def test_cancelled_token_raises(self, two_triangles, engine):
        token = CancelToken()
        token.cancel("user request")
        counter = two_triangles.change_counter
        with pytest.raises(Cancelled):
            engine.betweenness_centrality(cancel=token)
        with pytest.raises(Cancelled):
            engine.communities(cancel=token)
        assert two_triangles.change_counter == counter

    def test_version_check_after_close(self, store, engine):
        build(store, "AB", [("A", "B")])
        engine.degree_centrality()
        engine.close()
        store.add_entity("default", id="C")
        assert "C" in engine.degree_centrality().scores
