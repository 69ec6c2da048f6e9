"""Graph analytics over frozen store snapshots.

Centralities, community detection, structural pattern detection and
summary statistics. Each analytic:
  - captures a :class:`GraphSnapshot` at entry and never touches live state
  - is versioned by the snapshot's change counter and cached until the
    store changes
  - checks an optional :class:`CancelToken` at outer-loop boundaries
  - publishes ``analytics:completed`` once a fresh result is computed

Empty graphs yield empty results; analytics only raise ``Cancelled``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

import networkx as nx

from casegraph.config.settings import settings
from casegraph.events.bus import ANALYTICS_COMPLETED, STRUCTURAL_TOPICS, Event, EventBus
from casegraph.graph.models import HIERARCHICAL_LINK_TYPE
from casegraph.graph.snapshot import CancelToken, GraphSnapshot, check_cancelled
from casegraph.graph.store import GraphStore

logger = logging.getLogger(__name__)

GREEDY_MODULARITY = "greedy_modularity"
EDGE_BETWEENNESS = "edge_betweenness"

# Moves must beat float noise to count as an improvement
_GAIN_EPSILON = 1e-12


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class CentralityResult:
    """Per-entity scores for one centrality measure."""
    metric: str
    scores: dict[str, float]
    change_counter: int
    parameters: dict[str, Any] = field(default_factory=dict)

    def top(self, k: int | None = None) -> list[tuple[str, float]]:
        """Highest scores first; ties keep insertion order."""
        ranked = sorted(self.scores.items(), key=lambda item: -item[1])
        return ranked if k is None else ranked[:k]


@dataclass
class CommunityResult:
    """Partition of the entities into communities."""
    algorithm: str
    assignment: dict[str, int]  # entity id → community id
    clusters: list[list[str]]
    modularity: float
    change_counter: int
    iterations: int = 0
    modularity_history: list[float] = field(default_factory=list)


@dataclass
class PatternResult:
    """A detected structural pattern."""
    type: str  # "hub", "hierarchy", "cycle"
    entities: list[str]
    description: str
    confidence: float


@dataclass
class PatternReport:
    patterns: list[PatternResult]
    change_counter: int

    def of_type(self, pattern_type: str) -> list[PatternResult]:
        return [p for p in self.patterns if p.type == pattern_type]


@dataclass
class ConnectedEntity:
    id: str
    label: str
    type: str
    degree: int


@dataclass
class GraphStatistics:
    """Summary numbers for the whole graph."""
    entity_count: int
    link_count: int
    density: float
    entity_type_counts: dict[str, int]
    link_type_counts: dict[str, int]
    top_connected: list[ConnectedEntity]
    average_degree: float
    max_degree: int
    component_count: int
    largest_component_size: int
    isolated_count: int
    change_counter: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AnalyticsReport:
    """Every analytic computed against one store version."""
    statistics: GraphStatistics
    centralities: dict[str, CentralityResult]
    communities: CommunityResult
    patterns: PatternReport
    change_counter: int


# ---------------------------------------------------------------------------
# Algorithms over snapshots
# ---------------------------------------------------------------------------


def degree_scores(snap: GraphSnapshot) -> dict[str, float]:
    return {eid: float(snap.degree(eid)) for eid in snap.entities}


def betweenness_scores(snap: GraphSnapshot, cancel: CancelToken | None = None) -> dict[str, float]:
    """Unnormalized betweenness on the undirected, unweighted graph."""
    check_cancelled(cancel, "betweenness")
    scores = nx.betweenness_centrality(snap.to_simple_graph(), normalized=False)
    return {eid: float(scores[eid]) for eid in snap.entities}


def closeness_scores(snap: GraphSnapshot, cancel: CancelToken | None = None) -> dict[str, float]:
    """Reachable count over the sum of BFS distances; 0 for isolated entities."""
    check_cancelled(cancel, "closeness")
    scores = nx.closeness_centrality(snap.to_simple_graph(), wf_improved=False)
    return {eid: float(scores[eid]) for eid in snap.entities}


def pagerank_scores(
    snap: GraphSnapshot,
    damping: float,
    iterations: int,
    cancel: CancelToken | None = None,
) -> dict[str, float]:
    """Fixed-iteration PageRank along link direction (source → target).

    Dangling entities spread their rank uniformly; the result sums to 1.
    Runs exactly ``iterations`` rounds, unlike ``nx.pagerank`` which stops
    on a tolerance.
    """
    n = snap.entity_count
    if n == 0:
        return {}
    out_links: dict[str, list[str]] = {eid: [] for eid in snap.entities}
    for link in snap.links.values():
        out_links[link.source].append(link.target)
    rank = dict.fromkeys(snap.entities, 1.0 / n)
    for _ in range(iterations):
        check_cancelled(cancel, "pagerank")
        dangling = sum(rank[eid] for eid, targets in out_links.items() if not targets)
        base = (1.0 - damping) / n + damping * dangling / n
        new_rank = dict.fromkeys(snap.entities, base)
        for eid, targets in out_links.items():
            if targets:
                share = damping * rank[eid] / len(targets)
                for target in targets:
                    new_rank[target] += share
        rank = new_rank
    total = sum(rank.values())
    return {eid: value / total for eid, value in rank.items()} if total > 0 else rank


def eigenvector_scores(
    snap: GraphSnapshot,
    iterations: int,
    cancel: CancelToken | None = None,
) -> dict[str, float]:
    """Power iteration over the symmetric adjacency, L2-normalized each step."""
    scores = dict.fromkeys(snap.entities, 1.0)
    for _ in range(iterations):
        check_cancelled(cancel, "eigenvector")
        new_scores = {
            eid: sum(scores[other] for other in snap.neighbors(eid))
            for eid in snap.entities
        }
        norm = math.sqrt(sum(v * v for v in new_scores.values()))
        if norm > 0:
            new_scores = {eid: v / norm for eid, v in new_scores.items()}
        scores = new_scores
    return scores


def modularity(snap: GraphSnapshot, assignment: dict[str, int]) -> float:
    """Newman modularity of a partition of the undirected simple graph."""
    graph = snap.to_simple_graph()
    if graph.number_of_edges() == 0:
        return 0.0
    members: dict[int, set[str]] = {}
    for eid in snap.entities:
        members.setdefault(assignment[eid], set()).add(eid)
    return float(nx.community.modularity(graph, list(members.values())))


def _clusters_from(snap: GraphSnapshot, assignment: dict[str, int]) -> tuple[dict[str, int], list[list[str]]]:
    """Renumber communities 0.. in order of their first member."""
    renumber: dict[int, int] = {}
    clusters: list[list[str]] = []
    normalized: dict[str, int] = {}
    for eid in snap.entities:
        original = assignment[eid]
        if original not in renumber:
            renumber[original] = len(clusters)
            clusters.append([])
        normalized[eid] = renumber[original]
        clusters[renumber[original]].append(eid)
    return normalized, clusters


def greedy_modularity_communities(
    snap: GraphSnapshot,
    max_iterations: int,
    cancel: CancelToken | None = None,
) -> tuple[dict[str, int], list[float], int]:
    """Local-move modularity optimisation.

    Every entity starts alone. Each pass visits entities in insertion
    order and moves one into the neighboring community with the largest
    positive modularity gain. Stops after a pass with no move or after
    ``max_iterations`` passes. Returns the assignment, the modularity
    after the start and after every accepted move, and the pass count.
    """
    assignment = {eid: index for index, eid in enumerate(snap.entities)}
    degree = {eid: len(snap.neighbors(eid)) for eid in snap.entities}
    m = sum(degree.values()) / 2
    if m == 0:
        return assignment, [0.0], 0

    community_degree = {assignment[eid]: float(degree[eid]) for eid in snap.entities}
    current = -sum((k / (2 * m)) ** 2 for k in degree.values())
    history = [current]
    passes = 0
    improved = True
    while improved and passes < max_iterations:
        check_cancelled(cancel, "communities")
        improved = False
        passes += 1
        for node in snap.entities:
            home = assignment[node]
            k_i = degree[node]
            links_to: dict[int, int] = {}
            for neighbor in snap.neighbors(node):
                links_to[assignment[neighbor]] = links_to.get(assignment[neighbor], 0) + 1
            k_home = links_to.get(home, 0)
            best, best_gain = home, _GAIN_EPSILON
            for community, k_in in links_to.items():
                if community == home:
                    continue
                gain = (k_in - k_home) / m - k_i * (
                    community_degree[community] - community_degree[home] + k_i
                ) / (2 * m * m)
                if gain > best_gain:
                    best, best_gain = community, gain
            if best != home:
                assignment[node] = best
                community_degree[home] -= k_i
                community_degree[best] += k_i
                current += best_gain
                history.append(current)
                improved = True
    return assignment, history, passes


def edge_betweenness_communities(
    snap: GraphSnapshot,
    cancel: CancelToken | None = None,
) -> tuple[dict[str, int], int]:
    """Girvan–Newman style splitting until about sqrt(n/2) clusters (at most 8)."""
    graph = snap.to_simple_graph()
    n = graph.number_of_nodes()
    target = min(8, max(1, round(math.sqrt(n / 2)))) if n else 0
    rounds = 0
    while graph.number_of_edges() and nx.number_connected_components(graph) < target:
        check_cancelled(cancel, "communities")
        centrality = nx.edge_betweenness_centrality(graph)
        edge = max(centrality, key=centrality.get)
        graph.remove_edge(*edge)
        rounds += 1
    assignment: dict[str, int] = {}
    for index, component in enumerate(nx.connected_components(graph)):
        for node in component:
            assignment[node] = index
    return assignment, rounds


def _canonical_cycle(cycle: list[str], order: dict[str, int]) -> tuple[str, ...]:
    """Rotation starting at the earliest entity, read in its lower-ranked direction."""
    start = min(range(len(cycle)), key=lambda i: order[cycle[i]])
    rotated = cycle[start:] + cycle[:start]
    reverse = [rotated[0]] + rotated[:0:-1]
    if order[reverse[1]] < order[rotated[1]]:
        rotated = reverse
    return tuple(rotated)


def find_cycles(
    snap: GraphSnapshot,
    min_length: int,
    max_length: int,
    cancel: CancelToken | None = None,
) -> list[tuple[str, ...]]:
    """Distinct simple cycles of the undirected graph within the length bounds."""
    order = {eid: index for index, eid in enumerate(snap.entities)}
    graph = snap.to_simple_graph()
    seen: dict[tuple[str, ...], None] = {}
    for cycle in nx.simple_cycles(graph, length_bound=max_length):
        check_cancelled(cancel, "cycles")
        if len(cycle) < max(3, min_length):
            continue
        seen.setdefault(_canonical_cycle(list(cycle), order), None)
    return sorted(seen, key=lambda c: (len(c), [order[eid] for eid in c]))


# ---------------------------------------------------------------------------
# Analytics engine
# ---------------------------------------------------------------------------


class AnalyticsEngine:
    """Run analytics against a graph store, caching by change counter.

    Parameters
    ----------
    store:
        The store to analyze.
    bus:
        Bus for ``analytics:completed`` events and cache invalidation.
        Defaults to the store's bus.
    """

    def __init__(self, store: GraphStore, bus: EventBus | None = None) -> None:
        self._store = store
        self._bus = bus or store.bus
        self._cache: dict[tuple[Any, ...], Any] = {}
        self._cache_version: int | None = None
        self._unsubscribers = [
            self._bus.subscribe(topic, self._invalidate) for topic in sorted(STRUCTURAL_TOPICS)
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _invalidate(self, event: Event | None = None) -> None:
        if self._cache:
            logger.debug("Analytics cache invalidated by %s", event.topic if event else "caller")
        self._cache.clear()
        self._cache_version = None

    def invalidate(self) -> None:
        self._invalidate()

    def _cached(
        self,
        name: str,
        params: dict[str, Any],
        compute: Callable[[GraphSnapshot], Any],
        cancel: CancelToken | None,
    ) -> Any:
        check_cancelled(cancel, name)
        snap = GraphSnapshot.capture(self._store)
        if self._cache_version != snap.change_counter:
            self._cache.clear()
            self._cache_version = snap.change_counter
        key = (name, *sorted(params.items()))
        if key in self._cache:
            logger.debug("Analytics cache hit for %s at version %d", name, snap.change_counter)
            return self._cache[key]

        result = compute(snap)
        # A mutation may have landed during a cooperative run
        if self._store.change_counter == snap.change_counter:
            self._cache[key] = result
        logger.info(
            "Computed %s over %d entities / %d links (version %d)",
            name, snap.entity_count, snap.link_count, snap.change_counter,
        )
        self._bus.publish(
            ANALYTICS_COMPLETED,
            {"analytic": name, "parameters": params, "change_counter": snap.change_counter},
            {"source": "analytics_engine"},
        )
        return result

    # -- Centralities --------------------------------------------------------

    def degree_centrality(self, cancel: CancelToken | None = None) -> CentralityResult:
        """Incident link count per entity."""
        return self._cached(
            "degree", {},
            lambda snap: CentralityResult("degree", degree_scores(snap), snap.change_counter),
            cancel,
        )

    def betweenness_centrality(self, cancel: CancelToken | None = None) -> CentralityResult:
        return self._cached(
            "betweenness", {},
            lambda snap: CentralityResult(
                "betweenness", betweenness_scores(snap, cancel), snap.change_counter,
            ),
            cancel,
        )

    def closeness_centrality(self, cancel: CancelToken | None = None) -> CentralityResult:
        return self._cached(
            "closeness", {},
            lambda snap: CentralityResult(
                "closeness", closeness_scores(snap, cancel), snap.change_counter,
            ),
            cancel,
        )

    def pagerank(
        self,
        damping: float | None = None,
        iterations: int | None = None,
        cancel: CancelToken | None = None,
    ) -> CentralityResult:
        params = {
            "damping": settings.PAGERANK_DAMPING if damping is None else damping,
            "iterations": settings.PAGERANK_ITERATIONS if iterations is None else iterations,
        }
        return self._cached(
            "pagerank", params,
            lambda snap: CentralityResult(
                "pagerank",
                pagerank_scores(snap, params["damping"], params["iterations"], cancel),
                snap.change_counter,
                params,
            ),
            cancel,
        )

    def eigenvector_centrality(
        self,
        iterations: int | None = None,
        cancel: CancelToken | None = None,
    ) -> CentralityResult:
        params = {
            "iterations": settings.EIGENVECTOR_ITERATIONS if iterations is None else iterations,
        }
        return self._cached(
            "eigenvector", params,
            lambda snap: CentralityResult(
                "eigenvector",
                eigenvector_scores(snap, params["iterations"], cancel),
                snap.change_counter,
                params,
            ),
            cancel,
        )

    def centrality(self, metric: str, cancel: CancelToken | None = None) -> CentralityResult:
        """Dispatch by metric name."""
        dispatch = {
            "degree": self.degree_centrality,
            "betweenness": self.betweenness_centrality,
            "closeness": self.closeness_centrality,
            "pagerank": self.pagerank,
            "eigenvector": self.eigenvector_centrality,
        }
        try:
            method = dispatch[metric]
        except KeyError:
            raise ValueError(f"Unknown centrality metric: {metric!r}") from None
        return method(cancel=cancel)

    # -- Communities ---------------------------------------------------------

    def communities(
        self,
        algorithm: str | None = None,
        max_iterations: int | None = None,
        cancel: CancelToken | None = None,
    ) -> CommunityResult:
        """Partition entities into communities.

        Parameters
        ----------
        algorithm:
            ``"greedy_modularity"`` (default) or ``"edge_betweenness"``.
        max_iterations:
            Outer pass limit for the greedy algorithm.
        """
        params = {
            "algorithm": algorithm or settings.COMMUNITY_ALGORITHM,
            "max_iterations": (
                settings.COMMUNITY_MAX_ITERATIONS if max_iterations is None else max_iterations
            ),
        }
        if params["algorithm"] not in (GREEDY_MODULARITY, EDGE_BETWEENNESS):
            raise ValueError(f"Unknown community algorithm: {params['algorithm']!r}")

        def compute(snap: GraphSnapshot) -> CommunityResult:
            if params["algorithm"] == GREEDY_MODULARITY:
                raw, history, iterations = greedy_modularity_communities(
                    snap, params["max_iterations"], cancel,
                )
            else:
                raw, iterations = edge_betweenness_communities(snap, cancel)
                history = []
            assignment, clusters = _clusters_from(snap, raw)
            return CommunityResult(
                algorithm=params["algorithm"],
                assignment=assignment,
                clusters=clusters,
                modularity=modularity(snap, assignment),
                change_counter=snap.change_counter,
                iterations=iterations,
                modularity_history=history,
            )

        return self._cached("communities", params, compute, cancel)

    # -- Patterns ------------------------------------------------------------

    def detect_patterns(self, cancel: CancelToken | None = None) -> PatternReport:
        """Hubs, hierarchies and short cycles."""
        params = {
            "hub_alpha": settings.HUB_ALPHA,
            "hub_min_degree": settings.HUB_MIN_DEGREE,
            "cycle_min": settings.CYCLE_MIN_LENGTH,
            "cycle_max": settings.CYCLE_MAX_LENGTH,
        }

        def compute(snap: GraphSnapshot) -> PatternReport:
            patterns = self._hubs(snap, params["hub_alpha"], params["hub_min_degree"])
            check_cancelled(cancel, "patterns")
            patterns += self._hierarchies(snap)
            for cycle in find_cycles(snap, params["cycle_min"], params["cycle_max"], cancel):
                labels = " → ".join(snap.entities[eid].label for eid in cycle)
                patterns.append(PatternResult(
                    type="cycle",
                    entities=list(cycle),
                    description=f"Circular connection of {len(cycle)} entities: {labels}",
                    confidence=min(1.0, 1.0 / len(cycle) + 0.3),
                ))
            return PatternReport(patterns, snap.change_counter)

        return self._cached("patterns", params, compute, cancel)

    @staticmethod
    def _hubs(snap: GraphSnapshot, alpha: float, min_degree: int) -> list[PatternResult]:
        degrees = {eid: snap.degree(eid) for eid in snap.entities}
        max_degree = max(degrees.values(), default=0)
        if max_degree == 0:
            return []
        results = []
        for eid, degree in degrees.items():
            if degree >= alpha * max_degree and degree >= min_degree:
                entity = snap.entities[eid]
                results.append(PatternResult(
                    type="hub",
                    entities=[eid, *snap.neighbors(eid)],
                    description=f"{entity.label} is a hub with {degree} connections",
                    confidence=degree / max_degree,
                ))
        results.sort(key=lambda p: -p.confidence)
        return results

    @staticmethod
    def _hierarchies(snap: GraphSnapshot) -> list[PatternResult]:
        children: dict[str, list[str]] = {}
        for link in snap.links.values():
            if link.type == HIERARCHICAL_LINK_TYPE:
                children.setdefault(link.target, []).append(link.source)
        results = []
        for parent in snap.entities:
            kids = children.get(parent, [])
            if len(kids) >= 2:
                results.append(PatternResult(
                    type="hierarchy",
                    entities=[parent, *dict.fromkeys(kids)],
                    description=(
                        f"{snap.entities[parent].label} is the parent of {len(kids)} entities"
                    ),
                    confidence=1.0,
                ))
        return results

    # -- Statistics ----------------------------------------------------------

    def statistics(self, top_k: int | None = None, cancel: CancelToken | None = None) -> GraphStatistics:
        params = {"top_k": settings.TOP_K if top_k is None else top_k}

        def compute(snap: GraphSnapshot) -> GraphStatistics:
            n, e = snap.entity_count, snap.link_count
            degrees = {eid: snap.degree(eid) for eid in snap.entities}
            entity_types: dict[str, int] = {}
            for entity in snap.entities.values():
                entity_types[entity.type] = entity_types.get(entity.type, 0) + 1
            link_types: dict[str, int] = {}
            for link in snap.links.values():
                link_types[link.type] = link_types.get(link.type, 0) + 1
            ranked = sorted(snap.entities, key=lambda eid: -degrees[eid])[: params["top_k"]]
            components = list(nx.connected_components(snap.to_simple_graph())) if n else []
            # Parallel links count toward density, so measure the multigraph
            multigraph = snap.to_networkx().to_undirected()
            return GraphStatistics(
                entity_count=n,
                link_count=e,
                density=float(nx.density(multigraph)),
                entity_type_counts=entity_types,
                link_type_counts=link_types,
                top_connected=[
                    ConnectedEntity(
                        eid, snap.entities[eid].label, snap.entities[eid].type, degrees[eid],
                    )
                    for eid in ranked
                ],
                average_degree=(2 * e) / n if n else 0.0,
                max_degree=max(degrees.values(), default=0),
                component_count=len(components),
                largest_component_size=max((len(c) for c in components), default=0),
                isolated_count=sum(1 for d in degrees.values() if d == 0),
                change_counter=snap.change_counter,
            )

        return self._cached("statistics", params, compute, cancel)

    # -- Everything ----------------------------------------------------------

    def analyze(self, cancel: CancelToken | None = None) -> AnalyticsReport:
        """Run every analytic against the current store version."""
        statistics = self.statistics(cancel=cancel)
        centralities = {
            metric: self.centrality(metric, cancel=cancel)
            for metric in ("degree", "betweenness", "closeness", "pagerank", "eigenvector")
        }
        return AnalyticsReport(
            statistics=statistics,
            centralities=centralities,
            communities=self.communities(cancel=cancel),
            patterns=self.detect_patterns(cancel=cancel),
            change_counter=statistics.change_counter,
        )
