"""Query engine — search, traversal and filter compilation.

Every query captures a :class:`GraphSnapshot` first, so results are
deterministic for a given store version: scans follow entity insertion
order and traversals follow neighbor insertion order.

Usage::

    engine = QueryEngine(store)
    engine.find_entities("acme", type_filter={"person": False})
    engine.shortest_path("A", "D")          # ["A", "B", "C", "D"]
    engine.khop_neighborhood("A", 2)

    spec = FilterSpec(entity_types={"person"}, min_degree=2)
    visible = engine.apply_filter(spec)
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

import networkx as nx

from casegraph.config.settings import settings
from casegraph.graph.models import Entity, Link, get_prop
from casegraph.graph.snapshot import CancelToken, GraphSnapshot, check_cancelled
from casegraph.graph.store import GraphStore

logger = logging.getLogger(__name__)

# Types with their own search bucket; everything else falls under "other"
TYPE_BUCKETS = ("person", "organization", "location")
OTHER_BUCKET = "other"

DATE_PROPERTIES = ("date", "timestamp")

_FLEXIBLE_DATE = re.compile(r"^\s*(\d{4})[-/](\d{1,2})[-/](\d{1,2})")


# ---------------------------------------------------------------------------
# Date handling
# ---------------------------------------------------------------------------


def parse_date(value: Any) -> dt.date | None:
    """Parse an ISO date, ISO timestamp or ``YYYY[-/]MM[-/]DD`` value.

    Returns None for anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return dt.date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return dt.datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    match = _FLEXIBLE_DATE.match(text)
    if match:
        try:
            return dt.date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            return None
    return None


def entity_date(entity: Entity) -> dt.date | None:
    for key in DATE_PROPERTIES:
        value = get_prop(entity.properties, key)
        if value not in (None, ""):
            return parse_date(value)
    return None


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


@dataclass
class FieldMask:
    """Which parts of an entity a search term is matched against."""
    name: bool = True
    description: bool = True
    properties: bool = True


def type_bucket(type_id: str) -> str:
    return type_id if type_id in TYPE_BUCKETS else OTHER_BUCKET


def type_visible(type_id: str, type_filter: Mapping[str, bool] | None) -> bool:
    """Bucketed type check; a bucket missing from the filter is visible."""
    if not type_filter:
        return True
    return bool(type_filter.get(type_bucket(type_id), True))


# field:value tokens; the value may be double- or single-quoted
_FIELD_TOKEN = re.compile(r"""(?<!\S)([A-Za-z_]\w*):(?:"([^"]*)"|'([^']*)'|(\S+))""")

_LABEL_FIELDS = ("name", "label")


def parse_search_terms(term: str | None) -> tuple[str, list[tuple[str, str]]]:
    """Split ``term`` into free text and ``(field, value)`` filters.

    >>> parse_search_terms('name:john type:person "acme"')
    ('"acme"', [('name', 'john'), ('type', 'person')])
    """
    text = term or ""
    filters: list[tuple[str, str]] = []
    for match in _FIELD_TOKEN.finditer(text):
        value = next(group for group in match.groups()[1:] if group is not None)
        filters.append((match.group(1).lower(), value.lower()))
    if not filters:
        return text.strip(), filters
    return " ".join(_FIELD_TOKEN.sub(" ", text).split()), filters


def _matches_field(entity: Entity, name: str, needle: str, type_name: str) -> bool:
    if name in _LABEL_FIELDS:
        return needle in entity.label.lower()
    if name == "type":
        return needle in entity.type.lower() or needle in type_name.lower()
    if name == "id":
        return needle in entity.id.lower()
    value = get_prop(entity.properties, name)
    if value is None or value == "":
        return False
    return needle in str(value).lower()


def _matches_term(entity: Entity, needle: str, mask: FieldMask) -> bool:
    if mask.name and needle in entity.label.lower():
        return True
    description_key = None
    if mask.description or mask.properties:
        for key in entity.properties:
            if key.lower() == "description":
                description_key = key
                break
    if mask.description and description_key is not None:
        value = entity.properties[description_key]
        if value is not None and needle in str(value).lower():
            return True
    if mask.properties:
        for key, value in entity.properties.items():
            if key == description_key or value is None or value == "":
                continue
            if needle in str(value).lower():
                return True
    return False


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


@dataclass
class FilterSpec:
    """Declarative visibility filter.

    ``None`` allowlists admit every type. Date bounds are inclusive and
    apply only to entities carrying a parseable ``date``/``timestamp``.
    """
    entity_types: set[str] | None = None
    link_types: set[str] | None = None
    min_degree: int = 0
    date_from: dt.date | str | None = None
    date_to: dt.date | str | None = None
    show_disconnected: bool = True


EntityPredicate = Callable[[Entity, Sequence[Link]], bool]


def filter_compile(spec: FilterSpec) -> EntityPredicate:
    """Compile ``spec`` into a predicate over ``(entity, incident_links)``."""
    entity_types = frozenset(spec.entity_types) if spec.entity_types is not None else None
    date_from = parse_date(spec.date_from) if spec.date_from is not None else None
    date_to = parse_date(spec.date_to) if spec.date_to is not None else None
    min_degree = max(0, int(spec.min_degree or 0))
    show_disconnected = spec.show_disconnected

    def predicate(entity: Entity, incident: Sequence[Link]) -> bool:
        if entity_types is not None and entity.type not in entity_types:
            return False
        degree = len(incident)
        if degree < min_degree:
            return False
        if not show_disconnected and degree == 0:
            return False
        if date_from is not None or date_to is not None:
            when = entity_date(entity)
            if when is not None:
                if date_from is not None and when < date_from:
                    return False
                if date_to is not None and when > date_to:
                    return False
        return True

    return predicate


@dataclass
class FilterResult:
    entity_ids: list[str] = field(default_factory=list)
    link_ids: list[str] = field(default_factory=list)
    change_counter: int = 0


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class QueryEngine:
    """Search and traversal over a graph store.

    Parameters
    ----------
    store:
        Store to query. A fresh snapshot is taken per call.
    """

    def __init__(self, store: GraphStore) -> None:
        self._store = store

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot.capture(self._store)

    # -- Search --------------------------------------------------------------

    def find_entities(
        self,
        term: str | None = None,
        type_filter: Mapping[str, bool] | None = None,
        field_mask: FieldMask | None = None,
    ) -> list[Entity]:
        """Case-insensitive substring search in insertion order.

        Parameters
        ----------
        term:
            Substring to look for. Empty or None returns every entity
            passing the type filter. ``field:value`` tokens such as
            ``name:john type:person`` restrict single fields and must
            all match.
        type_filter:
            Bucket visibility, keys ``person``, ``organization``,
            ``location`` and ``other``.
        field_mask:
            Fields searched by the free text; defaults to all.
        """
        mask = field_mask or FieldMask()
        free_text, field_filters = parse_search_terms(term)
        needle = free_text.lower()
        schema = self._store.schema
        results = []
        for entity in self.snapshot().entities.values():
            if not type_visible(entity.type, type_filter):
                continue
            if field_filters:
                type_name = (
                    schema.get_entity_type(entity.type).display_name
                    if schema.has_entity_type(entity.type) else ""
                )
                if not all(_matches_field(entity, name, value, type_name) for name, value in field_filters):
                    continue
            if needle and not _matches_term(entity, needle, mask):
                continue
            results.append(entity)
        return results

    # -- Traversal -----------------------------------------------------------

    def shortest_path(self, source_id: str, target_id: str) -> list[str]:
        """Undirected BFS path from source to target; empty if unreachable.

        Among equally short paths the one through earlier-linked
        neighbors wins.
        """
        snap = self.snapshot()
        snap.require(source_id)
        snap.require(target_id)
        if source_id == target_id:
            return [source_id]
        paths = nx.single_source_shortest_path(snap.to_simple_graph(), source_id)
        return list(paths.get(target_id, []))

    def all_paths(
        self,
        source_id: str,
        target_id: str,
        max_hops: int | None = None,
        cancel: CancelToken | None = None,
    ) -> list[list[str]]:
        """Every simple path of 1..``max_hops`` links, in DFS discovery order."""
        snap = self.snapshot()
        snap.require(source_id)
        snap.require(target_id)
        limit = settings.ALL_PATHS_MAX_HOPS if max_hops is None else max_hops
        if source_id == target_id or limit < 1:
            return []

        check_cancelled(cancel, "all_paths")
        paths: list[list[str]] = []
        for path in nx.all_simple_paths(snap.to_simple_graph(), source_id, target_id, cutoff=limit):
            check_cancelled(cancel, "all_paths")
            paths.append(list(path))
        return paths

    def khop_neighborhood(self, source_id: str, k: int | float | None = None) -> list[str]:
        """Entities within ``k`` hops of the source, in BFS order.

        ``k=None`` (or infinity) returns the whole connected component.
        """
        snap = self.snapshot()
        snap.require(source_id)
        cutoff = None if k is None or k == math.inf else k
        lengths = nx.single_source_shortest_path_length(snap.to_simple_graph(), source_id, cutoff=cutoff)
        return list(lengths)

    # -- Filtering -----------------------------------------------------------

    def apply_filter(self, spec: FilterSpec) -> FilterResult:
        """Visible entity ids and link ids under ``spec``.

        A link is visible when its type passes the link allowlist and both
        of its endpoints are visible.
        """
        snap = self.snapshot()
        predicate = filter_compile(spec)
        visible: dict[str, None] = {}
        for entity in snap.entities.values():
            incident = [snap.links[lid] for lid in snap.incidence[entity.id]]
            if predicate(entity, incident):
                visible[entity.id] = None
        link_types = frozenset(spec.link_types) if spec.link_types is not None else None
        link_ids = [
            link.id
            for link in snap.links.values()
            if (link_types is None or link.type in link_types)
            and link.source in visible
            and link.target in visible
        ]
        logger.debug(
            "Filter kept %d/%d entities and %d/%d links",
            len(visible), snap.entity_count, len(link_ids), snap.link_count,
        )
        return FilterResult(list(visible), link_ids, snap.change_counter)

    def filter_entities(self, spec: FilterSpec) -> list[Entity]:
        snap = self.snapshot()
        ids = set(self.apply_filter(spec).entity_ids)
        return [e for e in snap.entities.values() if e.id in ids]
