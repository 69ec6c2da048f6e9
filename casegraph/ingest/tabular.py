"""Tabular stages: type materialization, entity drafts, link inference.

Each stage is a function over ``(input, config)`` returning its output
plus the issues it found. Nothing here touches the graph store; the
pipeline turns drafts into entities and links at commit time. Drafts
refer to each other by :attr:`EntityDraft.key`, which is the explicit
record id when there is one and a per-record placeholder otherwise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from casegraph.errors import DuplicateEntityId, UnknownType
from casegraph.graph.models import (
    HIERARCHICAL_LINK_TYPE,
    PropertyValue,
    SourceRef,
    get_prop,
    set_prop,
)
from casegraph.graph.schema import SchemaRegistry, slugify
from casegraph.ingest.issues import Issue
from casegraph.ingest.mapping import ColumnMapping, HierarchyMapping, RelationMapping

logger = logging.getLogger(__name__)

UNNAMED_ENTITY = "Unnamed Entity"
HIERARCHY_LABEL = "belongs to"
HIERARCHY_STRENGTH = 1.5

Record = Mapping[str, Any]


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass
class EntityDraft:
    """An entity waiting to be committed."""
    key: str
    type: str
    label: str
    properties: dict[str, PropertyValue]
    record_index: int
    record: Record
    explicit_id: str | None = None
    source_ref: SourceRef | None = None


@dataclass
class LinkDraft:
    """A link between two drafts (or committed entities), by key."""
    source: str
    target: str
    type: str
    label: str = ""
    strength: float = 1.0
    properties: dict[str, PropertyValue] = field(default_factory=dict)

    @property
    def signature(self) -> tuple[str, str, str]:
        return (self.source, self.target, self.type)


# ---------------------------------------------------------------------------
# Type materialization
# ---------------------------------------------------------------------------


def materialize_types(
    records: Sequence[Record],
    mapping: ColumnMapping,
    schema: SchemaRegistry,
) -> tuple[list[str], list[Issue]]:
    """Create (or reuse) an entity type per distinct ``type_column`` value.

    Returns the type ids in first-seen order.
    """
    if not mapping.detect_entity_types or not mapping.type_column:
        return [], []
    type_ids: dict[str, None] = {}
    for record in records:
        value = cell_text(record.get(mapping.type_column))
        if value:
            type_ids.setdefault(schema.ensure_entity_type(value).id, None)
    logger.debug("Materialized %d entity types from column %s", len(type_ids), mapping.type_column)
    return list(type_ids), []


def resolve_type(
    record: Record,
    index: int,
    mapping: ColumnMapping,
    schema: SchemaRegistry,
) -> tuple[str | None, Issue | None]:
    """Type id for one record, falling back to the mapping's default type."""
    if mapping.type_column:
        value = cell_text(record.get(mapping.type_column))
        if value:
            type_id = slugify(value)
            if schema.has_entity_type(type_id):
                return type_id, None
            if schema.has_entity_type(value):
                return value, None
    default = mapping.resolved_default_type()
    if not schema.has_entity_type(default):
        return None, Issue.from_error(
            UnknownType(f"Default entity type {default!r} is not registered", type_id=default),
            record_index=index,
            field=mapping.type_column,
        )
    return default, None


# ---------------------------------------------------------------------------
# Entity drafts
# ---------------------------------------------------------------------------


def build_entities(
    records: Sequence[Record],
    headers: Sequence[str],
    mapping: ColumnMapping,
    schema: SchemaRegistry,
    source_id: str = "",
    existing_ids: Iterable[str] = (),
) -> tuple[list[EntityDraft], list[Issue]]:
    """One draft per record.

    Records whose explicit id repeats an earlier record, or an entity
    already in the store, are reported as ``DuplicateEntityId`` and
    produce no draft.
    """
    drafts: list[EntityDraft] = []
    issues: list[Issue] = []
    taken = set(existing_ids)
    columns = mapping.columns_for(headers)

    for index, record in enumerate(records):
        explicit_id = cell_text(record.get(mapping.id_column)) if mapping.id_column else ""
        if explicit_id:
            if explicit_id in taken:
                issues.append(Issue.from_error(
                    DuplicateEntityId(f"Duplicate entity id {explicit_id!r}", id=explicit_id),
                    record_index=index,
                    field=mapping.id_column,
                ))
                continue
            taken.add(explicit_id)

        type_id, issue = resolve_type(record, index, mapping, schema)
        if issue is not None:
            issues.append(issue)
            continue

        properties: dict[str, PropertyValue] = {}
        for column in columns:
            if column in record:
                set_prop(properties, column, record[column])

        drafts.append(EntityDraft(
            key=explicit_id or f"record:{index}",
            type=type_id,
            label=cell_text(record.get(mapping.name_column)) or UNNAMED_ENTITY,
            properties=properties,
            record_index=index,
            record=record,
            explicit_id=explicit_id or None,
            source_ref=SourceRef(source_id=source_id, field=mapping.name_column, record_index=index),
        ))
    return drafts, issues


# ---------------------------------------------------------------------------
# Flat relationships
# ---------------------------------------------------------------------------


def infer_flat_links(
    drafts: Sequence[EntityDraft],
    mapping: RelationMapping,
) -> list[LinkDraft]:
    """Link each draft to the draft whose ``source_column`` equals its ``target_column``.

    When several drafts share a ``source_column`` value the later one wins.
    """
    lookup: dict[str, str] = {}
    for draft in drafts:
        value = cell_text(draft.record.get(mapping.source_column))
        if value:
            lookup[value] = draft.key

    links: list[LinkDraft] = []
    for draft in drafts:
        value = cell_text(draft.record.get(mapping.target_column))
        target = lookup.get(value) if value else None
        if target is None or target == draft.key:
            continue
        links.append(LinkDraft(
            source=draft.key,
            target=target,
            type=mapping.relation_type,
            label=mapping.relation_type,
        ))
    return links


# ---------------------------------------------------------------------------
# Hierarchies
# ---------------------------------------------------------------------------


@dataclass
class HierarchyNode:
    """Minimal view of an entity for hierarchy joins."""
    key: str
    label: str
    values: Mapping[str, Any]


def _is_kind(node: HierarchyNode, column: str, type_name: str) -> bool:
    value = cell_text(get_prop(node.values, column))
    return bool(value) and value.lower() == type_name.strip().lower()


def hierarchy_pairs(
    nodes: Sequence[HierarchyNode],
    mapping: HierarchyMapping,
) -> list[tuple[str, str]]:
    """(child key, parent key) pairs, children in input order."""
    index: dict[str, str] = {}
    children: list[HierarchyNode] = []
    for node in nodes:
        if _is_kind(node, mapping.type_column, mapping.parent_type_name):
            index[node.key] = node.key
            if node.label:
                index[node.label] = node.key
            for value in node.values.values():
                if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                    text = cell_text(value)
                    if text:
                        index[text] = node.key
        elif _is_kind(node, mapping.type_column, mapping.child_type_name):
            children.append(node)

    pairs: list[tuple[str, str]] = []
    for child in children:
        reference = cell_text(get_prop(child.values, mapping.parent_reference_column))
        parent = index.get(reference) if reference else None
        if parent is not None and parent != child.key:
            pairs.append((child.key, parent))
    return pairs


def hierarchy_link(child: str, parent: str) -> LinkDraft:
    return LinkDraft(
        source=child,
        target=parent,
        type=HIERARCHICAL_LINK_TYPE,
        label=HIERARCHY_LABEL,
        strength=HIERARCHY_STRENGTH,
    )


def infer_hierarchy_links(
    drafts: Sequence[EntityDraft],
    mapping: HierarchyMapping,
) -> list[LinkDraft]:
    """Child → parent ``hierarchical`` links between drafts.

    The type and parent reference are read from the raw record, so the
    columns need not be kept as properties.
    """
    nodes = [
        HierarchyNode(d.key, d.label, {**d.record, **d.properties})
        for d in drafts
    ]
    return [hierarchy_link(child, parent) for child, parent in hierarchy_pairs(nodes, mapping)]
