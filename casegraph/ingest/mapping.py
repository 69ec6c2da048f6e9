"""Column mapping configuration for tabular ingestion.

A :class:`ColumnMapping` says how each record becomes an entity,
a :class:`RelationMapping` how flat references between records become
links, and a :class:`HierarchyMapping` how parent/child records are
joined. ``suggest_*`` helpers guess sensible defaults from the headers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from casegraph.config.settings import settings

DEFAULT_RELATION_TYPE = "related"
DEFAULT_PARENT_TYPE = "Epic"
DEFAULT_CHILD_TYPE = "Story"


@dataclass
class ColumnMapping:
    """How a record maps onto an entity.

    Parameters
    ----------
    name_column:
        Column holding the entity label.
    id_column:
        Column holding explicit entity ids; ids are generated when None.
    type_column:
        Column resolving the entity type per record.
    included_columns:
        Columns kept as properties; every header when None.
    detect_entity_types:
        Create an entity type for every distinct ``type_column`` value.
    default_type:
        Type used when a record has no resolvable type.
    """
    name_column: str
    id_column: str | None = None
    type_column: str | None = None
    included_columns: Sequence[str] | None = None
    detect_entity_types: bool = False
    default_type: str | None = None

    def resolved_default_type(self) -> str:
        return self.default_type or settings.DEFAULT_ENTITY_TYPE

    def columns_for(self, headers: Sequence[str]) -> list[str]:
        if self.included_columns is None:
            return list(headers)
        return list(self.included_columns)


@dataclass
class RelationMapping:
    """Flat references: ``row[target_column]`` names another record's ``source_column``."""
    source_column: str
    target_column: str
    relation_type: str = DEFAULT_RELATION_TYPE


@dataclass
class HierarchyMapping:
    """Parent/child join on a type column and a parent reference column."""
    type_column: str
    parent_reference_column: str
    parent_type_name: str = DEFAULT_PARENT_TYPE
    child_type_name: str = DEFAULT_CHILD_TYPE


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------

NAME_HINTS = ("name", "title", "summary", "label")


def suggest_id_column(headers: Sequence[str]) -> str | None:
    for header in headers:
        lowered = header.lower()
        if "id" in lowered or lowered in ("key", "identifier"):
            return header
    return None


def suggest_name_column(headers: Sequence[str]) -> str | None:
    for hint in NAME_HINTS:
        for header in headers:
            if header.lower() == hint:
                return header
    for hint in NAME_HINTS:
        for header in headers:
            if hint in header.lower():
                return header
    return headers[0] if headers else None


def suggest_type_column(headers: Sequence[str]) -> str | None:
    for header in headers:
        lowered = header.lower()
        if "type" in lowered or "category" in lowered:
            return header
    return None


def suggest_parent_column(headers: Sequence[str]) -> str | None:
    for header in headers:
        lowered = header.lower()
        if "parent" in lowered or "epic" in lowered:
            return header
    return None


def suggest_mapping(headers: Sequence[str]) -> ColumnMapping | None:
    """Best-guess mapping for ``headers``; None when there are no headers."""
    name_column = suggest_name_column(headers)
    if name_column is None:
        return None
    type_column = suggest_type_column(headers)
    return ColumnMapping(
        name_column=name_column,
        id_column=suggest_id_column(headers),
        type_column=type_column,
        detect_entity_types=type_column is not None,
    )


def suggest_hierarchy(headers: Sequence[str]) -> HierarchyMapping | None:
    type_column = suggest_type_column(headers)
    parent_column = suggest_parent_column(headers)
    if type_column is None or parent_column is None:
        return None
    return HierarchyMapping(type_column=type_column, parent_reference_column=parent_column)
