"""Typed-property graph records.

Entities and links carry a flat property bag whose values are a tagged
sum of scalars (``PropertyValue``). Keys keep the casing they were
first written with, while every lookup used by analysis and filtering
compares keys case-insensitively through :func:`get_prop`.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

PropertyValue = Union[str, int, float, bool, dt.date, None]

DEFAULT_LINK_STRENGTH = 1.0
HIERARCHICAL_LINK_TYPE = "hierarchical"


# ---------------------------------------------------------------------------
# Property helpers
# ---------------------------------------------------------------------------


def find_key(properties: Mapping[str, Any], key: str) -> str | None:
    """Return the stored casing of ``key``, or None if absent."""
    if key in properties:
        return key
    lowered = key.lower()
    for existing in properties:
        if existing.lower() == lowered:
            return existing
    return None


def get_prop(properties: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Case-insensitive property lookup."""
    stored = find_key(properties, key)
    if stored is None:
        return default
    return properties[stored]


def set_prop(properties: dict[str, Any], key: str, value: PropertyValue) -> str:
    """Write a property, preserving the first-seen casing of its key.

    Returns the key under which the value was stored.
    """
    stored = find_key(properties, key) or key
    properties[stored] = value
    return stored


def merge_properties(
    base: Mapping[str, Any], overlay: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Merge ``overlay`` onto ``base``; overlay values win, base casing wins."""
    merged = dict(base)
    for key, value in (overlay or {}).items():
        set_prop(merged, key, value)
    return merged


def is_empty_value(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def freeze(value: Any) -> Any:
    """Deep-freeze nested mappings and sequences."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze` — plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Schema records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityType:
    """Catalog entry for an entity type."""
    id: str
    display_name: str
    icon: str = "bi-box"
    color: str = "#a29bfe"
    default_properties: Mapping[str, PropertyValue] = field(
        default_factory=lambda: MappingProxyType({}),
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "default_properties", freeze(dict(self.default_properties)))

    def same_definition(self, other: "EntityType") -> bool:
        return (
            self.id == other.id
            and self.display_name == other.display_name
            and self.icon == other.icon
            and self.color == other.color
            and thaw(self.default_properties) == thaw(other.default_properties)
        )


@dataclass(frozen=True)
class LinkType:
    """Catalog entry for a link type."""
    id: str
    display_name: str
    color: str = "#95a5a6"
    icon: str = "bi-arrow-right"
    directed: bool | None = None

    def same_definition(self, other: "LinkType") -> bool:
        return self == other


# ---------------------------------------------------------------------------
# Graph records
# ---------------------------------------------------------------------------


@dataclass
class Position:
    x: float
    y: float


@dataclass
class SourceRef:
    """Ingestion provenance for an entity or link."""
    source_id: str = ""
    field: str = ""
    record_index: Optional[int] = None
    start: Optional[int] = None
    end: Optional[int] = None
    context: str = ""


@dataclass
class Entity:
    """Typed node of the investigation graph."""
    id: str
    type: str
    label: str
    properties: dict[str, PropertyValue] = field(default_factory=dict)
    position: Optional[Position] = None
    source_ref: Optional[SourceRef] = None
    confidence: Optional[float] = None

    def get(self, key: str, default: Any = None) -> Any:
        return get_prop(self.properties, key, default)


@dataclass
class Link:
    """Typed edge between two entities."""
    id: str
    source: str
    target: str
    type: str
    label: str = ""
    properties: dict[str, PropertyValue] = field(default_factory=dict)
    strength: float = DEFAULT_LINK_STRENGTH
    confidence: Optional[float] = None
    source_ref: Optional[SourceRef] = None

    def get(self, key: str, default: Any = None) -> Any:
        return get_prop(self.properties, key, default)

    def other_end(self, entity_id: str) -> str:
        return self.target if self.source == entity_id else self.source
