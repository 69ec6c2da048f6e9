"""Schema registry — catalog of entity types and link types.

Types are auto-created from free-form labels during ingestion. The slug
rule (lowercase, non-alphanumerics → ``-``, repeats collapsed) and the
hash-indexed color/icon palette make auto-typing deterministic: the same
label always produces the same type across runs.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Callable, Mapping

from casegraph.errors import DuplicateType, NotFound, TypeInUse
from casegraph.graph.models import (
    HIERARCHICAL_LINK_TYPE,
    EntityType,
    LinkType,
    PropertyValue,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Palette for auto-created types
# ---------------------------------------------------------------------------

TYPE_COLORS: tuple[str, ...] = (
    "#ff7675", "#74b9ff", "#55efc4", "#fdcb6e",
    "#a29bfe", "#fab1a0", "#81ecec", "#dfe6e9",
)

TYPE_ICONS: tuple[str, ...] = (
    "bi-file-text", "bi-card-heading", "bi-card-text", "bi-check2-square",
    "bi-calendar-event", "bi-person", "bi-building", "bi-geo-alt",
)

# Built-in types available on every registry
DEFAULT_ENTITY_TYPES: tuple[EntityType, ...] = (
    EntityType("default", "Default", "bi-box", "#3498db"),
    EntityType("person", "Person", "bi-person", "#4a90d9"),
    EntityType("organization", "Organization", "bi-building", "#e67e22"),
    EntityType("location", "Location", "bi-geo-alt", "#2ecc71"),
    EntityType("document", "Document", "bi-file-text", "#95a5a6"),
    EntityType("event", "Event", "bi-calendar-event", "#9b59b6"),
)

DEFAULT_LINK_TYPES: tuple[LinkType, ...] = (
    LinkType("default", "Default", "#95a5a6", "bi-arrow-right"),
    LinkType("related", "Related", "#74b9ff", "bi-link"),
    LinkType(HIERARCHICAL_LINK_TYPE, "Hierarchical", "#6c5ce7", "bi-diagram-3", directed=True),
)


def slugify(name: str) -> str:
    """Type id from a display label: ``"Work Item"`` → ``"work-item"``."""
    slug = re.sub(r"[^a-z0-9]", "-", name.strip().lower())
    slug = re.sub(r"-{2,}", "-", slug)
    return slug


def _stable_index(name: str, size: int) -> int:
    digest = hashlib.sha1(name.strip().lower().encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % size


def palette_for(name: str) -> tuple[str, str]:
    """Deterministic (color, icon) for an auto-created type."""
    return (
        TYPE_COLORS[_stable_index(name, len(TYPE_COLORS))],
        TYPE_ICONS[_stable_index(name, len(TYPE_ICONS))],
    )


class SchemaRegistry:
    """Catalog of :class:`EntityType` and :class:`LinkType` records.

    Parameters
    ----------
    with_defaults:
        Pre-register the built-in entity and link types.
    """

    def __init__(self, with_defaults: bool = True) -> None:
        self._entity_types: dict[str, EntityType] = {}
        self._link_types: dict[str, LinkType] = {}
        self._usage_checks: list[Callable[[str], bool]] = []
        if with_defaults:
            for et in DEFAULT_ENTITY_TYPES:
                self._entity_types[et.id] = et
            for lt in DEFAULT_LINK_TYPES:
                self._link_types[lt.id] = lt

    # -- Entity types --------------------------------------------------------

    def register_entity_type(self, entity_type: EntityType) -> EntityType:
        """Register a type; idempotent for an identical definition."""
        existing = self._entity_types.get(entity_type.id)
        if existing is not None:
            if existing.same_definition(entity_type):
                return existing
            raise DuplicateType(
                f"Entity type {entity_type.id!r} is already registered with a different definition",
                type_id=entity_type.id,
            )
        self._entity_types[entity_type.id] = entity_type
        logger.debug("Registered entity type %s", entity_type.id)
        return entity_type

    def ensure_entity_type(
        self,
        name: str,
        default_properties: Mapping[str, PropertyValue] | None = None,
    ) -> EntityType:
        """Return the type for ``name``, creating it from the slug rule if needed."""
        type_id = slugify(name) or "default"
        existing = self._entity_types.get(type_id)
        if existing is not None:
            return existing
        color, icon = palette_for(name)
        entity_type = EntityType(
            id=type_id,
            display_name=name.strip() or type_id,
            icon=icon,
            color=color,
            default_properties=dict(default_properties or {}),
        )
        self._entity_types[type_id] = entity_type
        logger.debug("Auto-created entity type %s from %r", type_id, name)
        return entity_type

    def get_entity_type(self, type_id: str) -> EntityType:
        try:
            return self._entity_types[type_id]
        except KeyError:
            raise NotFound(f"Entity type {type_id!r} not found", type_id=type_id) from None

    def has_entity_type(self, type_id: str) -> bool:
        return type_id in self._entity_types

    def update_entity_type_display(
        self,
        type_id: str,
        display_name: str | None = None,
        icon: str | None = None,
        color: str | None = None,
    ) -> EntityType:
        """Change display metadata only; id and default properties are fixed."""
        current = self.get_entity_type(type_id)
        updated = EntityType(
            id=current.id,
            display_name=display_name if display_name is not None else current.display_name,
            icon=icon if icon is not None else current.icon,
            color=color if color is not None else current.color,
            default_properties=dict(current.default_properties),
        )
        self._entity_types[type_id] = updated
        return updated

    def add_usage_check(self, check: Callable[[str], bool]) -> Callable[[], None]:
        """Register ``check(type_id) -> bool`` reporting entity type usage.

        Stores bound to this registry register themselves so a type is
        never removed while one of their entities has it. Returns an
        unregister callable.
        """
        self._usage_checks.append(check)

        def remove() -> None:
            if check in self._usage_checks:
                self._usage_checks.remove(check)

        return remove

    def entity_type_in_use(self, type_id: str) -> bool:
        return any(check(type_id) for check in self._usage_checks)

    def remove_entity_type(self, type_id: str) -> None:
        """Drop a type; raises ``TypeInUse`` while any entity still has it."""
        self.get_entity_type(type_id)
        if self.entity_type_in_use(type_id):
            raise TypeInUse(
                f"Entity type {type_id!r} is still referenced and cannot be removed",
                type_id=type_id,
            )
        del self._entity_types[type_id]
        logger.debug("Removed entity type %s", type_id)

    def entity_types(self) -> list[EntityType]:
        return list(self._entity_types.values())

    # -- Link types ----------------------------------------------------------

    def register_link_type(self, link_type: LinkType) -> LinkType:
        existing = self._link_types.get(link_type.id)
        if existing is not None:
            if existing.same_definition(link_type):
                return existing
            raise DuplicateType(
                f"Link type {link_type.id!r} is already registered with a different definition",
                type_id=link_type.id,
            )
        self._link_types[link_type.id] = link_type
        return link_type

    def ensure_link_type(self, name: str, directed: bool | None = None) -> LinkType:
        type_id = slugify(name) or "default"
        existing = self._link_types.get(type_id)
        if existing is not None:
            return existing
        color, icon = palette_for(name)
        link_type = LinkType(
            id=type_id,
            display_name=name.strip() or type_id,
            color=color,
            icon=icon,
            directed=directed,
        )
        self._link_types[type_id] = link_type
        logger.debug("Auto-created link type %s from %r", type_id, name)
        return link_type

    def ensure_link_type_id(self, type_id: str, directed: bool | None = None) -> LinkType:
        """Like :meth:`ensure_link_type` but keeps ``type_id`` verbatim (``works_at``)."""
        existing = self._link_types.get(type_id)
        if existing is not None:
            return existing
        color, icon = palette_for(type_id)
        link_type = LinkType(
            id=type_id,
            display_name=type_id.replace("_", " ").title(),
            color=color,
            icon=icon,
            directed=directed,
        )
        self._link_types[type_id] = link_type
        logger.debug("Auto-created link type %s", type_id)
        return link_type

    def get_link_type(self, type_id: str) -> LinkType:
        try:
            return self._link_types[type_id]
        except KeyError:
            raise NotFound(f"Link type {type_id!r} not found", type_id=type_id) from None

    def has_link_type(self, type_id: str) -> bool:
        return type_id in self._link_types

    def link_types(self) -> list[LinkType]:
        return list(self._link_types.values())

    # -- Bulk replacement ----------------------------------------------------

    def copy(self) -> "SchemaRegistry":
        """Detached registry with the same types and no usage checks."""
        other = SchemaRegistry(with_defaults=False)
        other._entity_types = dict(self._entity_types)
        other._link_types = dict(self._link_types)
        return other

    def replace_with(self, other: "SchemaRegistry") -> None:
        """Take every type from ``other``; usage checks stay bound here."""
        self._entity_types = dict(other._entity_types)
        self._link_types = dict(other._link_types)
