"""Persisted graph documents — canonical JSON save and validated load.

The writer emits keys in a fixed order and optional fields only when
they carry information, so saving a loaded document reproduces it byte
for byte. The loader validates the whole document with pydantic before
touching the store, then replaces the schema and graph contents.

    from casegraph.persistence.document import save_document, load_document

    save_document(schema, store, "cases/acme.json")
    load_document(schema, store, "cases/acme.json")
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from casegraph.errors import IngestionIOError, ParseError
from casegraph.graph.models import DEFAULT_LINK_STRENGTH, EntityType, LinkType
from casegraph.graph.schema import SchemaRegistry
from casegraph.graph.store import GraphStore

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1

JsonScalar = Union[bool, int, float, str, None]

# Whole numbers stay int through a round trip
Number = Union[int, float]


# ---------------------------------------------------------------------------
# Document model
# ---------------------------------------------------------------------------


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class EntityTypeRecord(_Record):
    id: str = Field(min_length=1)
    name: str
    icon: str
    color: str
    default_properties: Optional[dict[str, JsonScalar]] = Field(None, alias="defaultProperties")


class LinkTypeRecord(_Record):
    id: str = Field(min_length=1)
    name: str
    icon: str
    color: str
    directed: Optional[bool] = None


class EntityRecord(_Record):
    id: str = Field(min_length=1)
    type: str
    label: str
    x: Optional[Number] = None
    y: Optional[Number] = None
    properties: Optional[dict[str, JsonScalar]] = None

    @model_validator(mode="after")
    def _check_position(self) -> "EntityRecord":
        if (self.x is None) != (self.y is None):
            raise ValueError(f"entity {self.id!r} must have both x and y or neither")
        # Empty properties are written as absent
        if self.properties == {}:
            self.properties = None
        return self


class LinkRecord(_Record):
    id: str = Field(min_length=1)
    source: str
    target: str
    type: str
    label: Optional[str] = None
    properties: Optional[dict[str, JsonScalar]] = None
    strength: Optional[Number] = None

    @model_validator(mode="after")
    def _check_strength(self) -> "LinkRecord":
        if self.strength is not None and self.strength <= 0:
            raise ValueError(f"link {self.id!r} strength must be positive")
        # Defaults are written as absent
        if self.strength == DEFAULT_LINK_STRENGTH:
            self.strength = None
        if self.properties == {}:
            self.properties = None
        return self


class GraphDocument(_Record):
    """Whole persisted document, checked for referential integrity."""
    version: int
    entity_types: list[EntityTypeRecord] = Field(default_factory=list, alias="entityTypes")
    link_types: list[LinkTypeRecord] = Field(default_factory=list, alias="linkTypes")
    entities: list[EntityRecord] = Field(default_factory=list)
    links: list[LinkRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "GraphDocument":
        if self.version != DOCUMENT_VERSION:
            raise ValueError(f"unsupported document version {self.version}")
        entity_types = _unique("entity type", (t.id for t in self.entity_types))
        link_types = _unique("link type", (t.id for t in self.link_types))
        entity_ids = _unique("entity", (e.id for e in self.entities))
        _unique("link", (l.id for l in self.links))
        for entity in self.entities:
            if entity.type not in entity_types:
                raise ValueError(f"entity {entity.id!r} has unknown type {entity.type!r}")
        for link in self.links:
            if link.type not in link_types:
                raise ValueError(f"link {link.id!r} has unknown type {link.type!r}")
            for end in (link.source, link.target):
                if end not in entity_ids:
                    raise ValueError(f"link {link.id!r} references unknown entity {end!r}")
            if link.source == link.target:
                raise ValueError(f"link {link.id!r} is a self-loop")
        return self


def _unique(what: str, ids) -> set[str]:
    seen: set[str] = set()
    for item in ids:
        if item in seen:
            raise ValueError(f"duplicate {what} id {item!r}")
        seen.add(item)
    return seen


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


def _json_value(value: Any) -> Any:
    if isinstance(value, (dt.date, dt.datetime)):
        return value.isoformat()
    return value


def _properties(properties: dict[str, Any]) -> dict[str, Any]:
    return {k: _json_value(v) for k, v in properties.items()}


def to_document(schema: SchemaRegistry, store: GraphStore) -> dict[str, Any]:
    """Canonical document dict. Date values become ISO strings."""
    entity_types = []
    for et in schema.entity_types():
        item: dict[str, Any] = {"id": et.id, "name": et.display_name, "icon": et.icon, "color": et.color}
        if et.default_properties:
            item["defaultProperties"] = _properties(dict(et.default_properties))
        entity_types.append(item)

    link_types = []
    for lt in schema.link_types():
        item = {"id": lt.id, "name": lt.display_name, "icon": lt.icon, "color": lt.color}
        if lt.directed is not None:
            item["directed"] = lt.directed
        link_types.append(item)

    entities = []
    for entity in store.entities():
        item = {"id": entity.id, "type": entity.type, "label": entity.label}
        if entity.position is not None:
            item["x"] = entity.position.x
            item["y"] = entity.position.y
        if entity.properties:
            item["properties"] = _properties(entity.properties)
        entities.append(item)

    links = []
    for link in store.links():
        item = {"id": link.id, "source": link.source, "target": link.target, "type": link.type}
        if link.label:
            item["label"] = link.label
        if link.properties:
            item["properties"] = _properties(link.properties)
        if link.strength != DEFAULT_LINK_STRENGTH:
            item["strength"] = link.strength
        links.append(item)

    return {
        "version": DOCUMENT_VERSION,
        "entityTypes": entity_types,
        "linkTypes": link_types,
        "entities": entities,
        "links": links,
    }


def dumps(schema: SchemaRegistry, store: GraphStore) -> str:
    return json.dumps(to_document(schema, store), indent=2, ensure_ascii=False) + "\n"


def save_document(schema: SchemaRegistry, store: GraphStore, path: str | Path) -> Path:
    """Write the canonical document to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        path.write_text(dumps(schema, store), encoding="utf-8")
    except OSError as exc:
        raise IngestionIOError(f"Could not write {path}: {exc}", path=str(path)) from exc
    logger.info("Saved %d entities and %d links to %s", store.entity_count, store.link_count, path)
    return path


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def parse_document(text: str) -> GraphDocument:
    """Validate a document, raising ParseError with the first problem."""
    try:
        return GraphDocument.model_validate_json(text)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        message = first.get("msg", str(exc))
        raise ParseError(
            f"Invalid graph document: {message}" + (f" at {location}" if location else ""),
            errors=exc.error_count(),
        ) from None


def _document_schema(document: GraphDocument) -> SchemaRegistry:
    incoming = SchemaRegistry(with_defaults=False)
    for t in document.entity_types:
        incoming.register_entity_type(EntityType(
            id=t.id,
            display_name=t.name,
            icon=t.icon,
            color=t.color,
            default_properties=t.default_properties or {},
        ))
    for t in document.link_types:
        incoming.register_link_type(LinkType(
            id=t.id,
            display_name=t.name,
            color=t.color,
            icon=t.icon,
            directed=t.directed,
        ))
    return incoming


def apply_document(schema: SchemaRegistry, store: GraphStore, document: GraphDocument) -> None:
    """Replace the schema and the store contents with ``document``.

    The schema swap is undone when the store transaction rolls back, so
    a failed load leaves both exactly as they were.
    """
    previous = schema.copy()
    schema.replace_with(_document_schema(document))
    try:
        # Stored properties already include the type defaults
        with store.transaction():
            store.clear()
            for e in document.entities:
                store.add_entity(
                    e.type,
                    label=e.label,
                    position=(e.x, e.y) if e.x is not None else None,
                    properties=e.properties,
                    id=e.id,
                    defaults=False,
                )
            for l in document.links:
                store.add_link(
                    l.source,
                    l.target,
                    l.type,
                    label=l.label,
                    properties=l.properties,
                    strength=l.strength if l.strength is not None else DEFAULT_LINK_STRENGTH,
                    id=l.id,
                )
    except Exception:
        schema.replace_with(previous)
        raise


def loads(schema: SchemaRegistry, store: GraphStore, text: str) -> GraphDocument:
    document = parse_document(text)
    apply_document(schema, store, document)
    return document


def load_document(schema: SchemaRegistry, store: GraphStore, path: str | Path) -> GraphDocument:
    """Load ``path`` into ``schema`` and ``store``."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise IngestionIOError(f"Could not read {path}: {exc}", path=str(path)) from exc
    document = loads(schema, store, text)
    logger.info(
        "Loaded %d entities and %d links from %s",
        len(document.entities), len(document.links), path,
    )
    return document
