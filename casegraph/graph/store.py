"""Graph store — the authoritative typed-property multigraph.

The store exclusively owns every :class:`Entity` and :class:`Link`.
Callers receive deep copies, never live records. All mutations go
through the public API; each one runs inside a transaction so that
either every step succeeds (and the buffered events are published in
order afterwards) or the store reverts and nothing is published.

Indexes:
  - ``id → Entity`` and ``id → Link`` primary maps (insertion ordered)
  - ``entity id → ordered set of incident link ids``

Usage::

    store = GraphStore(SchemaRegistry(), EventBus())
    a = store.add_entity("person", label="Alice")
    b = store.add_entity("organization", label="Acme Ltd")
    store.add_link(a.id, b.id, "related", label="works at")

    with store.transaction():
        ...  # several mutations, committed together
"""

from __future__ import annotations

import copy
import dataclasses
import itertools
import logging
import math
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Literal, Mapping

from casegraph.errors import DuplicateEntityId, InvalidProperty, NotFound, SelfLoop, UnknownType
from casegraph.events.bus import (
    ENTITY_CREATED,
    ENTITY_REMOVED,
    ENTITY_UPDATED,
    GRAPH_CLEARED,
    LINK_CREATED,
    LINK_REMOVED,
    LINK_UPDATED,
    EventBus,
)
from casegraph.graph.models import (
    DEFAULT_LINK_STRENGTH,
    Entity,
    Link,
    Position,
    PropertyValue,
    SourceRef,
    find_key,
    merge_properties,
    set_prop,
)
from casegraph.graph.schema import SchemaRegistry

logger = logging.getLogger(__name__)

Direction = Literal["out", "in", "both"]

PROPERTY_PREFIX = "properties."


def to_payload(record: Entity | Link) -> dict[str, Any]:
    """Plain-dict rendering of a record for event payloads."""
    return dataclasses.asdict(record)


def _number(value: Any) -> int | float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return float(value)


def _coerce_position(value: Any) -> Position | None:
    if value is None or isinstance(value, Position):
        return value
    if isinstance(value, Mapping):
        return Position(_number(value["x"]), _number(value["y"]))
    x, y = value
    return Position(_number(x), _number(y))


def _check_confidence(value: float | None, record_id: str | None) -> None:
    if value is None:
        return
    if not 0.0 <= value <= 1.0:
        raise InvalidProperty(
            f"Confidence must be within [0, 1], got {value}",
            id=record_id, field="confidence",
        )


def _check_strength(value: float, record_id: str | None) -> None:
    if not isinstance(value, (int, float)) or math.isnan(value) or value <= 0:
        raise InvalidProperty(
            f"Link strength must be a positive number, got {value!r}",
            id=record_id, field="strength",
        )


class GraphStore:
    """Typed-property multigraph with cascading removal and change events.

    Parameters
    ----------
    schema:
        Registry every entity and link type must resolve in.
    bus:
        Event bus receiving change events. A private bus is created
        when omitted.
    """

    def __init__(self, schema: SchemaRegistry, bus: EventBus | None = None) -> None:
        self._schema = schema
        self._bus = bus or EventBus()
        self._entities: dict[str, Entity] = {}
        self._links: dict[str, Link] = {}
        self._incidence: dict[str, dict[str, None]] = {}
        self._change_counter = 0
        self._ids = itertools.count(1)
        self._tx_depth = 0
        self._pending: list[tuple[str, dict[str, Any]]] = []
        self._undo: list[Callable[[], None]] = []
        schema.add_usage_check(self.type_in_use)

    @property
    def schema(self) -> SchemaRegistry:
        return self._schema

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def change_counter(self) -> int:
        return self._change_counter

    # -- Transactions --------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["GraphStore"]:
        """Group mutations; all-or-nothing.

        Nested transactions act as savepoints: a failure inside one
        reverts only its own mutations, and events are published once
        the outermost transaction exits cleanly.
        """
        undo_mark = len(self._undo)
        pending_mark = len(self._pending)
        counter_mark = self._change_counter
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            while len(self._undo) > undo_mark:
                self._undo.pop()()
            del self._pending[pending_mark:]
            self._change_counter = counter_mark
            raise
        finally:
            self._tx_depth -= 1

        if self._tx_depth == 0:
            self._undo.clear()
            events, self._pending = self._pending, []
            for topic, payload in events:
                self._bus.publish(topic, payload, {"source": "graph_store"})

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def _emit(self, topic: str, payload: dict[str, Any]) -> None:
        self._change_counter += 1
        payload = {**payload, "change_counter": self._change_counter}
        self._pending.append((topic, payload))

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids):06d}_{uuid.uuid4().hex[:6]}"

    def _remember_entity(self, id: str) -> None:
        before = copy.deepcopy(self._entities[id])

        def _restore() -> None:
            self._entities[id] = before

        self._undo.append(_restore)

    def _remember_link(self, id: str) -> None:
        before = copy.deepcopy(self._links[id])

        def _restore() -> None:
            self._links[id] = before

        self._undo.append(_restore)

    def _remember_structure(self, entity_ids: list[str]) -> None:
        """Undo entry for removals: restores map order and the touched incidence sets."""
        entities = dict(self._entities)
        links = dict(self._links)
        incidence = {eid: dict(self._incidence[eid]) for eid in entity_ids if eid in self._incidence}

        def _restore() -> None:
            self._entities = entities
            self._links = links
            self._incidence.update(incidence)

        self._undo.append(_restore)

    # -- Entities ------------------------------------------------------------

    def add_entity(
        self,
        type: str,
        label: str | None = None,
        position: Position | tuple[float, float] | Mapping[str, float] | None = None,
        properties: Mapping[str, PropertyValue] | None = None,
        id: str | None = None,
        source_ref: SourceRef | None = None,
        confidence: float | None = None,
        defaults: bool = True,
    ) -> Entity:
        """Create an entity; type defaults are merged under the supplied properties.

        Pass ``defaults=False`` when ``properties`` already hold the final bag.
        """
        if not self._schema.has_entity_type(type):
            raise UnknownType(f"Entity type {type!r} is not registered", type_id=type)
        if id is not None and id in self._entities:
            raise DuplicateEntityId(f"Entity id {id!r} already exists", id=id)
        _check_confidence(confidence, id)

        entity_type = self._schema.get_entity_type(type)
        with self.transaction():
            entity = Entity(
                id=id if id is not None else self._new_id("entity"),
                type=type,
                label=label if label is not None else entity_type.display_name,
                properties=merge_properties(
                    dict(entity_type.default_properties) if defaults else {}, properties,
                ),
                position=_coerce_position(position),
                source_ref=copy.deepcopy(source_ref),
                confidence=confidence,
            )
            self._entities[entity.id] = entity
            self._incidence[entity.id] = {}

            def _undo_add(eid: str = entity.id) -> None:
                self._entities.pop(eid, None)
                self._incidence.pop(eid, None)

            self._undo.append(_undo_add)
            self._emit(ENTITY_CREATED, {"entity": to_payload(entity)})
        return copy.deepcopy(entity)

    def update_entity(self, id: str, patch: Mapping[str, Any]) -> Entity:
        """Apply a patch of ``label``, ``position``, ``confidence`` or ``properties.<key>`` keys."""
        self._require_entity(id)
        with self.transaction():
            self._remember_entity(id)
            entity = self._entities[id]
            changes: dict[str, Any] = {}
            for key, value in patch.items():
                if key == "label":
                    changes[key] = {"old": entity.label, "new": value}
                    entity.label = value
                elif key == "position":
                    new = _coerce_position(value)
                    changes[key] = {
                        "old": dataclasses.asdict(entity.position) if entity.position else None,
                        "new": dataclasses.asdict(new) if new else None,
                    }
                    entity.position = new
                elif key == "confidence":
                    _check_confidence(value, id)
                    changes[key] = {"old": entity.confidence, "new": value}
                    entity.confidence = value
                elif key.startswith(PROPERTY_PREFIX) and len(key) > len(PROPERTY_PREFIX):
                    prop = key[len(PROPERTY_PREFIX):]
                    stored = find_key(entity.properties, prop)
                    old = entity.properties.get(stored) if stored else None
                    stored = set_prop(entity.properties, prop, value)
                    changes[PROPERTY_PREFIX + stored] = {"old": old, "new": value}
                else:
                    raise InvalidProperty(f"Unsupported patch key {key!r}", id=id, field=key)
            if changes:
                self._emit(ENTITY_UPDATED, {"id": id, "changes": changes})
        return copy.deepcopy(entity)

    def add_property(self, id: str, key: str, value: PropertyValue) -> Entity:
        return self.update_entity(id, {PROPERTY_PREFIX + key: value})

    def remove_property(self, id: str, key: str) -> Entity:
        entity = self._require_entity(id)
        stored = find_key(entity.properties, key)
        if stored is None:
            raise NotFound(f"Property {key!r} not found on entity {id!r}", id=id, field=key)
        with self.transaction():
            self._remember_entity(id)
            entity = self._entities[id]
            old = entity.properties.pop(stored)
            self._emit(ENTITY_UPDATED, {
                "id": id, "changes": {PROPERTY_PREFIX + stored: {"old": old, "new": None}},
            })
        return copy.deepcopy(entity)

    def rename_property(self, id: str, old_name: str, new_name: str) -> Entity:
        """Rename a property key, keeping its value and position in the bag."""
        entity = self._require_entity(id)
        if old_name == new_name:
            return copy.deepcopy(entity)
        stored = find_key(entity.properties, old_name)
        if stored is None:
            raise NotFound(f"Property {old_name!r} not found on entity {id!r}", id=id, field=old_name)
        clash = find_key(entity.properties, new_name)
        if clash is not None and clash != stored:
            raise InvalidProperty(
                f"Property {new_name!r} already exists on entity {id!r}", id=id, field=new_name,
            )
        with self.transaction():
            self._remember_entity(id)
            entity = self._entities[id]
            entity.properties = {
                (new_name if k == stored else k): v for k, v in entity.properties.items()
            }
            self._emit(ENTITY_UPDATED, {
                "id": id, "changes": {"rename": {"old": stored, "new": new_name}},
            })
        return copy.deepcopy(entity)

    def remove_entity(self, id: str) -> list[str]:
        """Remove an entity and every incident link. Returns the removed link ids.

        One ``link:removed`` event is published per incident link, followed
        by the ``entity:removed`` event.
        """
        self._require_entity(id)
        with self.transaction():
            removed = list(self._incidence.get(id, {}))
            touched = [id] + [self._links[lid].other_end(id) for lid in removed]
            self._remember_structure(touched)
            for link_id in removed:
                self._detach_link(link_id)
            entity = self._entities.pop(id)
            self._incidence.pop(id, None)
            self._emit(ENTITY_REMOVED, {"entity": to_payload(entity), "removed_links": removed})
        return removed

    # -- Links ---------------------------------------------------------------

    def add_link(
        self,
        source: str,
        target: str,
        type: str,
        label: str | None = None,
        properties: Mapping[str, PropertyValue] | None = None,
        strength: float = DEFAULT_LINK_STRENGTH,
        id: str | None = None,
        confidence: float | None = None,
        source_ref: SourceRef | None = None,
    ) -> Link:
        """Create a link. Multi-edges are allowed; duplicates differ only by id."""
        for endpoint in (source, target):
            if endpoint not in self._entities:
                raise NotFound(f"Entity {endpoint!r} not found", id=endpoint)
        if source == target:
            raise SelfLoop(f"Link from {source!r} to itself is not allowed", id=source)
        if not self._schema.has_link_type(type):
            raise UnknownType(f"Link type {type!r} is not registered", type_id=type)
        if id is not None and id in self._links:
            raise InvalidProperty(f"Link id {id!r} already exists", id=id, field="id")
        _check_strength(strength, id)
        _check_confidence(confidence, id)

        with self.transaction():
            link = Link(
                id=id if id is not None else self._new_id("link"),
                source=source,
                target=target,
                type=type,
                label=label or "",
                properties=merge_properties({}, properties),
                strength=strength,
                confidence=confidence,
                source_ref=copy.deepcopy(source_ref),
            )
            self._links[link.id] = link
            self._incidence[source][link.id] = None
            self._incidence[target][link.id] = None

            def _undo_add(lid: str = link.id) -> None:
                self._links.pop(lid, None)
                self._incidence[source].pop(lid, None)
                self._incidence[target].pop(lid, None)

            self._undo.append(_undo_add)
            self._emit(LINK_CREATED, {"link": to_payload(link)})
        return copy.deepcopy(link)

    def update_link(self, id: str, patch: Mapping[str, Any]) -> Link:
        """Apply a patch of ``label``, ``strength``, ``confidence`` or ``properties.<key>`` keys."""
        self._require_link(id)
        with self.transaction():
            self._remember_link(id)
            link = self._links[id]
            changes: dict[str, Any] = {}
            for key, value in patch.items():
                if key == "label":
                    changes[key] = {"old": link.label, "new": value}
                    link.label = value
                elif key == "strength":
                    _check_strength(value, id)
                    changes[key] = {"old": link.strength, "new": value}
                    link.strength = value
                elif key == "confidence":
                    _check_confidence(value, id)
                    changes[key] = {"old": link.confidence, "new": value}
                    link.confidence = value
                elif key.startswith(PROPERTY_PREFIX) and len(key) > len(PROPERTY_PREFIX):
                    prop = key[len(PROPERTY_PREFIX):]
                    stored = find_key(link.properties, prop)
                    old = link.properties.get(stored) if stored else None
                    stored = set_prop(link.properties, prop, value)
                    changes[PROPERTY_PREFIX + stored] = {"old": old, "new": value}
                else:
                    raise InvalidProperty(f"Unsupported patch key {key!r}", id=id, field=key)
            if changes:
                self._emit(LINK_UPDATED, {"id": id, "changes": changes})
        return copy.deepcopy(link)

    def remove_link(self, id: str) -> None:
        link = self._require_link(id)
        with self.transaction():
            self._remember_structure([link.source, link.target])
            self._detach_link(id)

    def _detach_link(self, link_id: str) -> None:
        link = self._links.pop(link_id)
        self._incidence[link.source].pop(link_id, None)
        self._incidence[link.target].pop(link_id, None)
        self._emit(LINK_REMOVED, {"link": to_payload(link)})

    # -- Bulk ----------------------------------------------------------------

    def clear(self) -> None:
        """Drop every entity and link."""
        with self.transaction():
            counts = {"entities": len(self._entities), "links": len(self._links)}
            entities, links, incidence = self._entities, self._links, self._incidence

            def _undo_clear() -> None:
                self._entities, self._links, self._incidence = entities, links, incidence

            self._undo.append(_undo_clear)
            self._entities, self._links, self._incidence = {}, {}, {}
            self._emit(GRAPH_CLEARED, counts)

    # -- Read projections ----------------------------------------------------

    def _require_entity(self, id: str) -> Entity:
        try:
            return self._entities[id]
        except KeyError:
            raise NotFound(f"Entity {id!r} not found", id=id) from None

    def _require_link(self, id: str) -> Link:
        try:
            return self._links[id]
        except KeyError:
            raise NotFound(f"Link {id!r} not found", id=id) from None

    def entity(self, id: str) -> Entity:
        return copy.deepcopy(self._require_entity(id))

    def link(self, id: str) -> Link:
        return copy.deepcopy(self._require_link(id))

    def has_entity(self, id: str) -> bool:
        return id in self._entities

    def has_link(self, id: str) -> bool:
        return id in self._links

    @property
    def entity_count(self) -> int:
        return len(self._entities)

    @property
    def link_count(self) -> int:
        return len(self._links)

    def entity_ids(self) -> list[str]:
        return list(self._entities)

    def link_ids(self) -> list[str]:
        return list(self._links)

    def entities(self) -> list[Entity]:
        """All entities in insertion order."""
        return [copy.deepcopy(e) for e in self._entities.values()]

    def links(self) -> list[Link]:
        """All links in insertion order."""
        return [copy.deepcopy(l) for l in self._links.values()]

    def entities_by_type(self, type_id: str) -> list[Entity]:
        return [copy.deepcopy(e) for e in self._entities.values() if e.type == type_id]

    def type_in_use(self, type_id: str) -> bool:
        return any(e.type == type_id for e in self._entities.values())

    def incident_links(self, entity_id: str) -> list[Link]:
        self._require_entity(entity_id)
        return [copy.deepcopy(self._links[lid]) for lid in self._incidence[entity_id]]

    def degree(self, entity_id: str) -> int:
        self._require_entity(entity_id)
        return len(self._incidence[entity_id])

    def neighbors(
        self,
        entity_id: str,
        direction: Direction = "both",
        link_type: str | None = None,
    ) -> list[str]:
        """Neighbor ids in incident-link order, without duplicates."""
        self._require_entity(entity_id)
        seen: dict[str, None] = {}
        for link_id in self._incidence[entity_id]:
            link = self._links[link_id]
            if link_type is not None and link.type != link_type:
                continue
            if direction in ("out", "both") and link.source == entity_id:
                seen.setdefault(link.target, None)
            if direction in ("in", "both") and link.target == entity_id:
                seen.setdefault(link.source, None)
        return list(seen)

    # -- Integrity -----------------------------------------------------------

    def verify_integrity(self) -> list[str]:
        """Recompute the incidence index and report every discrepancy."""
        problems: list[str] = []
        expected: dict[str, set[str]] = {eid: set() for eid in self._entities}
        for link in self._links.values():
            for endpoint in (link.source, link.target):
                if endpoint not in self._entities:
                    problems.append(f"link {link.id} references missing entity {endpoint}")
                else:
                    expected[endpoint].add(link.id)
            if link.source == link.target:
                problems.append(f"link {link.id} is a self-loop")
        for eid, link_ids in expected.items():
            actual = set(self._incidence.get(eid, {}))
            if actual != link_ids:
                problems.append(
                    f"incidence mismatch for {eid}: index={sorted(actual)} links={sorted(link_ids)}"
                )
        for eid in self._incidence:
            if eid not in self._entities:
                problems.append(f"incidence entry for missing entity {eid}")
        return problems
