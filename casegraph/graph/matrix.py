"""Relationship matrix — rule-based link proposals between entity pairs.

Proposals are derived from the current store: a rule table matches
property values between typed entity pairs, and every existing link is
absorbed with full confidence. The matrix is rebuilt lazily; any
structural event on the bus marks it stale in the same publish that
announced the mutation.

Usage::

    matrix = RelationshipMatrix(store)
    for proposal in matrix.proposals_for(alice.id):
        print(proposal.proposed_type, proposal.confidence, proposal.evidence)

    matrix.select(alice.id, acme.id, "works_at")
    result = matrix.materialize_selection()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from casegraph.errors import NotFound, OrphanProposal
from casegraph.events.bus import SELECTION_CHANGED, STRUCTURAL_TOPICS, Event, EventBus
from casegraph.graph.models import Entity, get_prop, is_empty_value
from casegraph.graph.snapshot import GraphSnapshot
from casegraph.graph.store import GraphStore

logger = logging.getLogger(__name__)

ProposalKey = tuple[str, str, str]

EXISTING_CONFIDENCE = 1.0


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MatrixRule:
    """Source-type → target-type pattern proposing ``link_type``.

    A pair matches when any ``source_properties`` value contains (or is
    contained in) any ``target_properties`` value, or when both entities
    share an equal value for one of ``matching_properties``. Comparisons
    ignore case.
    """
    source_type: str
    target_type: str
    link_type: str
    source_properties: tuple[str, ...] = ()
    target_properties: tuple[str, ...] = ()
    matching_properties: tuple[str, ...] = ()
    confidence: float = 0.7

    @property
    def symmetric(self) -> bool:
        return self.source_type == self.target_type and not self.source_properties


DEFAULT_RULES: tuple[MatrixRule, ...] = (
    MatrixRule(
        "person", "organization", "works_at",
        source_properties=("company", "employer", "organization"),
        target_properties=("name",),
    ),
    MatrixRule(
        "person", "location", "lives_at",
        source_properties=("address", "city", "location"),
        target_properties=("address",),
    ),
    MatrixRule(
        "organization", "location", "located_at",
        source_properties=("address", "headquarters", "location"),
        target_properties=("address",),
    ),
    MatrixRule(
        "person", "person", "knows",
        matching_properties=("company", "employer", "school", "university"),
    ),
)


def _text(value: object) -> str:
    return str(value).strip().lower()


def match_rule(rule: MatrixRule, source: Entity, target: Entity) -> list[str]:
    """Evidence strings for ``rule`` on the pair; empty when it does not apply."""
    evidence: list[str] = []
    for source_prop in rule.source_properties:
        source_value = get_prop(source.properties, source_prop)
        if is_empty_value(source_value):
            continue
        for target_prop in rule.target_properties:
            target_value = get_prop(target.properties, target_prop)
            if target_prop.lower() == "name" and is_empty_value(target_value):
                target_value = target.label
            if is_empty_value(target_value):
                continue
            a, b = _text(source_value), _text(target_value)
            if a in b or b in a:
                evidence.append(
                    f"{source_prop} {source_value!r} matches {target_prop} {target_value!r}"
                )
    for prop in rule.matching_properties:
        a = get_prop(source.properties, prop)
        b = get_prop(target.properties, prop)
        if not is_empty_value(a) and not is_empty_value(b) and _text(a) == _text(b):
            evidence.append(f"shared {prop} {a!r}")
    return evidence


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


@dataclass
class RelationshipProposal:
    """Derived link suggestion between two entities."""
    source_entity_id: str
    target_entity_id: str
    proposed_type: str
    confidence: float
    evidence: list[str] = field(default_factory=list)
    existing: bool = False
    link_id: str | None = None

    @property
    def key(self) -> ProposalKey:
        return (self.source_entity_id, self.target_entity_id, self.proposed_type)

    def involves(self, entity_id: str) -> bool:
        return entity_id in (self.source_entity_id, self.target_entity_id)


@dataclass
class MaterializeResult:
    created_link_ids: list[str] = field(default_factory=list)
    skipped_existing: list[ProposalKey] = field(default_factory=list)
    warnings: list[OrphanProposal] = field(default_factory=list)


class RelationshipMatrix:
    """Sparse pair index of relationship proposals.

    Parameters
    ----------
    store:
        Store whose entities and links feed the matrix.
    rules:
        Inference rules; :data:`DEFAULT_RULES` when omitted.
    bus:
        Bus for ``selection:changed`` and invalidation. Defaults to the
        store's bus.
    """

    def __init__(
        self,
        store: GraphStore,
        rules: Iterable[MatrixRule] | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._rules = tuple(rules) if rules is not None else DEFAULT_RULES
        self._bus = bus or store.bus
        self._proposals: dict[ProposalKey, RelationshipProposal] = {}
        self._by_entity: dict[str, list[ProposalKey]] = {}
        self._version: int | None = None
        self._selection: dict[ProposalKey, RelationshipProposal] = {}
        self._unsubscribers = [
            self._bus.subscribe(topic, self._on_structural_change)
            for topic in sorted(STRUCTURAL_TOPICS)
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    @property
    def rules(self) -> tuple[MatrixRule, ...]:
        return self._rules

    @property
    def stale(self) -> bool:
        return self._version is None or self._version != self._store.change_counter

    def _on_structural_change(self, event: Event) -> None:
        self._version = None

    # -- Building ------------------------------------------------------------

    def rebuild(self) -> int:
        """Recompute every proposal from the current store. Returns the count."""
        snap = GraphSnapshot.capture(self._store)
        proposals: dict[ProposalKey, RelationshipProposal] = {}
        by_type: dict[str, list[Entity]] = {}
        for entity in snap.entities.values():
            by_type.setdefault(entity.type, []).append(entity)

        for rule in self._rules:
            for source in by_type.get(rule.source_type, []):
                for target in by_type.get(rule.target_type, []):
                    if source.id == target.id:
                        continue
                    if rule.symmetric and (target.id, source.id, rule.link_type) in proposals:
                        continue
                    evidence = match_rule(rule, source, target)
                    if evidence:
                        key = (source.id, target.id, rule.link_type)
                        proposals.setdefault(key, RelationshipProposal(
                            source.id, target.id, rule.link_type, rule.confidence, evidence,
                        ))

        for link in snap.links.values():
            key = (link.source, link.target, link.type)
            if key in proposals and proposals[key].existing:
                continue
            proposals[key] = RelationshipProposal(
                link.source, link.target, link.type, EXISTING_CONFIDENCE,
                evidence=[f"existing link {link.id}"], existing=True, link_id=link.id,
            )

        self._proposals = proposals
        self._by_entity = {}
        for key in proposals:
            self._by_entity.setdefault(key[0], []).append(key)
            self._by_entity.setdefault(key[1], []).append(key)
        self._version = snap.change_counter
        logger.debug(
            "Relationship matrix rebuilt: %d proposals at version %d",
            len(proposals), snap.change_counter,
        )
        return len(proposals)

    def _ensure_fresh(self) -> None:
        if self.stale:
            self.rebuild()

    # -- Lookups -------------------------------------------------------------

    def proposals(self, include_existing: bool = True) -> list[RelationshipProposal]:
        self._ensure_fresh()
        return [p for p in self._proposals.values() if include_existing or not p.existing]

    def proposals_for(self, entity_id: str) -> list[RelationshipProposal]:
        """Every proposal with ``entity_id`` on either side."""
        self._ensure_fresh()
        return [self._proposals[key] for key in self._by_entity.get(entity_id, [])]

    def between(self, a: str, b: str) -> list[RelationshipProposal]:
        """Proposals for the pair in either direction."""
        return [p for p in self.proposals_for(a) if p.involves(b) and a != b]

    def proposal(self, source_id: str, target_id: str, link_type: str) -> RelationshipProposal:
        self._ensure_fresh()
        try:
            return self._proposals[(source_id, target_id, link_type)]
        except KeyError:
            raise NotFound(
                f"No {link_type!r} proposal from {source_id!r} to {target_id!r}",
                source=source_id, target=target_id, type_id=link_type,
            ) from None

    # -- Selection -----------------------------------------------------------

    @property
    def selection(self) -> list[RelationshipProposal]:
        return list(self._selection.values())

    def select(self, source_id: str, target_id: str, link_type: str) -> RelationshipProposal:
        proposal = self.proposal(source_id, target_id, link_type)
        if proposal.key not in self._selection:
            self._selection[proposal.key] = proposal
            self._publish_selection("select", proposal.key)
        return proposal

    def deselect(self, source_id: str, target_id: str, link_type: str) -> bool:
        key = (source_id, target_id, link_type)
        if self._selection.pop(key, None) is None:
            return False
        self._publish_selection("deselect", key)
        return True

    def clear_selection(self) -> None:
        if self._selection:
            self._selection.clear()
            self._publish_selection("clear", None)

    def _publish_selection(self, action: str, key: ProposalKey | None) -> None:
        self._bus.publish(
            SELECTION_CHANGED,
            {
                "action": action,
                "proposal": list(key) if key else None,
                "selected": [list(k) for k in self._selection],
            },
            {"source": "relationship_matrix"},
        )

    def materialize_selection(self) -> MaterializeResult:
        """Create links for the selected proposals in one store transaction.

        Proposals whose entities have vanished are skipped with an
        ``OrphanProposal`` warning; already-existing links are skipped.
        """
        result = MaterializeResult()
        selected = list(self._selection.values())
        if not selected:
            return result

        with self._store.transaction():
            for proposal in selected:
                missing = [
                    eid for eid in (proposal.source_entity_id, proposal.target_entity_id)
                    if not self._store.has_entity(eid)
                ]
                if missing:
                    warning = OrphanProposal(
                        f"Proposal {proposal.proposed_type!r} references deleted entity "
                        f"{missing[0]!r}",
                        source=proposal.source_entity_id,
                        target=proposal.target_entity_id,
                        type_id=proposal.proposed_type,
                    )
                    logger.warning("Skipping orphan proposal: %s", warning.message)
                    result.warnings.append(warning)
                    continue
                if proposal.existing and proposal.link_id and self._store.has_link(proposal.link_id):
                    result.skipped_existing.append(proposal.key)
                    continue
                link_type = self._store.schema.ensure_link_type_id(proposal.proposed_type)
                link = self._store.add_link(
                    proposal.source_entity_id,
                    proposal.target_entity_id,
                    link_type.id,
                    label=proposal.proposed_type.replace("_", " "),
                    confidence=proposal.confidence,
                    properties={"evidence": "; ".join(proposal.evidence)} if proposal.evidence else None,
                )
                result.created_link_ids.append(link.id)

        logger.info(
            "Materialized %d proposals (%d orphaned, %d already linked)",
            len(result.created_link_ids), len(result.warnings), len(result.skipped_existing),
        )
        self.clear_selection()
        return result
