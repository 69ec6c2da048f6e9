"""Rule-based entity and relationship extraction from free text.

The recognizer tables below are the contract: each label maps to a list
of regular expressions, each relationship kind to one pattern with a
subject group, an object group and a predicate. Swapping in a
statistical NER must keep the provenance fields (source id, field,
character offsets, context window) of :class:`ExtractedEntity` and
:class:`ExtractedRelationship`.

Usage::

    extractor = TextExtractor()
    result = extractor.extract([TextBlock("memo-1", "John Smith works at Acme Corp.")])
    result.entities        # [ExtractedEntity("Acme Corp", ORGANIZATION, ...), ...]
    result.relationships   # [ExtractedRelationship(predicate="works_for", ...)]
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping

from casegraph.config.settings import settings
from casegraph.graph.models import SourceRef
from casegraph.graph.snapshot import CancelToken, check_cancelled

logger = logging.getLogger(__name__)

ENTITY_CONTEXT_WINDOW = 20


class EntityLabel(str, Enum):
    PERSON = "PERSON"
    ORGANIZATION = "ORGANIZATION"
    LOCATION = "LOCATION"
    DATE = "DATE"
    PHONE = "PHONE"
    EMAIL = "EMAIL"
    MONEY = "MONEY"
    ID_NUMBER = "ID_NUMBER"


class RelationKind(str, Enum):
    EMPLOYMENT = "EMPLOYMENT"
    OWNERSHIP = "OWNERSHIP"
    RESIDENCE = "RESIDENCE"
    FAMILY = "FAMILY"
    COMMUNICATION = "COMMUNICATION"
    TRANSACTION = "TRANSACTION"


# ---------------------------------------------------------------------------
# Recognizer tables
# ---------------------------------------------------------------------------

ENTITY_PATTERNS: dict[EntityLabel, tuple[re.Pattern[str], ...]] = {
    EntityLabel.PERSON: (
        re.compile(r"\b[A-Z][a-z]+ [A-Z][a-z]+\b"),
        re.compile(r"\b(?:Mr|Mrs|Ms|Dr|Prof)\.?\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b"),
    ),
    EntityLabel.ORGANIZATION: (
        re.compile(
            r"\b[A-Z][a-z]*(?:\s+[A-Z][a-z]*)*\s+"
            r"(?:Inc|Corp|LLC|Ltd|Company|Corporation|Organization)\b"
        ),
        re.compile(r"\b(?:FBI|CIA|NSA|IRS|NASA|NATO|UN|EU)\b"),
    ),
    EntityLabel.LOCATION: (
        re.compile(r"\b[A-Z][a-z]+,\s*[A-Z]{2}\b"),
        re.compile(
            r"\b\d+\s+[A-Z][a-z]+\s+"
            r"(?:Street|Avenue|Road|Drive|Lane|Boulevard|St|Ave|Rd|Dr)\b"
        ),
    ),
    EntityLabel.DATE: (
        re.compile(r"\b\d{1,2}/\d{1,2}/\d{4}\b"),
        re.compile(r"\b(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\s+\d{1,2},?\s+\d{4}\b"),
    ),
    EntityLabel.PHONE: (
        re.compile(r"\b(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}\b"),
    ),
    EntityLabel.EMAIL: (
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    ),
    EntityLabel.MONEY: (
        re.compile(r"\$[0-9,]+(?:\.[0-9]{2})?\b"),
        re.compile(r"\b[0-9,]+(?:\.[0-9]{2})?\s*(?:dollars?|USD|EUR|GBP)\b"),
    ),
    EntityLabel.ID_NUMBER: (
        re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
        re.compile(r"\b[A-Z]{1,2}\d{6,8}\b"),
    ),
}


@dataclass(frozen=True)
class RelationPattern:
    kind: RelationKind
    pattern: re.Pattern[str]
    predicate: str
    subject_group: int = 1
    object_group: int = 2


_PHRASE = r"(\w+(?:\s+\w+)*)"

RELATIONSHIP_PATTERNS: tuple[RelationPattern, ...] = (
    RelationPattern(
        RelationKind.EMPLOYMENT,
        re.compile(_PHRASE + r"\s+(?:works?\s+(?:at|for)|employed\s+by)\s+" + _PHRASE, re.IGNORECASE),
        "works_for",
    ),
    RelationPattern(
        RelationKind.OWNERSHIP,
        re.compile(_PHRASE + r"\s+(?:owns?|founded)\s+" + _PHRASE, re.IGNORECASE),
        "owns",
    ),
    RelationPattern(
        RelationKind.RESIDENCE,
        re.compile(_PHRASE + r"\s+(?:lives?\s+(?:in|at)|resides?\s+(?:in|at))\s+" + _PHRASE, re.IGNORECASE),
        "lives_in",
    ),
    RelationPattern(
        RelationKind.FAMILY,
        re.compile(_PHRASE + r"\s+(?:married\s+to|spouse\s+of)\s+" + _PHRASE, re.IGNORECASE),
        "married_to",
    ),
    RelationPattern(
        RelationKind.COMMUNICATION,
        re.compile(_PHRASE + r"\s+(?:called|contacted|met\s+with)\s+" + _PHRASE, re.IGNORECASE),
        "contacted",
    ),
    RelationPattern(
        RelationKind.TRANSACTION,
        re.compile(_PHRASE + r"\s+(?:transferred|sent|paid)\s+.*?\s+to\s+" + _PHRASE, re.IGNORECASE),
        "transferred_to",
    ),
)

COMMON_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "this", "that", "these", "those", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could", "should",
    "can", "may", "might", "must", "shall", "from", "up", "about", "into", "through",
    "during", "before", "after", "above", "below", "between", "among", "all", "any",
    "both", "each", "few", "more", "most", "other", "some", "such", "no", "nor",
    "not", "only", "own", "same", "so", "than", "too", "very", "just", "now",
})

ENGLISH_MARKERS = frozenset({"the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with"})

# Confidence boosts per relationship kind, keyed on wording in the matched span
_RELATION_BOOSTS: dict[RelationKind, tuple[re.Pattern[str], float]] = {
    RelationKind.EMPLOYMENT: (
        re.compile(r"\b(?:employee|manager|director|CEO|president)\b", re.IGNORECASE), 0.2,
    ),
    RelationKind.OWNERSHIP: (
        re.compile(r"\b(?:owner|founder|established|created)\b", re.IGNORECASE), 0.2,
    ),
    RelationKind.FAMILY: (
        re.compile(r"\b(?:husband|wife|spouse|married|family)\b", re.IGNORECASE), 0.3,
    ),
}

_SEMANTIC_TAGS: dict[EntityLabel, tuple[tuple[str, re.Pattern[str], bool], ...]] = {
    # (tag, pattern, match against the entity text instead of its context)
    EntityLabel.PERSON: (
        ("executive", re.compile(r"\b(?:CEO|President|Director|Manager)\b", re.IGNORECASE), False),
        ("academic", re.compile(r"\b(?:Dr|Prof|PhD)\b", re.IGNORECASE), False),
    ),
    EntityLabel.ORGANIZATION: (
        ("financial", re.compile(r"\b(?:Bank|Financial|Investment)\b", re.IGNORECASE), False),
        ("government", re.compile(r"\b(?:Government|Federal|State)\b", re.IGNORECASE), False),
    ),
    EntityLabel.LOCATION: (
        ("address", re.compile(r"\b(?:Street|Avenue|Road)\b", re.IGNORECASE), True),
        ("administrative", re.compile(r"\b(?:City|County|State)\b", re.IGNORECASE), False),
    ),
}


def is_common_word(text: str) -> bool:
    return text.lower() in COMMON_WORDS


def entity_confidence(text: str, label: EntityLabel) -> float:
    """Heuristic confidence for a recognized span, clamped to [0.1, 1]."""
    confidence = 0.5
    if label is EntityLabel.PERSON:
        if re.fullmatch(r"[A-Z][a-z]+ [A-Z][a-z]+", text):
            confidence += 0.3
        if re.search(r"\b(?:Mr|Mrs|Ms|Dr|Prof)\.?", text):
            confidence += 0.2
    elif label is EntityLabel.ORGANIZATION:
        if re.search(r"\b(?:Inc|Corp|LLC|Ltd|Company|Corporation)\b", text):
            confidence += 0.4
    elif label is EntityLabel.LOCATION:
        if re.search(r",\s*[A-Z]{2}$", text):
            confidence += 0.3
    elif label is EntityLabel.EMAIL:
        confidence += 0.4
    elif label is EntityLabel.PHONE:
        confidence += 0.3
    if len(text) < 4:
        confidence -= 0.2
    if is_common_word(text):
        confidence -= 0.3
    return max(0.1, min(1.0, confidence))


def relationship_confidence(span: str, kind: RelationKind) -> float:
    confidence = 0.6
    boost = _RELATION_BOOSTS.get(kind)
    if boost and boost[0].search(span):
        confidence += boost[1]
    return max(0.3, min(1.0, confidence))


def semantic_tags(label: EntityLabel, text: str, context: str) -> list[str]:
    tags = []
    for tag, pattern, on_text in _SEMANTIC_TAGS.get(label, ()):
        if pattern.search(text if on_text else context):
            tags.append(tag)
    return tags


def count_words(text: str) -> int:
    return len(text.split())


def detect_language(text: str) -> str:
    """``"en"`` when over 10% of the words are common English function words."""
    words = text.lower().split()
    if not words:
        return "unknown"
    hits = sum(1 for w in words if w in ENGLISH_MARKERS)
    return "en" if hits / len(words) > 0.1 else "unknown"


def _window(text: str, start: int, end: int, size: int) -> str:
    return text[max(0, start - size):min(len(text), end + size)]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class TextBlock:
    """A span of free text and where it came from."""
    source_id: str
    text: str
    field: str = "content"


@dataclass
class Occurrence:
    source_id: str
    field: str
    start: int
    end: int


@dataclass
class ExtractedEntity:
    id: int
    text: str
    label: EntityLabel
    confidence: float
    occurrences: list[Occurrence] = field(default_factory=list)
    context: str = ""
    semantic_tags: list[str] = field(default_factory=list)

    def source_ref(self) -> SourceRef:
        first = self.occurrences[0]
        return SourceRef(
            source_id=first.source_id,
            field=first.field,
            start=first.start,
            end=first.end,
            context=self.context,
        )


@dataclass
class ExtractedRelationship:
    id: int
    kind: RelationKind
    predicate: str
    subject: str
    subject_id: int
    object: str
    object_id: int
    confidence: float
    source_id: str
    field: str
    start: int
    end: int
    text: str
    context: str

    def source_ref(self) -> SourceRef:
        return SourceRef(
            source_id=self.source_id,
            field=self.field,
            start=self.start,
            end=self.end,
            context=self.context,
        )


@dataclass
class ExtractionResult:
    entities: list[ExtractedEntity] = field(default_factory=list)
    relationships: list[ExtractedRelationship] = field(default_factory=list)


@dataclass
class ProcessedDocument:
    id: str
    name: str
    content: str
    entities: list[ExtractedEntity]
    relationships: list[ExtractedRelationship]
    word_count: int
    language: str
    processed_at: dt.datetime


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class TextExtractor:
    """Regex NER plus pattern-based relationship extraction.

    Parameters
    ----------
    min_entity_confidence:
        Entities at or below this confidence are dropped.
    min_relationship_confidence:
        Relationships at or below this confidence are dropped.
    context_window:
        Characters of surrounding text kept with each relationship.
    extra_patterns:
        Additional recognizers per label, tried after the built-in ones.
    """

    def __init__(
        self,
        min_entity_confidence: float | None = None,
        min_relationship_confidence: float | None = None,
        context_window: int | None = None,
        extra_patterns: Mapping[EntityLabel, Iterable[re.Pattern[str]]] | None = None,
    ) -> None:
        self.min_entity_confidence = (
            settings.NER_MIN_CONFIDENCE if min_entity_confidence is None else min_entity_confidence
        )
        self.min_relationship_confidence = (
            settings.RELATIONSHIP_MIN_CONFIDENCE
            if min_relationship_confidence is None else min_relationship_confidence
        )
        self.context_window = settings.CONTEXT_WINDOW if context_window is None else context_window
        self.patterns: dict[EntityLabel, tuple[re.Pattern[str], ...]] = dict(ENTITY_PATTERNS)
        for label, extra in (extra_patterns or {}).items():
            self.patterns[label] = self.patterns.get(label, ()) + tuple(extra)

    def extract_entities(
        self,
        blocks: Iterable[TextBlock],
        cancel: CancelToken | None = None,
    ) -> list[ExtractedEntity]:
        """Recognize typed entities, merging repeats of the same (text, label)."""
        found: dict[tuple[str, EntityLabel], ExtractedEntity] = {}
        for block in blocks:
            check_cancelled(cancel, "text extraction")
            for label, patterns in self.patterns.items():
                for pattern in patterns:
                    for match in pattern.finditer(block.text):
                        text = match.group(0).strip()
                        if len(text) < 3 or is_common_word(text):
                            continue
                        occurrence = Occurrence(block.source_id, block.field, match.start(), match.end())
                        key = (text.lower(), label)
                        existing = found.get(key)
                        if existing is not None:
                            existing.occurrences.append(occurrence)
                            existing.confidence = min(1.0, existing.confidence + 0.1)
                            continue
                        context = _window(
                            block.text, match.start(), match.end(), ENTITY_CONTEXT_WINDOW,
                        )
                        found[key] = ExtractedEntity(
                            id=len(found),
                            text=text,
                            label=label,
                            confidence=entity_confidence(text, label),
                            occurrences=[occurrence],
                            context=context,
                            semantic_tags=semantic_tags(label, text, context),
                        )
        entities = [e for e in found.values() if e.confidence > self.min_entity_confidence]
        entities.sort(key=lambda e: -e.confidence)
        logger.debug("Extracted %d entities (%d below threshold)", len(entities), len(found) - len(entities))
        return entities

    def extract_relationships(
        self,
        blocks: Iterable[TextBlock],
        entities: list[ExtractedEntity],
        cancel: CancelToken | None = None,
    ) -> list[ExtractedRelationship]:
        """Apply relationship patterns and resolve both ends to extracted entities."""
        relationships: list[ExtractedRelationship] = []
        for block in blocks:
            check_cancelled(cancel, "relationship extraction")
            for rel in RELATIONSHIP_PATTERNS:
                for match in rel.pattern.finditer(block.text):
                    subject_text = (match.group(rel.subject_group) or "").strip()
                    object_text = (match.group(rel.object_group) or "").strip()
                    if not subject_text or not object_text:
                        continue
                    subject = self._resolve(
                        entities, subject_text, block, match.start(rel.subject_group),
                    )
                    obj = self._resolve(
                        entities, object_text, block, match.start(rel.object_group),
                    )
                    if subject is None or obj is None or subject.id == obj.id:
                        continue
                    relationships.append(ExtractedRelationship(
                        id=len(relationships),
                        kind=rel.kind,
                        predicate=rel.predicate,
                        subject=subject.text,
                        subject_id=subject.id,
                        object=obj.text,
                        object_id=obj.id,
                        confidence=relationship_confidence(match.group(0), rel.kind),
                        source_id=block.source_id,
                        field=block.field,
                        start=match.start(),
                        end=match.end(),
                        text=match.group(0),
                        context=_window(block.text, match.start(), match.end(), self.context_window),
                    ))
        kept = [r for r in relationships if r.confidence > self.min_relationship_confidence]
        kept.sort(key=lambda r: -r.confidence)
        return kept

    @staticmethod
    def _resolve(
        entities: list[ExtractedEntity],
        text: str,
        block: TextBlock,
        offset: int,
    ) -> ExtractedEntity | None:
        """Nearest entity whose text equals (else overlaps) the phrase.

        Distance is measured from ``offset`` to the closest occurrence in
        the same block; ties go to the higher confidence.
        """
        needle = text.lower()
        exact = [e for e in entities if e.text.lower() == needle]
        candidates = exact or [
            e for e in entities if needle in e.text.lower() or e.text.lower() in needle
        ]
        if not candidates:
            return None

        def distance(entity: ExtractedEntity) -> int:
            offsets = [
                abs(o.start - offset)
                for o in entity.occurrences
                if o.source_id == block.source_id and o.field == block.field
            ]
            return min(offsets) if offsets else len(block.text) + 1

        return min(candidates, key=lambda e: (distance(e), -e.confidence))

    def extract(
        self,
        blocks: Iterable[TextBlock],
        cancel: CancelToken | None = None,
    ) -> ExtractionResult:
        blocks = list(blocks)
        entities = self.extract_entities(blocks, cancel)
        relationships = self.extract_relationships(blocks, entities, cancel)
        return ExtractionResult(entities, relationships)

    def process_document(
        self,
        name: str,
        text: str,
        cancel: CancelToken | None = None,
    ) -> ProcessedDocument:
        """Extract from a whole document and attach simple statistics."""
        result = self.extract([TextBlock(name, text)], cancel)
        return ProcessedDocument(
            id=name,
            name=name,
            content=text,
            entities=result.entities,
            relationships=result.relationships,
            word_count=count_words(text),
            language=detect_language(text),
            processed_at=dt.datetime.now(dt.timezone.utc),
        )
