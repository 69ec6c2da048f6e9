"""Ingestion pipeline — records and text in, entities and links out.

Stages run in order, each returning its output plus issues:

  parse → validate/transform → type materialization → entity drafts
  → flat links → hierarchy links → commit

Text sources go parse → extraction → commit instead. Issues from every
stage are accumulated and returned whatever the outcome; a fatal issue
skips the commit, and a failure during the commit rolls the store back.
The cancel token is checked between stages, never inside the commit.

Usage::

    pipeline = IngestionPipeline(store)
    result = pipeline.ingest_records(
        rows,
        ColumnMapping(name_column="Name", id_column="Id"),
        relations=RelationMapping("Id", "Ref"),
    )
    result.created_entity_ids, result.created_link_ids, result.issues

    result = await pipeline.run_file("contacts.csv")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from casegraph.config.settings import settings
from casegraph.errors import CasegraphError, InvalidProperty
from casegraph.events.bus import INGESTION_COMMITTED
from casegraph.graph.models import HIERARCHICAL_LINK_TYPE
from casegraph.graph.snapshot import CancelToken, check_cancelled
from casegraph.graph.store import GraphStore
from casegraph.ingest.issues import Issue, Severity, has_fatal
from casegraph.ingest.mapping import (
    ColumnMapping,
    HierarchyMapping,
    RelationMapping,
    suggest_mapping,
)
from casegraph.ingest.parsers import ParseResult, kind_for_path, parse_source, read_text_file
from casegraph.ingest.tabular import (
    EntityDraft,
    HierarchyNode,
    LinkDraft,
    build_entities,
    hierarchy_link,
    hierarchy_pairs,
    infer_flat_links,
    infer_hierarchy_links,
    materialize_types,
)
from casegraph.ingest.text import (
    EntityLabel,
    ExtractionResult,
    TextBlock,
    TextExtractor,
)
from casegraph.ingest.validation import PlanStep, ValidationEngine, ValidationReport

logger = logging.getLogger(__name__)

# Extraction labels with a built-in entity type
LABEL_TYPES: dict[EntityLabel, str] = {
    EntityLabel.PERSON: "person",
    EntityLabel.ORGANIZATION: "organization",
    EntityLabel.LOCATION: "location",
}


@dataclass
class IngestionResult:
    """What an ingestion run produced."""
    source_id: str = ""
    created_entity_ids: list[str] = field(default_factory=list)
    created_link_ids: list[str] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    committed: bool = False
    validation: ValidationReport | None = None
    extraction: ExtractionResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "createdEntityIds": list(self.created_entity_ids),
            "createdLinkIds": list(self.created_link_ids),
            "issues": [issue.to_dict() for issue in self.issues],
        }


class IngestionPipeline:
    """Runs the ingestion stages against a graph store.

    Parameters
    ----------
    store:
        Store receiving the committed entities and links.
    extractor:
        Text extractor for plain-text sources.
    validator:
        Engine executing validation/transformation plans.
    strict:
        Treat error-severity validation outcomes as fatal. Defaults to
        ``settings.VALIDATION_STRICT``.
    """

    def __init__(
        self,
        store: GraphStore,
        extractor: TextExtractor | None = None,
        validator: ValidationEngine | None = None,
        strict: bool | None = None,
    ) -> None:
        self._store = store
        self.extractor = extractor or TextExtractor()
        self.validator = validator or ValidationEngine()
        self.strict = settings.VALIDATION_STRICT if strict is None else strict

    # -- Records -------------------------------------------------------------

    def ingest_records(
        self,
        records: Sequence[Mapping[str, Any]],
        mapping: ColumnMapping,
        headers: Sequence[str] | None = None,
        relations: RelationMapping | None = None,
        hierarchy: HierarchyMapping | None = None,
        plan: Sequence[PlanStep] | None = None,
        source_id: str = "",
        cancel: CancelToken | None = None,
    ) -> IngestionResult:
        """Turn records into entities and links and commit them together."""
        result = IngestionResult(source_id=source_id)
        rows = [dict(r) for r in records]
        if headers is None:
            seen: dict[str, None] = {}
            for row in rows:
                seen.update(dict.fromkeys(row))
            headers = list(seen)

        if plan:
            check_cancelled(cancel, "validation")
            try:
                self.validator.check_plan(plan)
            except InvalidProperty as exc:
                result.issues.append(Issue.from_error(exc))
                logger.warning(
                    "Ingestion of %s aborted: %s", source_id or "records", exc.message,
                )
                return result
            rows, report = self.validator.run(rows, plan)
            result.validation = report
            result.issues.extend(report.issues())

        check_cancelled(cancel, "type materialization")
        _, issues = materialize_types(rows, mapping, self._store.schema)
        result.issues.extend(issues)

        check_cancelled(cancel, "entity creation")
        drafts, issues = build_entities(
            rows, headers, mapping, self._store.schema,
            source_id=source_id, existing_ids=self._store.entity_ids(),
        )
        result.issues.extend(issues)

        links: list[LinkDraft] = []
        if relations is not None:
            check_cancelled(cancel, "relationship inference")
            links.extend(infer_flat_links(drafts, relations))
        if hierarchy is not None:
            check_cancelled(cancel, "hierarchy inference")
            links.extend(infer_hierarchy_links(drafts, hierarchy))

        check_cancelled(cancel, "commit")
        self._commit_drafts(drafts, links, result)
        return result

    def _commit_drafts(
        self,
        drafts: Sequence[EntityDraft],
        links: Sequence[LinkDraft],
        result: IngestionResult,
    ) -> None:
        if has_fatal(result.issues, self.strict):
            logger.warning(
                "Ingestion of %s aborted before commit: %d issues",
                result.source_id or "records", len(result.issues),
            )
            return

        created: dict[str, str] = {}
        entity_ids: list[str] = []
        link_ids: list[str] = []
        try:
            with self._store.transaction():
                for draft in drafts:
                    try:
                        entity = self._store.add_entity(
                            draft.type,
                            label=draft.label,
                            properties=draft.properties,
                            id=draft.explicit_id,
                            source_ref=draft.source_ref,
                        )
                    except CasegraphError as exc:
                        exc.details.setdefault("record_index", draft.record_index)
                        raise
                    created[draft.key] = entity.id
                    entity_ids.append(entity.id)
                for link in links:
                    link_type = self._store.schema.ensure_link_type_id(link.type)
                    new = self._store.add_link(
                        created[link.source],
                        created[link.target],
                        link_type.id,
                        label=link.label,
                        properties=link.properties,
                        strength=link.strength,
                    )
                    link_ids.append(new.id)
        except CasegraphError as exc:
            result.issues.append(Issue.from_error(exc))
            logger.warning("Ingestion commit rolled back: %s", exc.message)
            return

        self._finish(result, entity_ids, link_ids)

    def _finish(self, result: IngestionResult, entity_ids: list[str], link_ids: list[str]) -> None:
        result.created_entity_ids = entity_ids
        result.created_link_ids = link_ids
        result.committed = True
        self._store.bus.publish(
            INGESTION_COMMITTED,
            {
                "source_id": result.source_id,
                "entity_ids": list(entity_ids),
                "link_ids": list(link_ids),
                "issues": len(result.issues),
            },
            {"source": "ingestion_pipeline"},
        )
        logger.info(
            "Committed %d entities and %d links from %s (%d issues)",
            len(entity_ids), len(link_ids), result.source_id or "records", len(result.issues),
        )

    # -- Hierarchy over the store --------------------------------------------

    def link_hierarchy(
        self,
        mapping: HierarchyMapping,
        entity_ids: Sequence[str] | None = None,
    ) -> list[str]:
        """Add child → parent links between entities already in the store.

        Pairs that already have a ``hierarchical`` link are skipped, so
        running this twice creates nothing the second time.
        """
        ids = list(entity_ids) if entity_ids is not None else self._store.entity_ids()
        nodes = []
        for eid in ids:
            entity = self._store.entity(eid)
            nodes.append(HierarchyNode(entity.id, entity.label, entity.properties))
        existing = {
            (l.source, l.target) for l in self._store.links() if l.type == HIERARCHICAL_LINK_TYPE
        }
        created: list[str] = []
        with self._store.transaction():
            for child, parent in hierarchy_pairs(nodes, mapping):
                if (child, parent) in existing:
                    continue
                draft = hierarchy_link(child, parent)
                link = self._store.add_link(
                    draft.source, draft.target, draft.type,
                    label=draft.label, strength=draft.strength,
                )
                existing.add((child, parent))
                created.append(link.id)
        logger.info("Hierarchy pass created %d links", len(created))
        return created

    # -- Text ----------------------------------------------------------------

    def ingest_text(
        self,
        blocks: Sequence[TextBlock],
        source_id: str = "",
        cancel: CancelToken | None = None,
    ) -> IngestionResult:
        """Extract entities and relationships from text and commit them."""
        result = IngestionResult(source_id=source_id)
        check_cancelled(cancel, "text extraction")
        extraction = self.extractor.extract(blocks, cancel)
        result.extraction = extraction

        check_cancelled(cancel, "commit")
        created: dict[int, str] = {}
        link_ids: list[str] = []
        schema = self._store.schema
        try:
            with self._store.transaction():
                for extracted in extraction.entities:
                    type_id = LABEL_TYPES.get(extracted.label)
                    if type_id is None or not schema.has_entity_type(type_id):
                        type_id = schema.ensure_entity_type(
                            extracted.label.value.replace("_", " ").title(),
                        ).id
                    properties: dict[str, Any] = {
                        "extracted_label": extracted.label.value,
                        "occurrences": len(extracted.occurrences),
                    }
                    if extracted.semantic_tags:
                        properties["semantic_tags"] = ", ".join(extracted.semantic_tags)
                    entity = self._store.add_entity(
                        type_id,
                        label=extracted.text,
                        properties=properties,
                        source_ref=extracted.source_ref(),
                        confidence=extracted.confidence,
                    )
                    created[extracted.id] = entity.id
                for rel in extraction.relationships:
                    link_type = schema.ensure_link_type_id(rel.predicate, directed=True)
                    link = self._store.add_link(
                        created[rel.subject_id],
                        created[rel.object_id],
                        link_type.id,
                        label=rel.predicate.replace("_", " "),
                        properties={"kind": rel.kind.value, "text": rel.text},
                        confidence=rel.confidence,
                        source_ref=rel.source_ref(),
                    )
                    link_ids.append(link.id)
        except CasegraphError as exc:
            result.issues.append(Issue.from_error(exc))
            logger.warning("Text ingestion rolled back: %s", exc.message)
            return result

        self._finish(result, list(created.values()), link_ids)
        return result

    # -- Sources -------------------------------------------------------------

    def ingest_parsed(
        self,
        parsed: ParseResult,
        source_id: str = "",
        mapping: ColumnMapping | None = None,
        relations: RelationMapping | None = None,
        hierarchy: HierarchyMapping | None = None,
        plan: Sequence[PlanStep] | None = None,
        cancel: CancelToken | None = None,
    ) -> IngestionResult:
        """Continue from a parse result: records go to the tabular stages, blocks to extraction."""
        if parsed.failed:
            result = IngestionResult(source_id=source_id, issues=list(parsed.issues))
            logger.warning("Parsing %s failed; nothing committed", source_id or "source")
            return result

        if parsed.blocks:
            result = self.ingest_text(parsed.blocks, source_id, cancel)
        else:
            mapping = mapping or suggest_mapping(parsed.headers)
            if mapping is None:
                result = IngestionResult(source_id=source_id)
                result.issues.append(Issue(
                    kind="ParseError",
                    severity=Severity.WARN,
                    message="Source has no columns to map",
                ))
            else:
                result = self.ingest_records(
                    parsed.records, mapping, parsed.headers,
                    relations=relations, hierarchy=hierarchy, plan=plan,
                    source_id=source_id, cancel=cancel,
                )
        result.issues[:0] = parsed.issues
        return result

    def ingest_source(
        self,
        text: str,
        kind: str,
        source_id: str = "",
        mapping: ColumnMapping | None = None,
        relations: RelationMapping | None = None,
        hierarchy: HierarchyMapping | None = None,
        plan: Sequence[PlanStep] | None = None,
        cancel: CancelToken | None = None,
        **parse_options: Any,
    ) -> IngestionResult:
        """Parse ``text`` as ``kind`` (``tabular``, ``json`` or ``text``) and ingest it."""
        check_cancelled(cancel, "parse")
        parsed = parse_source(text, kind, source_id, **parse_options)
        return self.ingest_parsed(
            parsed, source_id, mapping, relations, hierarchy, plan, cancel,
        )

    async def run_file(
        self,
        path: str | Path,
        mapping: ColumnMapping | None = None,
        relations: RelationMapping | None = None,
        hierarchy: HierarchyMapping | None = None,
        plan: Sequence[PlanStep] | None = None,
        kind: str | None = None,
        cancel: CancelToken | None = None,
        **parse_options: Any,
    ) -> IngestionResult:
        """Read a file and ingest it. Suspends only while reading."""
        path = Path(path)
        source_id = path.name
        check_cancelled(cancel, "read")
        try:
            text = await read_text_file(path)
        except CasegraphError as exc:
            logger.warning("Could not read %s: %s", path, exc.message)
            return IngestionResult(source_id=source_id, issues=[Issue.from_error(exc)])
        return self.ingest_source(
            text, kind or kind_for_path(path), source_id,
            mapping=mapping, relations=relations, hierarchy=hierarchy,
            plan=plan, cancel=cancel, **parse_options,
        )
