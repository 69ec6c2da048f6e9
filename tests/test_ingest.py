"""Tests for casegraph.ingest — parsing, mapping and the ingestion pipeline.

Tests cover:
  - Delimiter sniffing, header repair, JSON records, plain text blocks
  - Column mapping suggestions
  - Flat relationship and hierarchy inference (draft stages)
  - Pipeline commit semantics: fatal issues, rollback, cancellation, events
  - Text ingestion and async file ingestion
"""

import pytest

from casegraph.errors import Cancelled, SelfLoop
from casegraph.events.bus import ALL_TOPICS, EventBus
from casegraph.graph.schema import SchemaRegistry
from casegraph.graph.snapshot import CancelToken
from casegraph.graph.store import GraphStore
from casegraph.ingest.issues import Severity
from casegraph.ingest.mapping import (
    ColumnMapping,
    HierarchyMapping,
    RelationMapping,
    suggest_hierarchy,
    suggest_mapping,
)
from casegraph.ingest.parsers import (
    kind_for_path,
    parse_delimited,
    parse_json,
    parse_text,
)
from casegraph.ingest.pipeline import IngestionPipeline
from casegraph.ingest.tabular import build_entities, infer_flat_links, infer_hierarchy_links
from casegraph.ingest.text import TextBlock
from casegraph.ingest.validation import TransformRule, TransformStep, ValidationStep


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(bus) -> list:
    received = []
    bus.subscribe(ALL_TOPICS, received.append)
    return received


@pytest.fixture
def store(bus) -> GraphStore:
    return GraphStore(SchemaRegistry(), bus)


@pytest.fixture
def pipeline(store) -> IngestionPipeline:
    return IngestionPipeline(store)


@pytest.fixture
def flat_rows() -> list[dict]:
    return [
        {"Id": "A", "Name": "Alpha", "Ref": ""},
        {"Id": "B", "Name": "Beta", "Ref": "A"},
        {"Id": "C", "Name": "Gamma", "Ref": "A"},
    ]


@pytest.fixture
def backlog_rows() -> list[dict]:
    return [
        {"Key": "E1", "Type": "Epic", "Name": "Checkout"},
        {"Key": "S1", "Type": "Story", "Name": "Cart", "Epic": "E1"},
        {"Key": "S2", "Type": "Story", "Name": "Payment", "Epic": "E1"},
    ]


@pytest.fixture
def backlog_mapping() -> ColumnMapping:
    return ColumnMapping(
        name_column="Name", id_column="Key", type_column="Type", detect_entity_types=True,
    )


@pytest.fixture
def hierarchy() -> HierarchyMapping:
    return HierarchyMapping("Type", "Epic", "Epic", "Story")


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


class TestParsers:
    def test_sniffs_semicolon(self):
        result = parse_delimited("Name;Email;City\nAlice;a@x.org;Paris\nBob;b@x.org;Rome\n")
        assert result.delimiter == ";"
        assert result.headers == ["Name", "Email", "City"]
        assert result.records[1] == {"Name": "Bob", "Email": "b@x.org", "City": "Rome"}

    def test_single_column_falls_back_to_comma(self):
        result = parse_delimited("Name\nAlice\nBob\n")
        assert result.headers == ["Name"]
        assert [r["Name"] for r in result.records] == ["Alice", "Bob"]
        assert not result.failed

    def test_header_repair(self):
        result = parse_delimited("Name,Name,\n1,2,3\n", delimiter=",")
        assert result.headers == ["Name", "Name_2", "column_3"]

    def test_short_and_long_rows(self):
        result = parse_delimited("a,b\n1\n1,2,3\n", delimiter=",")
        assert result.records == [{"a": "1", "b": ""}, {"a": "1", "b": "2"}]
        assert len(result.issues) == 1
        assert result.issues[0].severity is Severity.WARN
        assert result.issues[0].record_index == 1
        assert not result.failed

    def test_blank_lines_and_bom(self):
        result = parse_delimited("\ufeffa,b\n\n1,2\n", delimiter=",")
        assert result.headers == ["a", "b"]
        assert len(result.records) == 1

    def test_no_header(self):
        result = parse_delimited("1,2\n3,4\n", delimiter=",", has_header=False)
        assert result.headers == ["column_1", "column_2"]
        assert len(result.records) == 2

    def test_json_array(self):
        result = parse_json('[{"id": 1, "name": "Alice", "tags": ["a", "b"]}, 5]')
        assert result.headers == ["id", "name", "tags"]
        assert result.records[0]["tags"] == '["a", "b"]'
        assert result.issues[0].severity is Severity.WARN

    def test_json_object_with_one_list(self):
        result = parse_json('{"meta": 1, "items": [{"name": "A"}, {"name": "B"}]}')
        assert [r["name"] for r in result.records] == ["A", "B"]

    def test_invalid_json_is_fatal(self):
        result = parse_json("{not json")
        assert result.failed
        assert result.issues[0].kind == "ParseError"

    def test_text_paragraphs(self):
        result = parse_text("First para.\n\nSecond para.", "memo", split_paragraphs=True)
        assert [b.field for b in result.blocks] == ["paragraph_1", "paragraph_2"]
        assert result.blocks[1].text == "Second para."

    @pytest.mark.parametrize("name, kind", [
        ("rows.csv", "tabular"), ("rows.TSV", "tabular"), ("data.json", "json"), ("memo.txt", "text"),
    ])
    def test_kind_for_path(self, name, kind):
        assert kind_for_path(name) == kind


# ---------------------------------------------------------------------------
# Mapping suggestions
# ---------------------------------------------------------------------------


class TestMappingSuggestions:
    def test_suggest_mapping(self):
        mapping = suggest_mapping(["Key", "Summary", "Issue Type", "Parent"])
        assert mapping.name_column == "Summary"
        assert mapping.id_column == "Key"
        assert mapping.type_column == "Issue Type"
        assert mapping.detect_entity_types

    def test_exact_name_beats_substring(self):
        assert suggest_mapping(["Full Name", "name"]).name_column == "name"

    def test_first_header_fallback(self):
        mapping = suggest_mapping(["Alpha", "Beta"])
        assert mapping.name_column == "Alpha"
        assert mapping.id_column is None
        assert not mapping.detect_entity_types

    def test_no_headers(self):
        assert suggest_mapping([]) is None

    def test_suggest_hierarchy(self):
        hierarchy = suggest_hierarchy(["Key", "Type", "Epic Link"])
        assert hierarchy.type_column == "Type"
        assert hierarchy.parent_reference_column == "Epic Link"
        assert suggest_hierarchy(["Key", "Name"]) is None

    def test_default_type_falls_back_to_settings(self):
        assert ColumnMapping(name_column="Name").resolved_default_type() == "default"


# ---------------------------------------------------------------------------
# Draft stages
# ---------------------------------------------------------------------------


class TestDraftStages:
    def test_flat_links_later_duplicate_wins(self):
        schema = SchemaRegistry()
        rows = [
            {"Code": "X", "Name": "first"},
            {"Code": "X", "Name": "second"},
            {"Code": "Y", "Name": "child", "Parent": "X"},
        ]
        drafts, issues = build_entities(rows, ["Code", "Name", "Parent"], ColumnMapping("Name"), schema)
        assert issues == []
        links = infer_flat_links(drafts, RelationMapping("Code", "Parent"))
        assert [(l.source, l.target) for l in links] == [("record:2", "record:1")]

    def test_flat_link_to_self_skipped(self):
        schema = SchemaRegistry()
        rows = [{"Code": "X", "Name": "loop", "Parent": "X"}]
        drafts, _ = build_entities(rows, ["Code", "Name", "Parent"], ColumnMapping("Name"), schema)
        assert infer_flat_links(drafts, RelationMapping("Code", "Parent")) == []

    def test_hierarchy_inference_is_idempotent(self, backlog_rows, backlog_mapping, hierarchy):
        schema = SchemaRegistry()
        schema.ensure_entity_type("Epic")
        schema.ensure_entity_type("Story")
        drafts, _ = build_entities(backlog_rows, ["Key", "Type", "Name", "Epic"], backlog_mapping, schema)
        first = [l.signature for l in infer_hierarchy_links(drafts, hierarchy)]
        second = [l.signature for l in infer_hierarchy_links(drafts, hierarchy)]
        assert first == second == [("S1", "E1", "hierarchical"), ("S2", "E1", "hierarchical")]

    def test_hierarchy_type_match_ignores_case(self, hierarchy):
        schema = SchemaRegistry()
        rows = [
            {"Key": "E1", "Type": "EPIC", "Name": "Parent"},
            {"Key": "S1", "Type": "story", "Name": "Child", "Epic": "Parent"},
        ]
        drafts, _ = build_entities(rows, ["Key", "Type", "Name", "Epic"], ColumnMapping("Name", "Key"), schema)
        assert [l.signature for l in infer_hierarchy_links(drafts, hierarchy)] == [
            ("S1", "E1", "hierarchical"),
        ]

    def test_missing_name_gets_placeholder(self):
        drafts, _ = build_entities([{"Name": "  "}], ["Name"], ColumnMapping("Name"), SchemaRegistry())
        assert drafts[0].label == "Unnamed Entity"

    def test_included_columns(self):
        rows = [{"Name": "Alice", "Email": "a@x.org", "Secret": "s"}]
        mapping = ColumnMapping("Name", included_columns=["Name", "Email"])
        drafts, _ = build_entities(rows, ["Name", "Email", "Secret"], mapping, SchemaRegistry())
        assert drafts[0].properties == {"Name": "Alice", "Email": "a@x.org"}


# ---------------------------------------------------------------------------
# Pipeline: records
# ---------------------------------------------------------------------------


class TestIngestRecords:
    def test_flat_import(self, store, pipeline, flat_rows):
        result = pipeline.ingest_records(
            flat_rows,
            ColumnMapping(name_column="Name", id_column="Id"),
            relations=RelationMapping("Id", "Ref", "related"),
        )
        assert result.issues == []
        assert result.committed
        assert result.created_entity_ids == ["A", "B", "C"]
        links = [store.link(lid) for lid in result.created_link_ids]
        assert [(l.source, l.target, l.type) for l in links] == [
            ("B", "A", "related"), ("C", "A", "related"),
        ]
        assert store.entity("B").label == "Beta"
        assert store.entity("B").type == "default"
        assert store.entity("B").source_ref.record_index == 1

    def test_hierarchy_import(self, store, pipeline, backlog_rows, backlog_mapping, hierarchy):
        result = pipeline.ingest_records(backlog_rows, backlog_mapping, hierarchy=hierarchy)
        assert result.issues == []
        assert store.schema.has_entity_type("epic")
        assert store.schema.has_entity_type("story")
        assert store.entity("E1").type == "epic"
        links = [store.link(lid) for lid in result.created_link_ids]
        assert [(l.source, l.target) for l in links] == [("S1", "E1"), ("S2", "E1")]
        for link in links:
            assert link.type == "hierarchical"
            assert link.label == "belongs to"
            assert link.strength == 1.5

    def test_generated_ids_resolve_links(self, store, pipeline):
        rows = [{"Code": "P", "Name": "Parent"}, {"Code": "K", "Name": "Kid", "Up": "P"}]
        result = pipeline.ingest_records(
            rows, ColumnMapping(name_column="Name"), relations=RelationMapping("Code", "Up", "reports_to"),
        )
        parent_id, kid_id = result.created_entity_ids
        link = store.link(result.created_link_ids[0])
        assert (link.source, link.target) == (kid_id, parent_id)
        assert store.schema.has_link_type("reports_to")

    def test_duplicate_ids_abort_commit(self, store, pipeline):
        rows = [{"Id": "A", "Name": "one"}, {"Id": "A", "Name": "two"}]
        result = pipeline.ingest_records(rows, ColumnMapping(name_column="Name", id_column="Id"))
        assert not result.committed
        assert store.entity_count == 0
        assert [(i.kind, i.record_index) for i in result.issues] == [("DuplicateEntityId", 1)]

    def test_id_already_in_store(self, store, pipeline):
        store.add_entity("person", id="A")
        result = pipeline.ingest_records(
            [{"Id": "A", "Name": "clash"}], ColumnMapping(name_column="Name", id_column="Id"),
        )
        assert result.issues[0].kind == "DuplicateEntityId"
        assert store.entity_count == 1

    def test_unknown_default_type_is_fatal(self, store, pipeline):
        result = pipeline.ingest_records(
            [{"Name": "x"}], ColumnMapping(name_column="Name", default_type="spaceship"),
        )
        assert result.issues[0].kind == "UnknownType"
        assert store.entity_count == 0

    def test_validation_plan_transforms_before_commit(self, store, pipeline):
        rows = [{"Name": "Alice", "Email": "  ALICE@Example.org "}, {"Name": "Bob", "Email": "nope"}]
        plan = [TransformStep("Email", "normalize_email"), ValidationStep("Email", "email")]
        result = pipeline.ingest_records(rows, ColumnMapping(name_column="Name"), plan=plan)
        assert result.committed
        assert [(i.kind, i.record_index) for i in result.issues] == [("InvalidProperty", 1)]
        alice = store.entity(result.created_entity_ids[0])
        assert alice.get("email") == "alice@example.org"
        assert result.validation.valid_records == 1

    def test_strict_mode_blocks_invalid_records(self, store):
        pipeline = IngestionPipeline(store, strict=True)
        plan = [ValidationStep("Email", "email")]
        result = pipeline.ingest_records(
            [{"Name": "Bob", "Email": "nope"}], ColumnMapping(name_column="Name"), plan=plan,
        )
        assert not result.committed
        assert store.entity_count == 0

    def test_commit_failure_rolls_back(self, store, pipeline, events, flat_rows, monkeypatch):
        def failing_add_link(*args, **kwargs):
            raise SelfLoop("boom")

        monkeypatch.setattr(store, "add_link", failing_add_link)
        result = pipeline.ingest_records(
            flat_rows,
            ColumnMapping(name_column="Name", id_column="Id"),
            relations=RelationMapping("Id", "Ref"),
        )
        assert not result.committed
        assert store.entity_count == 0
        assert result.created_entity_ids == []
        assert [i.kind for i in result.issues] == ["SelfLoop"]
        assert events == []

    def test_cancelled_before_commit(self, store, pipeline, flat_rows):
        token = CancelToken()
        token.cancel("user")
        with pytest.raises(Cancelled):
            pipeline.ingest_records(flat_rows, ColumnMapping(name_column="Name"), cancel=token)
        assert store.entity_count == 0

    def test_committed_event(self, pipeline, events, flat_rows):
        result = pipeline.ingest_records(
            flat_rows, ColumnMapping(name_column="Name", id_column="Id"), source_id="rows.csv",
        )
        committed = [e for e in events if e.topic == "ingestion:committed"]
        assert len(committed) == 1
        assert committed[0].payload["entity_ids"] == result.created_entity_ids
        assert committed[0].payload["source_id"] == "rows.csv"
        topics = [e.topic for e in events]
        assert topics.index("ingestion:committed") > topics.index("entity:created")

    def test_result_to_dict(self, pipeline):
        result = pipeline.ingest_records(
            [{"Id": "A", "Name": "a"}, {"Id": "A", "Name": "b"}],
            ColumnMapping(name_column="Name", id_column="Id"),
        )
        data = result.to_dict()
        assert data["createdEntityIds"] == []
        assert data["issues"][0]["kind"] == "DuplicateEntityId"

    def test_issue_dict_uses_camel_case(self, pipeline):
        result = pipeline.ingest_records(
            [{"Id": "A", "Name": "a"}, {"Id": "A", "Name": "b"}],
            ColumnMapping(name_column="Name", id_column="Id"),
        )
        issue = result.to_dict()["issues"][0]
        assert issue["recordIndex"] == 1
        assert "record_index" not in issue
        assert issue["severity"] == "error"

    def test_unknown_validator_is_reported(self, store, pipeline, events):
        result = pipeline.ingest_records(
            [{"Name": "Alice"}], ColumnMapping(name_column="Name"),
            plan=[ValidationStep("Name", "postcode")],
        )
        assert not result.committed
        assert [(i.kind, i.severity, i.field) for i in result.issues] == [
            ("InvalidProperty", Severity.ERROR, "Name"),
        ]
        assert "postcode" in result.issues[0].message
        assert store.entity_count == 0
        assert events == []

    def test_failing_transformer_becomes_issue(self, store, pipeline):
        def explode(value):
            raise TypeError("cannot transform")

        pipeline.validator.add_transformer(TransformRule("explode", explode))
        result = pipeline.ingest_records(
            [{"Name": "Alice"}, {"Name": "Bob"}], ColumnMapping(name_column="Name"),
            plan=[TransformStep("Name", "explode")],
        )
        assert result.committed
        assert [(i.kind, i.record_index) for i in result.issues] == [
            ("InvalidProperty", 0), ("InvalidProperty", 1),
        ]
        assert result.issues[0].severity is Severity.ERROR
        assert [store.entity(eid).label for eid in result.created_entity_ids] == ["Alice", "Bob"]


class TestLinkHierarchy:
    def test_second_pass_creates_nothing(self, store, pipeline, backlog_rows, backlog_mapping, hierarchy):
        pipeline.ingest_records(backlog_rows, backlog_mapping)
        first = pipeline.link_hierarchy(hierarchy)
        assert len(first) == 2
        assert pipeline.link_hierarchy(hierarchy) == []
        assert store.link_count == 2


# ---------------------------------------------------------------------------
# Pipeline: sources and text
# ---------------------------------------------------------------------------


class TestIngestSources:
    def test_text_ingestion(self, store, pipeline):
        result = pipeline.ingest_text([TextBlock("memo", "John Smith works at Acme Corp.")], "memo")
        assert result.committed
        assert len(result.created_link_ids) == 1
        link = store.link(result.created_link_ids[0])
        assert link.type == "works_for"
        assert link.label == "works for"
        assert link.get("kind") == "EMPLOYMENT"
        source, target = store.entity(link.source), store.entity(link.target)
        assert (source.label, source.type) == ("John Smith", "person")
        assert (target.label, target.type) == ("Acme Corp", "organization")
        assert target.source_ref.source_id == "memo"
        assert store.schema.get_link_type("works_for").directed is True

    def test_text_auto_types_other_labels(self, store, pipeline):
        pipeline.ingest_text([TextBlock("memo", "Reach her at jane.doe@example.org today")])
        emails = store.entities_by_type("email")
        assert [e.label for e in emails] == ["jane.doe@example.org"]
        assert emails[0].get("extracted_label") == "EMAIL"

    def test_json_source_uses_suggested_mapping(self, store, pipeline):
        text = '[{"id": "p1", "name": "Alice", "type": "Person"}, {"id": "v1", "name": "Van", "type": "Vehicle"}]'
        result = pipeline.ingest_source(text, "json", "people.json")
        assert result.created_entity_ids == ["p1", "v1"]
        assert store.entity("p1").type == "person"
        assert store.entity("v1").type == "vehicle"

    def test_failed_parse_commits_nothing(self, store, pipeline):
        result = pipeline.ingest_source("[broken", "json", "bad.json")
        assert not result.committed
        assert result.issues[0].kind == "ParseError"
        assert store.entity_count == 0

    def test_parse_warnings_are_reported(self, pipeline):
        result = pipeline.ingest_source("Name,Age\nAlice,30,extra\n", "tabular", delimiter=",")
        assert result.committed
        assert result.issues[0].severity is Severity.WARN

    @pytest.mark.asyncio
    async def test_run_file_csv(self, store, pipeline, tmp_path):
        path = tmp_path / "rows.csv"
        path.write_text("Id,Name,Ref\nA,Alpha,\nB,Beta,A\n", encoding="utf-8")
        result = await pipeline.run_file(
            path, relations=RelationMapping("Id", "Ref"), delimiter=",",
        )
        assert result.source_id == "rows.csv"
        assert result.created_entity_ids == ["A", "B"]
        assert len(result.created_link_ids) == 1

    @pytest.mark.asyncio
    async def test_run_file_text(self, store, pipeline, tmp_path):
        path = tmp_path / "memo.txt"
        path.write_text("John Smith works at Acme Corp.", encoding="utf-8")
        result = await pipeline.run_file(path)
        assert result.committed
        assert store.entity_count == len(result.created_entity_ids) > 0

    @pytest.mark.asyncio
    async def test_run_file_missing(self, store, pipeline, tmp_path):
        result = await pipeline.run_file(tmp_path / "missing.csv")
        assert not result.committed
        assert result.issues[0].kind == "IOError"
        assert store.entity_count == 0
