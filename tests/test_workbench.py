"""Tests for casegraph.workbench — end-to-end wiring of one investigation."""

import pytest

from casegraph.errors import TypeInUse
from casegraph.events.journal import ChangeJournal
from casegraph.graph.query import FilterSpec
from casegraph.ingest.mapping import ColumnMapping
from casegraph.workbench import Workbench

ROWS = [
    {"Name": "Alice", "Role": "CFO", "api_token": "abc123"},
    {"Name": "Bob", "Role": "Analyst", "api_token": "def456"},
]


@pytest.fixture
def wb():
    workbench = Workbench()
    yield workbench
    workbench.close()


class TestWiring:
    def test_components_share_the_store(self, wb):
        assert wb.store.schema is wb.schema
        assert wb.store.bus is wb.bus
        assert wb.pipeline.strict is False

    def test_custom_journal(self):
        journal = ChangeJournal(max_entries=10)
        wb = Workbench(journal=journal)
        wb.store.add_entity("person", label="Alice")
        assert len(journal) == 1
        wb.close()

    def test_close_detaches_journal(self, wb):
        wb.close()
        wb.store.add_entity("person", label="Alice")
        assert len(wb.journal) == 0


class TestEndToEnd:
    def test_ingestion_is_journaled(self, wb):
        result = wb.pipeline.ingest_records(ROWS, ColumnMapping(name_column="Name"))
        assert result.committed
        categories = wb.journal.stats()["by_category"]
        assert categories["ENTITY"] == 2
        assert categories["DATA"] == 1

    def test_journal_redacts_credentials(self, wb):
        wb.pipeline.ingest_records(ROWS, ColumnMapping(name_column="Name"))
        created = wb.journal.query(topic="entity:created")[0]
        properties = created.payload["entity"]["properties"]
        assert properties["api_token"] == "[REDACTED]"
        assert properties["Role"] == "CFO"

    def test_query_and_analytics_see_ingested_data(self, wb):
        result = wb.pipeline.ingest_records(ROWS, ColumnMapping(name_column="Name"))
        alice, bob = result.created_entity_ids
        wb.store.add_link(alice, bob, "related")
        assert wb.query.shortest_path(alice, bob) == [alice, bob]
        assert wb.analytics.degree_centrality().scores == {alice: 1.0, bob: 1.0}
        assert len(wb.query.apply_filter(FilterSpec(min_degree=1)).entity_ids) == 2

    def test_summary(self, wb):
        wb.pipeline.ingest_records(ROWS, ColumnMapping(name_column="Name"))
        summary = wb.summary()
        assert summary["entity_count"] == 2
        assert summary["link_count"] == 0
        assert summary["entity_types"] == 6
        assert summary["link_types"] == 3
        assert summary["journal"]["by_category"]["ENTITY"] == 2


class TestPersistence:
    def test_save_and_load(self, wb, tmp_path):
        result = wb.pipeline.ingest_records(ROWS, ColumnMapping(name_column="Name"))
        wb.store.add_link(*result.created_entity_ids, "related")
        path = wb.save(tmp_path / "case.json")

        other = Workbench()
        other.load(path)
        assert other.store.entity_count == 2
        assert other.store.link_count == 1
        assert other.dumps() == wb.dumps()
        other.close()

    def test_loads_invalidates_analytics(self, wb):
        wb.store.add_entity("person", label="Alice", id="a")
        assert list(wb.analytics.degree_centrality().scores) == ["a"]
        text = wb.dumps()
        wb.store.add_entity("person", label="Bob", id="b")
        wb.loads(text)
        assert list(wb.analytics.degree_centrality().scores) == ["a"]

    def test_type_in_use_cannot_be_removed(self, wb):
        wb.store.add_entity("person", label="Alice", id="a")
        with pytest.raises(TypeInUse):
            wb.schema.remove_entity_type("person")
        wb.loads(wb.dumps())
        assert wb.store.entity("a").type == "person"
