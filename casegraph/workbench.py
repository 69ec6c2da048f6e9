"""Workbench — one investigation, every component wired together.

Owns the schema registry, event bus, change journal and graph store,
plus the engines that read from the store. Components only know the
collaborators they are given; the workbench is the one place that
creates them.

Usage::

    wb = Workbench()

    # Ingest
    result = wb.pipeline.ingest_records(rows, ColumnMapping(name_column="Name"))

    # Analyze
    hubs = wb.analytics.detect_patterns().of_type("hub")
    path = wb.query.shortest_path("A", "D")

    # Persist
    wb.save("cases/acme.json")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from casegraph.events.bus import EventBus
from casegraph.events.journal import ChangeJournal
from casegraph.graph.algorithms import AnalyticsEngine
from casegraph.graph.matrix import RelationshipMatrix
from casegraph.graph.query import QueryEngine
from casegraph.graph.schema import SchemaRegistry
from casegraph.graph.store import GraphStore
from casegraph.ingest.pipeline import IngestionPipeline
from casegraph.persistence import document

logger = logging.getLogger(__name__)


class Workbench:
    """Wired set of graph components for one investigation.

    Parameters
    ----------
    schema:
        Registry to use; a registry with the built-in types by default.
    journal:
        Journal attached to the bus; a new one by default.
    strict:
        Passed to the ingestion pipeline.
    """

    def __init__(
        self,
        schema: SchemaRegistry | None = None,
        journal: ChangeJournal | None = None,
        strict: bool | None = None,
    ) -> None:
        self.schema = schema or SchemaRegistry()
        self.bus = EventBus()
        self.journal = journal if journal is not None else ChangeJournal()
        self.journal.attach(self.bus)
        self.store = GraphStore(self.schema, self.bus)
        self.query = QueryEngine(self.store)
        self.analytics = AnalyticsEngine(self.store)
        self.matrix = RelationshipMatrix(self.store)
        self.pipeline = IngestionPipeline(self.store, strict=strict)

    def close(self) -> None:
        """Detach every subscriber from the bus."""
        self.matrix.close()
        self.analytics.close()
        self.journal.detach()

    # -- Persistence ---------------------------------------------------------

    def save(self, path: str | Path) -> Path:
        return document.save_document(self.schema, self.store, path)

    def load(self, path: str | Path) -> None:
        document.load_document(self.schema, self.store, path)

    def dumps(self) -> str:
        return document.dumps(self.schema, self.store)

    def loads(self, text: str) -> None:
        document.loads(self.schema, self.store, text)

    # -- Reporting -----------------------------------------------------------

    def summary(self) -> dict[str, Any]:
        """Graph statistics plus schema and journal counts."""
        statistics = self.analytics.statistics()
        return {
            **statistics.to_dict(),
            "entity_types": len(self.schema.entity_types()),
            "link_types": len(self.schema.link_types()),
            "journal": {
                "entries": len(self.journal),
                "by_category": self.journal.stats()["by_category"],
            },
        }
