"""Ingestion of tabular records and free text into the graph.

Usage::

    from casegraph.ingest import IngestionPipeline, ColumnMapping

    pipeline = IngestionPipeline(store)
    result = pipeline.ingest_records(rows, ColumnMapping(name_column="Name", id_column="Id"))
"""

from casegraph.ingest.issues import Issue, Severity
from casegraph.ingest.mapping import ColumnMapping, HierarchyMapping, RelationMapping
from casegraph.ingest.pipeline import IngestionPipeline, IngestionResult
from casegraph.ingest.text import TextBlock, TextExtractor
from casegraph.ingest.validation import TransformStep, ValidationEngine, ValidationStep

__all__ = [
    "Issue",
    "Severity",
    "ColumnMapping",
    "HierarchyMapping",
    "RelationMapping",
    "IngestionPipeline",
    "IngestionResult",
    "TextBlock",
    "TextExtractor",
    "TransformStep",
    "ValidationEngine",
    "ValidationStep",
]
