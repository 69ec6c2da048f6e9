"""Parse stage: raw bytes or text → records and text blocks.

Tabular sources become ordered lists of ``header → value`` records,
JSON documents become records, and plain text becomes
:class:`TextBlock` objects for extraction. Parsers never raise for
content problems; they return the issues they found alongside the
output. Reading a file is the only suspending step.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from casegraph.errors import IngestionIOError, ParseError, UndetectableDelimiter
from casegraph.ingest.issues import Issue, Severity
from casegraph.ingest.text import TextBlock

logger = logging.getLogger(__name__)

CANDIDATE_DELIMITERS = ",;\t|"
SNIFF_SAMPLE_SIZE = 8192

Record = dict[str, Any]


@dataclass
class ParseResult:
    """Output of the parse stage."""
    records: list[Record] = field(default_factory=list)
    headers: list[str] = field(default_factory=list)
    blocks: list[TextBlock] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    delimiter: str | None = None

    @property
    def failed(self) -> bool:
        return any(i.is_fatal() for i in self.issues)


# ---------------------------------------------------------------------------
# Delimited text
# ---------------------------------------------------------------------------


def sniff_delimiter(sample: str) -> str:
    """Detect the delimiter of a delimited sample, or raise UndetectableDelimiter."""
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=CANDIDATE_DELIMITERS)
    except csv.Error as exc:
        raise UndetectableDelimiter(f"Could not detect delimiter: {exc}") from None
    return dialect.delimiter


def _detect_with_retry(text: str) -> str:
    """Sniff the sample; on failure retry once on the header line alone."""
    sample = text[:SNIFF_SAMPLE_SIZE]
    try:
        return sniff_delimiter(sample)
    except UndetectableDelimiter:
        header = sample.splitlines()[0] if sample.strip() else ""
        logger.debug("Delimiter sniffing failed on sample, retrying on header line")
        try:
            return sniff_delimiter(header)
        except UndetectableDelimiter:
            if not any(d in header for d in CANDIDATE_DELIMITERS):
                # A single column has no delimiter to find
                return ","
            raise


def _unique_headers(raw: list[str]) -> list[str]:
    headers: list[str] = []
    seen: dict[str, int] = {}
    for index, name in enumerate(raw):
        name = (name or "").strip() or f"column_{index + 1}"
        count = seen.get(name, 0)
        seen[name] = count + 1
        headers.append(name if count == 0 else f"{name}_{count + 1}")
    return headers


def parse_delimited(
    text: str,
    delimiter: str | None = None,
    has_header: bool = True,
) -> ParseResult:
    """Parse delimited rows; the delimiter is auto-detected when omitted."""
    result = ParseResult()
    text = text.lstrip("\ufeff")
    if not text.strip():
        return result
    if delimiter is None:
        try:
            delimiter = _detect_with_retry(text)
        except UndetectableDelimiter as exc:
            result.issues.append(Issue.from_error(exc))
            return result
    result.delimiter = delimiter

    rows = list(csv.reader(io.StringIO(text), delimiter=delimiter))
    rows = [row for row in rows if any(cell.strip() for cell in row)]
    if not rows:
        return result
    if has_header:
        headers, body = _unique_headers(rows[0]), rows[1:]
    else:
        width = max(len(row) for row in rows)
        headers, body = [f"column_{i + 1}" for i in range(width)], rows
    result.headers = headers

    for index, row in enumerate(body):
        if len(row) > len(headers):
            result.issues.append(Issue(
                kind="ParseError",
                severity=Severity.WARN,
                message=f"Row has {len(row)} fields, expected {len(headers)}; extras dropped",
                record_index=index,
            ))
        record: Record = {}
        for position, header in enumerate(headers):
            record[header] = row[position].strip() if position < len(row) else ""
        result.records.append(record)
    logger.info(
        "Parsed %d records with %d columns (delimiter %r)",
        len(result.records), len(headers), delimiter,
    )
    return result


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------


def _scalar(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def parse_json(text: str) -> ParseResult:
    """Parse a JSON array of objects (or an object holding one) into records.

    Nested values are kept as their JSON text so every property stays a
    scalar.
    """
    result = ParseResult()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        result.issues.append(Issue.from_error(ParseError(f"Invalid JSON: {exc.msg} at line {exc.lineno}")))
        return result

    if isinstance(data, dict):
        lists = [v for v in data.values() if isinstance(v, list)]
        if len(lists) == 1:
            data = lists[0]
        else:
            data = [data]
    if not isinstance(data, list):
        result.issues.append(Issue.from_error(ParseError("JSON document holds no records")))
        return result

    headers: dict[str, None] = {}
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            result.issues.append(Issue(
                kind="ParseError",
                severity=Severity.WARN,
                message=f"Skipped non-object item of type {type(item).__name__}",
                record_index=index,
            ))
            continue
        record = {str(k): _scalar(v) for k, v in item.items()}
        headers.update(dict.fromkeys(record))
        result.records.append(record)
    result.headers = list(headers)
    logger.info("Parsed %d JSON records", len(result.records))
    return result


# ---------------------------------------------------------------------------
# Plain text
# ---------------------------------------------------------------------------


def parse_text(text: str, source_id: str, split_paragraphs: bool = False) -> ParseResult:
    """Wrap plain text as extraction blocks, optionally one per paragraph."""
    result = ParseResult()
    if not split_paragraphs:
        result.blocks.append(TextBlock(source_id, text))
        return result
    paragraphs = [p for p in (part.strip() for part in text.split("\n\n")) if p]
    for index, paragraph in enumerate(paragraphs):
        result.blocks.append(TextBlock(source_id, paragraph, field=f"paragraph_{index + 1}"))
    return result


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

TABULAR_SUFFIXES = {".csv", ".tsv", ".psv"}
JSON_SUFFIXES = {".json"}


async def read_text_file(path: str | Path, encoding: str = "utf-8") -> str:
    """Read a file without blocking the event loop."""
    path = Path(path)
    try:
        return await asyncio.to_thread(path.read_text, encoding=encoding)
    except (OSError, UnicodeDecodeError) as exc:
        raise IngestionIOError(f"Could not read {path}: {exc}", path=str(path)) from exc


def parse_source(text: str, kind: str, source_id: str = "", **options: Any) -> ParseResult:
    """Dispatch on ``kind``: ``"tabular"``, ``"json"`` or ``"text"``."""
    if kind == "tabular":
        return parse_delimited(text, options.get("delimiter"), options.get("has_header", True))
    if kind == "json":
        return parse_json(text)
    if kind == "text":
        return parse_text(text, source_id, options.get("split_paragraphs", False))
    raise ValueError(f"Unknown source kind: {kind!r}")


def kind_for_path(path: str | Path) -> str:
    suffix = Path(path).suffix.lower()
    if suffix in TABULAR_SUFFIXES:
        return "tabular"
    if suffix in JSON_SUFFIXES:
        return "json"
    return "text"
