"""Change journal — sanitized, append-only audit stream.

Every graph mutation, ingestion commit, analytics completion and user
action is recorded as a :class:`ChangeEvent`. Payload keys that look
like credentials are redacted before storage. The journal is capped
(FIFO eviction) and supports age-based cleanup.

    journal = ChangeJournal()
    journal.attach(bus)            # record everything published on the bus
    journal.record_user_action("filter_applied", {"min_degree": 2})

    for change in journal.query(category="ENTITY"):
        print(change.id, change.kind, change.topic)
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import itertools
import json
import logging
import re
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from casegraph.config.settings import settings
from casegraph.events.bus import ALL_TOPICS, Event, EventBus

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_KEY = re.compile(r"password|token|secret|key|auth|credential", re.IGNORECASE)


class ChangeKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    LINK = "link"
    UNLINK = "unlink"
    BULK = "bulk"


TOPIC_KINDS: dict[str, ChangeKind] = {
    "entity:created": ChangeKind.CREATE,
    "entity:updated": ChangeKind.UPDATE,
    "entity:removed": ChangeKind.DELETE,
    "link:created": ChangeKind.LINK,
    "link:updated": ChangeKind.UPDATE,
    "link:removed": ChangeKind.UNLINK,
    "graph:cleared": ChangeKind.BULK,
    "ingestion:committed": ChangeKind.BULK,
    "analytics:completed": ChangeKind.BULK,
    "selection:changed": ChangeKind.UPDATE,
    "system_error": ChangeKind.UPDATE,
}

# Topic prefix → audit category
TOPIC_CATEGORIES: dict[str, str] = {
    "entity": "ENTITY",
    "link": "GRAPH",
    "graph": "GRAPH",
    "ingestion": "DATA",
    "analytics": "GRAPH",
    "selection": "USER",
    "system_error": "SYSTEM",
}


def sanitize(data: Any) -> Any:
    """Replace values under credential-like keys with the redaction sentinel."""
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        data = dataclasses.asdict(data)
    if isinstance(data, dict):
        cleaned: dict[str, Any] = {}
        for key, value in data.items():
            if SENSITIVE_KEY.search(str(key)):
                cleaned[key] = REDACTED
            else:
                cleaned[key] = sanitize(value)
        return cleaned
    if isinstance(data, (list, tuple)):
        return [sanitize(v) for v in data]
    return data


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class ChangeEvent:
    """A journal entry."""
    id: int
    timestamp: dt.datetime
    category: str
    kind: ChangeKind
    topic: str
    payload: dict[str, Any] = field(default_factory=dict)
    provenance: dict[str, Any] = field(default_factory=dict)
    severity: str = "INFO"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "category": self.category,
            "kind": self.kind.value,
            "topic": self.topic,
            "severity": self.severity,
            "payload": self.payload,
            "provenance": self.provenance,
        }


class ChangeJournal:
    """Capped, append-only list of sanitized change events.

    Parameters
    ----------
    max_entries:
        Cap on retained entries; oldest are evicted first.
    retention_days:
        Entries older than this are dropped by :meth:`cleanup`.
    clock:
        Source of timestamps (UTC). Injected for tests.
    """

    def __init__(
        self,
        max_entries: int | None = None,
        retention_days: int | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._max_entries = max_entries or settings.JOURNAL_MAX_ENTRIES
        self._retention_days = (
            retention_days if retention_days is not None else settings.JOURNAL_RETENTION_DAYS
        )
        self._clock = clock or _utcnow
        self._entries: deque[ChangeEvent] = deque(maxlen=self._max_entries)
        self._ids = itertools.count(1)
        self._unsubscribe: Callable[[], None] | None = None

    # -- Recording -----------------------------------------------------------

    def attach(self, bus: EventBus) -> None:
        """Record every event published on ``bus``."""
        self.detach()
        self._unsubscribe = bus.subscribe(ALL_TOPICS, self.record_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def record_event(self, event: Event) -> ChangeEvent:
        severity = "ERROR" if event.topic == "system_error" else "INFO"
        return self.record(
            topic=event.topic,
            payload=event.payload,
            provenance=event.provenance,
            severity=severity,
        )

    def record(
        self,
        topic: str,
        payload: dict[str, Any] | None = None,
        provenance: dict[str, Any] | None = None,
        kind: ChangeKind | None = None,
        category: str | None = None,
        severity: str = "INFO",
    ) -> ChangeEvent:
        """Append a sanitized entry."""
        prefix = topic.split(":", 1)[0]
        change = ChangeEvent(
            id=next(self._ids),
            timestamp=self._clock(),
            category=category or TOPIC_CATEGORIES.get(prefix, TOPIC_CATEGORIES.get(topic, "SYSTEM")),
            kind=kind or TOPIC_KINDS.get(topic, ChangeKind.UPDATE),
            topic=topic,
            payload=sanitize(payload or {}),
            provenance=sanitize(provenance or {}),
            severity=severity,
        )
        self._entries.append(change)
        return change

    def record_user_action(
        self,
        action: str,
        details: dict[str, Any] | None = None,
        kind: ChangeKind = ChangeKind.UPDATE,
    ) -> ChangeEvent:
        return self.record(
            topic=f"user_{action}",
            payload={"action": action, **(details or {})},
            kind=kind,
            category="USER",
        )

    # -- Maintenance ---------------------------------------------------------

    def cleanup(self) -> int:
        """Drop entries older than the retention window. Returns the number dropped."""
        cutoff = self._clock() - dt.timedelta(days=self._retention_days)
        kept = [e for e in self._entries if e.timestamp > cutoff]
        dropped = len(self._entries) - len(kept)
        if dropped:
            self._entries = deque(kept, maxlen=self._max_entries)
            logger.info("Journal cleanup dropped %d entries older than %s", dropped, cutoff.isoformat())
        return dropped

    def clear(self) -> None:
        self._entries.clear()

    # -- Querying ------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[ChangeEvent]:
        return list(self._entries)

    def query(
        self,
        start: dt.datetime | None = None,
        end: dt.datetime | None = None,
        topic: str | None = None,
        kind: ChangeKind | str | None = None,
        category: str | None = None,
        text: str | None = None,
    ) -> list[ChangeEvent]:
        """Filter entries; all criteria are optional and combined with AND."""
        results = []
        needle = text.lower() if text else None
        kind_value = kind.value if isinstance(kind, ChangeKind) else kind
        for entry in self._entries:
            if start and entry.timestamp < start:
                continue
            if end and entry.timestamp > end:
                continue
            if topic and entry.topic != topic:
                continue
            if kind_value and entry.kind.value != kind_value:
                continue
            if category and entry.category != category:
                continue
            if needle and needle not in json.dumps(entry.payload, default=str).lower():
                continue
            results.append(entry)
        return results

    def stats(self) -> dict[str, Any]:
        """Counts per category, kind and topic plus the covered time range."""
        if not self._entries:
            return {"total": 0, "by_category": {}, "by_kind": {}, "by_topic": {}, "range": None}
        return {
            "total": len(self._entries),
            "by_category": dict(Counter(e.category for e in self._entries)),
            "by_kind": dict(Counter(e.kind.value for e in self._entries)),
            "by_topic": dict(Counter(e.topic for e in self._entries)),
            "range": {
                "earliest": min(e.timestamp for e in self._entries).isoformat(),
                "latest": max(e.timestamp for e in self._entries).isoformat(),
            },
        }

    # -- Export --------------------------------------------------------------

    def export_jsonl(self, path: str | Path) -> int:
        """Write entries as JSON Lines. Returns the number written."""
        path = Path(path)
        with open(path, "w", encoding="utf-8") as f:
            for entry in self._entries:
                f.write(json.dumps(entry.to_dict(), default=str, ensure_ascii=False) + "\n")
        logger.info("Exported %d journal entries to %s", len(self._entries), path)
        return len(self._entries)
