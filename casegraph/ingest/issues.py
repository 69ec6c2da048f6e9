"""Issues accumulated across ingestion stages."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from casegraph.errors import CasegraphError


class Severity(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# Error kinds that abort the final commit
FATAL_KINDS = frozenset({
    "DuplicateEntityId", "DuplicateType", "UnknownType", "ParseError", "IOError",
})


@dataclass
class Issue:
    """One problem found while ingesting a source."""
    kind: str
    severity: Severity
    message: str
    record_index: int | None = None
    field: str | None = None

    @classmethod
    def from_error(
        cls,
        error: CasegraphError,
        severity: Severity = Severity.ERROR,
        record_index: int | None = None,
        field: str | None = None,
    ) -> "Issue":
        return cls(
            kind=error.kind,
            severity=severity,
            message=error.message,
            record_index=record_index if record_index is not None else error.details.get("record_index"),
            field=field if field is not None else error.details.get("field"),
        )

    def is_fatal(self, strict: bool = False) -> bool:
        if self.severity is not Severity.ERROR:
            return False
        if self.kind in FATAL_KINDS:
            return True
        return strict and self.kind == "InvalidProperty"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.record_index is not None:
            data["recordIndex"] = self.record_index
        if self.field is not None:
            data["field"] = self.field
        return data


def has_fatal(issues: Iterable[Issue], strict: bool = False) -> bool:
    return any(issue.is_fatal(strict) for issue in issues)
