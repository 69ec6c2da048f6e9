"""Error kinds raised by the graph core.

Every error carries a stable ``kind`` discriminator plus structured
details (offending id, field, record index) so callers can render it
without parsing the message.
"""

from __future__ import annotations

from typing import Any


class CasegraphError(Exception):
    """Base class for every error raised by the core."""

    kind = "Error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, **self.details}


class NotFound(CasegraphError):
    """Missing entity, link, or type id."""
    kind = "NotFound"


class DuplicateType(CasegraphError):
    """A type id is already registered with different metadata."""
    kind = "DuplicateType"


class TypeInUse(CasegraphError):
    """A type cannot be removed while entities still reference it."""
    kind = "TypeInUse"


class DuplicateEntityId(CasegraphError):
    """Two ingested records (or a record and the store) share an explicit id."""
    kind = "DuplicateEntityId"


class UnknownType(CasegraphError):
    """Reference to a type absent from the schema registry."""
    kind = "UnknownType"


class SelfLoop(CasegraphError):
    """Link whose source and target are the same entity."""
    kind = "SelfLoop"


class InvalidProperty(CasegraphError):
    """A validator produced an error-severity outcome."""
    kind = "InvalidProperty"


class Cancelled(CasegraphError):
    """Cooperative cancellation fired."""
    kind = "Cancelled"


class OrphanProposal(CasegraphError):
    """A relationship proposal references an entity that no longer exists."""
    kind = "OrphanProposal"


class IngestionIOError(CasegraphError):
    """Reading an external source failed."""
    kind = "IOError"


class ParseError(CasegraphError):
    """An external source could not be parsed."""
    kind = "ParseError"


class UndetectableDelimiter(ParseError):
    """Delimiter sniffing failed for a tabular source."""
