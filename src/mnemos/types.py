"""Shared enumerations and value types for mnemos."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from mnemos.errors import ValidationError


class MemoryType(str, Enum):
    """Kinds of memory a caller can store."""

    OBSERVATION = "observation"
    DECISION = "decision"
    LEARNING = "learning"
    ERROR = "error"
    PATTERN = "pattern"
    DEAD_END = "dead_end"

    @classmethod
    def coerce(cls, value: Optional[str]) -> "MemoryType":
        if value is None:
            return cls.OBSERVATION
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown memory type: {value!r}") from None


class LinkRelation(str, Enum):
    """Fixed relation vocabulary for memory links."""

    RELATED = "related"
    CAUSED_BY = "caused_by"
    LEADS_TO = "leads_to"
    SIMILAR_TO = "similar_to"
    CONTRADICTS = "contradicts"
    IMPLEMENTS = "implements"
    SUPERSEDES = "supersedes"
    REFERENCES = "references"


class Corpus(str, Enum):
    """Searchable corpora. Each owns an independent lexical index."""

    MEMORIES = "memories"
    DOCS = "docs"
    CODE = "code"


class Recommendation(str, Enum):
    PROCEED = "proceed"
    WARN = "warn"
    INSUFFICIENT = "insufficient"


class RetentionTier(str, Enum):
    KEEP = "keep"
    WARN = "warn"
    DELETE = "delete"


class RunState(str, Enum):
    """Lifecycle of a graph maintenance run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class InvalidationReason(str, Enum):
    SUPERSEDED = "superseded"
    SYSTEM_CLEANUP = "system_cleanup"


# ---------------------------------------------------------------------------
# Validity -- tagged variant replacing the "invalidated_by = 0" sentinel
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Active:
    """Memory is current and visible to default searches."""

    @property
    def is_active(self) -> bool:
        return True


@dataclass(frozen=True)
class InvalidatedBy:
    """Memory was superseded by a newer memory."""

    memory_id: str

    @property
    def is_active(self) -> bool:
        return False


@dataclass(frozen=True)
class SystemInvalidated:
    """Memory was soft-deleted by retention cleanup and may be restored."""

    @property
    def is_active(self) -> bool:
        return False


Validity = Union[Active, InvalidatedBy, SystemInvalidated]


def validity_from_columns(invalidated_by: Optional[str], reason: Optional[str]) -> Validity:
    """Rebuild the tagged validity from its persisted columns."""
    if reason is None:
        return Active()
    if reason == InvalidationReason.SYSTEM_CLEANUP.value:
        return SystemInvalidated()
    return InvalidatedBy(invalidated_by or "")
