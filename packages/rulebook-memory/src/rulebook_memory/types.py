"""Memory data types for the per-project knowledge store.

Records are the unit of stored knowledge; sessions group the records
produced during one continuous interaction. Search and timeline results
are deliberately compact (no ``content``) so callers fetch full records
only for the ids they actually need.
"""
from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from rulebook_core.errors import MemoryValidationError


class MemoryType(enum.Enum):
    BUGFIX = "bugfix"
    FEATURE = "feature"
    REFACTOR = "refactor"
    DECISION = "decision"
    DISCOVERY = "discovery"
    CHANGE = "change"
    OBSERVATION = "observation"

    @classmethod
    def parse(cls, value: MemoryType | str) -> MemoryType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise MemoryValidationError(
                "type", f"unknown memory type {value!r} (valid: {valid})"
            ) from None


class SessionStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class SearchMode(enum.Enum):
    LEXICAL = "lexical"
    VECTOR = "vector"
    HYBRID = "hybrid"

    @classmethod
    def parse(cls, value: SearchMode | str | None) -> SearchMode:
        if value is None:
            return cls.HYBRID
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "bm25":
            return cls.LEXICAL
        try:
            return cls(normalized)
        except ValueError:
            raise MemoryValidationError(
                "mode",
                f"unknown search mode {value!r}"
                " (valid: lexical, vector, hybrid)",
            ) from None


class MatchType(enum.Enum):
    LEXICAL = "lexical"
    VECTOR = "vector"
    BOTH = "both"


class IndexHealth(enum.Enum):
    GOOD = "good"
    DEGRADED = "degraded"
    NEEDS_REBUILD = "needs-rebuild"


@dataclass(frozen=True, slots=True)
class MemoryRecord:
    """A single stored piece of project knowledge.

    Attributes:
        id: Unique identifier, immutable once assigned
        type: Classification tag
        title: Short human-readable label
        content: Free-text body (privacy spans already stripped)
        project: Logical project the record belongs to
        tags: Free-text labels
        session_id: Session active when the record was created
        created_at: Unix timestamp of creation
        updated_at: Unix timestamp of the last content change
        accessed_at: Unix timestamp of the last full read (drives eviction)
    """

    title: str
    content: str
    project: str
    type: MemoryType = MemoryType.OBSERVATION
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    tags: tuple[str, ...] = ()
    session_id: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    accessed_at: float = field(default_factory=time.time)

    @property
    def searchable_text(self) -> str:
        return " ".join([self.title, self.content, *self.tags])

    @property
    def embedding_text(self) -> str:
        return f"{self.title} {self.content}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary for JSON serialization."""
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "content": self.content,
            "project": self.project,
            "tags": list(self.tags),
            "session_id": self.session_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "accessed_at": self.accessed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryRecord:
        """Create a MemoryRecord from a dictionary."""
        now = time.time()
        return cls(
            id=data["id"],
            type=MemoryType.parse(data.get("type", "observation")),
            title=data.get("title", ""),
            content=data.get("content", ""),
            project=data.get("project", ""),
            tags=tuple(data.get("tags", [])),
            session_id=data.get("session_id"),
            created_at=data.get("created_at", now),
            updated_at=data.get("updated_at", now),
            accessed_at=data.get("accessed_at", now),
        )


@dataclass(frozen=True, slots=True)
class MemorySession:
    """One continuous interaction that records are grouped under."""

    project: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    summary: str | None = None
    tool_calls: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project": self.project,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "summary": self.summary,
            "tool_calls": self.tool_calls,
        }


@dataclass(frozen=True, slots=True)
class SearchFilters:
    """Restrictions applied before ranking, identically in every mode."""

    type: MemoryType | None = None
    project: str | None = None
    since: float | None = None
    until: float | None = None

    def matches(
        self, *, type: MemoryType, project: str, created_at: float
    ) -> bool:
        if self.type is not None and type is not self.type:
            return False
        if self.project is not None and project != self.project:
            return False
        if self.since is not None and created_at < self.since:
            return False
        return not (self.until is not None and created_at > self.until)


@dataclass(frozen=True, slots=True)
class RecordSummary:
    """Record metadata without content, as hydrated for ranking."""

    id: str
    title: str
    type: MemoryType
    project: str
    created_at: float


@dataclass(frozen=True, slots=True)
class SearchResult:
    """A single compact search hit."""

    id: str
    title: str
    type: MemoryType
    score: float
    match_type: MatchType
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type.value,
            "score": self.score,
            "match_type": self.match_type.value,
            "created_at": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class SearchResponse:
    """Ranked compact results plus the size of the filtered candidate list."""

    results: list[SearchResult]
    total: int
    mode: SearchMode

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "total": self.total,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True, slots=True)
class TimelineEntry:
    """A compact record positioned relative to a timeline anchor."""

    id: str
    title: str
    type: MemoryType
    created_at: float
    position: str  # "before" | "anchor" | "after"
    offset: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type.value,
            "created_at": self.created_at,
            "position": self.position,
            "offset": self.offset,
        }


@dataclass(frozen=True, slots=True)
class EvictionResult:
    """Outcome of an eviction pass."""

    evicted_count: int = 0
    freed_bytes: int = 0
    target_reached: bool = True
    evicted_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "evicted_count": self.evicted_count,
            "freed_bytes": self.freed_bytes,
            "target_reached": self.target_reached,
        }


@dataclass(frozen=True, slots=True)
class MemoryStats:
    """Store-wide statistics, including index health."""

    record_count: int
    session_count: int
    db_size_bytes: int
    index_size_bytes: int
    max_size_bytes: int
    index_health: IndexHealth
    index_detail: str
    oldest_record: float | None = None
    newest_record: float | None = None

    @property
    def total_size_bytes(self) -> int:
        return self.db_size_bytes + self.index_size_bytes

    @property
    def usage_percent(self) -> float:
        return self.total_size_bytes / self.max_size_bytes * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_count": self.record_count,
            "session_count": self.session_count,
            "db_size_bytes": self.db_size_bytes,
            "index_size_bytes": self.index_size_bytes,
            "total_size_bytes": self.total_size_bytes,
            "max_size_bytes": self.max_size_bytes,
            "usage_percent": round(self.usage_percent, 4),
            "oldest_record": self.oldest_record,
            "newest_record": self.newest_record,
            "index_health": self.index_health.value,
            "index_detail": self.index_detail,
        }
