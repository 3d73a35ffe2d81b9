"""
Data structures for semantic memory.

A Memory is a shared envelope (id, type, content, timestamp, metadata,
embedding) plus an optional payload whose shape is fixed by the memory type.
Payloads are plain dataclasses tagged by `kind`; the envelope refuses a
payload whose kind disagrees with its type.
"""

import json
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Literal, Optional, Union

from ..errors import ValidationError

MemoryType = Literal["conversation", "insight", "learning", "fact", "action_item"]
MEMORY_TYPES: tuple[str, ...] = ("conversation", "insight", "learning", "fact", "action_item")


@dataclass
class ConversationPayload:
    """A captured conversation."""
    kind: ClassVar[str] = "conversation"
    list_fields: ClassVar[frozenset] = frozenset({"participants", "tags"})
    datetime_fields: ClassVar[frozenset] = frozenset()

    participants: list[str] = field(default_factory=list)
    message_count: int = 0
    duration: Optional[float] = None  # milliseconds
    summary: Optional[str] = None
    tags: list[str] = field(default_factory=list)


@dataclass
class InsightPayload:
    """A pattern, preference or goal distilled from other memories."""
    kind: ClassVar[str] = "insight"
    list_fields: ClassVar[frozenset] = frozenset({"source_memories"})
    datetime_fields: ClassVar[frozenset] = frozenset()

    category: str = "pattern"  # pattern, preference, goal, strategy, relationship
    confidence: float = 0.0  # 0-1
    source_memories: list[str] = field(default_factory=list)


@dataclass
class LearningPayload:
    """A piece of knowledge picked up in some domain."""
    kind: ClassVar[str] = "learning"
    list_fields: ClassVar[frozenset] = frozenset({"source_memories"})
    datetime_fields: ClassVar[frozenset] = frozenset()

    domain: str = "general"
    importance: str = "medium"  # low, medium, high
    source_memories: list[str] = field(default_factory=list)


@dataclass
class FactPayload:
    """A specific factual statement."""
    kind: ClassVar[str] = "fact"
    list_fields: ClassVar[frozenset] = frozenset()
    datetime_fields: ClassVar[frozenset] = frozenset({"last_updated"})

    fact_type: str = "other"  # personal, project, preference, contact, other
    verified: bool = False
    last_updated: Optional[datetime] = None


@dataclass
class ActionItemPayload:
    """A task extracted from a conversation."""
    kind: ClassVar[str] = "action_item"
    list_fields: ClassVar[frozenset] = frozenset()
    datetime_fields: ClassVar[frozenset] = frozenset({"due_date"})

    status: str = "open"  # open, in_progress, completed, cancelled
    priority: str = "medium"  # low, medium, high, urgent
    due_date: Optional[datetime] = None
    assignee: Optional[str] = None
    project: Optional[str] = None


MemoryPayload = Union[
    ConversationPayload,
    InsightPayload,
    LearningPayload,
    FactPayload,
    ActionItemPayload,
]

PAYLOAD_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (ConversationPayload, InsightPayload, LearningPayload, FactPayload, ActionItemPayload)
}


def payload_to_metadata(payload: MemoryPayload) -> dict[str, Any]:
    """Flatten a payload into scalar metadata values."""
    metadata = {}
    for f in fields(payload):
        value = getattr(payload, f.name)
        if value is None:
            continue
        if f.name in payload.list_fields:
            metadata[f.name] = json.dumps(list(value))
        elif f.name in payload.datetime_fields:
            metadata[f.name] = value.isoformat()
        else:
            metadata[f.name] = value
    return metadata


def payload_from_metadata(kind: str, metadata: dict[str, Any]) -> Optional[MemoryPayload]:
    """
    Rebuild the payload for `kind`, consuming its keys from `metadata`.

    Returns None when the type has no payload keys present at all.
    """
    cls = PAYLOAD_TYPES.get(kind)
    if cls is None:
        return None

    values = {}
    for f in fields(cls):
        if f.name not in metadata:
            continue
        raw = metadata.pop(f.name)
        if f.name in cls.list_fields:
            values[f.name] = json.loads(raw) if isinstance(raw, str) else list(raw or [])
        elif f.name in cls.datetime_fields:
            values[f.name] = datetime.fromisoformat(raw) if raw else None
        else:
            values[f.name] = raw

    if not values:
        return None
    return cls(**values)


@dataclass
class Memory:
    """
    A stored content unit.

    `id` may be left empty; the store assigns one. `embedding` is None when
    the memory was stored without a vector (e.g. embedding generation failed).
    """
    content: str
    type: MemoryType = "conversation"
    id: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: Optional[list[float]] = None
    payload: Optional[MemoryPayload] = None

    def __post_init__(self):
        if self.type not in MEMORY_TYPES:
            raise ValidationError(
                f"Unknown memory type: {self.type}",
                {"type": self.type, "valid_types": list(MEMORY_TYPES)},
            )
        if not isinstance(self.content, str) or not self.content.strip():
            raise ValidationError("Memory content must be a non-empty string")
        if self.payload is not None and self.payload.kind != self.type:
            raise ValidationError(
                f"Payload of kind '{self.payload.kind}' does not match memory type '{self.type}'"
            )

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)


@dataclass
class TimeRange:
    """Inclusive time window; either bound may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, moment: datetime) -> bool:
        moment = to_local_naive(moment)
        if self.start is not None and moment < to_local_naive(self.start):
            return False
        if self.end is not None and moment > to_local_naive(self.end):
            return False
        return True


def to_local_naive(moment: datetime) -> datetime:
    """Timestamps are compared as naive local time; aware values are converted."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)


@dataclass
class SearchQuery:
    """A semantic search request against the memory store."""
    query: Optional[str] = None
    limit: Optional[int] = None
    min_relevance_score: Optional[float] = None
    types: Optional[list[str]] = None
    time_range: Optional[TimeRange] = None


@dataclass
class SearchResult:
    """A search result from the memory store."""
    id: str
    memory: Memory
    relevance_score: float  # 0-1, higher is more relevant
    distance: float  # Raw cosine distance
    snippet: str = ""


@dataclass
class BatchFailure:
    id: str
    error: str


@dataclass
class BatchOperationResult:
    """Per-item outcome of a best-effort batch operation."""
    successful: list[str] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)
    total_processed: int = 0


@dataclass
class FailedEmbeddingRecord:
    """A memory whose embedding could not be generated yet."""
    memory_id: str
    content: str
    timestamp: datetime
    error: str
    retry_count: int = 0


@dataclass
class MemoryStoreStats:
    """Storage statistics for operational visibility."""
    total_memories: int
    memories_by_type: dict[str, int]
    oldest_memory: Optional[datetime]
    newest_memory: Optional[datetime]
    average_memory_size: float  # characters
    failed_embeddings: int
