"""Data models for conversation memory."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MemoryType(str, Enum):
    """Kind of fact a memory slice records."""

    DECISION = "decision"
    ACTION = "action"
    RISK = "risk"
    CONSTRAINT = "constraint"
    ENTITY = "entity"
    OPEN_QUESTION = "open_question"
    EPISODE = "episode"


# Rendering order and labels for the state block
STATE_BLOCK_SECTIONS: list[tuple[MemoryType, str]] = [
    (MemoryType.DECISION, "Decisions"),
    (MemoryType.ACTION, "Actions"),
    (MemoryType.RISK, "Risks"),
    (MemoryType.ENTITY, "Entities"),
    (MemoryType.CONSTRAINT, "Constraints"),
    (MemoryType.OPEN_QUESTION, "Open Questions"),
]

IMPORTANCE_BY_TYPE: dict[MemoryType, float] = {
    MemoryType.DECISION: 0.9,
    MemoryType.RISK: 0.8,
    MemoryType.ACTION: 0.7,
    MemoryType.CONSTRAINT: 0.6,
    MemoryType.ENTITY: 0.5,
    MemoryType.OPEN_QUESTION: 0.4,
    MemoryType.EPISODE: 0.4,
}


@dataclass
class MemorySlice:
    """One extracted fact from a past answer."""

    id: str
    type: MemoryType
    text: str
    tags: list[str]
    entities: list[str]
    source_agent_ids: list[str]
    timestamp: datetime
    importance_score: float
    confidence: float
    content_hash: str
    token_estimate: int = 0
    recency_score: float = 1.0
    retrieval_count: int = 0
    last_retrieved_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "text": self.text,
            "tags": self.tags,
            "entities": self.entities,
            "source_agent_ids": self.source_agent_ids,
            "timestamp": self.timestamp.isoformat(),
            "importance_score": self.importance_score,
            "confidence": self.confidence,
            "content_hash": self.content_hash,
            "retrieval_count": self.retrieval_count,
        }


@dataclass
class StateItem:
    """A deduplicated entry in one state-block category."""

    text: str
    confidence: float
    importance: float
    content_hash: str
    timestamp: datetime


@dataclass
class StateBlock:
    """Rolling per-category lists of facts, deduplicated by content hash."""

    items: dict[MemoryType, list[StateItem]] = field(
        default_factory=lambda: {t: [] for t, _ in STATE_BLOCK_SECTIONS}
    )

    def add(self, item: StateItem, memory_type: MemoryType) -> bool:
        """Append unless the hash is already present. Returns True if added."""
        bucket = self.items.get(memory_type)
        if bucket is None:
            return False
        if any(existing.content_hash == item.content_hash for existing in bucket):
            return False
        bucket.append(item)
        return True

    def size(self) -> int:
        return sum(len(bucket) for bucket in self.items.values())


@dataclass
class WorkingWindow:
    """The last two user turns and a short rolling assistant summary."""

    last_user_turns: list[str] = field(default_factory=list)
    last_assistant_summary: str = ""


@dataclass
class RetrievalResult:
    """Slices selected for a query plus retrieval diagnostics."""

    slices: list[tuple[MemorySlice, float]]
    query_tags: list[str]
    query_entities: list[str]
    query_keywords: list[str]
    candidate_count: int

    @property
    def selected(self) -> list[MemorySlice]:
        return [s for s, _ in self.slices]
