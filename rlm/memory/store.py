"""
Structured conversation memory.

After each completed answer the store extracts bullet-style facts under
recognised headings (decisions, actions, risks, ...) into an append-only
slice log, merges them into a hash-deduplicated state block, and keeps a
working window of the most recent turns. Retrieval scores slices against a
new query with per-tag and per-source caps so one topic cannot dominate.
"""

from __future__ import annotations

import hashlib
import itertools
import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Iterable

from ..context.store import STOP_WORDS, estimate_tokens, extract_keywords
from .models import (
    IMPORTANCE_BY_TYPE,
    STATE_BLOCK_SECTIONS,
    MemorySlice,
    MemoryType,
    RetrievalResult,
    StateBlock,
    StateItem,
    WorkingWindow,
)

logger = logging.getLogger(__name__)

_HEADING = re.compile(
    r"^(decisions?|actions?|risks?|constraints?|entities?|open questions?)[:\s-]*",
    re.IGNORECASE,
)
_BULLET = re.compile(r"^[-•\d]")
_BULLET_PREFIX = re.compile(r"^[-•\d.\s]+")
_ENTITY = re.compile(r"\b[A-Z][a-zA-Z0-9_-]{2,}\b")
_WHITESPACE = re.compile(r"\s+")

_QUERY_TAG_PATTERNS: list[tuple[re.Pattern, MemoryType]] = [
    (re.compile(r"\bdecisions?\b"), MemoryType.DECISION),
    (re.compile(r"\baction(s| items)?\b"), MemoryType.ACTION),
    (re.compile(r"\brisks?\b"), MemoryType.RISK),
    (re.compile(r"\bconstraints?\b"), MemoryType.CONSTRAINT),
    (re.compile(r"\bentit(y|ies)\b"), MemoryType.ENTITY),
    (re.compile(r"\bopen questions?\b"), MemoryType.OPEN_QUESTION),
    (re.compile(r"\bepisodes?\b"), MemoryType.EPISODE),
]

MAX_ENTITIES = 8
SUMMARY_MAX_CHARS = 320
SUMMARY_MIN_SENTENCE_CUT = 120
CLASSIFIED_CONFIDENCE = 0.6
EPISODE_CONFIDENCE = 0.4
RECENCY_WINDOW_DAYS = 30


def content_hash(text: str) -> str:
    normalized = _WHITESPACE.sub(" ", text.strip().lower())
    return "h" + hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:16]


def extract_entities(text: str, exclude_stop_words: bool = False) -> list[str]:
    """Capitalised tokens of 3+ chars, de-duplicated, at most eight."""
    found: dict[str, None] = {}
    for match in _ENTITY.findall(text or ""):
        if exclude_stop_words and match.lower() in STOP_WORDS:
            continue
        found.setdefault(match, None)
    return list(found)[:MAX_ENTITIES]


def summarize_response(response: str) -> str:
    """Whitespace-collapsed response, cut to about 320 chars at a sentence end."""
    if not response:
        return ""
    trimmed = _WHITESPACE.sub(" ", response).strip()
    if len(trimmed) <= SUMMARY_MAX_CHARS:
        return trimmed
    cutoff = trimmed.rfind(".", 0, SUMMARY_MAX_CHARS + 1)
    if cutoff > SUMMARY_MIN_SENTENCE_CUT:
        return trimmed[: cutoff + 1]
    return trimmed[:SUMMARY_MAX_CHARS] + "..."


def infer_tags(query: str) -> list[str]:
    lowered = (query or "").lower()
    return [t.value for pattern, t in _QUERY_TAG_PATTERNS if pattern.search(lowered)]


def _normalize_heading(label: str) -> MemoryType:
    label = label.lower()
    if label.startswith("decision"):
        return MemoryType.DECISION
    if label.startswith("action"):
        return MemoryType.ACTION
    if label.startswith("risk"):
        return MemoryType.RISK
    if label.startswith("constraint"):
        return MemoryType.CONSTRAINT
    if label.startswith("entit"):
        return MemoryType.ENTITY
    if label.startswith("open"):
        return MemoryType.OPEN_QUESTION
    return MemoryType.EPISODE


class MemoryStore:
    """
    Conversation memory: slice log, state block and working window.

    Memory is keyed by conversation, not by document set, so reloading
    agents does not clear it; call reset() to start a new conversation.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock
        self._ids = itertools.count(1)
        self.reset()

    def reset(self) -> None:
        self.slices: list[MemorySlice] = []
        self.state_block = StateBlock()
        self.working_window = WorkingWindow()
        self.last_captured_at: datetime | None = None

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def capture_completion(
        self,
        query: str | None,
        response: str | None,
        agent_ids: Iterable[str] = (),
    ) -> list[MemorySlice]:
        """
        Record one completed turn.

        Args:
            query: The user's question
            response: The final answer text
            agent_ids: Documents the answer drew on

        Returns:
            The slices appended to the log
        """
        if not query and not response:
            return []

        self._update_working_window(query, response)

        now = self.clock()
        source_ids = list(agent_ids)
        captured = []
        for memory_type, text, confidence in self._extract(response or ""):
            entry = MemorySlice(
                id=f"mem-{next(self._ids)}",
                type=memory_type,
                text=text,
                tags=[memory_type.value],
                entities=extract_entities(text),
                source_agent_ids=source_ids,
                timestamp=now,
                importance_score=IMPORTANCE_BY_TYPE[memory_type],
                confidence=confidence,
                content_hash=content_hash(text),
                token_estimate=estimate_tokens(text),
            )
            self.slices.append(entry)
            self.state_block.add(
                StateItem(
                    text=entry.text,
                    confidence=entry.confidence,
                    importance=entry.importance_score,
                    content_hash=entry.content_hash,
                    timestamp=now,
                ),
                memory_type,
            )
            captured.append(entry)

        self.last_captured_at = now
        logger.debug(f"Captured {len(captured)} memory slices")
        return captured

    def _update_working_window(self, query: str | None, response: str | None) -> None:
        if query:
            self.working_window.last_user_turns = [query, *self.working_window.last_user_turns][:2]
        if response:
            self.working_window.last_assistant_summary = summarize_response(response)

    @staticmethod
    def _extract(response: str) -> list[tuple[MemoryType, str, float]]:
        buckets: dict[MemoryType, list[str]] = {t: [] for t, _ in STATE_BLOCK_SECTIONS}
        active: MemoryType | None = None

        for raw in response.split("\n"):
            line = raw.strip()
            if not line:
                continue

            heading = _HEADING.match(line)
            if heading:
                active = _normalize_heading(heading.group(1))
                remainder = line[heading.end():].strip()
                if remainder:
                    buckets[active].append(remainder)
                continue

            if active is not None and _BULLET.match(line):
                text = _BULLET_PREFIX.sub("", line).strip()
                if text:
                    buckets[active].append(text)
                continue

            active = None

        extracted = [
            (memory_type, text, CLASSIFIED_CONFIDENCE)
            for memory_type, _ in STATE_BLOCK_SECTIONS
            for text in buckets[memory_type]
        ]

        if not extracted:
            fallback = summarize_response(response)
            if fallback:
                extracted.append((MemoryType.EPISODE, fallback, EPISODE_CONFIDENCE))

        return extracted

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_state_block(self, token_budget: int | None = None) -> str:
        """
        Render the state block as labelled bullet sections.

        When a budget is given, the least important and then oldest items
        are dropped until the rendering fits.
        """
        kept = {t: list(items) for t, items in self.state_block.items.items()}
        rendered = self._render(kept)
        if token_budget is None or estimate_tokens(rendered) <= token_budget:
            return rendered

        removal_order = sorted(
            ((t, item) for t, items in kept.items() for item in items),
            key=lambda pair: (pair[1].importance, pair[1].timestamp),
        )
        for memory_type, item in removal_order:
            kept[memory_type].remove(item)
            rendered = self._render(kept)
            if estimate_tokens(rendered) <= token_budget:
                break

        return rendered

    @staticmethod
    def _render(items: dict[MemoryType, list[StateItem]]) -> str:
        sections = []
        for memory_type, label in STATE_BLOCK_SECTIONS:
            bucket = items.get(memory_type) or []
            if bucket:
                lines = "\n".join(f"- {item.text}" for item in bucket)
                sections.append(f"{label}:\n{lines}")
        return "\n\n".join(sections)

    def render_working_window(self) -> str:
        parts = []
        if self.working_window.last_user_turns:
            turns = "\n".join(f"- {turn}" for turn in self.working_window.last_user_turns)
            parts.append(f"Recent User Turns:\n{turns}")
        if self.working_window.last_assistant_summary:
            parts.append(f"Last Assistant Summary:\n{self.working_window.last_assistant_summary}")
        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def retrieve_slices(
        self,
        query: str,
        tags: list[str] | None = None,
        entities: list[str] | None = None,
        max_results: int = 6,
        max_per_tag: int = 2,
        max_per_agent: int = 2,
        allowed_agent_ids: Iterable[str] | None = None,
        recency_window: timedelta | None = None,
        update_stats: bool = False,
    ) -> RetrievalResult:
        """
        Score and select memory slices relevant to a query.

        Tags and entities are inferred from the query when not given. A
        slice must share at least one tag and one entity with the query
        when those are non-empty. Selection skips duplicate hashes, slices
        whose source agents already reached max_per_agent, and slices
        whose tags all reached max_per_tag.
        """
        now = self.clock()
        query_tags = tags if tags is not None else infer_tags(query)
        query_entities = (
            entities if entities is not None
            else extract_entities(query, exclude_stop_words=True)
        )
        query_keywords = extract_keywords(query or "")
        allowed = set(allowed_agent_ids) if allowed_agent_ids else None

        candidates = []
        for entry in self.slices:
            if recency_window and now - entry.timestamp > recency_window:
                continue
            if allowed and not allowed.intersection(entry.source_agent_ids):
                continue
            if query_tags and not set(entry.tags).intersection(query_tags):
                continue
            if query_entities and not set(entry.entities).intersection(query_entities):
                continue
            candidates.append(entry)

        scored = sorted(
            ((entry, self._score(entry, query_tags, query_entities, query_keywords, now))
             for entry in candidates),
            key=lambda pair: pair[1],
            reverse=True,
        )

        selected: list[tuple[MemorySlice, float]] = []
        seen_hashes: set[str] = set()
        tag_counts: dict[str, int] = {}
        agent_counts: dict[str, int] = {}

        for entry, score in scored:
            if len(selected) >= max_results:
                break
            if entry.content_hash in seen_hashes:
                continue
            if max_per_agent and any(
                agent_counts.get(a, 0) >= max_per_agent for a in entry.source_agent_ids
            ):
                continue
            if max_per_tag and entry.tags and all(
                tag_counts.get(t, 0) >= max_per_tag for t in entry.tags
            ):
                continue

            selected.append((entry, score))
            seen_hashes.add(entry.content_hash)
            for tag in entry.tags:
                tag_counts[tag] = tag_counts.get(tag, 0) + 1
            for agent_id in entry.source_agent_ids:
                agent_counts[agent_id] = agent_counts.get(agent_id, 0) + 1

        if update_stats:
            for entry, _ in selected:
                entry.retrieval_count += 1
                entry.last_retrieved_at = now

        return RetrievalResult(
            slices=selected,
            query_tags=query_tags,
            query_entities=query_entities,
            query_keywords=query_keywords,
            candidate_count=len(candidates),
        )

    @staticmethod
    def _score(
        entry: MemorySlice,
        query_tags: list[str],
        query_entities: list[str],
        query_keywords: list[str],
        now: datetime,
    ) -> float:
        tag_score = sum(1 for t in entry.tags if t in query_tags) * 2
        entity_score = sum(1 for e in entry.entities if e in query_entities) * 2

        age_days = (now - entry.timestamp).total_seconds() / 86400
        recency = max(0.0, 1 - age_days / RECENCY_WINDOW_DAYS)
        entry.recency_score = recency

        lowered = entry.text.lower()
        keyword_score = sum(0.5 for k in query_keywords if k in lowered)

        return tag_score + entity_score + recency * 1.5 + entry.importance_score * 1.2 + keyword_score

    def get_stats(self) -> dict:
        return {
            "total_slices": len(self.slices),
            "state_block_size": self.state_block.size(),
            "last_captured_at": self.last_captured_at.isoformat() if self.last_captured_at else None,
        }
