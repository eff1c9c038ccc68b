"""
Document store for loaded meeting agents.

Owns the session's AgentDocuments and everything derived from them:
a keyword index for relevance scoring, rendered context slices at three
detail levels, and token-budgeted context assembly. All other components
read documents through this store and never keep their own copies.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any, Iterable

from ..settings import CHARS_PER_TOKEN
from .models import (
    AgentDocument,
    BudgetedAgent,
    BudgetedContext,
    ContextLevel,
    ScoredAgent,
)

logger = logging.getLogger(__name__)


STOP_WORDS = frozenset({
    "the", "is", "at", "which", "on", "a", "an", "and", "or", "but",
    "in", "with", "to", "for", "of", "as", "by", "from", "what",
    "where", "when", "why", "how", "who", "about", "can", "could",
    "should", "would", "will", "are", "was", "were", "been", "be",
    "have", "has", "had", "do", "does", "did", "this", "that",
    "these", "those", "there", "here", "all", "each", "every",
    "both", "few", "more", "most", "other", "some", "such", "than",
    "too", "very", "just", "also", "now", "only", "then", "so",
})

# Relevance weights per field
NAME_WEIGHT = 10
SUMMARY_WEIGHT = 5
KEY_POINTS_WEIGHT = 3
ACTION_ITEMS_WEIGHT = 3
TRANSCRIPT_WEIGHT = 2
GENERAL_WEIGHT = 1

# Recency boost decays linearly from MAX to 0 over MAX * DECAY_DAYS days
RECENCY_BOOST_MAX = 5.0
RECENCY_DECAY_DAYS = 14.0

# Budget assembly stops once less than this many tokens remain
MIN_REMAINING_BUDGET = 100

SECTION_SEPARATOR = "\n\n---\n\n"
LEVELS_BY_DETAIL = (ContextLevel.FULL, ContextLevel.STANDARD, ContextLevel.SUMMARY)
TRUNCATION_MARKER = "...[truncated]"

_PUNCTUATION = re.compile(r"[^\w\s]")
_BULLET = re.compile(r"^\s*[-*•]|\d+\.", re.MULTILINE)


def extract_keywords(text: str) -> list[str]:
    """Lower-cased, de-duplicated, stop-word-filtered tokens of 3+ chars."""
    words = _PUNCTUATION.sub(" ", text.lower()).split()
    seen: dict[str, None] = {}
    for word in words:
        if len(word) > 2 and word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


def estimate_tokens(text: str | None) -> int:
    """Approximate token count (fixed characters-per-token ratio)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_text(text: str, max_length: int) -> str:
    """Cut text at a sentence or word boundary near max_length."""
    if not text or len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_sentence = truncated.rfind(". ")
    last_space = truncated.rfind(" ")

    if last_sentence > max_length * 0.7:
        truncated = truncated[: last_sentence + 1]
    elif last_space > max_length * 0.8:
        truncated = truncated[:last_space]

    return truncated + "..."


def count_bullet_points(text: str) -> int:
    """Count bullet (-, *, •) or numbered lines in a block of text."""
    if not text:
        return 0
    return len(_BULLET.findall(text))


class ContextStore:
    """
    Session-scoped store of agent documents.

    Usage:
        store = ContextStore()
        store.load_agents(records)
        ranked = store.query_agents("budget decisions", max_results=3)
        text = store.get_combined_context([a.id for a in ranked])
    """

    def __init__(self):
        self._agents: dict[str, AgentDocument] = {}
        self._search_text: dict[str, str] = {}
        self._keywords: dict[str, list[str]] = {}
        self.last_updated: datetime | None = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_agents(self, agents: Iterable[AgentDocument | dict[str, Any]]) -> None:
        """
        Replace the loaded document set.

        Dict records are validated into AgentDocuments; records without an
        id get a positional ``agent-{index}`` id.
        """
        self._agents.clear()
        self._search_text.clear()
        self._keywords.clear()

        for index, record in enumerate(agents):
            if isinstance(record, AgentDocument):
                agent = record
            else:
                data = dict(record)
                data.setdefault("id", f"agent-{index}")
                if not data["id"]:
                    data["id"] = f"agent-{index}"
                agent = AgentDocument.model_validate(data)

            if agent.id in self._agents:
                logger.warning(f"Duplicate agent id {agent.id}, keeping the later record")

            self._agents[agent.id] = agent
            text = self._build_search_text(agent)
            self._search_text[agent.id] = text
            self._keywords[agent.id] = extract_keywords(text)

        self.last_updated = datetime.now()
        logger.info(
            f"Loaded {len(self._agents)} agents "
            f"({len(self.get_active_agents())} active)"
        )

    @staticmethod
    def _build_search_text(agent: AgentDocument) -> str:
        return " ".join([
            agent.display_name,
            agent.summary,
            agent.key_points,
            agent.action_items,
            agent.sentiment,
            agent.transcript or "",
        ]).lower()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: str) -> AgentDocument | None:
        return self._agents.get(agent_id)

    def get_all_agents(self) -> list[AgentDocument]:
        return list(self._agents.values())

    def get_active_agents(self) -> list[AgentDocument]:
        return [a for a in self._agents.values() if a.enabled]

    def get_active_agent_ids(self) -> list[str]:
        return [a.id for a in self.get_active_agents()]

    def get_agent_names(self, agent_ids: Iterable[str] | None = None) -> list[str]:
        """Display names for the given ids (default: all active agents)."""
        if agent_ids is None:
            return [a.display_name for a in self.get_active_agents()]
        names = []
        for agent_id in agent_ids:
            agent = self._agents.get(agent_id)
            if agent:
                names.append(agent.display_name)
        return names

    def __len__(self) -> int:
        return len(self._agents)

    # ------------------------------------------------------------------
    # Relevance
    # ------------------------------------------------------------------

    def query_agents(
        self,
        query: str,
        max_results: int = 5,
        active_only: bool = True,
        min_score: float = 0,
    ) -> list[ScoredAgent]:
        """
        Rank agents by relevance to a query.

        Args:
            query: Natural-language query
            max_results: Maximum number of agents to return
            active_only: Only consider enabled agents
            min_score: Minimum score for inclusion

        Returns:
            Scored agents, highest score first
        """
        keywords = extract_keywords(query)
        candidates = self.get_active_agents() if active_only else self.get_all_agents()

        scored = [
            ScoredAgent(agent=agent, score=self.score_agent(agent, keywords))
            for agent in candidates
        ]
        scored = [s for s in scored if s.score >= min_score]
        scored.sort(key=lambda s: s.score, reverse=True)

        return scored[:max_results]

    def score_agent(
        self,
        agent: AgentDocument,
        keywords: list[str],
        now: datetime | None = None,
    ) -> float:
        """Weighted keyword hits plus a linearly decaying recency boost."""
        score = 0.0
        name = agent.display_name.lower()
        summary = agent.summary.lower()
        key_points = agent.key_points.lower()
        action_items = agent.action_items.lower()
        transcript = (agent.transcript or "").lower()
        general = self._search_text.get(agent.id) or self._build_search_text(agent)

        for keyword in keywords:
            if keyword in name:
                score += NAME_WEIGHT
            if keyword in summary:
                score += SUMMARY_WEIGHT
            if keyword in key_points:
                score += KEY_POINTS_WEIGHT
            if keyword in action_items:
                score += ACTION_ITEMS_WEIGHT
            if keyword in transcript:
                score += TRANSCRIPT_WEIGHT
            if keyword in general:
                score += GENERAL_WEIGHT

        score += self.recency_boost(agent, now)
        return score

    @staticmethod
    def recency_boost(agent: AgentDocument, now: datetime | None = None) -> float:
        meeting_date = agent.parsed_date
        if meeting_date is None:
            return 0.0
        days_since = ((now or datetime.now()) - meeting_date).total_seconds() / 86400
        return max(0.0, RECENCY_BOOST_MAX - days_since / RECENCY_DECAY_DAYS)

    # ------------------------------------------------------------------
    # Context rendering
    # ------------------------------------------------------------------

    def get_context_slice(
        self,
        agent_id: str,
        level: ContextLevel | str = ContextLevel.STANDARD,
    ) -> str:
        """Render one agent at the requested detail level ("" if unknown)."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return ""

        try:
            level = ContextLevel(level)
        except ValueError:
            level = ContextLevel.STANDARD

        header = f"Meeting: {agent.display_name} ({agent.date or 'No date'})"
        lines = [header, f"Summary: {agent.summary or 'N/A'}"]

        if level == ContextLevel.SUMMARY:
            return "\n".join(lines)

        lines.append(f"Key Points: {agent.key_points or 'N/A'}")
        lines.append(f"Action Items: {agent.action_items or 'N/A'}")

        if level == ContextLevel.FULL:
            lines.append(f"Sentiment: {agent.sentiment or 'N/A'}")
            if agent.transcript:
                lines.append(f"Transcript: {agent.transcript}")

        return "\n".join(lines)

    def get_combined_context(
        self,
        agent_ids: Iterable[str],
        level: ContextLevel | str = ContextLevel.STANDARD,
    ) -> str:
        slices = [self.get_context_slice(agent_id, level) for agent_id in agent_ids]
        return SECTION_SEPARATOR.join(s for s in slices if s)

    def estimate_tokens(self, text: str | None) -> int:
        return estimate_tokens(text)

    def get_context_with_budget(
        self,
        token_budget: int = 4000,
        query: str | None = None,
        prioritize_recent: bool = True,
        agent_ids: Iterable[str] | None = None,
        max_level: ContextLevel | str = ContextLevel.FULL,
    ) -> BudgetedContext:
        """
        Fit as much document detail as possible into a token budget.

        Candidates are ordered by relevance when a query is given, otherwise
        by date (newest first) when prioritize_recent is set. Each one gets
        the richest level of full, standard, summary that still fits.

        Args:
            token_budget: Total tokens available for document context
            query: Optional query for relevance ordering
            prioritize_recent: Order by date when no query is given
            agent_ids: Restrict candidates to these ids
            max_level: Richest level any agent may receive

        Returns:
            BudgetedContext with chosen levels and the token estimate
        """
        result = BudgetedContext(token_budget=token_budget)
        candidates = self.get_active_agents()
        if agent_ids is not None:
            allowed = set(agent_ids)
            candidates = [a for a in candidates if a.id in allowed]
        if not candidates:
            return result

        if query:
            candidate_ids = {a.id for a in candidates}
            ranked = self.query_agents(query, max_results=len(self._agents))
            candidates = [s.agent for s in ranked if s.agent.id in candidate_ids]
        elif prioritize_recent:
            candidates = sorted(
                candidates,
                key=lambda a: a.parsed_date or datetime.min,
                reverse=True,
            )

        levels = LEVELS_BY_DETAIL[LEVELS_BY_DETAIL.index(ContextLevel(max_level)):]
        remaining = token_budget
        for index, agent in enumerate(candidates):
            placed = False
            for level in levels:
                tokens = estimate_tokens(self.get_context_slice(agent.id, level))
                if tokens <= remaining:
                    result.agents.append(BudgetedAgent(agent=agent, level=level, tokens=tokens))
                    result.token_estimate += tokens
                    remaining -= tokens
                    placed = True
                    break

            if not placed:
                result.skipped_agent_ids.append(agent.id)

            if remaining < MIN_REMAINING_BUDGET:
                result.skipped_agent_ids.extend(a.id for a in candidates[index + 1:])
                break

        return result

    def render_budgeted_context(self, budgeted: BudgetedContext) -> str:
        """Render a BudgetedContext into prompt text."""
        return SECTION_SEPARATOR.join(
            self.get_context_slice(entry.agent.id, entry.level) for entry in budgeted.agents
        )

    # ------------------------------------------------------------------
    # Compact and code-facing exports
    # ------------------------------------------------------------------

    def get_compact_context(
        self,
        active_only: bool = True,
        max_summary_length: int = 500,
        include_sentiment: bool = False,
    ) -> dict:
        """Lightweight overview of every agent (for routing and code prompts)."""
        agents = self.get_active_agents() if active_only else self.get_all_agents()
        entries = []
        for agent in agents:
            entry = {
                "id": agent.id,
                "name": agent.display_name,
                "date": agent.date,
                "summary": truncate_text(agent.summary, max_summary_length),
                "key_points_count": count_bullet_points(agent.key_points),
                "action_items_count": count_bullet_points(agent.action_items),
                "has_transcript": bool(agent.transcript) and len(agent.transcript) > 100,
            }
            if include_sentiment:
                entry["sentiment"] = agent.sentiment
            entries.append(entry)

        return {
            "agents": entries,
            "stats": {
                "total": len(entries),
                "with_transcripts": sum(1 for e in entries if e["has_transcript"]),
            },
        }

    def get_relevant_compact_context(
        self,
        query: str,
        max_agents: int = 3,
        min_score: float = 2,
        max_summary_length: int = 800,
    ) -> dict:
        ranked = self.query_agents(query, max_results=max_agents, min_score=min_score)
        return {
            "agents": [
                {
                    "id": s.agent.id,
                    "name": s.agent.display_name,
                    "date": s.agent.date,
                    "relevance_score": s.score,
                    "summary": truncate_text(s.agent.summary, max_summary_length),
                    "key_points": truncate_text(s.agent.key_points, 600),
                    "action_items": truncate_text(s.agent.action_items, 400),
                }
                for s in ranked
            ],
            "stats": {
                "returned": len(ranked),
                "total_active": len(self.get_active_agents()),
                "query": query[:50],
            },
        }

    def to_python_dict(
        self,
        active_only: bool = True,
        include_transcript: bool = True,
        max_transcript_length: int = 10000,
    ) -> dict:
        """
        Export agents as plain dicts for the sandbox's ``context`` variable.

        Transcripts longer than max_transcript_length are cut and marked.
        """
        agents = self.get_active_agents() if active_only else self.get_all_agents()
        exported = []
        for agent in agents:
            record = agent.to_dict()
            transcript = agent.transcript or ""
            if not include_transcript:
                transcript = ""
            elif len(transcript) > max_transcript_length:
                transcript = transcript[:max_transcript_length] + TRUNCATION_MARKER
            record["transcript"] = transcript
            exported.append(record)

        return {
            "agents": exported,
            "metadata": {
                "total_agents": len(self._agents),
                "active_agents": len(self.get_active_agents()),
                "exported_at": datetime.now().isoformat(),
                "agent_names": [a["displayName"] for a in exported],
            },
        }

    def get_repl_context(self, max_transcript_length: int = 3000) -> dict:
        """Sandbox export with shorter transcripts to keep prompts small."""
        return self.to_python_dict(max_transcript_length=max_transcript_length)

    def get_stats(self) -> dict:
        return {
            "total_agents": len(self._agents),
            "active_agents": len(self.get_active_agents()),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "agent_ids": list(self._agents.keys()),
        }
