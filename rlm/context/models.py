"""Data models for loaded agent documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ContextLevel(str, Enum):
    """How much of a document to render into a prompt."""

    SUMMARY = "summary"
    STANDARD = "standard"
    FULL = "full"


class AgentDocument(BaseModel):
    """
    One ingested meeting record.

    Immutable once loaded. Accepts both snake_case and the camelCase keys
    produced by the ingestion layer (``displayName``, ``keyPoints``, ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    display_name: str = Field(default="Untitled", alias="displayName")
    date: str | None = None
    enabled: bool = True
    summary: str = ""
    key_points: str = Field(default="", alias="keyPoints")
    action_items: str = Field(default="", alias="actionItems")
    sentiment: str = ""
    transcript: str | None = None
    suggested_perspective: str | None = Field(default=None, alias="suggestedPerspective")

    @field_validator("summary", "key_points", "action_items", "sentiment", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("display_name", mode="before")
    @classmethod
    def _default_name(cls, value):
        return value or "Untitled"

    @property
    def parsed_date(self) -> datetime | None:
        """The meeting date as a naive datetime, or None if missing/invalid."""
        if not self.date:
            return None
        try:
            parsed = datetime.fromisoformat(self.date.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed.replace(tzinfo=None)

    def to_dict(self) -> dict:
        """Convert to the camelCase dict shape the sandbox helpers expect."""
        return {
            "id": self.id,
            "displayName": self.display_name,
            "date": self.date,
            "enabled": self.enabled,
            "summary": self.summary,
            "keyPoints": self.key_points,
            "actionItems": self.action_items,
            "sentiment": self.sentiment,
            "transcript": self.transcript or "",
        }


@dataclass
class ScoredAgent:
    """An agent with its relevance score for a query."""

    agent: AgentDocument
    score: float

    @property
    def id(self) -> str:
        return self.agent.id


@dataclass
class BudgetedAgent:
    """An agent included in a budgeted context at a chosen detail level."""

    agent: AgentDocument
    level: ContextLevel
    tokens: int


@dataclass
class BudgetedContext:
    """Result of fitting documents into a token budget."""

    agents: list[BudgetedAgent] = field(default_factory=list)
    token_estimate: int = 0
    token_budget: int = 0
    skipped_agent_ids: list[str] = field(default_factory=list)

    @property
    def agent_ids(self) -> list[str]:
        return [a.agent.id for a in self.agents]

    @property
    def trimmed(self) -> bool:
        """True if any candidate was dropped or rendered below full detail."""
        if self.skipped_agent_ids:
            return True
        return any(a.level != ContextLevel.FULL for a in self.agents)
