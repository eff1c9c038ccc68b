"""Data models for query decomposition, execution and aggregation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..context.models import ContextLevel
from ..exceptions import InvalidTransitionError


class QueryIntent(str, Enum):
    """What the user wants out of the documents."""

    FACTUAL = "factual"  # "What was decided about X?"
    COMPARATIVE = "comparative"  # "How does X differ from Y?"
    AGGREGATIVE = "aggregative"  # "What are all the action items?"
    ANALYTICAL = "analytical"  # "What patterns emerge across meetings?"
    TEMPORAL = "temporal"  # "How has X evolved over time?"


class QueryComplexity(str, Enum):
    """How much decomposition a query needs."""

    SIMPLE = "simple"
    COMPARATIVE = "comparative"
    AGGREGATE = "aggregate"
    EXPLORATORY = "exploratory"


class StrategyType(str, Enum):
    """Execution strategy chosen by the decomposer."""

    DIRECT = "direct"
    PARALLEL = "parallel"
    MAP_REDUCE = "map-reduce"
    MAP_REDUCE_DEBATE = "map-reduce-debate"
    ITERATIVE = "iterative"


class SubQueryType(str, Enum):
    """Role of a sub-query within a plan."""

    DIRECT = "direct"
    MAP = "map"
    REDUCE = "reduce"
    DEBATE = "debate"
    EXPLORATORY = "exploratory"
    FOLLOWUP = "followup"


class SubQueryStatus(str, Enum):
    """Per-sub-query execution state."""

    PENDING = "pending"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED_RETRY = "failed_retry"
    FAILED_FINAL = "failed_final"


TERMINAL_STATUSES = frozenset({SubQueryStatus.SUCCEEDED, SubQueryStatus.FAILED_FINAL})

_ALLOWED_TRANSITIONS: dict[SubQueryStatus, frozenset[SubQueryStatus]] = {
    SubQueryStatus.PENDING: frozenset({SubQueryStatus.EXECUTING}),
    SubQueryStatus.EXECUTING: frozenset({
        SubQueryStatus.SUCCEEDED,
        SubQueryStatus.FAILED_RETRY,
        SubQueryStatus.FAILED_FINAL,
    }),
    SubQueryStatus.FAILED_RETRY: frozenset({SubQueryStatus.EXECUTING}),
    SubQueryStatus.SUCCEEDED: frozenset(),
    SubQueryStatus.FAILED_FINAL: frozenset(),
}


@dataclass(frozen=True)
class Perspective:
    """A labelled analytical stance assigned to a sub-query."""

    id: str
    label: str
    description: str
    prompt_prefix: str
    traits: tuple[str, ...] = ()
    weight: float = 1.0
    triggers: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {"id": self.id, "label": self.label, "weight": self.weight}


@dataclass
class QueryClassification:
    """Output of a query classifier."""

    intent: QueryIntent
    complexity: QueryComplexity
    mentions_meeting: bool = False
    mentions_timeframe: bool = False
    scope_min: int = 1
    scope_max: int = 3

    def to_dict(self) -> dict:
        return {
            "intent": self.intent.value,
            "complexity": self.complexity.value,
            "mentions_meeting": self.mentions_meeting,
            "mentions_timeframe": self.mentions_timeframe,
            "estimated_scope": {"min": self.scope_min, "max": self.scope_max},
        }


@dataclass
class Strategy:
    """The chosen strategy and why."""

    type: StrategyType
    reason: str
    parallelization: bool
    estimated_calls: int

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "reason": self.reason,
            "parallelization": self.parallelization,
            "estimated_calls": self.estimated_calls,
        }


@dataclass
class SubQuery:
    """
    One unit of decomposed work.

    Created by the decomposer; the executor only changes ``status`` (through
    ``transition``) and, for dynamic follow-ups, fills in ``query`` and
    ``target_agent_ids`` once the initial answer is known.
    """

    id: str
    type: SubQueryType
    query: str | None
    target_agent_ids: list[str] = field(default_factory=list)
    context_level: ContextLevel = ContextLevel.STANDARD
    priority: int = 1
    depends_on: list[str] = field(default_factory=list)
    agent_name: str | None = None
    perspective: Perspective | None = None
    is_dynamic: bool = False
    status: SubQueryStatus = SubQueryStatus.PENDING
    status_history: list[SubQueryStatus] = field(default_factory=list)

    def transition(self, new_status: SubQueryStatus) -> None:
        """Move to a new status, enforcing the state machine."""
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Sub-query {self.id}: {self.status.value} -> {new_status.value} not allowed"
            )
        self.status_history.append(self.status)
        self.status = new_status

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "query": self.query,
            "target_agent_ids": self.target_agent_ids,
            "context_level": self.context_level.value,
            "priority": self.priority,
            "depends_on": self.depends_on,
            "agent_name": self.agent_name,
            "perspective": self.perspective.id if self.perspective else None,
            "is_dynamic": self.is_dynamic,
            "status": self.status.value,
        }


@dataclass
class Decomposition:
    """A full plan for one query."""

    original_query: str
    classification: QueryClassification
    strategy: Strategy
    relevant_agent_ids: list[str]
    sub_queries: list[SubQuery]
    total_agents: int = 0
    active_agents: int = 0
    decomposed_at: datetime = field(default_factory=datetime.now)
    # Distinct perspectives a debate needs; set from DecomposerConfig
    debate_min_perspectives: int = 3
    # Rendered conversation memory, prepended to sub-query and reduce prompts
    memory_context: str = ""

    def get(self, query_id: str) -> SubQuery | None:
        for sub_query in self.sub_queries:
            if sub_query.id == query_id:
                return sub_query
        return None

    def to_dict(self) -> dict:
        return {
            "original_query": self.original_query,
            "classification": self.classification.to_dict(),
            "strategy": self.strategy.to_dict(),
            "relevant_agent_ids": self.relevant_agent_ids,
            "sub_queries": [sq.to_dict() for sq in self.sub_queries],
        }


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one sub-query (or of the debate phase)."""

    query_id: str
    type: SubQueryType
    response: str | None
    success: bool
    error: str | None = None
    agent_ids: tuple[str, ...] = ()
    agent_name: str | None = None
    perspective: Perspective | None = None
    depends_on: tuple[str, ...] = ()
    tensions: tuple[str, ...] = ()
    attempts: int = 1

    @property
    def source_label(self) -> str:
        if self.perspective:
            return self.perspective.label
        return self.agent_name or "Meeting"

    def to_dict(self) -> dict:
        return {
            "query_id": self.query_id,
            "type": self.type.value,
            "success": self.success,
            "error": self.error,
            "agent_ids": list(self.agent_ids),
            "agent_name": self.agent_name,
            "perspective": self.perspective.id if self.perspective else None,
            "attempts": self.attempts,
        }


@dataclass
class ExecutionLogEntry:
    """One structured event in an execution run."""

    phase: str
    query_id: str
    message: str
    depth: int
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase,
            "query_id": self.query_id,
            "message": self.message,
            "depth": self.depth,
        }


@dataclass
class ExecutionReport:
    """Everything the executor produced for one plan."""

    success: bool
    results: list[ExecutionResult]
    strategy: StrategyType | None = None
    error: str | None = None
    execution_time: float = 0.0
    depth: int = 0
    had_debate_phase: bool = False
    log: list[ExecutionLogEntry] = field(default_factory=list)

    @property
    def successful(self) -> list[ExecutionResult]:
        return [r for r in self.results if r.success and r.response]

    @property
    def failed(self) -> list[ExecutionResult]:
        return [r for r in self.results if not r.success]


@dataclass
class AggregationResult:
    """Final merged answer and how it was produced."""

    response: str
    aggregation_type: str  # map-reduce, single, llm-synthesis, simple-merge, none
    sources: list[str] = field(default_factory=list)
    success: bool = True
    conflicts: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
