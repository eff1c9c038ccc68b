"""Orchestration for recursive meeting queries.

The pipeline runs three stages over the loaded documents:
- QueryDecomposer: classify the query and plan sub-queries
- SubQueryExecutor: run the plan (parallel, map-reduce, debate, iterative)
- ResponseAggregator: merge results into one answer
RLMPipeline wraps them with caching, memory capture, the sandbox path and
the legacy fallback.
"""

from .models import (
    QueryIntent,
    QueryComplexity,
    StrategyType,
    SubQueryType,
    SubQueryStatus,
    Perspective,
    QueryClassification,
    Strategy,
    SubQuery,
    Decomposition,
    ExecutionResult,
    ExecutionLogEntry,
    ExecutionReport,
    AggregationResult,
)
from .classifier import HeuristicClassifier, QueryClassifier
from .perspectives import (
    ROLES,
    PRIMARY_ROLES,
    assign_roles,
    get_role,
    select_roles_for_query,
)
from .decomposer import QueryDecomposer, create_map_query, create_reduce_query
from .executor import SubQueryExecutor
from .conflicts import ConflictAnalysis, ConflictDetector
from .aggregator import ResponseAggregator, jaccard_similarity
from .pipeline import PipelineResult, ResultTier, RLMPipeline

__all__ = [
    # Models
    "QueryIntent",
    "QueryComplexity",
    "StrategyType",
    "SubQueryType",
    "SubQueryStatus",
    "Perspective",
    "QueryClassification",
    "Strategy",
    "SubQuery",
    "Decomposition",
    "ExecutionResult",
    "ExecutionLogEntry",
    "ExecutionReport",
    "AggregationResult",
    # Classification
    "HeuristicClassifier",
    "QueryClassifier",
    # Perspectives
    "ROLES",
    "PRIMARY_ROLES",
    "assign_roles",
    "get_role",
    "select_roles_for_query",
    # Decomposition
    "QueryDecomposer",
    "create_map_query",
    "create_reduce_query",
    # Execution
    "SubQueryExecutor",
    # Aggregation
    "ConflictAnalysis",
    "ConflictDetector",
    "ResponseAggregator",
    "jaccard_similarity",
    # Pipeline
    "PipelineResult",
    "ResultTier",
    "RLMPipeline",
]
