"""Agent document store with relevance scoring and token budgeting."""

from .models import (
    AgentDocument,
    BudgetedAgent,
    BudgetedContext,
    ContextLevel,
    ScoredAgent,
)
from .store import (
    ContextStore,
    estimate_tokens,
    extract_keywords,
    truncate_text,
)

__all__ = [
    # Models
    "AgentDocument",
    "BudgetedAgent",
    "BudgetedContext",
    "ContextLevel",
    "ScoredAgent",
    # Store
    "ContextStore",
    # Text utilities
    "estimate_tokens",
    "extract_keywords",
    "truncate_text",
]
