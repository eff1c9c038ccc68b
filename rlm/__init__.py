"""Recursive query engine over meeting records."""

from .context import AgentDocument, ContextStore
from .orchestration import PipelineResult, ResultTier, RLMPipeline

__all__ = [
    "AgentDocument",
    "ContextStore",
    "PipelineResult",
    "ResultTier",
    "RLMPipeline",
]
