"""Conversation memory: state block, working window and slice retrieval."""

from .models import (
    MemorySlice,
    MemoryType,
    RetrievalResult,
    StateBlock,
    StateItem,
    WorkingWindow,
)
from .store import MemoryStore, content_hash, extract_entities, summarize_response
from .prompt_builder import BuiltPrompt, PromptSection, build_prompt

__all__ = [
    # Models
    "MemorySlice",
    "MemoryType",
    "RetrievalResult",
    "StateBlock",
    "StateItem",
    "WorkingWindow",
    # Store
    "MemoryStore",
    "content_hash",
    "extract_entities",
    "summarize_response",
    # Prompt assembly
    "BuiltPrompt",
    "PromptSection",
    "build_prompt",
]
