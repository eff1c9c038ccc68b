"""LLM provider integrations with protocol-based adapter pattern."""

from .protocols import CompletionCall, LLMProvider, Message, MessageRole
from .adapters import OpenRouterAdapter
from .completion import as_completion_call, complete

__all__ = [
    # Protocols
    "CompletionCall",
    "LLMProvider",
    "Message",
    "MessageRole",
    # Adapters
    "OpenRouterAdapter",
    # Convenience functions
    "as_completion_call",
    "complete",
]
