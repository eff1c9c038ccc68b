"""Interfaces between the pipeline and whatever produces completions."""

from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    role: MessageRole
    content: str


@runtime_checkable
class LLMProvider(Protocol):
    """A chat-completion backend.

    OpenRouterAdapter and MockLLMProvider implement it. Pipeline stages do
    not talk to providers directly; they receive a CompletionCall built
    with ``as_completion_call``.
    """

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> str:
        """Answer ``prompt`` under an optional system prompt."""
        ...

    async def complete_messages(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> str:
        ...


@runtime_checkable
class CompletionCall(Protocol):
    """The completion collaborator every pipeline stage talks to.

    ``context`` is the caller's per-request dict (API keys, recursion
    depth, progress hooks). It is passed through untouched.
    """

    async def __call__(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> str:
        ...
