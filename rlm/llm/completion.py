"""Convenience functions for LLM completions."""

from typing import Any

from .adapters import OpenRouterAdapter
from .protocols import CompletionCall, LLMProvider


async def complete(
    prompt: str,
    system_prompt: str | None = None,
    temperature: float = 0.7,
    max_tokens: int | None = None,
    provider: LLMProvider | None = None,
) -> str:
    """
    Generate a completion for a simple prompt.

    Args:
        prompt: The user prompt
        system_prompt: Optional system prompt
        temperature: Sampling temperature (0-2)
        max_tokens: Maximum tokens to generate
        provider: Optional LLM provider. Defaults to OpenRouterAdapter.

    Returns:
        The generated text
    """
    if provider:
        return await provider.complete(prompt, system_prompt, temperature, max_tokens)
    else:
        async with OpenRouterAdapter() as llm:
            return await llm.complete(prompt, system_prompt, temperature, max_tokens)


def as_completion_call(
    provider: LLMProvider,
    temperature: float = 0.3,
    max_tokens: int | None = None,
) -> CompletionCall:
    """
    Bind a provider to the ``call(system_prompt, user_prompt, context)`` shape.

    The provider must already be entered (``async with provider``) before
    the returned callable is awaited.

    Example:
        async with provider:
            call = as_completion_call(provider)
            result = await pipeline.process(query, call)
    """

    async def call(system_prompt: str, user_prompt: str, context: dict[str, Any]) -> str:
        return await provider.complete(
            user_prompt,
            system_prompt=system_prompt or None,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    return call
