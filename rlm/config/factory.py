"""Factory functions to create the pipeline and its backend from configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..context.store import ContextStore
    from ..llm.protocols import LLMProvider
    from ..orchestration.pipeline import RLMPipeline
    from .loader import LLMConfig, PipelineConfig, ProfileConfig


class MockLLMProvider:
    """Mock LLM provider for testing and offline CLI runs.

    Returns scripted responses in order when given, then falls back to an
    echo of the prompt. Every call is recorded in ``calls``.
    """

    def __init__(self, responses: list[str] | None = None):
        self.responses = list(responses or [])
        self.calls: list[dict] = []

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> str:
        """Return the next scripted response, or a mock completion."""
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt})
        if self.responses:
            return self.responses.pop(0)
        return f"[Mock answer to: {prompt[-80:].strip()}]"

    async def complete_messages(
        self,
        messages: list,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> str:
        """Return a mock completion for messages."""
        self.calls.append({"messages": messages})
        if self.responses:
            return self.responses.pop(0)
        return "[Mock response]"

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        pass


def create_llm_provider(config: LLMConfig) -> LLMProvider:
    """Create a completion backend from configuration.

    Args:
        config: LLM configuration

    Returns:
        LLMProvider instance (OpenRouterAdapter or Mock)

    Raises:
        ValueError: If backend type is not supported
    """
    if config.backend == "openrouter":
        from ..llm import OpenRouterAdapter

        if not config.api_key:
            raise ValueError("OpenRouter backend requires api_key")

        return OpenRouterAdapter(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            request_timeout=config.request_timeout,
            max_retries=config.max_retries,
        )

    elif config.backend == "mock":
        return MockLLMProvider()

    else:
        raise ValueError(f"Unsupported LLM backend: {config.backend}")


def create_pipeline(
    config: PipelineConfig,
    store: ContextStore | None = None,
) -> RLMPipeline:
    """Create an RLMPipeline from configuration.

    Args:
        config: Pipeline configuration
        store: Optional existing document store to share

    Returns:
        RLMPipeline instance
    """
    from ..orchestration.pipeline import RLMPipeline

    return RLMPipeline(config=config, store=store)


def create_from_profile(
    profile: ProfileConfig,
) -> tuple:
    """Create the provider and pipeline from a profile configuration.

    Args:
        profile: Profile configuration

    Returns:
        Tuple of (provider, pipeline)

    Raises:
        ValueError: If the backend configuration is invalid
    """
    provider = create_llm_provider(profile.llm)
    pipeline = create_pipeline(profile.pipeline)

    return provider, pipeline
