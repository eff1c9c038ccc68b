"""OpenRouter completion backend."""

import logging

from openai import AsyncOpenAI

from ..settings import (
    OPENROUTER_API_KEY,
    OPENROUTER_BASE_URL,
    OPENROUTER_DEFAULT_MODEL,
)
from .protocols import LLMProvider, Message, MessageRole

logger = logging.getLogger(__name__)

APP_TITLE = "rlm-meetings"


class OpenRouterAdapter(LLMProvider):
    """
    Completion backend for OpenRouter's OpenAI-compatible endpoint.

    Sub-queries, synthesis and sandbox sub-calls all go through one
    adapter, so the client is opened once per ``async with`` block and
    shared by every call made inside it.

    Usage:
        async with OpenRouterAdapter(model="openai/gpt-4o-mini") as llm:
            answer = await llm.complete("Which decisions were made?")
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        request_timeout: float = 120.0,
        max_retries: int = 2,
    ):
        """
        Args:
            api_key: OpenRouter key. Falls back to OPENROUTER_API_KEY.
            model: Model slug, e.g. "anthropic/claude-3.5-sonnet".
            base_url: Endpoint override, mostly for proxies.
            request_timeout: Per-request timeout in seconds.
            max_retries: Transport-level retries; sub-query retries come on top.
        """
        self.api_key = api_key or OPENROUTER_API_KEY
        self.model = model or OPENROUTER_DEFAULT_MODEL
        self.base_url = base_url or OPENROUTER_BASE_URL
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self._client: AsyncOpenAI | None = None

        if not self.api_key:
            raise ValueError(
                "OpenRouter API key required. Set OPENROUTER_API_KEY in .env"
            )

        logger.info(f"OpenRouter backend ready: {self.model} via {self.base_url}")

    async def __aenter__(self) -> "OpenRouterAdapter":
        self._client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            max_retries=self.max_retries,
            timeout=self.request_timeout,
            default_headers={"X-Title": APP_TITLE},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            raise RuntimeError(
                "OpenRouterAdapter used outside 'async with'; no open client."
            )
        return self._client

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> str:
        """Single-turn completion with an optional system prompt."""
        messages = []
        if system_prompt:
            messages.append(Message(role=MessageRole.SYSTEM, content=system_prompt))
        messages.append(Message(role=MessageRole.USER, content=prompt))

        return await self.complete_messages(messages, temperature, max_tokens)

    async def complete_messages(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> str:
        """Completion over an explicit message list."""
        prompt_chars = sum(len(m.content) for m in messages)
        logger.debug(
            f"Requesting {self.model}: {len(messages)} messages, {prompt_chars} chars, "
            f"temperature={temperature}, max_tokens={max_tokens}"
        )

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": m.role.value, "content": m.content} for m in messages],
            temperature=temperature,
            max_tokens=max_tokens,
        )

        if not response.choices:
            logger.warning(f"{self.model} returned no choices")
            return ""

        text = response.choices[0].message.content or ""
        if response.usage is not None:
            logger.info(
                f"{self.model}: {response.usage.prompt_tokens} prompt + "
                f"{response.usage.completion_tokens} completion tokens"
            )
        return text
