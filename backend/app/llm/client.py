"""LLM completion client with OpenAI streaming integration.

Security: Reads API key from environment only, never hardcoded.
Provides deterministic fallback when no key present for testing.
"""

import logging
from collections.abc import AsyncIterator
from typing import Protocol

from openai import AsyncOpenAI

from backend.app.config import Settings
from backend.app.models.chat import PromptMessage

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    """Protocol for streaming completion client implementations."""

    def stream_completion(
        self,
        messages: list[PromptMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        """Stream the completion as text fragments in generation order.

        Args:
            messages: System prompt, history and the augmented user turn
            temperature: Sampling temperature
            max_tokens: Response token cap

        Returns:
            Async iterator of non-empty text fragments
        """
        ...


class DeterministicStubClient:
    """Deterministic stub client for testing (no API key required)."""

    async def stream_completion(
        self,
        messages: list[PromptMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        """Stream a deterministic stub answer word by word."""
        question = messages[-1].content if messages else ""
        num_sources = question.count("[Source ")

        answer = (
            f"Based on {num_sources} source(s) from your documents, "
            "this is a placeholder answer. "
            "*This is a stub response generated without LLM synthesis.*"
        )

        words = answer.split(" ")
        for i, word in enumerate(words):
            yield word if i == len(words) - 1 else word + " "


class OpenAIClient:
    """OpenAI-backed streaming chat completion client."""

    def __init__(self, api_key: str, model: str = "gpt-4-turbo-preview"):
        """Initialize OpenAI client.

        Args:
            api_key: OpenAI API key (read from environment)
            model: Chat model name
        """
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model

    async def stream_completion(
        self,
        messages: list[PromptMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        """Stream completion deltas from OpenAI.

        Errors propagate to the caller; there is no fallback mid-stream.
        """
        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": m.role.value, "content": m.content} for m in messages],
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
        )

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        finally:
            await stream.close()


def get_llm_client(settings: Settings) -> CompletionClient:
    """Factory function to get appropriate LLM client based on config.

    Returns:
        OpenAIClient if API key is configured, DeterministicStubClient otherwise
    """
    api_key = settings.openai_api_key

    if api_key and api_key.get_secret_value():
        logger.info("Using OpenAI client for chat completions")
        return OpenAIClient(
            api_key=api_key.get_secret_value(),
            model=settings.openai_chat_model,
        )
    else:
        logger.warning("No OpenAI API key configured, using deterministic stub client")
        return DeterministicStubClient()
