"""Embedding clients - OpenAI-backed and deterministic stub.

Security: API key comes from settings (environment) only.
"""

import hashlib
import logging
import math
import re
import time
from collections.abc import Callable
from typing import Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel

from backend.app.config import Settings
from backend.app.docs.tokens import estimate_token_count
from backend.app.llm.retry import retry_with_backoff
from backend.app.utils.metrics import embedding_batch_latency_ms

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+")


class EmbeddingBatch(BaseModel):
    """One vector per input text (same order) plus aggregate usage."""

    embeddings: list[list[float]]
    total_tokens: int = 0


class EmbeddingClient(Protocol):
    """Protocol for embedding client implementations."""

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        """Embed texts, returning vectors in input order."""
        ...

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single search query."""
        ...


class DeterministicEmbeddingClient:
    """Hashing bag-of-words embeddings (no API key required).

    Texts sharing vocabulary get similar vectors, which keeps retrieval
    meaningful in tests and local runs.
    """

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = dimensions

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for word in _WORD.findall(text.lower()):
            digest = hashlib.sha256(word.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimensions
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            vector[bucket] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        """Embed texts deterministically."""
        return EmbeddingBatch(
            embeddings=[self._vector(text) for text in texts],
            total_tokens=sum(estimate_token_count(text) for text in texts),
        )

    async def embed_query(self, text: str) -> list[float]:
        """Embed a query deterministically."""
        return self._vector(text)


class OpenAIEmbeddingClient:
    """OpenAI-backed embedding client with sub-batching and retries."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-ada-002",
        *,
        batch_size: int = 100,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        jitter_min_ms: int = 0,
        jitter_max_ms: int = 0,
    ):
        """Initialize OpenAI embedding client.

        Args:
            api_key: OpenAI API key (read from environment)
            model: Embedding model name
            batch_size: Inputs per API request (API allows up to 2048)
            max_retries: Retries per request
            base_delay_ms: Initial backoff delay
        """
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.jitter_min_ms = jitter_min_ms
        self.jitter_max_ms = jitter_max_ms

    async def _create(self, inputs: list[str]):  # type: ignore[no-untyped-def]
        return await retry_with_backoff(
            lambda: self.client.embeddings.create(
                model=self.model,
                input=inputs,
                encoding_format="float",
            ),
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            jitter_min_ms=self.jitter_min_ms,
            jitter_max_ms=self.jitter_max_ms,
            label="OpenAI embeddings",
        )

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        """Embed texts in sub-batches of ``batch_size``."""
        if not texts:
            return EmbeddingBatch(embeddings=[], total_tokens=0)

        embeddings: list[list[float]] = []
        total_tokens = 0

        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]

            started = time.perf_counter()
            response = await self._create(batch)
            embedding_batch_latency_ms.observe((time.perf_counter() - started) * 1000)

            if len(response.data) != len(batch):
                raise ValueError(
                    f"Embedding service returned {len(response.data)} vectors "
                    f"for {len(batch)} inputs"
                )

            # Results carry their input index; don't rely on response ordering
            for item in sorted(response.data, key=lambda d: d.index):
                embeddings.append(list(item.embedding))

            total_tokens += response.usage.total_tokens

        logger.debug(f"Embedded {len(texts)} texts ({total_tokens} tokens) with {self.model}")
        return EmbeddingBatch(embeddings=embeddings, total_tokens=total_tokens)

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query."""
        response = await self._create([text])
        if not response.data:
            raise ValueError("No embedding returned from OpenAI")
        return list(response.data[0].embedding)


ProgressCallback = Callable[[int, int], None]


async def embed_with_progress(
    client: EmbeddingClient,
    texts: list[str],
    on_progress: ProgressCallback | None = None,
    *,
    batch_size: int = 100,
) -> EmbeddingBatch:
    """Embed texts batch by batch, reporting progress after each batch.

    Args:
        client: Any embedding client
        texts: Texts to embed, in order
        on_progress: Called with (completed, total) after every batch
        batch_size: Texts handed to the client per call

    Returns:
        EmbeddingBatch with vectors in input order and summed token usage
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    embeddings: list[list[float]] = []
    total_tokens = 0

    for start in range(0, len(texts), batch_size):
        batch = await client.embed_batch(texts[start : start + batch_size])
        embeddings.extend(batch.embeddings)
        total_tokens += batch.total_tokens

        if on_progress is not None:
            on_progress(min(start + batch_size, len(texts)), len(texts))

    return EmbeddingBatch(embeddings=embeddings, total_tokens=total_tokens)


def get_embedding_client(settings: Settings) -> EmbeddingClient:
    """Factory function to get appropriate embedding client based on config.

    Returns:
        OpenAIEmbeddingClient if API key is configured, DeterministicEmbeddingClient otherwise
    """
    api_key = settings.openai_api_key

    if api_key and api_key.get_secret_value():
        logger.info("Using OpenAI client for embeddings")
        return OpenAIEmbeddingClient(
            api_key=api_key.get_secret_value(),
            model=settings.openai_embedding_model,
            batch_size=settings.embedding_batch_size,
            max_retries=settings.llm_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            jitter_min_ms=settings.retry_jitter_min_ms,
            jitter_max_ms=settings.retry_jitter_max_ms,
        )
    else:
        logger.warning("No OpenAI API key configured, using deterministic embedding client")
        return DeterministicEmbeddingClient()


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two equal-length vectors (0.0 if either is zero)."""
    if len(a) != len(b):
        raise ValueError("Embeddings must have the same length")

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))

    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def find_most_similar(
    query: list[float], vectors: list[list[float]], top_k: int = 5
) -> list[tuple[int, float]]:
    """Return (index, similarity) of the top_k vectors most similar to query."""
    scored = [(i, cosine_similarity(query, v)) for i, v in enumerate(vectors)]
    scored.sort(key=lambda x: (-x[1], x[0]))
    return scored[:top_k]


def is_valid_embedding(embedding: list[float], dimensions: int = 1536) -> bool:
    """Check vector length and that every component is a finite number."""
    return len(embedding) == dimensions and all(
        isinstance(v, (int, float)) and math.isfinite(v) for v in embedding
    )
