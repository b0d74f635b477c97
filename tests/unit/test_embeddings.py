"""Tests for embedding clients.

All tests are deterministic and do not make real network calls.
"""

import math
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from backend.app.config import Settings
from backend.app.llm.embeddings import (
    DeterministicEmbeddingClient,
    OpenAIEmbeddingClient,
    cosine_similarity,
    embed_with_progress,
    find_most_similar,
    get_embedding_client,
    is_valid_embedding,
)


def _response(vectors: list[list[float]], total_tokens: int, order: list[int] | None = None) -> MagicMock:
    """Fake embeddings.create response; ``order`` permutes the returned items."""
    items = []
    for i in order or range(len(vectors)):
        item = MagicMock()
        item.index = i
        item.embedding = vectors[i]
        items.append(item)

    response = MagicMock()
    response.data = items
    response.usage.total_tokens = total_tokens
    return response


def _client(**kwargs) -> OpenAIEmbeddingClient:  # type: ignore[no-untyped-def]
    client = OpenAIEmbeddingClient(api_key="test_key", base_delay_ms=0, **kwargs)
    client.client = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_deterministic_client_is_stable_and_normalized() -> None:
    """Test same text gives same unit-length vector."""
    client = DeterministicEmbeddingClient(dimensions=64)

    batch1 = await client.embed_batch(["the quick brown fox", "lazy dogs sleep"])
    batch2 = await client.embed_batch(["the quick brown fox", "lazy dogs sleep"])

    assert batch1 == batch2
    assert len(batch1.embeddings) == 2
    for vector in batch1.embeddings:
        assert len(vector) == 64
        assert math.isclose(math.sqrt(sum(v * v for v in vector)), 1.0)
    assert batch1.total_tokens > 0


@pytest.mark.asyncio
async def test_deterministic_client_related_text_is_more_similar() -> None:
    """Test shared vocabulary yields higher cosine similarity."""
    client = DeterministicEmbeddingClient()

    query = await client.embed_query("refund policy for annual plans")
    related = await client.embed_query("our refund policy covers annual plans")
    unrelated = await client.embed_query("weather forecast tomorrow morning")

    assert cosine_similarity(query, related) > cosine_similarity(query, unrelated)


@pytest.mark.asyncio
async def test_embed_batch_empty_input_makes_no_call() -> None:
    """Test that an empty batch short-circuits."""
    client = _client()

    batch = await client.embed_batch([])

    assert batch.embeddings == []
    assert batch.total_tokens == 0
    client.client.embeddings.create.assert_not_called()


@pytest.mark.asyncio
async def test_embed_batch_splits_into_sub_batches_and_sums_usage() -> None:
    """Test sub-batching by batch_size with usage totals added up."""
    client = _client(batch_size=2)
    client.client.embeddings.create = AsyncMock(
        side_effect=[
            _response([[1.0, 0.0], [0.0, 1.0]], 7),
            _response([[0.5, 0.5]], 3),
        ]
    )

    batch = await client.embed_batch(["a", "b", "c"])

    assert batch.embeddings == [[1.0, 0.0], [0.0, 1.0], [0.5, 0.5]]
    assert batch.total_tokens == 10
    assert client.client.embeddings.create.await_count == 2
    first_call = client.client.embeddings.create.await_args_list[0]
    assert first_call.kwargs["input"] == ["a", "b"]
    assert first_call.kwargs["model"] == "text-embedding-ada-002"


@pytest.mark.asyncio
async def test_embed_batch_orders_by_returned_index() -> None:
    """Test vectors are placed by their index, not response order."""
    client = _client()
    client.client.embeddings.create = AsyncMock(
        return_value=_response([[1.0], [2.0], [3.0]], 5, order=[2, 0, 1])
    )

    batch = await client.embed_batch(["x", "y", "z"])

    assert batch.embeddings == [[1.0], [2.0], [3.0]]


@pytest.mark.asyncio
async def test_embed_batch_count_mismatch_raises() -> None:
    """Test that fewer vectors than inputs is an error."""
    client = _client()
    client.client.embeddings.create = AsyncMock(return_value=_response([[1.0]], 1))

    with pytest.raises(ValueError, match="returned 1 vectors for 2 inputs"):
        await client.embed_batch(["x", "y"])


@pytest.mark.asyncio
async def test_embed_batch_retries_then_succeeds() -> None:
    """Test transient failures are retried with backoff."""
    client = _client(max_retries=3)
    client.client.embeddings.create = AsyncMock(
        side_effect=[Exception("rate limited"), Exception("timeout"), _response([[1.0]], 2)]
    )

    batch = await client.embed_batch(["x"])

    assert batch.embeddings == [[1.0]]
    assert client.client.embeddings.create.await_count == 3


@pytest.mark.asyncio
async def test_embed_batch_gives_up_after_max_retries() -> None:
    """Test the last error propagates once retries are exhausted."""
    client = _client(max_retries=2)
    client.client.embeddings.create = AsyncMock(side_effect=Exception("service down"))

    with pytest.raises(Exception, match="service down"):
        await client.embed_batch(["x"])

    assert client.client.embeddings.create.await_count == 3


@pytest.mark.asyncio
async def test_embed_query_returns_single_vector() -> None:
    """Test query embedding uses one input."""
    client = _client()
    client.client.embeddings.create = AsyncMock(return_value=_response([[0.1, 0.2]], 1))

    vector = await client.embed_query("question")

    assert vector == [0.1, 0.2]
    assert client.client.embeddings.create.await_args.kwargs["input"] == ["question"]


@pytest.mark.asyncio
async def test_embed_with_progress_reports_each_batch() -> None:
    """Test progress is reported per batch and vectors keep input order."""
    client = DeterministicEmbeddingClient(dimensions=16)
    texts = [f"text number {i}" for i in range(5)]
    progress: list[tuple[int, int]] = []

    batch = await embed_with_progress(
        client, texts, lambda done, total: progress.append((done, total)), batch_size=2
    )

    expected = await client.embed_batch(texts)
    assert progress == [(2, 5), (4, 5), (5, 5)]
    assert batch.embeddings == expected.embeddings
    assert batch.total_tokens == expected.total_tokens


@pytest.mark.asyncio
async def test_embed_with_progress_without_callback_or_input() -> None:
    """Test the callback is optional, empty input is empty and bad sizes raise."""
    client = DeterministicEmbeddingClient(dimensions=16)

    assert (await embed_with_progress(client, ["one"])).embeddings == [
        (await client.embed_batch(["one"])).embeddings[0]
    ]
    assert (await embed_with_progress(client, [])).embeddings == []
    with pytest.raises(ValueError, match="batch_size must be positive"):
        await embed_with_progress(client, ["one"], batch_size=0)


def test_get_embedding_client_returns_deterministic_without_key() -> None:
    """Test factory falls back to deterministic client."""
    client = get_embedding_client(Settings(openai_api_key=None))

    assert isinstance(client, DeterministicEmbeddingClient)


def test_get_embedding_client_returns_openai_with_key() -> None:
    """Test factory builds the OpenAI client with settings applied."""
    settings = Settings(openai_api_key=SecretStr("sk-test"), embedding_batch_size=25)

    client = get_embedding_client(settings)

    assert isinstance(client, OpenAIEmbeddingClient)
    assert client.batch_size == 25
    assert client.model == settings.openai_embedding_model


def test_cosine_similarity_basics() -> None:
    """Test identical, orthogonal, opposite and zero vectors."""
    assert math.isclose(cosine_similarity([1.0, 2.0], [1.0, 2.0]), 1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert math.isclose(cosine_similarity([1.0, 0.0], [-1.0, 0.0]), -1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_cosine_similarity_rejects_dimension_mismatch() -> None:
    """Test vectors of different lengths raise."""
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 0.0])


def test_find_most_similar_ranks_by_similarity() -> None:
    """Test top_k ranking."""
    vectors = [[0.0, 1.0], [1.0, 0.0], [0.7, 0.7]]

    top = find_most_similar([1.0, 0.0], vectors, top_k=2)

    assert [i for i, _ in top] == [1, 2]


def test_is_valid_embedding() -> None:
    """Test dimension and finiteness checks."""
    assert is_valid_embedding([0.1] * 4, dimensions=4)
    assert not is_valid_embedding([0.1] * 3, dimensions=4)
    assert not is_valid_embedding([0.1, float("nan"), 0.1, 0.1], dimensions=4)
