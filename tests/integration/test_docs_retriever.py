"""Integration tests for vector retrieval over stored chunks."""

import uuid
from datetime import datetime, timezone

import pytest

from backend.app.db.inmemory import InMemoryStore
from backend.app.docs.errors import RetrievalError
from backend.app.docs.retriever import (
    VectorRetriever,
    expand_query,
    extract_keywords,
    extract_source_metadata,
)
from backend.app.llm.embeddings import DeterministicEmbeddingClient, EmbeddingBatch
from backend.app.models.docs import ChunkMatch, DocumentChunk


class FixedEmbeddingClient:
    """Embeds every query to the same unit vector."""

    def __init__(self, query_vector: list[float]) -> None:
        self.query_vector = query_vector

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        return EmbeddingBatch(embeddings=[self.query_vector for _ in texts])

    async def embed_query(self, text: str) -> list[float]:
        return self.query_vector


class QueryMapEmbeddingClient:
    """Embeds each known query to its own vector and records what was asked."""

    def __init__(self, vectors: dict[str, list[float]]) -> None:
        self.vectors = vectors
        self.queries: list[str] = []

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        return EmbeddingBatch(embeddings=[self.vectors[t] for t in texts])

    async def embed_query(self, text: str) -> list[float]:
        self.queries.append(text)
        return self.vectors[text]


class BrokenEmbeddingClient:
    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        raise RuntimeError("service unavailable")

    async def embed_query(self, text: str) -> list[float]:
        raise RuntimeError("service unavailable")


def _chunk(
    user_id: uuid.UUID,
    document_id: uuid.UUID,
    index: int,
    embedding: list[float],
    content: str = "text",
) -> DocumentChunk:
    return DocumentChunk(
        chunk_id=uuid.uuid4(),
        document_id=document_id,
        user_id=user_id,
        chunk_index=index,
        content=content,
        embedding=embedding,
        token_count=1,
        created_at=datetime.now(timezone.utc),
    )


@pytest.mark.asyncio
async def test_search_filters_by_threshold_and_sorts(
    store: InMemoryStore, user_id: uuid.UUID
) -> None:
    """Test results are above threshold and ordered by similarity."""
    document_id = uuid.uuid4()
    await store.chunks.insert_batch(
        [
            _chunk(user_id, document_id, 0, [0.8, 0.6], "close"),
            _chunk(user_id, document_id, 1, [1.0, 0.0], "exact"),
            _chunk(user_id, document_id, 2, [0.0, 1.0], "orthogonal"),
        ]
    )
    retriever = VectorRetriever(
        store.chunks, FixedEmbeddingClient([1.0, 0.0]), similarity_threshold=0.7
    )

    matches = await retriever.search("anything", user_id)

    assert [m.content for m in matches] == ["exact", "close"]
    assert matches[0].similarity == pytest.approx(1.0)
    assert matches[1].similarity == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_search_only_returns_callers_chunks(store: InMemoryStore, user_id: uuid.UUID) -> None:
    """Test another user's chunks are never returned."""
    other_user = uuid.uuid4()
    await store.chunks.insert_batch([_chunk(user_id, uuid.uuid4(), 0, [1.0, 0.0], "mine")])
    await store.chunks.insert_batch([_chunk(other_user, uuid.uuid4(), 0, [1.0, 0.0], "theirs")])
    retriever = VectorRetriever(store.chunks, FixedEmbeddingClient([1.0, 0.0]))

    matches = await retriever.search("query", user_id)

    assert [m.content for m in matches] == ["mine"]


@pytest.mark.asyncio
async def test_search_ties_break_on_document_and_index(
    store: InMemoryStore, user_id: uuid.UUID
) -> None:
    """Test equal similarities come back in a stable order."""
    doc_a = uuid.UUID("00000000-0000-0000-0000-00000000000a")
    doc_b = uuid.UUID("00000000-0000-0000-0000-00000000000b")
    await store.chunks.insert_batch(
        [_chunk(user_id, doc_b, 0, [1.0, 0.0]), _chunk(user_id, doc_b, 1, [1.0, 0.0])]
    )
    await store.chunks.insert_batch([_chunk(user_id, doc_a, 3, [1.0, 0.0])])
    retriever = VectorRetriever(store.chunks, FixedEmbeddingClient([1.0, 0.0]))

    matches = await retriever.search("query", user_id)

    assert [(m.document_id, m.chunk_index) for m in matches] == [
        (doc_a, 3),
        (doc_b, 0),
        (doc_b, 1),
    ]


@pytest.mark.asyncio
async def test_search_limit_is_capped(store: InMemoryStore, user_id: uuid.UUID) -> None:
    """Test limit defaults and the max_limit cap."""
    document_id = uuid.uuid4()
    await store.chunks.insert_batch(
        [_chunk(user_id, document_id, i, [1.0, 0.0]) for i in range(15)]
    )
    retriever = VectorRetriever(
        store.chunks, FixedEmbeddingClient([1.0, 0.0]), default_limit=5, max_limit=10
    )

    assert len(await retriever.search("q", user_id)) == 5
    assert len(await retriever.search("q", user_id, limit=3)) == 3
    assert len(await retriever.search("q", user_id, limit=50)) == 10


@pytest.mark.asyncio
async def test_search_restricts_to_documents(store: InMemoryStore, user_id: uuid.UUID) -> None:
    """Test the optional document filter."""
    wanted, ignored = uuid.uuid4(), uuid.uuid4()
    await store.chunks.insert_batch([_chunk(user_id, wanted, 0, [1.0, 0.0], "wanted")])
    await store.chunks.insert_batch([_chunk(user_id, ignored, 0, [1.0, 0.0], "ignored")])
    retriever = VectorRetriever(store.chunks, FixedEmbeddingClient([1.0, 0.0]))

    matches = await retriever.search("q", user_id, document_ids=[wanted])

    assert [m.content for m in matches] == ["wanted"]


@pytest.mark.asyncio
async def test_search_blank_query_returns_nothing(store: InMemoryStore, user_id: uuid.UUID) -> None:
    """Test a whitespace query short-circuits."""
    await store.chunks.insert_batch([_chunk(user_id, uuid.uuid4(), 0, [1.0, 0.0])])
    retriever = VectorRetriever(store.chunks, BrokenEmbeddingClient())

    assert await retriever.search("   ", user_id) == []


@pytest.mark.asyncio
async def test_search_failure_raises_retrieval_error(
    store: InMemoryStore, user_id: uuid.UUID
) -> None:
    """Test embedding failures surface as RetrievalError."""
    retriever = VectorRetriever(store.chunks, BrokenEmbeddingClient())

    with pytest.raises(RetrievalError, match="Failed to search documents"):
        await retriever.search("query", user_id)


@pytest.mark.asyncio
async def test_search_with_hashing_embeddings_prefers_shared_vocabulary(
    store: InMemoryStore, user_id: uuid.UUID
) -> None:
    """Test the deterministic client ranks overlapping text first."""
    embeddings = DeterministicEmbeddingClient()
    document_id = uuid.uuid4()
    texts = ["refund policy for returned items", "parking garage opening hours"]
    batch = await embeddings.embed_batch(texts)
    await store.chunks.insert_batch(
        [
            _chunk(user_id, document_id, i, vector, text)
            for i, (text, vector) in enumerate(zip(texts, batch.embeddings))
        ]
    )
    retriever = VectorRetriever(store.chunks, embeddings, similarity_threshold=0.0)

    matches = await retriever.search("refund policy", user_id)

    assert matches[0].content == "refund policy for returned items"


def test_extract_source_metadata() -> None:
    """Test citations keep document, index and similarity."""
    document_id = uuid.uuid4()
    match = ChunkMatch(
        chunk_id=uuid.uuid4(),
        document_id=document_id,
        chunk_index=4,
        content="c",
        similarity=0.83,
    )

    citations = extract_source_metadata([match])

    assert len(citations) == 1
    assert citations[0].document_id == document_id
    assert citations[0].chunk_index == 4
    assert citations[0].similarity == 0.83


def test_expand_query_variants() -> None:
    """Test the question and explanation variants, without repeats."""
    assert expand_query("refund window") == [
        "refund window",
        "refund window?",
        "Explain refund window",
    ]
    assert expand_query("what is covered?") == ["what is covered?", "Explain what is covered?"]


def test_extract_keywords_skips_short_words() -> None:
    """Test keywords are lowercased and at least four characters long."""
    assert extract_keywords("How do I get a Refund for my ORDER") == ["refund", "order"]


@pytest.mark.asyncio
async def test_search_with_expansion_keeps_best_score_per_chunk(
    store: InMemoryStore, user_id: uuid.UUID
) -> None:
    """Test every variant is searched and each chunk appears once at its best score."""
    document_id = uuid.uuid4()
    await store.chunks.insert_batch(
        [
            _chunk(user_id, document_id, 0, [1.0, 0.0], "first"),
            _chunk(user_id, document_id, 1, [0.0, 1.0], "second"),
            _chunk(user_id, document_id, 2, [0.8, 0.6], "third"),
        ]
    )
    embeddings = QueryMapEmbeddingClient(
        {
            "refund": [1.0, 0.0],
            "refund?": [0.0, 1.0],
            "Explain refund": [0.6, 0.8],
        }
    )
    retriever = VectorRetriever(store.chunks, embeddings, similarity_threshold=0.7)

    matches = await retriever.search_with_expansion("refund", user_id)

    assert sorted(embeddings.queries) == sorted(["refund", "refund?", "Explain refund"])
    assert [m.content for m in matches] == ["first", "second", "third"]
    assert [m.similarity for m in matches] == pytest.approx([1.0, 1.0, 0.96])
    assert len({m.chunk_id for m in matches}) == 3


@pytest.mark.asyncio
async def test_search_with_expansion_respects_limit(
    store: InMemoryStore, user_id: uuid.UUID
) -> None:
    """Test merged variant results are cut to the limit."""
    document_id = uuid.uuid4()
    await store.chunks.insert_batch(
        [_chunk(user_id, document_id, i, [1.0, 0.0]) for i in range(4)]
    )
    retriever = VectorRetriever(
        store.chunks, FixedEmbeddingClient([1.0, 0.0]), similarity_threshold=0.7
    )

    matches = await retriever.search_with_expansion("refund", user_id, limit=2)

    assert [m.chunk_index for m in matches] == [0, 1]
    assert await retriever.search_with_expansion("  ", user_id) == []


@pytest.mark.asyncio
async def test_hybrid_search_weights_vector_and_keyword_matches(
    store: InMemoryStore, user_id: uuid.UUID
) -> None:
    """Test vector hits are weighted, boosted by keywords, and keyword-only hits score 0.5."""
    document_id = uuid.uuid4()
    await store.chunks.insert_batch(
        [
            _chunk(user_id, document_id, 0, [1.0, 0.0], "Refund policy details"),
            _chunk(user_id, document_id, 1, [0.8, 0.6], "Shipping times"),
            _chunk(user_id, document_id, 2, [0.0, 1.0], "Our refund policy is generous"),
            _chunk(user_id, document_id, 3, [0.0, 1.0], "Refunds only, no policy here"),
        ]
    )
    retriever = VectorRetriever(
        store.chunks, FixedEmbeddingClient([1.0, 0.0]), similarity_threshold=0.7
    )

    matches = await retriever.hybrid_search("refund policy", user_id)

    assert [m.content for m in matches] == [
        "Refund policy details",
        "Shipping times",
        "Our refund policy is generous",
        "Refunds only, no policy here",
    ]
    assert [m.similarity for m in matches] == pytest.approx([1.0, 0.56, 0.5, 0.5])


@pytest.mark.asyncio
async def test_hybrid_search_without_keywords_is_plain_vector_search(
    store: InMemoryStore, user_id: uuid.UUID
) -> None:
    """Test a query of short words returns unweighted vector results."""
    await store.chunks.insert_batch([_chunk(user_id, uuid.uuid4(), 0, [0.8, 0.6], "a an it")])
    retriever = VectorRetriever(
        store.chunks, FixedEmbeddingClient([1.0, 0.0]), similarity_threshold=0.7
    )

    matches = await retriever.hybrid_search("a an it", user_id)

    assert [m.similarity for m in matches] == pytest.approx([0.8])


@pytest.mark.asyncio
async def test_hybrid_search_ignores_other_users_keyword_matches(
    store: InMemoryStore, user_id: uuid.UUID
) -> None:
    """Test keyword matching is scoped to the caller's chunks."""
    await store.chunks.insert_batch(
        [_chunk(uuid.uuid4(), uuid.uuid4(), 0, [0.0, 1.0], "refund policy")]
    )
    retriever = VectorRetriever(
        store.chunks, FixedEmbeddingClient([1.0, 0.0]), similarity_threshold=0.7
    )

    assert await retriever.hybrid_search("refund policy", user_id) == []


@pytest.mark.asyncio
async def test_evaluate_query_answerable(store: InMemoryStore, user_id: uuid.UUID) -> None:
    """Test a strong match is answerable and suggests each document once."""
    first, second = uuid.uuid4(), uuid.uuid4()
    await store.chunks.insert_batch(
        [
            _chunk(user_id, first, 0, [1.0, 0.0]),
            _chunk(user_id, first, 1, [1.0, 0.0]),
            _chunk(user_id, second, 0, [0.8, 0.6]),
            _chunk(user_id, second, 1, [0.0, 1.0]),
        ]
    )
    retriever = VectorRetriever(store.chunks, FixedEmbeddingClient([1.0, 0.0]))

    evaluation = await retriever.evaluate_query("refund", user_id)

    assert evaluation.can_answer is True
    assert evaluation.confidence == pytest.approx(1.0)
    assert evaluation.suggested_documents == [first, second]


@pytest.mark.asyncio
async def test_evaluate_query_weak_or_missing_matches(
    store: InMemoryStore, user_id: uuid.UUID
) -> None:
    """Test a match between 0.6 and 0.7 is suggested but not answerable."""
    retriever = VectorRetriever(store.chunks, FixedEmbeddingClient([1.0, 0.0]))

    empty = await retriever.evaluate_query("refund", user_id)
    assert empty.can_answer is False
    assert empty.confidence == 0.0
    assert empty.suggested_documents == []

    document_id = uuid.uuid4()
    await store.chunks.insert_batch([_chunk(user_id, document_id, 0, [0.65, 0.76])])

    weak = await retriever.evaluate_query("refund", user_id)
    assert weak.can_answer is False
    assert 0.6 < weak.confidence < 0.7
    assert weak.suggested_documents == [document_id]
