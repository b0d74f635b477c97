"""Document retriever - vector similarity search over a user's chunks."""

import asyncio
import logging
from typing import Protocol
from uuid import UUID

from backend.app.db.repositories import ChunkRepository
from backend.app.docs.errors import RetrievalError
from backend.app.llm.embeddings import EmbeddingClient, cosine_similarity
from backend.app.models.docs import ChunkMatch, QueryEvaluation, SourceCitation

logger = logging.getLogger(__name__)

# Hybrid scoring weights
VECTOR_WEIGHT = 0.7
KEYWORD_BOOST = 0.3
KEYWORD_ONLY_SCORE = 0.5

# Words this short are ignored as keywords
MIN_KEYWORD_LENGTH = 4


class RetrievalService(Protocol):
    """Contract consumed by the responder."""

    async def search(
        self,
        query: str,
        user_id: UUID,
        limit: int | None = None,
        *,
        document_ids: list[UUID] | None = None,
    ) -> list[ChunkMatch]:
        """Return the user's chunks most similar to ``query``, best first."""
        ...


def _rank(matches: list[ChunkMatch], limit: int) -> list[ChunkMatch]:
    matches.sort(key=lambda m: (-m.similarity, str(m.document_id), m.chunk_index))
    return matches[:limit]


def expand_query(query: str) -> list[str]:
    """Query variants searched by ``search_with_expansion``, without duplicates."""
    variants = [query, query if query.endswith("?") else f"{query}?", f"Explain {query}"]
    return list(dict.fromkeys(variants))


def extract_keywords(query: str) -> list[str]:
    """Lowercased query words long enough to be worth matching literally."""
    return [w for w in query.lower().split() if len(w) >= MIN_KEYWORD_LENGTH]


class VectorRetriever:
    """Brute-force cosine search over the chunk repository.

    Scoring strategy:
    - Embed the query once
    - Score every chunk owned by the user (optionally only some documents)
    - Drop chunks below the similarity threshold
    - Sort by similarity descending, then document id and chunk index (for determinism)
    - Cap the limit at max_limit to bound prompt size
    """

    def __init__(
        self,
        chunks: ChunkRepository,
        embeddings: EmbeddingClient,
        *,
        similarity_threshold: float = 0.7,
        default_limit: int = 5,
        max_limit: int = 10,
    ) -> None:
        self.chunks = chunks
        self.embeddings = embeddings
        self.similarity_threshold = similarity_threshold
        self.default_limit = default_limit
        self.max_limit = max_limit

    def _limit(self, limit: int | None) -> int:
        return min(limit or self.default_limit, self.max_limit)

    async def search(
        self,
        query: str,
        user_id: UUID,
        limit: int | None = None,
        *,
        document_ids: list[UUID] | None = None,
        similarity_threshold: float | None = None,
    ) -> list[ChunkMatch]:
        """Search a user's chunks by semantic similarity.

        Args:
            query: Search query string
            user_id: Owner whose chunks are searched
            limit: Maximum number of results (capped at max_limit)
            document_ids: Optional restriction to specific documents
            similarity_threshold: Overrides the configured threshold for this call

        Returns:
            List of ChunkMatch sorted by descending similarity

        Raises:
            RetrievalError: If embedding the query or reading chunks fails
        """
        limit = self._limit(limit)
        if not query.strip() or limit <= 0:
            return []

        threshold = (
            self.similarity_threshold if similarity_threshold is None else similarity_threshold
        )

        try:
            query_embedding = await self.embeddings.embed_query(query)
            candidates = await self.chunks.list_for_user(user_id, document_ids)

            scored: list[ChunkMatch] = []
            for chunk in candidates:
                similarity = cosine_similarity(query_embedding, chunk.embedding)
                if similarity < threshold:
                    continue
                scored.append(
                    ChunkMatch(
                        chunk_id=chunk.chunk_id,
                        document_id=chunk.document_id,
                        chunk_index=chunk.chunk_index,
                        content=chunk.content,
                        metadata=chunk.metadata,
                        similarity=similarity,
                    )
                )
        except Exception as e:
            logger.error(f"Vector search error: {e}")
            raise RetrievalError(f"Failed to search documents: {e}") from e

        return _rank(scored, limit)

    async def search_with_expansion(
        self,
        query: str,
        user_id: UUID,
        limit: int | None = None,
        *,
        document_ids: list[UUID] | None = None,
    ) -> list[ChunkMatch]:
        """Search with query variants for better recall.

        Each chunk appears once, with the best similarity any variant gave it.
        """
        limit = self._limit(limit)
        if not query.strip():
            return []

        variant_results = await asyncio.gather(
            *(
                self.search(variant, user_id, limit, document_ids=document_ids)
                for variant in expand_query(query)
            )
        )

        best: dict[UUID, ChunkMatch] = {}
        for results in variant_results:
            for match in results:
                existing = best.get(match.chunk_id)
                if existing is None or match.similarity > existing.similarity:
                    best[match.chunk_id] = match

        return _rank(list(best.values()), limit)

    async def hybrid_search(
        self,
        query: str,
        user_id: UUID,
        limit: int | None = None,
        *,
        document_ids: list[UUID] | None = None,
    ) -> list[ChunkMatch]:
        """Combine vector similarity with literal keyword matching.

        Vector matches are weighted by 0.7 and gain 0.3 when the chunk also
        contains every keyword. Keyword-only matches score 0.5.
        """
        limit = self._limit(limit)
        vector_results = await self.search(query, user_id, limit, document_ids=document_ids)

        keywords = extract_keywords(query)
        if not keywords:
            return vector_results

        try:
            candidates = await self.chunks.list_for_user(user_id, document_ids)
        except Exception as e:
            logger.error(f"Keyword search error: {e}")
            raise RetrievalError(f"Failed to search documents: {e}") from e

        keyword_hits = [
            chunk
            for chunk in candidates
            if all(keyword in chunk.content.lower() for keyword in keywords)
        ][:limit]

        combined = {
            m.chunk_id: m.model_copy(update={"similarity": m.similarity * VECTOR_WEIGHT})
            for m in vector_results
        }
        for chunk in keyword_hits:
            existing = combined.get(chunk.chunk_id)
            if existing is not None:
                existing.similarity += KEYWORD_BOOST
            else:
                combined[chunk.chunk_id] = ChunkMatch(
                    chunk_id=chunk.chunk_id,
                    document_id=chunk.document_id,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    metadata=chunk.metadata,
                    similarity=KEYWORD_ONLY_SCORE,
                )

        return _rank(list(combined.values()), limit)

    async def evaluate_query(
        self,
        query: str,
        user_id: UUID,
        *,
        similarity_threshold: float = 0.6,
        answerable_similarity: float = 0.7,
    ) -> QueryEvaluation:
        """Estimate whether the user's documents can answer ``query``.

        Confidence is the best match's similarity. The query counts as
        answerable when that exceeds ``answerable_similarity``.
        """
        matches = await self.search(
            query, user_id, 5, similarity_threshold=similarity_threshold
        )
        confidence = matches[0].similarity if matches else 0.0

        return QueryEvaluation(
            can_answer=bool(matches) and confidence > answerable_similarity,
            confidence=confidence,
            suggested_documents=list(dict.fromkeys(m.document_id for m in matches)),
        )


def extract_source_metadata(matches: list[ChunkMatch]) -> list[SourceCitation]:
    """Reduce matches to the citation fields stored with an answer."""
    return [
        SourceCitation(
            document_id=m.document_id,
            chunk_index=m.chunk_index,
            similarity=m.similarity,
        )
        for m in matches
    ]
