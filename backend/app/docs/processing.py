"""Document processing job: chunk, embed, persist.

State machine per document: pending -> processing -> {completed, failed}.
A failed (or completed) document can be reprocessed, which deletes its
chunks and runs the job again from the stored original bytes.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone

from backend.app.db.repositories import ChunkRepository, DocumentRepository
from backend.app.docs.chunker import DEFAULT_MAX_TOKENS, DEFAULT_OVERLAP_TOKENS, chunk_document
from backend.app.docs.errors import (
    AlreadyProcessingError,
    DocumentNotFoundError,
    EmbeddingServiceError,
    EmptyDocumentError,
    PersistenceError,
    StorageError,
)
from backend.app.docs.merger import merge_small_chunks
from backend.app.docs.storage import StorageClient
from backend.app.llm.embeddings import EmbeddingBatch, EmbeddingClient, embed_with_progress
from backend.app.models.docs import (
    DocumentChunk,
    DocumentStatus,
    ProcessingResult,
    ProcessingStatus,
    TextChunk,
)
from backend.app.utils.logging import StructuredPipelineLogger
from backend.app.utils.metrics import PrometheusPipelineMetrics

logger = logging.getLogger(__name__)

DEFAULT_INSERT_BATCH_SIZE = 50


class DocumentProcessor:
    """Runs the processing job for one document at a time.

    All collaborators are injected; the processor holds no global state.
    """

    def __init__(
        self,
        documents: DocumentRepository,
        chunks: ChunkRepository,
        embeddings: EmbeddingClient,
        storage: StorageClient,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
        insert_batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
        embedding_batch_size: int = 100,
        merge_small_chunks: bool = False,
        min_chunk_tokens: int = 100,
        stage_logger: StructuredPipelineLogger | None = None,
        metrics: PrometheusPipelineMetrics | None = None,
    ) -> None:
        if insert_batch_size <= 0:
            raise ValueError("insert_batch_size must be positive")

        self.documents = documents
        self.chunks = chunks
        self.embeddings = embeddings
        self.storage = storage
        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens
        self.insert_batch_size = insert_batch_size
        self.embedding_batch_size = embedding_batch_size
        self.merge_small_chunks = merge_small_chunks
        self.min_chunk_tokens = min_chunk_tokens
        self.stage_logger = stage_logger or StructuredPipelineLogger()
        self.metrics = metrics or PrometheusPipelineMetrics()

    async def process(self, document_id: uuid.UUID, content: str) -> ProcessingResult:
        """Chunk, embed and persist a document's content.

        Every failure is caught here, recorded on the document and reported
        through the returned result. Cancellation is the one exception: the
        document is marked failed and the CancelledError propagates.

        Args:
            document_id: Document to process
            content: Full text of the document

        Returns:
            ProcessingResult describing the attempt
        """
        start = time.perf_counter()

        document = await self.documents.get(document_id)
        if document is None:
            logger.warning(f"[{document_id}] Processing requested for unknown document")
            return ProcessingResult(
                success=False, document_id=document_id, error="Document not found"
            )

        try:
            await self.documents.mark_processing(document_id)

            text_chunks = self._chunk(document_id, content)
            batch = await self._embed(document_id, text_chunks)

            rows = [
                DocumentChunk(
                    chunk_id=uuid.uuid4(),
                    document_id=document_id,
                    user_id=document.user_id,
                    chunk_index=chunk.index,
                    content=chunk.content,
                    embedding=embedding,
                    token_count=chunk.token_count,
                    metadata=chunk.metadata,
                    created_at=datetime.now(timezone.utc),
                )
                for chunk, embedding in zip(text_chunks, batch.embeddings)
            ]
            await self._persist(document_id, rows)

            await self.documents.mark_completed(
                document_id,
                chunk_count=len(rows),
                total_tokens=batch.total_tokens,
                processed_at=datetime.now(timezone.utc),
            )
        except asyncio.CancelledError:
            logger.warning(f"[{document_id}] Processing cancelled")
            await asyncio.shield(self._record_failure(document_id, "Processing cancelled"))
            self.metrics.record_processing("failed", time.perf_counter() - start)
            raise
        except Exception as e:
            error_message = str(e) or type(e).__name__
            elapsed = time.perf_counter() - start
            logger.error(f"[{document_id}] Processing failed: {error_message}")
            await self._record_failure(document_id, error_message)
            self.stage_logger.log_stage(
                document_id,
                "process",
                "failed",
                latency_ms=elapsed * 1000,
                error_reason=type(e).__name__,
            )
            self.metrics.record_processing("failed", elapsed)
            return ProcessingResult(
                success=False, document_id=document_id, error=error_message
            )

        elapsed = time.perf_counter() - start
        self.stage_logger.log_stage(
            document_id,
            "process",
            "success",
            latency_ms=elapsed * 1000,
            chunks_created=len(rows),
            total_tokens=batch.total_tokens,
        )
        self.metrics.record_processing("completed", elapsed, chunks_created=len(rows))

        return ProcessingResult(
            success=True,
            document_id=document_id,
            chunks_created=len(rows),
            total_tokens=batch.total_tokens,
        )

    async def reprocess(self, document_id: uuid.UUID) -> ProcessingResult:
        """Delete a document's chunks and process its stored content again.

        Raises:
            DocumentNotFoundError: If the document does not exist
            AlreadyProcessingError: If the document is currently processing
            StorageError: If the original content cannot be downloaded
        """
        document = await self.documents.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)

        if document.status == DocumentStatus.processing:
            raise AlreadyProcessingError(document_id)

        deleted = await self.chunks.delete_for_document(document_id)
        self.stage_logger.log_stage(document_id, "delete_chunks", "success", deleted=deleted)

        try:
            data = await self.storage.download(document.storage_path)
        except StorageError as e:
            message = "Failed to download document from storage"
            logger.error(f"[{document_id}] {message}: {e}")
            await self._record_failure(document_id, message)
            self.stage_logger.log_stage(
                document_id, "download", "failed", error_reason=str(e)
            )
            raise StorageError(message) from e

        return await self.process(document_id, data.decode("utf-8", errors="replace"))

    async def get_status(self, document_id: uuid.UUID) -> ProcessingStatus:
        """Current processing state of a document.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        document = await self.documents.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)

        return ProcessingStatus(
            status=document.status,
            chunk_count=document.chunk_count,
            total_tokens=document.total_tokens,
            error_message=document.error_message,
        )

    def _chunk(self, document_id: uuid.UUID, content: str) -> list[TextChunk]:
        text_chunks = chunk_document(
            content,
            max_tokens=self.max_tokens,
            overlap_tokens=self.overlap_tokens,
            preserve_paragraphs=True,
        )
        if self.merge_small_chunks:
            text_chunks = merge_small_chunks(
                text_chunks, min_tokens=self.min_chunk_tokens, max_tokens=self.max_tokens
            )

        if not text_chunks:
            raise EmptyDocumentError()

        self.stage_logger.log_stage(document_id, "chunk", "success", chunks=len(text_chunks))
        return text_chunks

    async def _embed(self, document_id: uuid.UUID, text_chunks: list[TextChunk]) -> EmbeddingBatch:
        def report(done: int, total: int) -> None:
            logger.info(f"[{document_id}] Embedded {done}/{total} chunks")

        start = time.perf_counter()
        try:
            batch = await embed_with_progress(
                self.embeddings,
                [c.content for c in text_chunks],
                report,
                batch_size=self.embedding_batch_size,
            )
        except Exception as e:
            raise EmbeddingServiceError(f"Failed to generate embeddings: {e}") from e

        if len(batch.embeddings) != len(text_chunks):
            raise EmbeddingServiceError(
                f"Embedding count mismatch: expected {len(text_chunks)}, "
                f"got {len(batch.embeddings)}"
            )

        self.stage_logger.log_stage(
            document_id,
            "embed",
            "success",
            latency_ms=(time.perf_counter() - start) * 1000,
            embeddings=len(batch.embeddings),
            total_tokens=batch.total_tokens,
        )
        return batch

    async def _persist(self, document_id: uuid.UUID, rows: list[DocumentChunk]) -> None:
        inserted = 0
        for offset in range(0, len(rows), self.insert_batch_size):
            batch = rows[offset : offset + self.insert_batch_size]
            try:
                await self.chunks.insert_batch(batch)
            except Exception as e:
                raise PersistenceError(f"Failed to insert chunks: {e}") from e

            inserted += len(batch)
            logger.info(f"[{document_id}] Inserted {inserted}/{len(rows)} chunks")

    async def _record_failure(self, document_id: uuid.UUID, error_message: str) -> None:
        try:
            await self.documents.mark_failed(document_id, error_message)
        except Exception:
            # The job boundary reports through the result; a failed status write is only logged
            logger.exception(f"[{document_id}] Could not record failure on document")
