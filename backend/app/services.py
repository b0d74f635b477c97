"""Service wiring - builds processors, retrievers and chat services per unit of work."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.chat.responder import RAGResponder
from backend.app.chat.service import ChatService
from backend.app.config import Settings
from backend.app.db.engine import create_async_engine_from_settings, create_session_factory
from backend.app.db.inmemory import InMemoryStore
from backend.app.db.repositories import Repositories, UnitOfWork
from backend.app.db.sql_repositories import sql_unit_of_work
from backend.app.docs.jobs import ProcessingJobRunner
from backend.app.docs.processing import DocumentProcessor
from backend.app.docs.retriever import VectorRetriever
from backend.app.docs.storage import InMemoryStorage, LocalFileStorage, StorageClient
from backend.app.llm.client import CompletionClient, DeterministicStubClient, get_llm_client
from backend.app.llm.embeddings import (
    DeterministicEmbeddingClient,
    EmbeddingClient,
    get_embedding_client,
)

logger = logging.getLogger(__name__)


class PipelineServices:
    """Holds the long-lived clients and builds per-scope services from them."""

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        embeddings: EmbeddingClient,
        completions: CompletionClient,
        storage: StorageClient,
        settings: Settings,
        engine: AsyncEngine | None = None,
    ) -> None:
        self.unit_of_work = unit_of_work
        self.embeddings = embeddings
        self.completions = completions
        self.storage = storage
        self.settings = settings
        self.engine = engine
        self.runner = ProcessingJobRunner(self.processor)

    def build_processor(self, repos: Repositories) -> DocumentProcessor:
        settings = self.settings
        return DocumentProcessor(
            repos.documents,
            repos.chunks,
            self.embeddings,
            self.storage,
            max_tokens=settings.chunk_max_tokens,
            overlap_tokens=settings.chunk_overlap_tokens,
            insert_batch_size=settings.chunk_insert_batch_size,
            embedding_batch_size=settings.embedding_batch_size,
            merge_small_chunks=settings.merge_small_chunks,
            min_chunk_tokens=settings.chunk_min_tokens,
        )

    def build_retriever(self, repos: Repositories) -> VectorRetriever:
        return VectorRetriever(
            repos.chunks,
            self.embeddings,
            similarity_threshold=self.settings.similarity_threshold,
            default_limit=self.settings.search_limit,
            max_limit=self.settings.search_limit_max,
        )

    def build_chat_service(self, repos: Repositories) -> ChatService:
        responder = RAGResponder(
            self.build_retriever(repos),
            self.completions,
            temperature=self.settings.chat_temperature,
            max_tokens=self.settings.chat_max_tokens,
            search_limit=self.settings.search_limit,
        )
        return ChatService(repos.chat, responder, history_limit=self.settings.chat_history_limit)

    @asynccontextmanager
    async def processor(self) -> AsyncIterator[DocumentProcessor]:
        """Processor bound to its own unit of work (used by background jobs)."""
        async with self.unit_of_work() as repos:
            yield self.build_processor(repos)

    async def shutdown(self) -> None:
        """Cancel outstanding jobs, then release database connections."""
        await self.runner.shutdown()
        if self.engine is not None:
            await self.engine.dispose()


def build_default_services(settings: Settings) -> PipelineServices:
    """Wire SQL persistence, local file storage and the configured model clients."""
    engine = create_async_engine_from_settings(settings)
    session_factory = create_session_factory(engine)

    logger.info(f"Storing uploaded documents under {settings.storage_root}")
    return PipelineServices(
        unit_of_work=sql_unit_of_work(session_factory),
        embeddings=get_embedding_client(settings),
        completions=get_llm_client(settings),
        storage=LocalFileStorage(settings.storage_root),
        settings=settings,
        engine=engine,
    )


def build_in_memory_services(
    settings: Settings,
    *,
    embeddings: EmbeddingClient | None = None,
    completions: CompletionClient | None = None,
    storage: StorageClient | None = None,
) -> PipelineServices:
    """Wire in-memory persistence and deterministic clients (tests, local demos)."""
    return PipelineServices(
        unit_of_work=InMemoryStore(),
        embeddings=embeddings or DeterministicEmbeddingClient(),
        completions=completions or DeterministicStubClient(),
        storage=storage or InMemoryStorage(),
        settings=settings,
    )
