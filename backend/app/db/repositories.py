"""Repository protocol interfaces for data access."""

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from backend.app.models.chat import ChatMessage, ChatRole, ChatSession
from backend.app.models.docs import (
    Document,
    DocumentChunk,
    DocumentStatus,
    DocumentUpload,
    SourceCitation,
)


class DocumentRepository(Protocol):
    """Repository for document rows and their status transitions."""

    async def create(self, upload: DocumentUpload, user_id: UUID) -> Document:
        """Create a document in ``pending`` status.

        Args:
            upload: Upload metadata
            user_id: Owning user

        Returns:
            Created document
        """
        ...

    async def get(self, document_id: UUID) -> Document | None:
        """Get a document by ID regardless of owner (job-internal use)."""
        ...

    async def get_for_user(self, document_id: UUID, user_id: UUID) -> Document | None:
        """Get a document by ID if it belongs to ``user_id``."""
        ...

    async def list_for_user(
        self,
        user_id: UUID,
        *,
        status: DocumentStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Document], int]:
        """List a user's documents, newest first.

        Returns:
            (page of documents, total matching count)
        """
        ...

    async def mark_processing(self, document_id: UUID) -> None:
        """Move to ``processing`` and clear any previous error."""
        ...

    async def mark_completed(
        self,
        document_id: UUID,
        *,
        chunk_count: int,
        total_tokens: int,
        processed_at: datetime,
    ) -> None:
        """Move to ``completed`` with final counts."""
        ...

    async def mark_failed(self, document_id: UUID, error_message: str) -> None:
        """Move to ``failed`` and record the error."""
        ...

    async def delete(self, document_id: UUID, user_id: UUID) -> bool:
        """Delete a user's document and its chunks.

        Returns:
            True if a document was deleted
        """
        ...


class ChunkRepository(Protocol):
    """Repository for chunk rows. Chunks are written in batches, never updated."""

    async def insert_batch(self, chunks: list[DocumentChunk]) -> None:
        """Insert one batch of chunk rows atomically."""
        ...

    async def delete_for_document(self, document_id: UUID) -> int:
        """Delete all chunks of a document.

        Returns:
            Number of rows deleted
        """
        ...

    async def list_for_document(self, document_id: UUID) -> list[DocumentChunk]:
        """List a document's chunks ordered by chunk_index."""
        ...

    async def list_for_user(
        self, user_id: UUID, document_ids: list[UUID] | None = None
    ) -> list[DocumentChunk]:
        """List all chunks owned by a user, optionally restricted to documents."""
        ...


class ChatRepository(Protocol):
    """Repository for chat sessions and append-only messages."""

    async def create_session(
        self, user_id: UUID, title: str = "New Chat", metadata: dict[str, Any] | None = None
    ) -> ChatSession:
        """Create a chat session."""
        ...

    async def get_session(self, session_id: UUID, user_id: UUID) -> ChatSession | None:
        """Get a session if it belongs to ``user_id``."""
        ...

    async def list_sessions(
        self, user_id: UUID, *, limit: int = 20, offset: int = 0
    ) -> tuple[list[ChatSession], int]:
        """List sessions by most recent activity.

        Returns:
            (page of sessions, total count)
        """
        ...

    async def add_message(
        self,
        session_id: UUID,
        user_id: UUID,
        role: ChatRole,
        content: str,
        sources: list[SourceCitation] | None = None,
    ) -> ChatMessage:
        """Append a message and bump the session's last_message_at."""
        ...

    async def list_messages(self, session_id: UUID) -> list[ChatMessage]:
        """List all messages of a session, oldest first."""
        ...

    async def recent_messages(
        self, session_id: UUID, limit: int, *, exclude_id: UUID | None = None
    ) -> list[ChatMessage]:
        """Return the last ``limit`` messages, oldest first, skipping ``exclude_id``."""
        ...


@dataclass
class Repositories:
    """Repositories sharing one unit of work (one DB session)."""

    documents: DocumentRepository
    chunks: ChunkRepository
    chat: ChatRepository


class UnitOfWork(Protocol):
    """Factory that opens a scope of repositories."""

    def __call__(self) -> AbstractAsyncContextManager[Repositories]:
        ...
