"""In-memory implementations of repository interfaces."""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from backend.app.db.repositories import Repositories
from backend.app.models.chat import ChatMessage, ChatRole, ChatSession
from backend.app.models.docs import (
    Document,
    DocumentChunk,
    DocumentStatus,
    DocumentUpload,
    SourceCitation,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDocumentRepository:
    """In-memory implementation of DocumentRepository."""

    def __init__(self, chunks: "InMemoryChunkRepository | None" = None) -> None:
        self._documents: dict[uuid.UUID, Document] = {}
        self._chunks = chunks

    async def create(self, upload: DocumentUpload, user_id: uuid.UUID) -> Document:
        """Create a document in pending status."""
        document = Document(
            document_id=uuid.uuid4(),
            user_id=user_id,
            title=upload.title,
            file_name=upload.file_name,
            file_size=upload.file_size,
            file_type=upload.file_type,
            storage_path=upload.storage_path,
            status=DocumentStatus.pending,
            metadata=dict(upload.metadata),
            created_at=_now(),
        )
        self._documents[document.document_id] = document
        return document.model_copy()

    async def get(self, document_id: uuid.UUID) -> Document | None:
        """Get document by ID."""
        document = self._documents.get(document_id)
        return document.model_copy() if document else None

    async def get_for_user(self, document_id: uuid.UUID, user_id: uuid.UUID) -> Document | None:
        """Get document by ID."""
        document = self._documents.get(document_id)

        if document is None:
            return None

        # Enforce ownership
        if document.user_id != user_id:
            return None

        return document.model_copy()

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        *,
        status: DocumentStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Document], int]:
        """List documents for user."""
        results = [
            doc
            for doc in self._documents.values()
            if doc.user_id == user_id and (status is None or doc.status == status)
        ]

        # Sort by created_at descending
        results.sort(key=lambda d: d.created_at, reverse=True)

        page = results[offset : offset + limit]
        return [doc.model_copy() for doc in page], len(results)

    def _replace(self, document_id: uuid.UUID, **changes: Any) -> None:
        document = self._documents.get(document_id)
        if document is None:
            return
        self._documents[document_id] = document.model_copy(update=changes)

    async def mark_processing(self, document_id: uuid.UUID) -> None:
        """Move document to processing."""
        self._replace(document_id, status=DocumentStatus.processing, error_message=None)

    async def mark_completed(
        self,
        document_id: uuid.UUID,
        *,
        chunk_count: int,
        total_tokens: int,
        processed_at: datetime,
    ) -> None:
        """Move document to completed."""
        self._replace(
            document_id,
            status=DocumentStatus.completed,
            error_message=None,
            chunk_count=chunk_count,
            total_tokens=total_tokens,
            processed_at=processed_at,
        )

    async def mark_failed(self, document_id: uuid.UUID, error_message: str) -> None:
        """Move document to failed."""
        self._replace(document_id, status=DocumentStatus.failed, error_message=error_message)

    async def delete(self, document_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        """Delete document and cascade to its chunks."""
        document = self._documents.get(document_id)
        if document is None or document.user_id != user_id:
            return False

        del self._documents[document_id]
        if self._chunks is not None:
            await self._chunks.delete_for_document(document_id)
        return True


class InMemoryChunkRepository:
    """In-memory implementation of ChunkRepository."""

    def __init__(self) -> None:
        self._chunks: dict[uuid.UUID, list[DocumentChunk]] = {}

    async def insert_batch(self, chunks: list[DocumentChunk]) -> None:
        """Insert a batch of chunks."""
        for chunk in chunks:
            existing = self._chunks.setdefault(chunk.document_id, [])
            # Same uniqueness as the (document_id, chunk_index) constraint
            if any(c.chunk_index == chunk.chunk_index for c in existing):
                raise ValueError(
                    f"Duplicate chunk_index {chunk.chunk_index} for document {chunk.document_id}"
                )

        for chunk in chunks:
            stored = chunk if chunk.created_at else chunk.model_copy(update={"created_at": _now()})
            self._chunks[chunk.document_id].append(stored)

    async def delete_for_document(self, document_id: uuid.UUID) -> int:
        """Delete all chunks for a document."""
        return len(self._chunks.pop(document_id, []))

    async def list_for_document(self, document_id: uuid.UUID) -> list[DocumentChunk]:
        """List chunks ordered by index."""
        return sorted(self._chunks.get(document_id, []), key=lambda c: c.chunk_index)

    async def list_for_user(
        self, user_id: uuid.UUID, document_ids: list[uuid.UUID] | None = None
    ) -> list[DocumentChunk]:
        """List chunks owned by user."""
        results: list[DocumentChunk] = []
        for document_id, chunks in self._chunks.items():
            if document_ids and document_id not in document_ids:
                continue
            # Enforce ownership
            results.extend(c for c in chunks if c.user_id == user_id)
        return results


class InMemoryChatRepository:
    """In-memory implementation of ChatRepository."""

    def __init__(self) -> None:
        self._sessions: dict[uuid.UUID, ChatSession] = {}
        self._messages: dict[uuid.UUID, list[ChatMessage]] = {}

    async def create_session(
        self,
        user_id: uuid.UUID,
        title: str = "New Chat",
        metadata: dict[str, Any] | None = None,
    ) -> ChatSession:
        """Create a chat session."""
        session = ChatSession(
            session_id=uuid.uuid4(),
            user_id=user_id,
            title=title,
            metadata=metadata or {},
            created_at=_now(),
        )
        self._sessions[session.session_id] = session
        self._messages[session.session_id] = []
        return session.model_copy()

    async def get_session(self, session_id: uuid.UUID, user_id: uuid.UUID) -> ChatSession | None:
        """Get session by ID."""
        session = self._sessions.get(session_id)

        if session is None or session.user_id != user_id:
            return None

        return session.model_copy()

    async def list_sessions(
        self, user_id: uuid.UUID, *, limit: int = 20, offset: int = 0
    ) -> tuple[list[ChatSession], int]:
        """List sessions by last activity."""
        results = [s for s in self._sessions.values() if s.user_id == user_id]
        results.sort(key=lambda s: s.last_message_at or s.created_at, reverse=True)

        page = results[offset : offset + limit]
        return [s.model_copy() for s in page], len(results)

    async def add_message(
        self,
        session_id: uuid.UUID,
        user_id: uuid.UUID,
        role: ChatRole,
        content: str,
        sources: list[SourceCitation] | None = None,
    ) -> ChatMessage:
        """Append a message to a session."""
        if session_id not in self._sessions:
            raise KeyError(f"Unknown chat session {session_id}")

        message = ChatMessage(
            message_id=uuid.uuid4(),
            session_id=session_id,
            user_id=user_id,
            role=role,
            content=content,
            sources=list(sources or []),
            created_at=_now(),
        )
        self._messages[session_id].append(message)
        self._sessions[session_id] = self._sessions[session_id].model_copy(
            update={"last_message_at": message.created_at}
        )
        return message

    async def list_messages(self, session_id: uuid.UUID) -> list[ChatMessage]:
        """List messages in insertion order."""
        return list(self._messages.get(session_id, []))

    async def recent_messages(
        self, session_id: uuid.UUID, limit: int, *, exclude_id: uuid.UUID | None = None
    ) -> list[ChatMessage]:
        """Last ``limit`` messages, oldest first."""
        messages = [m for m in self._messages.get(session_id, []) if m.message_id != exclude_id]
        if limit <= 0:
            return []
        return messages[-limit:]


class InMemoryStore:
    """Shared in-memory state exposed as a unit of work.

    Every scope sees the same repositories, so a job started from one request
    is visible to the next.
    """

    def __init__(self) -> None:
        self.chunks = InMemoryChunkRepository()
        self.documents = InMemoryDocumentRepository(self.chunks)
        self.chat = InMemoryChatRepository()

    @asynccontextmanager
    async def _scope(self) -> AsyncIterator[Repositories]:
        yield Repositories(documents=self.documents, chunks=self.chunks, chat=self.chat)

    def __call__(self):  # type: ignore[no-untyped-def]
        return self._scope()
