"""SQL implementations of repository interfaces."""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.db.models import ChatMessage as ChatMessageDB
from backend.app.db.models import ChatSession as ChatSessionDB
from backend.app.db.models import Document as DocumentDB
from backend.app.db.models import DocumentChunk as DocumentChunkDB
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


def _to_document(row: DocumentDB) -> Document:
    return Document(
        document_id=row.document_id,
        user_id=row.user_id,
        title=row.title,
        file_name=row.file_name,
        file_size=row.file_size,
        file_type=row.file_type,
        storage_path=row.storage_path,
        status=DocumentStatus(row.status),
        error_message=row.error_message,
        chunk_count=row.chunk_count,
        total_tokens=row.total_tokens,
        metadata=row.metadata_ or {},
        created_at=row.created_at,
        processed_at=row.processed_at,
    )


def _to_chunk(row: DocumentChunkDB) -> DocumentChunk:
    return DocumentChunk(
        chunk_id=row.chunk_id,
        document_id=row.document_id,
        user_id=row.user_id,
        chunk_index=row.chunk_index,
        content=row.content,
        embedding=row.embedding,
        token_count=row.token_count,
        metadata=row.metadata_ or {},
        created_at=row.created_at,
    )


def _to_session(row: ChatSessionDB) -> ChatSession:
    return ChatSession(
        session_id=row.session_id,
        user_id=row.user_id,
        title=row.title,
        metadata=row.metadata_ or {},
        created_at=row.created_at,
        last_message_at=row.last_message_at,
    )


def _to_message(row: ChatMessageDB) -> ChatMessage:
    return ChatMessage(
        message_id=row.message_id,
        session_id=row.session_id,
        user_id=row.user_id,
        role=ChatRole(row.role),
        content=row.content,
        sources=[SourceCitation.model_validate(s) for s in row.sources or []],
        created_at=row.created_at,
    )


class SqlDocumentRepository:
    """SQL implementation of DocumentRepository."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, upload: DocumentUpload, user_id: uuid.UUID) -> Document:
        """Create a document in pending status."""
        row = DocumentDB(
            document_id=uuid.uuid4(),
            user_id=user_id,
            title=upload.title,
            file_name=upload.file_name,
            file_size=upload.file_size,
            file_type=upload.file_type,
            storage_path=upload.storage_path,
            status=DocumentStatus.pending.value,
            chunk_count=0,
            total_tokens=0,
            metadata_=upload.metadata,
            created_at=_now(),
        )
        self._session.add(row)
        await self._session.commit()
        return _to_document(row)

    async def get(self, document_id: uuid.UUID) -> Document | None:
        """Get document by ID."""
        row = await self._session.get(DocumentDB, document_id, populate_existing=True)
        return _to_document(row) if row else None

    async def get_for_user(self, document_id: uuid.UUID, user_id: uuid.UUID) -> Document | None:
        """Get document by ID, scoped to owner."""
        result = await self._session.execute(
            select(DocumentDB)
            .where(DocumentDB.document_id == document_id, DocumentDB.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _to_document(row) if row else None

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        *,
        status: DocumentStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Document], int]:
        """List documents newest first with total count."""
        conditions = [DocumentDB.user_id == user_id]
        if status is not None:
            conditions.append(DocumentDB.status == status.value)

        total = await self._session.scalar(
            select(func.count()).select_from(DocumentDB).where(*conditions)
        )

        result = await self._session.execute(
            select(DocumentDB)
            .where(*conditions)
            .order_by(DocumentDB.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        docs = [_to_document(row) for row in result.scalars().all()]
        return docs, int(total or 0)

    async def _update(self, document_id: uuid.UUID, **values: Any) -> None:
        await self._session.execute(
            update(DocumentDB).where(DocumentDB.document_id == document_id).values(**values)
        )
        await self._session.commit()

    async def mark_processing(self, document_id: uuid.UUID) -> None:
        """Move document to processing."""
        await self._update(
            document_id, status=DocumentStatus.processing.value, error_message=None
        )

    async def mark_completed(
        self,
        document_id: uuid.UUID,
        *,
        chunk_count: int,
        total_tokens: int,
        processed_at: datetime,
    ) -> None:
        """Move document to completed."""
        await self._update(
            document_id,
            status=DocumentStatus.completed.value,
            error_message=None,
            chunk_count=chunk_count,
            total_tokens=total_tokens,
            processed_at=processed_at,
        )

    async def mark_failed(self, document_id: uuid.UUID, error_message: str) -> None:
        """Move document to failed."""
        await self._update(
            document_id, status=DocumentStatus.failed.value, error_message=error_message
        )

    async def delete(self, document_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        """Delete document and its chunks."""
        owned = await self._session.scalar(
            select(DocumentDB.document_id).where(
                DocumentDB.document_id == document_id, DocumentDB.user_id == user_id
            )
        )
        if owned is None:
            return False

        # Explicit chunk delete so the cascade holds without FK enforcement (SQLite)
        await self._session.execute(
            delete(DocumentChunkDB).where(DocumentChunkDB.document_id == document_id)
        )
        await self._session.execute(
            delete(DocumentDB).where(DocumentDB.document_id == document_id)
        )
        await self._session.commit()
        return True


class SqlChunkRepository:
    """SQL implementation of ChunkRepository."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_batch(self, chunks: list[DocumentChunk]) -> None:
        """Insert a batch of chunk rows in one transaction."""
        rows = [
            DocumentChunkDB(
                chunk_id=chunk.chunk_id,
                document_id=chunk.document_id,
                user_id=chunk.user_id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                embedding=chunk.embedding,
                token_count=chunk.token_count,
                metadata_=chunk.metadata,
                created_at=chunk.created_at or _now(),
            )
            for chunk in chunks
        ]
        try:
            self._session.add_all(rows)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

    async def delete_for_document(self, document_id: uuid.UUID) -> int:
        """Delete all chunks for a document."""
        result = await self._session.execute(
            delete(DocumentChunkDB).where(DocumentChunkDB.document_id == document_id)
        )
        await self._session.commit()
        return result.rowcount or 0

    async def list_for_document(self, document_id: uuid.UUID) -> list[DocumentChunk]:
        """List chunks ordered by index."""
        result = await self._session.execute(
            select(DocumentChunkDB)
            .where(DocumentChunkDB.document_id == document_id)
            .order_by(DocumentChunkDB.chunk_index)
        )
        return [_to_chunk(row) for row in result.scalars().all()]

    async def list_for_user(
        self, user_id: uuid.UUID, document_ids: list[uuid.UUID] | None = None
    ) -> list[DocumentChunk]:
        """List a user's chunks (enforce ownership at DB level)."""
        query = select(DocumentChunkDB).where(DocumentChunkDB.user_id == user_id)
        if document_ids:
            query = query.where(DocumentChunkDB.document_id.in_(document_ids))
        query = query.order_by(DocumentChunkDB.document_id, DocumentChunkDB.chunk_index)

        result = await self._session.execute(query)
        return [_to_chunk(row) for row in result.scalars().all()]


class SqlChatRepository:
    """SQL implementation of ChatRepository."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_session(
        self,
        user_id: uuid.UUID,
        title: str = "New Chat",
        metadata: dict[str, Any] | None = None,
    ) -> ChatSession:
        """Create a chat session."""
        row = ChatSessionDB(
            session_id=uuid.uuid4(),
            user_id=user_id,
            title=title,
            metadata_=metadata or {},
            created_at=_now(),
            last_message_at=None,
        )
        self._session.add(row)
        await self._session.commit()
        return _to_session(row)

    async def get_session(self, session_id: uuid.UUID, user_id: uuid.UUID) -> ChatSession | None:
        """Get session scoped to owner."""
        result = await self._session.execute(
            select(ChatSessionDB)
            .where(ChatSessionDB.session_id == session_id, ChatSessionDB.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _to_session(row) if row else None

    async def list_sessions(
        self, user_id: uuid.UUID, *, limit: int = 20, offset: int = 0
    ) -> tuple[list[ChatSession], int]:
        """List sessions by last activity, then creation time."""
        total = await self._session.scalar(
            select(func.count()).select_from(ChatSessionDB).where(ChatSessionDB.user_id == user_id)
        )
        result = await self._session.execute(
            select(ChatSessionDB)
            .where(ChatSessionDB.user_id == user_id)
            .order_by(
                ChatSessionDB.last_message_at.desc().nulls_last(),
                ChatSessionDB.created_at.desc(),
            )
            .limit(limit)
            .offset(offset)
        )
        sessions = [_to_session(row) for row in result.scalars().all()]
        return sessions, int(total or 0)

    async def add_message(
        self,
        session_id: uuid.UUID,
        user_id: uuid.UUID,
        role: ChatRole,
        content: str,
        sources: list[SourceCitation] | None = None,
    ) -> ChatMessage:
        """Append a message and touch the session."""
        created_at = _now()
        last_sequence = await self._session.scalar(
            select(func.max(ChatMessageDB.sequence)).where(ChatMessageDB.session_id == session_id)
        )
        row = ChatMessageDB(
            message_id=uuid.uuid4(),
            session_id=session_id,
            user_id=user_id,
            sequence=(last_sequence or 0) + 1,
            role=role.value,
            content=content,
            sources=[s.model_dump(mode="json") for s in sources or []],
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.execute(
            update(ChatSessionDB)
            .where(ChatSessionDB.session_id == session_id)
            .values(last_message_at=created_at)
        )
        await self._session.commit()
        return _to_message(row)

    async def list_messages(self, session_id: uuid.UUID) -> list[ChatMessage]:
        """List messages oldest first."""
        result = await self._session.execute(
            select(ChatMessageDB)
            .where(ChatMessageDB.session_id == session_id)
            .order_by(ChatMessageDB.sequence)
        )
        return [_to_message(row) for row in result.scalars().all()]

    async def recent_messages(
        self, session_id: uuid.UUID, limit: int, *, exclude_id: uuid.UUID | None = None
    ) -> list[ChatMessage]:
        """Last ``limit`` messages, returned oldest first."""
        query = select(ChatMessageDB).where(ChatMessageDB.session_id == session_id)
        if exclude_id is not None:
            query = query.where(ChatMessageDB.message_id != exclude_id)
        query = query.order_by(ChatMessageDB.sequence.desc()).limit(limit)

        result = await self._session.execute(query)
        rows = list(result.scalars().all())
        rows.reverse()
        return [_to_message(row) for row in rows]


def sql_unit_of_work(session_factory: async_sessionmaker[AsyncSession]):  # type: ignore[no-untyped-def]
    """Build a UnitOfWork that opens one AsyncSession per scope."""

    @asynccontextmanager
    async def open_repositories() -> AsyncIterator[Repositories]:
        async with session_factory() as session:
            yield Repositories(
                documents=SqlDocumentRepository(session),
                chunks=SqlChunkRepository(session),
                chat=SqlChatRepository(session),
            )

    return open_repositories
