"""Document domain models."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class DocumentStatus(str, Enum):
    """Document processing lifecycle status."""

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class DocumentUpload(BaseModel):
    """Metadata supplied when a document is uploaded."""

    title: str = Field(..., min_length=1, max_length=255)
    file_name: str = Field(..., min_length=1)
    file_size: int = Field(..., gt=0)
    file_type: str = Field(..., min_length=1)
    storage_path: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Document(BaseModel):
    """One uploaded source file and its processing state."""

    document_id: UUID
    user_id: UUID
    title: str
    file_name: str
    file_size: int
    file_type: str
    storage_path: str
    status: DocumentStatus = DocumentStatus.pending
    error_message: str | None = None
    chunk_count: int = 0
    total_tokens: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    processed_at: datetime | None = None


class TextChunk(BaseModel):
    """Token-bounded slice of document text produced by the chunker."""

    content: str
    index: int = Field(..., ge=0)
    token_count: int = Field(..., ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DocumentChunk(BaseModel):
    """Persisted chunk with its embedding vector."""

    chunk_id: UUID
    document_id: UUID
    user_id: UUID
    chunk_index: int = Field(..., ge=0)
    content: str
    embedding: list[float]
    token_count: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class ChunkMatch(BaseModel):
    """Chunk returned by retrieval, with its similarity to the query."""

    chunk_id: UUID
    document_id: UUID
    chunk_index: int
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    similarity: float


class SourceCitation(BaseModel):
    """Citation attached to an assistant message."""

    document_id: UUID
    chunk_index: int
    similarity: float


class QueryEvaluation(BaseModel):
    """Whether a user's documents look able to answer a query."""

    can_answer: bool
    confidence: float
    suggested_documents: list[UUID] = Field(default_factory=list)


class ProcessingResult(BaseModel):
    """Outcome of one processing attempt."""

    success: bool
    document_id: UUID
    chunks_created: int = 0
    total_tokens: int = 0
    error: str | None = None


class ProcessingStatus(BaseModel):
    """Snapshot of a document's processing state."""

    status: DocumentStatus
    chunk_count: int
    total_tokens: int
    error_message: str | None = None
