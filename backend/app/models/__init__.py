"""Models package - re-exports for convenience."""

from backend.app.models.chat import (
    ChatMessage,
    ChatOptions,
    ChatRole,
    ChatSession,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    PromptMessage,
    StartEvent,
    StreamEvent,
)
from backend.app.models.docs import (
    ChunkMatch,
    Document,
    DocumentChunk,
    DocumentStatus,
    DocumentUpload,
    ProcessingResult,
    ProcessingStatus,
    SourceCitation,
    TextChunk,
)

__all__ = [
    # Documents
    "Document",
    "DocumentUpload",
    "DocumentStatus",
    "DocumentChunk",
    "TextChunk",
    "ChunkMatch",
    "SourceCitation",
    "ProcessingResult",
    "ProcessingStatus",
    # Chat
    "ChatSession",
    "ChatMessage",
    "ChatRole",
    "ChatOptions",
    "PromptMessage",
    # Stream events
    "StartEvent",
    "ChunkEvent",
    "DoneEvent",
    "ErrorEvent",
    "StreamEvent",
]
