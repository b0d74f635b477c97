"""Chat session, message and stream event models."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from backend.app.models.docs import SourceCitation


class ChatRole(str, Enum):
    """Author of a chat message."""

    user = "user"
    assistant = "assistant"
    system = "system"


class ChatSession(BaseModel):
    """Conversation container owned by a user."""

    session_id: UUID
    user_id: UUID
    title: str = "New Chat"
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_message_at: datetime | None = None


class ChatMessage(BaseModel):
    """One persisted turn of a conversation."""

    message_id: UUID
    session_id: UUID
    user_id: UUID
    role: ChatRole
    content: str
    sources: list[SourceCitation] = Field(default_factory=list)
    created_at: datetime


class PromptMessage(BaseModel):
    """Message in the shape the completion API expects."""

    role: ChatRole
    content: str


class ChatOptions(BaseModel):
    """Per-request overrides for a chat turn."""

    search_limit: int | None = Field(None, ge=1)
    temperature: float | None = Field(None, ge=0, le=2)
    max_tokens: int | None = Field(None, gt=0)
    include_history: bool = True


class StartEvent(BaseModel):
    type: Literal["start"] = "start"


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    content: str


class DoneEvent(BaseModel):
    """Terminal success event carrying citations and the assistant message id."""

    type: Literal["done"] = "done"
    sources: list[SourceCitation]
    message_id: UUID


class ErrorEvent(BaseModel):
    """Terminal failure event; partial text already streamed is not retracted."""

    type: Literal["error"] = "error"
    error: str


StreamEvent = Annotated[
    StartEvent | ChunkEvent | DoneEvent | ErrorEvent,
    Field(discriminator="type"),
]
