"""Chat turns over persisted sessions, streamed as typed events."""

import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing
from typing import Any
from uuid import UUID

from backend.app.chat.responder import RAGResponder
from backend.app.db.repositories import ChatRepository
from backend.app.docs.errors import ChatSessionNotFoundError, GenerationError, RetrievalError
from backend.app.models.chat import (
    ChatMessage,
    ChatOptions,
    ChatRole,
    ChatSession,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    StartEvent,
    StreamEvent,
)
from backend.app.utils.metrics import PrometheusPipelineMetrics

logger = logging.getLogger(__name__)


class ChatService:
    """Persists both sides of a conversation around the RAG responder."""

    def __init__(
        self,
        chat: ChatRepository,
        responder: RAGResponder,
        *,
        history_limit: int = 20,
        metrics: PrometheusPipelineMetrics | None = None,
    ) -> None:
        self.chat = chat
        self.responder = responder
        self.history_limit = history_limit
        self.metrics = metrics or PrometheusPipelineMetrics()

    async def create_session(
        self, user_id: UUID, title: str | None = None, metadata: dict[str, Any] | None = None
    ) -> ChatSession:
        """Create a new chat session."""
        return await self.chat.create_session(user_id, title or "New Chat", metadata or {})

    async def list_sessions(
        self, user_id: UUID, *, limit: int = 20, offset: int = 0
    ) -> tuple[list[ChatSession], int]:
        """List the user's sessions, most recently active first."""
        return await self.chat.list_sessions(user_id, limit=limit, offset=offset)

    async def list_messages(self, session_id: UUID, user_id: UUID) -> list[ChatMessage]:
        """Full message history of a session, oldest first.

        Raises:
            ChatSessionNotFoundError: If the session is missing or not owned by user_id
        """
        session = await self.chat.get_session(session_id, user_id)
        if session is None:
            raise ChatSessionNotFoundError(session_id)
        return await self.chat.list_messages(session_id)

    async def send_message(
        self,
        session_id: UUID,
        user_id: UUID,
        text: str,
        options: ChatOptions | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Run one chat turn.

        Yields ``start``, one ``chunk`` per generated fragment, then either
        ``done`` (assistant message persisted) or ``error`` (nothing
        persisted beyond the user's message). If the consumer stops
        iterating early, no assistant message is written.
        """
        session = await self.chat.get_session(session_id, user_id)
        if session is None:
            logger.warning(f"Chat turn for unknown session {session_id} (user {user_id})")
            self.metrics.record_chat_turn("error")
            yield ErrorEvent(error=str(ChatSessionNotFoundError(session_id)))
            return

        try:
            user_message = await self.chat.add_message(session_id, user_id, ChatRole.user, text)
            history = await self.chat.recent_messages(
                session_id, self.history_limit, exclude_id=user_message.message_id
            )
        except Exception as e:
            logger.error(f"[{session_id}] Failed to save user message: {e}")
            self.metrics.record_chat_turn("error")
            yield ErrorEvent(error="Failed to save user message")
            return

        yield StartEvent()

        stream = self.responder.respond(text, user_id, history, options)
        fragments = 0
        try:
            async with aclosing(stream):
                async for fragment in stream:
                    fragments += 1
                    self.metrics.inc_fragments()
                    yield ChunkEvent(content=fragment)
        except (RetrievalError, GenerationError) as e:
            logger.warning(f"[{session_id}] Chat turn failed after {fragments} fragment(s): {e}")
            self.metrics.record_chat_turn("error")
            yield ErrorEvent(error=str(e))
            return

        try:
            assistant_message = await self.chat.add_message(
                session_id, user_id, ChatRole.assistant, stream.text, stream.sources
            )
        except Exception as e:
            logger.error(f"[{session_id}] Failed to save assistant message: {e}")
            self.metrics.record_chat_turn("error")
            yield ErrorEvent(error="Failed to save assistant message")
            return

        logger.info(
            f"[{session_id}] Chat turn completed: {fragments} fragment(s), "
            f"{len(stream.sources)} source(s)"
        )
        self.metrics.record_chat_turn("completed")
        yield DoneEvent(sources=stream.sources, message_id=assistant_message.message_id)
