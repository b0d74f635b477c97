"""Chat endpoints - sessions, history and streaming answers (SSE)."""

import uuid
from collections.abc import AsyncGenerator
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from backend.app.api.auth import get_current_context
from backend.app.api.dependencies import get_repositories, get_services
from backend.app.db.context import RequestContext
from backend.app.db.repositories import Repositories
from backend.app.docs.errors import ChatSessionNotFoundError
from backend.app.models.chat import ChatMessage, ChatOptions, ChatSession
from backend.app.services import PipelineServices

router = APIRouter(prefix="/chat", tags=["chat"])


class CreateSessionRequest(BaseModel):
    """Request body for POST /chat/sessions."""

    title: str | None = Field(None, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionListResponse(BaseModel):
    """Response for GET /chat/sessions."""

    sessions: list[ChatSession]
    total: int
    limit: int
    offset: int


class MessageListResponse(BaseModel):
    """Response for GET /chat/sessions/{id}/messages."""

    messages: list[ChatMessage]


class SendMessageRequest(BaseModel):
    """Request body for POST /chat/sessions/{id}/messages."""

    message: str = Field(..., min_length=1)
    search_limit: int | None = Field(None, ge=1, le=10)
    temperature: float | None = Field(None, ge=0, le=2)


@router.post("/sessions", response_model=ChatSession, status_code=status.HTTP_201_CREATED)
async def create_session(
    request: CreateSessionRequest,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    services: Annotated[PipelineServices, Depends(get_services)],
    repos: Annotated[Repositories, Depends(get_repositories)],
) -> ChatSession:
    """Create a new chat session."""
    chat = services.build_chat_service(repos)
    return await chat.create_session(ctx.user_id, request.title, request.metadata)


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    services: Annotated[PipelineServices, Depends(get_services)],
    repos: Annotated[Repositories, Depends(get_repositories)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> SessionListResponse:
    """List the current user's chat sessions, most recently active first."""
    chat = services.build_chat_service(repos)
    sessions, total = await chat.list_sessions(ctx.user_id, limit=limit, offset=offset)
    return SessionListResponse(sessions=sessions, total=total, limit=limit, offset=offset)


@router.get("/sessions/{session_id}/messages", response_model=MessageListResponse)
async def list_messages(
    session_id: uuid.UUID,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    services: Annotated[PipelineServices, Depends(get_services)],
    repos: Annotated[Repositories, Depends(get_repositories)],
) -> MessageListResponse:
    """Message history of a session, oldest first."""
    chat = services.build_chat_service(repos)
    try:
        messages = await chat.list_messages(session_id, ctx.user_id)
    except ChatSessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return MessageListResponse(messages=messages)


@router.post("/sessions/{session_id}/messages")
async def send_message(
    session_id: uuid.UUID,
    request: SendMessageRequest,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    services: Annotated[PipelineServices, Depends(get_services)],
) -> StreamingResponse:
    """Send a message and stream the answer via SSE.

    Each frame is ``data: <event json>`` where the event type is one of
    start, chunk, done or error.

    Args:
        session_id: Chat session
        request: Message and per-request options
        ctx: Request context (user_id)
        services: Pipeline services

    Returns:
        SSE stream
    """
    options = ChatOptions(search_limit=request.search_limit, temperature=request.temperature)

    async def event_generator() -> AsyncGenerator[str, None]:
        """Generate SSE events."""
        # The stream outlives the request scope, so it opens its own unit of work
        async with services.unit_of_work() as repos:
            chat = services.build_chat_service(repos)
            events = chat.send_message(session_id, ctx.user_id, request.message, options)
            try:
                async for event in events:
                    yield f"data: {event.model_dump_json()}\n\n"
            finally:
                await events.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
