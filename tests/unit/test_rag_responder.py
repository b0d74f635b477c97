"""Unit tests for the streaming RAG responder."""

import uuid
from collections.abc import AsyncIterator
from datetime import datetime, timezone

import pytest

from backend.app.chat.responder import (
    DEFAULT_SYSTEM_PROMPT,
    RAGResponder,
    build_prompt,
    format_search_context,
)
from backend.app.docs.errors import GenerationError, RetrievalError
from backend.app.models.chat import ChatMessage, ChatOptions, ChatRole, PromptMessage
from backend.app.models.docs import ChunkMatch


def _match(content: str, similarity: float = 0.9, chunk_index: int = 0) -> ChunkMatch:
    return ChunkMatch(
        chunk_id=uuid.uuid4(),
        document_id=uuid.UUID("11111111-1111-1111-1111-111111111111"),
        chunk_index=chunk_index,
        content=content,
        similarity=similarity,
    )


class FakeRetriever:
    """Returns fixed matches and records calls."""

    def __init__(self, matches: list[ChunkMatch], error: Exception | None = None) -> None:
        self.matches = matches
        self.error = error
        self.calls: list[tuple[str, uuid.UUID, int | None]] = []

    async def search(self, query, user_id, limit=None, *, document_ids=None):  # type: ignore[no-untyped-def]
        self.calls.append((query, user_id, limit))
        if self.error is not None:
            raise self.error
        return self.matches


class FakeCompletions:
    """Yields scripted fragments, optionally failing after them."""

    def __init__(self, fragments: list[str], error: Exception | None = None) -> None:
        self.fragments = fragments
        self.error = error
        self.prompts: list[list[PromptMessage]] = []
        self.kwargs: dict = {}
        self.closed = False

    async def stream_completion(  # type: ignore[no-untyped-def]
        self, messages, *, temperature, max_tokens
    ) -> AsyncIterator[str]:
        self.prompts.append(messages)
        self.kwargs = {"temperature": temperature, "max_tokens": max_tokens}
        try:
            for fragment in self.fragments:
                yield fragment
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


def test_format_search_context_numbers_sources() -> None:
    """Test [Source N] blocks joined by separators."""
    context = format_search_context([_match("Alpha"), _match("Beta")])

    assert context == "[Source 1]\nAlpha\n\n---\n\n[Source 2]\nBeta"


def test_format_search_context_empty() -> None:
    """Test the no-context placeholder."""
    assert format_search_context([]) == "No relevant context found."


def test_build_prompt_orders_system_history_question() -> None:
    """Test prompt layout: system, prior turns, augmented question."""
    now = datetime.now(timezone.utc)
    session_id, user_id = uuid.uuid4(), uuid.uuid4()
    history = [
        ChatMessage(
            message_id=uuid.uuid4(),
            session_id=session_id,
            user_id=user_id,
            role=ChatRole.user,
            content="earlier question",
            created_at=now,
        ),
        ChatMessage(
            message_id=uuid.uuid4(),
            session_id=session_id,
            user_id=user_id,
            role=ChatRole.assistant,
            content="earlier answer",
            created_at=now,
        ),
    ]

    prompt = build_prompt("What now?", [_match("Fact")], history)

    assert [m.role for m in prompt] == [
        ChatRole.system,
        ChatRole.user,
        ChatRole.assistant,
        ChatRole.user,
    ]
    assert prompt[0].content == DEFAULT_SYSTEM_PROMPT
    assert prompt[-1].content == "Context:\n[Source 1]\nFact\n\n---\n\nQuestion: What now?"


@pytest.mark.asyncio
async def test_respond_streams_fragments_and_exposes_sources() -> None:
    """Test fragments arrive in order and sources/text are set after exhaustion."""
    retriever = FakeRetriever([_match("Fact", 0.91, 3)])
    completions = FakeCompletions(["The ", "answer", "."])
    responder = RAGResponder(retriever, completions, search_limit=4)
    user_id = uuid.uuid4()

    stream = responder.respond("Question?", user_id)
    fragments = [f async for f in stream]

    assert fragments == ["The ", "answer", "."]
    assert stream.text == "The answer."
    assert stream.completed is True
    assert len(stream.sources) == 1
    assert stream.sources[0].chunk_index == 3
    assert stream.sources[0].similarity == 0.91
    assert retriever.calls == [("Question?", user_id, 4)]
    assert completions.kwargs == {"temperature": 0.7, "max_tokens": 2000}


@pytest.mark.asyncio
async def test_respond_applies_options() -> None:
    """Test per-request overrides and history exclusion."""
    retriever = FakeRetriever([])
    completions = FakeCompletions(["ok"])
    responder = RAGResponder(retriever, completions)
    now = datetime.now(timezone.utc)
    history = [
        ChatMessage(
            message_id=uuid.uuid4(),
            session_id=uuid.uuid4(),
            user_id=uuid.uuid4(),
            role=ChatRole.user,
            content="old",
            created_at=now,
        )
    ]
    options = ChatOptions(search_limit=2, temperature=0.0, max_tokens=99, include_history=False)

    _ = [f async for f in responder.respond("Q", uuid.uuid4(), history, options)]

    assert retriever.calls[0][2] == 2
    assert completions.kwargs == {"temperature": 0.0, "max_tokens": 99}
    assert len(completions.prompts[0]) == 2  # system + question only
    assert "No relevant context found." in completions.prompts[0][-1].content


@pytest.mark.asyncio
async def test_respond_wraps_completion_failure() -> None:
    """Test mid-stream failure surfaces as GenerationError after earlier fragments."""
    completions = FakeCompletions(["one", "two"], error=RuntimeError("upstream reset"))
    responder = RAGResponder(FakeRetriever([_match("x")]), completions)

    received: list[str] = []
    stream = responder.respond("Q", uuid.uuid4())
    with pytest.raises(GenerationError, match="upstream reset"):
        async for fragment in stream:
            received.append(fragment)

    assert received == ["one", "two"]
    assert stream.completed is False


@pytest.mark.asyncio
async def test_respond_retrieval_failure_is_retrieval_error() -> None:
    """Test that search failures raise RetrievalError before any generation."""
    completions = FakeCompletions(["never"])
    responder = RAGResponder(FakeRetriever([], error=ConnectionError("db down")), completions)

    with pytest.raises(RetrievalError):
        async for _ in responder.respond("Q", uuid.uuid4()):
            pass

    assert completions.prompts == []


@pytest.mark.asyncio
async def test_closing_stream_early_closes_completion() -> None:
    """Test abandoning the stream closes the upstream completion."""
    completions = FakeCompletions(["a", "b", "c"])
    responder = RAGResponder(FakeRetriever([]), completions)

    stream = responder.respond("Q", uuid.uuid4())
    iterator = stream.__aiter__()
    assert await iterator.__anext__() == "a"
    await stream.aclose()

    assert completions.closed is True
    assert stream.completed is False


@pytest.mark.asyncio
async def test_answer_drains_stream() -> None:
    """Test the non-streaming answer helper."""
    responder = RAGResponder(FakeRetriever([_match("x")]), FakeCompletions(["Hello", " world"]))

    result = await responder.answer("Q", uuid.uuid4())

    assert result.answer == "Hello world"
    assert len(result.sources) == 1
