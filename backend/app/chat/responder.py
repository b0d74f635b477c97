"""Streaming RAG responder: retrieve, augment, generate."""

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from uuid import UUID

from pydantic import BaseModel

from backend.app.docs.errors import GenerationError, RetrievalError
from backend.app.docs.retriever import RetrievalService, extract_source_metadata
from backend.app.llm.client import CompletionClient
from backend.app.models.chat import ChatMessage, ChatOptions, ChatRole, PromptMessage
from backend.app.models.docs import ChunkMatch, SourceCitation

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a helpful AI assistant that answers questions based on the provided context.

Guidelines:
- Answer questions using ONLY the information from the provided context
- If the context doesn't contain enough information to answer, say so
- Be concise and accurate
- Cite sources when possible using [Source N] notation
- If asked about something not in the context, politely explain you can only answer based on the provided documents
- Do not make up information or use knowledge outside the provided context"""

NO_CONTEXT = "No relevant context found."


def format_search_context(matches: list[ChunkMatch]) -> str:
    """Render matches as numbered source blocks for the prompt."""
    if not matches:
        return NO_CONTEXT

    return "\n\n---\n\n".join(
        f"[Source {i}]\n{match.content}" for i, match in enumerate(matches, start=1)
    )


def build_prompt(
    message: str,
    matches: list[ChunkMatch],
    history: list[ChatMessage],
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> list[PromptMessage]:
    """System prompt, prior turns, then the question augmented with context."""
    prompt = [PromptMessage(role=ChatRole.system, content=system_prompt)]
    prompt.extend(
        PromptMessage(role=m.role, content=m.content)
        for m in history
        if m.role in (ChatRole.user, ChatRole.assistant)
    )
    prompt.append(
        PromptMessage(
            role=ChatRole.user,
            content=f"Context:\n{format_search_context(matches)}\n\n---\n\nQuestion: {message}",
        )
    )
    return prompt


class RAGAnswer(BaseModel):
    """Complete (non-streamed) answer with its citations."""

    answer: str
    sources: list[SourceCitation]


class ResponseStream:
    """Async iterable of answer fragments for one question.

    Iterating runs retrieval then the completion stream, yielding each
    fragment as it arrives. Once iteration finishes, ``text`` holds the
    full answer and ``sources`` the citations from the same retrieval.
    Closing the stream early closes the upstream completion.
    """

    def __init__(
        self,
        responder: "RAGResponder",
        message: str,
        user_id: UUID,
        history: list[ChatMessage],
        options: ChatOptions,
    ) -> None:
        self.sources: list[SourceCitation] = []
        self.completed = False
        self._responder = responder
        self._message = message
        self._user_id = user_id
        self._history = history
        self._options = options
        self._parts: list[str] = []
        self._iterator = self._generate()

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterator

    async def aclose(self) -> None:
        await self._iterator.aclose()

    async def _generate(self) -> AsyncIterator[str]:
        responder = self._responder
        options = self._options

        try:
            matches = await responder.retriever.search(
                self._message,
                self._user_id,
                options.search_limit or responder.search_limit,
            )
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalError(f"Failed to search documents: {e}") from e

        self.sources = extract_source_metadata(matches)
        logger.info(f"Retrieved {len(matches)} context chunk(s) for user {self._user_id}")

        history = self._history if options.include_history else []
        prompt = build_prompt(self._message, matches, history, responder.system_prompt)

        completion = responder.completions.stream_completion(
            prompt,
            temperature=(
                options.temperature if options.temperature is not None else responder.temperature
            ),
            max_tokens=options.max_tokens or responder.max_tokens,
        )

        try:
            async with aclosing(completion) as fragments:
                async for fragment in fragments:
                    self._parts.append(fragment)
                    yield fragment
        except Exception as e:
            logger.error(f"Completion stream failed after {len(self._parts)} fragment(s): {e}")
            raise GenerationError(f"Failed to generate response: {e}") from e

        self.completed = True


class RAGResponder:
    """Answers questions from the user's own documents."""

    def __init__(
        self,
        retriever: RetrievalService,
        completions: CompletionClient,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        search_limit: int = 5,
    ) -> None:
        self.retriever = retriever
        self.completions = completions
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.search_limit = search_limit

    def respond(
        self,
        message: str,
        user_id: UUID,
        history: list[ChatMessage] | None = None,
        options: ChatOptions | None = None,
    ) -> ResponseStream:
        """Stream an answer to ``message``.

        Args:
            message: The user's question
            user_id: Owner whose documents are searched
            history: Prior turns, oldest first
            options: Per-request overrides

        Returns:
            ResponseStream yielding text fragments in generation order.
            Iteration raises RetrievalError or GenerationError on failure.
        """
        return ResponseStream(self, message, user_id, history or [], options or ChatOptions())

    async def answer(
        self,
        message: str,
        user_id: UUID,
        history: list[ChatMessage] | None = None,
        options: ChatOptions | None = None,
    ) -> RAGAnswer:
        """Generate the full answer without streaming it to a caller."""
        stream = self.respond(message, user_id, history, options)
        async for _ in stream:
            pass
        return RAGAnswer(answer=stream.text, sources=stream.sources)
