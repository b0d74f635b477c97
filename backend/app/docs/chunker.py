"""Document chunker - token-bounded text splitting with overlap."""

import re

from backend.app.docs.tokens import estimate_token_count, last_tokens
from backend.app.models.docs import TextChunk

DEFAULT_MAX_TOKENS = 500
DEFAULT_OVERLAP_TOKENS = 50

_PARAGRAPH_BREAK = re.compile(r"\n\n+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def normalize_text(text: str) -> str:
    """Unify line endings, collapse runs of 3+ newlines to 2, and trim."""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    normalized = _EXCESS_NEWLINES.sub("\n\n", normalized)
    return normalized.strip()


def split_into_sentences(text: str) -> list[str]:
    """Split on sentence-terminal punctuation followed by whitespace."""
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text) if s.strip()]


def chunk_document(
    text: str,
    *,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
    preserve_paragraphs: bool = True,
) -> list[TextChunk]:
    """Chunk document text into ordered, overlapping, token-bounded segments.

    Pure function with no I/O or randomness.

    Args:
        text: Raw document text to chunk
        max_tokens: Estimated token budget per chunk
        overlap_tokens: Trailing tokens of a flushed chunk used to seed the next one
        preserve_paragraphs: Split on blank lines before packing

    Returns:
        List of TextChunk with index 0..n-1 in emission order.

    Strategy:
        1. Normalize whitespace; empty input returns []
        2. Pack paragraphs greedily while the estimate stays <= max_tokens
        3. A paragraph that alone exceeds max_tokens flushes the buffer and is
           packed sentence by sentence instead
        4. Every new buffer after a flush is seeded with the tail of the
           flushed chunk, as long as the seeded buffer still fits
        5. A single oversized sentence (no punctuation to split on) becomes
           one chunk above max_tokens; the estimate is approximate anyway
    """
    cleaned = normalize_text(text)
    if not cleaned:
        return []

    if preserve_paragraphs:
        paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(cleaned) if p.strip()]
    else:
        paragraphs = [cleaned]

    chunks: list[TextChunk] = []
    current = ""

    def flush() -> str:
        """Emit the buffer as a chunk and return its content (or "")."""
        nonlocal current
        content = current.strip()
        current = ""
        if not content:
            return ""
        chunks.append(
            TextChunk(
                content=content,
                index=len(chunks),
                token_count=estimate_token_count(content),
            )
        )
        return content

    for paragraph in paragraphs:
        if estimate_token_count(paragraph) > max_tokens:
            previous = flush()

            for sentence in split_into_sentences(paragraph):
                if not current:
                    current = _seed(previous, sentence, " ", overlap_tokens, max_tokens)
                    previous = ""
                    continue

                candidate = f"{current} {sentence}"
                if estimate_token_count(candidate) > max_tokens:
                    previous = flush()
                    current = _seed(previous, sentence, " ", overlap_tokens, max_tokens)
                    previous = ""
                else:
                    current = candidate
            continue

        if not current:
            current = paragraph
            continue

        candidate = f"{current}\n\n{paragraph}"
        if estimate_token_count(candidate) > max_tokens:
            previous = flush()
            current = _seed(previous, paragraph, "\n\n", overlap_tokens, max_tokens)
        else:
            current = candidate

    flush()
    return chunks


def _seed(previous: str, text: str, separator: str, overlap_tokens: int, max_tokens: int) -> str:
    """Prefix ``text`` with the tail of ``previous``, trimmed to fit max_tokens."""
    if overlap_tokens <= 0 or not previous:
        return text

    words = last_tokens(previous, overlap_tokens).split()
    while words:
        candidate = " ".join(words) + separator + text
        if estimate_token_count(candidate) <= max_tokens:
            return candidate
        # Keep the words nearest the boundary
        words = words[1:]

    return text


def chunk_by_characters(
    text: str,
    max_chars: int = 2000,
    overlap_chars: int = 200,
) -> list[TextChunk]:
    """Chunk text into fixed character windows with overlap.

    Window ends are pushed forward to the next ". " or newline when one
    occurs within 100 characters.
    """
    if overlap_chars >= max_chars:
        raise ValueError("overlap_chars must be smaller than max_chars")

    chunks: list[TextChunk] = []
    start = 0

    while start < len(text):
        end = start + max_chars

        if end < len(text):
            next_period = text.find(". ", end)
            next_newline = text.find("\n", end)

            if next_period != -1 and next_period < end + 100:
                end = next_period + 1
            elif next_newline != -1 and next_newline < end + 100:
                end = next_newline + 1

        content = text[start:end].strip()
        if content:
            chunks.append(
                TextChunk(
                    content=content,
                    index=len(chunks),
                    token_count=estimate_token_count(content),
                )
            )

        if end >= len(text):
            break

        start = end - overlap_chars

    return chunks
