"""Coalesce undersized adjacent chunks to cut embedding calls."""

from backend.app.docs.chunker import DEFAULT_MAX_TOKENS
from backend.app.docs.tokens import estimate_token_count
from backend.app.models.docs import TextChunk


def merge_small_chunks(
    chunks: list[TextChunk],
    min_tokens: int = 100,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> list[TextChunk]:
    """Merge adjacent chunks while the combined estimate stays within max_tokens.

    ``min_tokens`` is accepted for call compatibility; the size cap alone
    decides whether neighbours combine.
    Order is preserved and indices are renumbered 0..n-1. Merged chunks
    carry ``metadata["merged"] = True``.
    """
    if not chunks:
        return []

    merged: list[TextChunk] = []
    current = chunks[0]

    for nxt in chunks[1:]:
        content = f"{current.content}\n\n{nxt.content}"
        token_count = estimate_token_count(content)
        if token_count <= max_tokens:
            current = TextChunk(
                content=content,
                index=current.index,
                token_count=token_count,
                metadata={**current.metadata, "merged": True},
            )
        else:
            merged.append(current)
            current = nxt

    merged.append(current)

    return [chunk.model_copy(update={"index": i}) for i, chunk in enumerate(merged)]
