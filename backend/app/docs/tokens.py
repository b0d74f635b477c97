"""Approximate token accounting used for chunk sizing."""

import math

# 1 token is roughly 4 characters of English text
CHARS_PER_TOKEN = 4

# Rough tokens-per-word ratio used to seed chunk overlap
TOKENS_PER_WORD = 1.3


def estimate_token_count(text: str) -> int:
    """Estimate how many model tokens ``text`` consumes.

    Deterministic and monotonic in string length. Rounds up, so short
    strings never estimate to zero tokens unless they are empty.
    """
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def last_tokens(text: str, token_count: int) -> str:
    """Return the trailing words of ``text`` worth roughly ``token_count`` tokens.

    Uses a word-count heuristic rather than a tokenizer, consistent with
    ``estimate_token_count``.
    """
    if token_count <= 0:
        return ""

    words = text.split()
    words_needed = math.ceil(token_count / TOKENS_PER_WORD)
    return " ".join(words[-words_needed:])
