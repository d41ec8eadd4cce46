"""Approximate token accounting.

Token counts here are a heuristic of roughly four characters per token.
They size chunks and context windows; they are not what a provider's
tokenizer would report.
"""

import math

CHARS_PER_TOKEN = 4


def estimate_token_count(text: str) -> int:
    """Estimate the number of tokens in ``text``."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_token_limit(text: str, max_tokens: int) -> str:
    """Cut ``text`` so its estimate stays within ``max_tokens``.

    Truncated text ends with ``"..."``; the marker counts against the limit.
    """
    if estimate_token_count(text) <= max_tokens:
        return text
    if max_tokens <= 0:
        return ""

    max_chars = max_tokens * CHARS_PER_TOKEN
    if max_chars <= 3:
        return text[:max_chars]

    cut = text[: max_chars - 3]
    # Prefer a word boundary when one is reasonably close
    space = cut.rfind(" ")
    if space > len(cut) // 2:
        cut = cut[:space]
    return cut.rstrip() + "..."
