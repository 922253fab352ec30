"""Approximate token counting.

Chunk sizing, context budgets and history budgets all use a fixed
characters-per-token ratio instead of the serving model's tokenizer.  The
numbers are estimates for sizing decisions; the usage ledger records the
provider-reported token counts whenever the provider returns them.
"""

from __future__ import annotations

import math

DEFAULT_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Return ``ceil(len(text) / chars_per_token)``; 0 for empty text."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def truncate_to_tokens(
    text: str,
    max_tokens: int,
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
) -> str:
    """Cut *text* to roughly *max_tokens*, preferring a word boundary."""
    max_chars = max_tokens * chars_per_token
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    head, sep, _ = cut.rpartition(" ")
    return (head if sep and head else cut).rstrip() + "..."
