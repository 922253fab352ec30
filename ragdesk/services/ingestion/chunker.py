"""Sentence-aware text chunking with overlapping windows.

Splits text into :class:`~ragdesk.models.rag.TextSpan` windows sized for
embedding models (~500 tokens each with 100 tokens of overlap).

The window is measured in characters (``tokens * chars_per_token``).  When
a window ends inside the text, the cut is moved back to the last sentence
terminator (``.``, ``!`` or ``?`` followed by whitespace) within the final
200 characters.  Without one, the cut falls on the last word boundary, and
only a single unbroken run of characters longer than the window is ever
split mid-word.

The next window starts ``overlap`` characters before the previous cut,
nudged forward to a word start, and always strictly after the previous
window's start so the loop makes progress.  Consecutive spans therefore
either overlap or are separated by whitespace only.

Token counts are ``ceil(len / chars_per_token)`` estimates, not tokenizer
output.
"""

from __future__ import annotations

import re

import structlog

from ragdesk.models.rag import TextSpan
from ragdesk.utils.tokens import DEFAULT_CHARS_PER_TOKEN, estimate_tokens

logger = structlog.get_logger(logger_name=__name__)

_SENTENCE_LOOKBACK_CHARS = 200

# A period after one of these does not end a sentence: "Dr. Smith".
_ABBREVIATION_RE = re.compile(
    r"\b(Dr|Mr|Mrs|Ms|Prof|Jr|Sr|St|Ave|Blvd|Vol|No|vs|etc|approx|dept|est|govt|inc|ltd|co|ft|e\.g|i\.e)\.",
    re.IGNORECASE,
)
_TERMINATOR_RE = re.compile(r"[.!?](?=\s)")


class TextChunker:
    """Splits text into overlapping, sentence-aware spans.

    Parameters
    ----------
    chunk_size:
        Target token count per span (default 500).
    overlap:
        Tokens shared between consecutive spans (default 100).  Must be
        smaller than *chunk_size*.
    chars_per_token:
        Character-to-token ratio used for sizing (default 4).
    """

    def __init__(
        self,
        chunk_size: int = 500,
        overlap: int = 100,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if overlap < 0 or overlap >= chunk_size:
            raise ValueError("overlap must be >= 0 and smaller than chunk_size")
        self._chunk_size = chunk_size
        self._overlap = overlap
        self._chars_per_token = chars_per_token

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def chunk(self, text: str) -> list[TextSpan]:
        """Split *text* into ordered spans with offsets into *text*.

        Empty or whitespace-only input returns an empty list.  The final
        span may be shorter than the others.
        """
        if not text or not text.strip():
            return []

        window = self._chunk_size * self._chars_per_token
        overlap_chars = self._overlap * self._chars_per_token
        length = len(text)

        spans: list[TextSpan] = []
        start = _skip_whitespace(text, 0)
        while start < length:
            end = min(start + window, length)
            if end < length:
                end = self._find_cut(text, start, end)

            span_end = end
            while span_end > start and text[span_end - 1].isspace():
                span_end -= 1
            if span_end > start:
                piece = text[start:span_end]
                spans.append(
                    TextSpan(
                        index=len(spans),
                        text=piece,
                        start=start,
                        end=span_end,
                        token_count=estimate_tokens(piece, self._chars_per_token),
                    )
                )

            if end >= length:
                break
            start = self._next_start(text, start, end, overlap_chars)

        logger.debug(
            "chunking_complete",
            num_chunks=len(spans),
            text_length=length,
            chunk_size=self._chunk_size,
            overlap=self._overlap,
        )
        return spans

    # ------------------------------------------------------------------
    # Boundary search
    # ------------------------------------------------------------------

    @staticmethod
    def _find_cut(text: str, start: int, end: int) -> int:
        """Return where a window ``[start, end)`` inside *text* should end."""
        floor = max(start + 1, end - _SENTENCE_LOOKBACK_CHARS)

        # Look one character past the window so a terminator sitting on the
        # last window position still sees its following whitespace.
        region = _ABBREVIATION_RE.sub(
            lambda m: m.group(0)[:-1] + "\x00",
            text[floor : end + 1],
        )
        last_terminator = None
        for match in _TERMINATOR_RE.finditer(region):
            if floor + match.end() <= end:
                last_terminator = floor + match.end()
        if last_terminator is not None:
            return last_terminator

        if text[end].isspace():
            return end
        for i in range(end - 1, start, -1):
            if text[i].isspace():
                return i
        return end

    @staticmethod
    def _next_start(text: str, start: int, end: int, overlap_chars: int) -> int:
        """First character of the window after ``[start, end)``."""
        candidate = end - overlap_chars
        if candidate <= start:
            candidate = end

        if 0 < candidate < len(text) and not text[candidate - 1].isspace() and not text[candidate].isspace():
            i = candidate
            while i < end and not text[i].isspace():
                i += 1
            if i < end or text[end].isspace():
                candidate = i

        return _skip_whitespace(text, candidate)


def _skip_whitespace(text: str, pos: int) -> int:
    while pos < len(text) and text[pos].isspace():
        pos += 1
    return pos
