"""Unit tests for content fingerprinting and token estimation."""

from __future__ import annotations

from ragdesk.services.ingestion.fingerprint import fingerprint, normalize_content
from ragdesk.utils.tokens import estimate_tokens, truncate_to_tokens


class TestFingerprint:
    def test_same_content_same_digest(self) -> None:
        assert fingerprint("Returns are free for 30 days.") == fingerprint(
            "Returns are free for 30 days."
        )

    def test_surrounding_whitespace_and_line_endings_ignored(self) -> None:
        assert fingerprint("  a\r\nb\r\n ") == fingerprint("a\nb")

    def test_different_content_differs(self) -> None:
        assert fingerprint("price is 10") != fingerprint("price is 11")

    def test_bytes_are_hashed_raw(self) -> None:
        assert fingerprint(b" raw ") != fingerprint(" raw ")
        assert len(fingerprint(b"%PDF-1.4")) == 64

    def test_normalize_content(self) -> None:
        assert normalize_content("\r\n x \r y \n") == "x \n y"


class TestTokenEstimates:
    def test_estimate_rounds_up(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("abcdef", chars_per_token=3) == 2

    def test_truncate_prefers_word_boundary(self) -> None:
        out = truncate_to_tokens("alpha beta gamma delta", max_tokens=3, chars_per_token=4)
        assert out == "alpha beta..."

    def test_truncate_leaves_short_text(self) -> None:
        assert truncate_to_tokens("short", max_tokens=10) == "short"
