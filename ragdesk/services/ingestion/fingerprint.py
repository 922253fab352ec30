"""Content fingerprinting for idempotent re-ingestion.

A fingerprint is the SHA-256 hex digest of the content after
normalization: line endings unified to ``\\n`` and surrounding whitespace
trimmed.  The ingestion coordinator compares a freshly computed fingerprint
with the one stored on the source and skips chunking and embedding when
they match, unless the job was created with ``force``.
"""

from __future__ import annotations

import hashlib


def normalize_content(content: str) -> str:
    return content.replace("\r\n", "\n").replace("\r", "\n").strip()


def fingerprint(content: str | bytes) -> str:
    """Return a stable digest of *content*.

    Text is normalized first; bytes (raw uploads) are hashed as-is.
    """
    if isinstance(content, bytes):
        data = content
    else:
        data = normalize_content(content).encode("utf-8")
    return hashlib.sha256(data).hexdigest()
