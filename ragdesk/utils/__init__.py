"""Utility modules for ragdesk.

- **errors** -- exception hierarchy rooted at RagDeskError, grouped by how
  callers react (retry, terminal content failure, tenant boundary, capacity).
- **logging** -- structlog setup with a dual renderer: coloured console in
  development, JSON in production.
- **tokens** -- the characters-per-token estimate used for chunk sizing and
  prompt budgets.
- **concurrency** -- bounded fan-out helper for background work.
"""

from ragdesk.utils.concurrency import throttled_gather
from ragdesk.utils.errors import (
    CapacityError,
    ConfigurationError,
    ContentError,
    CrawlError,
    CreditsExhaustedError,
    EmbeddingError,
    ExternalServiceError,
    InvalidTransitionError,
    JobCancelledError,
    LLMError,
    NotFoundError,
    RagDeskError,
    RateLimitExceededError,
    RetryableError,
    StorageQuotaExceededError,
    TenantBoundaryError,
    VectorStoreError,
)
from ragdesk.utils.logging import configure_logging, get_logger
from ragdesk.utils.tokens import estimate_tokens, truncate_to_tokens

__all__ = [
    "CapacityError",
    "ConfigurationError",
    "ContentError",
    "CrawlError",
    "CreditsExhaustedError",
    "EmbeddingError",
    "ExternalServiceError",
    "InvalidTransitionError",
    "JobCancelledError",
    "LLMError",
    "NotFoundError",
    "RagDeskError",
    "RateLimitExceededError",
    "RetryableError",
    "StorageQuotaExceededError",
    "TenantBoundaryError",
    "VectorStoreError",
    "configure_logging",
    "estimate_tokens",
    "get_logger",
    "throttled_gather",
    "truncate_to_tokens",
]
