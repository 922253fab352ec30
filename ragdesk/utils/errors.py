"""Custom exception hierarchy for ragdesk.

All application exceptions inherit from :class:`RagDeskError`, which
carries an optional ``provider_name`` so error handlers can identify which
external service (e.g. "openai", "chromadb", "crawler") caused the failure.

The hierarchy is organized by how callers are expected to react:

    RagDeskError  (base -- catch-all for any ragdesk error)
    +-- RetryableError           (transient; retried by the Job Tracker)
    |   +-- ExternalServiceError (model-serving / crawl / vector store call failed)
    |       +-- EmbeddingError
    |       +-- LLMError
    |       +-- CrawlError
    |       +-- VectorStoreError
    +-- ContentError             (terminal; retrying won't change the outcome)
    +-- TenantBoundaryError      (caller touched another tenant's data)
    +-- CapacityError            (try later / upgrade)
    |   +-- RateLimitExceededError
    |   +-- CreditsExhaustedError
    |   +-- StorageQuotaExceededError
    +-- InvalidTransitionError   (illegal job/source status change)
    +-- JobCancelledError        (cooperative cancellation observed)
    +-- NotFoundError
    +-- ConfigurationError

A failing safety judge is *not* an error: it is a designed branch that
produces fallback content, so it has no exception class here.
"""

from __future__ import annotations


class RagDeskError(Exception):
    """Base exception for all ragdesk errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name`` identifying which external service triggered the
    error.  The ``__str__`` method prefixes the provider name in brackets
    for structured log output, e.g. ``[openai] Request timed out``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Retryable-transient errors
# ---------------------------------------------------------------------------

class RetryableError(RagDeskError):
    """A failure that may succeed if the same step is attempted again."""

    def __init__(
        self,
        message: str = "Transient failure",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ExternalServiceError(RetryableError):
    """Raised when an outbound call to a model-serving or crawl service fails."""

    def __init__(
        self,
        message: str = "External service call failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class EmbeddingError(ExternalServiceError):
    """Raised when the embedding service fails or returns a malformed batch."""

    def __init__(
        self,
        message: str = "Embedding request failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class LLMError(ExternalServiceError):
    """Raised when an LLM API call fails or returns an unusable response."""

    def __init__(
        self,
        message: str = "LLM API call failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class CrawlError(ExternalServiceError):
    """Raised when fetching a web page fails at the network level."""

    def __init__(
        self,
        message: str = "Web page fetch failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class VectorStoreError(ExternalServiceError):
    """Raised when the vector store rejects a read or write."""

    def __init__(
        self,
        message: str = "Vector store operation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Terminal content errors
# ---------------------------------------------------------------------------

class ContentError(RagDeskError):
    """Raised when a source yields nothing usable (no pages, no chunks, bad type).

    Never retried automatically: the same input would fail the same way.
    """

    def __init__(
        self,
        message: str = "Source produced no usable content",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Tenant isolation
# ---------------------------------------------------------------------------

class TenantBoundaryError(RagDeskError):
    """Raised when a read or write targets data outside the caller's tenant."""

    def __init__(
        self,
        message: str = "Resource does not belong to this organization or agent",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Capacity errors
# ---------------------------------------------------------------------------

class CapacityError(RagDeskError):
    """Base for admission rejections surfaced as "try later / upgrade".

    ``retry_after`` is the number of seconds after which the request is
    expected to be admitted, when that is knowable.
    """

    def __init__(
        self,
        message: str = "Capacity exceeded",
        provider_name: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self._retry_after = retry_after

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class RateLimitExceededError(CapacityError):
    """Raised when an organization's token bucket is empty."""

    def __init__(
        self,
        message: str = "Rate limit exceeded, please try again shortly",
        provider_name: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, retry_after=retry_after)


class CreditsExhaustedError(CapacityError):
    """Raised when an organization has used all message credits for its plan."""

    def __init__(
        self,
        message: str = "Message credits exhausted, upgrade your plan to continue",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class StorageQuotaExceededError(CapacityError):
    """Raised when registering a source would exceed the plan's storage limit."""

    def __init__(
        self,
        message: str = "Storage limit reached, upgrade your plan to add more sources",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# State machine / lookup / configuration errors
# ---------------------------------------------------------------------------

class InvalidTransitionError(RagDeskError):
    """Raised when a job or source is asked to move to a state it cannot reach."""

    def __init__(
        self,
        message: str = "Invalid status transition",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class JobCancelledError(RagDeskError):
    """Raised inside a job run once cancellation has been observed."""

    def __init__(
        self,
        message: str = "Job was cancelled",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class NotFoundError(RagDeskError):
    """Raised when a referenced record does not exist."""

    def __init__(
        self,
        message: str = "Resource not found",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConfigurationError(RagDeskError):
    """Raised when required configuration is missing or invalid at startup."""

    def __init__(
        self,
        message: str = "Invalid configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
