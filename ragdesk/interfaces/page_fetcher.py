"""Abstract base class for web page fetchers used by website ingestion."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ragdesk.models.llm import FetchedPage


# Concrete implementation: WebPageFetcher (ragdesk/providers/web/)
class IPageFetcher(ABC):
    """Contract for fetching one URL and extracting its readable text."""

    @abstractmethod
    async def fetch(self, url: str) -> FetchedPage:
        """Fetch *url*, returning main text and same-page links.

        An empty ``text`` means the page had nothing worth indexing.

        Raises
        ------
        ragdesk.utils.errors.CrawlError
            On network failure, timeout or a non-success status.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier used in logs and error messages."""
