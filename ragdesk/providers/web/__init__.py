"""Web page fetching adapters."""

from ragdesk.providers.web.page_fetcher import WebPageFetcher

__all__ = ["WebPageFetcher"]
