"""Web page fetcher using httpx, trafilatura and BeautifulSoup.

trafilatura extracts the main readable text (navigation, ads and
boilerplate stripped); BeautifulSoup discovers outgoing links for crawling
and supplies a plain-text fallback when trafilatura finds no main content.
"""

from __future__ import annotations

from urllib.parse import urldefrag, urljoin, urlparse

import httpx
import structlog
import trafilatura
from bs4 import BeautifulSoup

from ragdesk.interfaces.page_fetcher import IPageFetcher
from ragdesk.models.llm import FetchedPage
from ragdesk.utils.errors import CrawlError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_TIMEOUT = 20.0
_DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; ragdesk/0.1; knowledge-base ingestion)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}
_SKIPPED_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "aside")


class WebPageFetcher(IPageFetcher):
    """Fetch one URL and return its main text plus absolute links."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers=_DEFAULT_HEADERS,
            follow_redirects=True,
        )

    async def fetch(self, url: str) -> FetchedPage:
        try:
            response = await self._client.get(url, headers=_DEFAULT_HEADERS)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise CrawlError(
                message=f"Timeout fetching {url}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise CrawlError(
                message=f"HTTP {exc.response.status_code} for {url}",
                provider_name=self.get_provider_name(),
            ) from exc
        except httpx.HTTPError as exc:
            raise CrawlError(
                message=f"HTTP error fetching {url}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        content_type = response.headers.get("content-type", "")
        if content_type and "html" not in content_type and "text" not in content_type:
            logger.info("page_skipped_non_html", url=url, content_type=content_type)
            return FetchedPage(url=str(response.url))

        html = response.text
        soup = BeautifulSoup(html, "html.parser")
        final_url = str(response.url)
        links = self._extract_links(soup, final_url)

        text = trafilatura.extract(html, include_comments=False, include_tables=True)
        if not text:
            text = self._fallback_text(soup)

        title = soup.title.get_text(strip=True) if soup.title else None

        logger.info("page_fetched", url=final_url, text_length=len(text or ""), links=len(links))
        return FetchedPage(url=final_url, title=title or None, text=text or "", links=links)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def get_provider_name(self) -> str:
        return "web_fetcher"

    # ------------------------------------------------------------------
    # HTML helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fallback_text(soup: BeautifulSoup) -> str:
        body = soup.body or soup
        for tag in body.find_all(_SKIPPED_TAGS):
            tag.decompose()
        return body.get_text(" ", strip=True)

    @staticmethod
    def _extract_links(soup: BeautifulSoup, base_url: str) -> list[str]:
        """Absolute http(s) links, fragments removed, in document order."""
        seen: set[str] = set()
        links: list[str] = []
        for anchor in soup.find_all("a", href=True):
            href = urljoin(base_url, anchor["href"])
            href, _ = urldefrag(href)
            if urlparse(href).scheme not in ("http", "https"):
                continue
            if href not in seen:
                seen.add(href)
                links.append(href)
        return links
