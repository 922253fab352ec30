"""Tests for WebPageFetcher against an httpx MockTransport."""

from __future__ import annotations

import httpx
import pytest

from ragdesk.providers.web.page_fetcher import WebPageFetcher
from ragdesk.utils.errors import CrawlError

_ARTICLE = """
<html><head><title>Shipping policy</title></head>
<body>
  <nav><a href="/">Home</a> <a href="/returns#top">Returns</a></nav>
  <article>
    <h1>Shipping policy</h1>
    <p>Orders placed before noon ship the same day from our warehouse in Ohio.
    Orders placed after noon ship on the next business day.</p>
    <p>International shipping takes between seven and fourteen days depending
    on customs processing in the destination country.</p>
    <a href="https://help.acme.test/returns">Returns</a>
    <a href="mailto:help@acme.test">Mail us</a>
    <a href="https://other.test/page">Partner</a>
  </article>
  <footer>Copyright Acme</footer>
</body></html>
"""


def _fetcher(handler) -> WebPageFetcher:
    return WebPageFetcher(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestWebPageFetcher:
    @pytest.mark.asyncio
    async def test_extracts_text_title_and_links(self) -> None:
        fetcher = _fetcher(
            lambda request: httpx.Response(
                200, text=_ARTICLE, headers={"content-type": "text/html; charset=utf-8"}
            )
        )

        page = await fetcher.fetch("https://help.acme.test/shipping")

        assert page.title == "Shipping policy"
        assert "same day" in page.text
        assert page.links == [
            "https://help.acme.test/",
            "https://help.acme.test/returns",
            "https://other.test/page",
        ]

    @pytest.mark.asyncio
    async def test_fallback_text_when_no_main_content(self) -> None:
        html = "<html><body><script>x()</script><div>Tiny page</div></body></html>"
        fetcher = _fetcher(
            lambda request: httpx.Response(200, text=html, headers={"content-type": "text/html"})
        )

        page = await fetcher.fetch("https://help.acme.test/tiny")

        assert "Tiny page" in page.text
        assert "x()" not in page.text

    @pytest.mark.asyncio
    async def test_non_html_is_skipped(self) -> None:
        fetcher = _fetcher(
            lambda request: httpx.Response(
                200, content=b"\x89PNG", headers={"content-type": "image/png"}
            )
        )

        page = await fetcher.fetch("https://help.acme.test/logo.png")

        assert page.text == ""
        assert page.links == []

    @pytest.mark.asyncio
    async def test_http_error_raises_crawl_error(self) -> None:
        fetcher = _fetcher(lambda request: httpx.Response(503))

        with pytest.raises(CrawlError, match="HTTP 503"):
            await fetcher.fetch("https://help.acme.test/down")

    @pytest.mark.asyncio
    async def test_timeout_raises_crawl_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        fetcher = _fetcher(handler)

        with pytest.raises(CrawlError, match="Timeout"):
            await fetcher.fetch("https://help.acme.test/slow")

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        fetcher = WebPageFetcher(http_client=client)

        await fetcher.close()

        assert not client.is_closed
        await client.aclose()
