"""Type-specific acquisition: turn a registered source into raw text segments.

=============================  ==========================================
Source type                    Acquisition
=============================  ==========================================
``file`` (application/pdf)     PyMuPDF, one segment per non-empty page
``file`` (docx)                python-docx paragraphs, one segment
``file`` (text/plain, md)      decoded UTF-8, one segment
``website`` / ``scrape``       one page through the page fetcher
``website`` / ``crawl``        breadth-first, same host, up to the limit
``text``                       the literal content
``qa``                         ``"Question: {q}\\n\\nAnswer: {a}"``
=============================  ==========================================

Nothing usable (empty file, no text pages, blank Q&A) raises
:class:`ContentError`, which is terminal.  Network failures while fetching
the only page of a scrape raise :class:`CrawlError`, which is retryable.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from urllib.parse import urlparse

import fitz  # PyMuPDF
import structlog
from docx import Document

from ragdesk.interfaces.page_fetcher import IPageFetcher
from ragdesk.models.llm import FetchedPage
from ragdesk.models.source import AcquiredSegment, AcquisitionResult, CrawlMode, Source, SourceType
from ragdesk.utils.concurrency import Heartbeat, beat, throttled_gather
from ragdesk.utils.errors import ContentError

logger = structlog.get_logger(logger_name=__name__)

PDF_MIME_TYPES = frozenset({"application/pdf"})
DOCX_MIME_TYPES = frozenset(
    {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
)
TEXT_MIME_TYPES = frozenset({"text/plain", "text/markdown", "text/x-markdown"})
SUPPORTED_MIME_TYPES = PDF_MIME_TYPES | DOCX_MIME_TYPES | TEXT_MIME_TYPES

_WHITESPACE_RUN = re.compile(r"[ \t\f\v]+")
_BLANK_LINES = re.compile(r"\n{3,}")


def format_qa(question: str, answer: str) -> str:
    return f"Question: {question.strip()}\n\nAnswer: {answer.strip()}"


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces and blank lines left over from HTML extraction."""
    lines = [_WHITESPACE_RUN.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()


class SourceAcquirer:
    """Reads files, fetches web pages and formats manual content.

    Parameters
    ----------
    page_fetcher:
        Fetches and extracts single web pages.
    crawl_concurrency:
        Pages fetched in parallel within one breadth-first level.
    """

    def __init__(self, page_fetcher: IPageFetcher, crawl_concurrency: int = 3) -> None:
        self._fetcher = page_fetcher
        self._crawl_concurrency = crawl_concurrency

    async def acquire(
        self, source: Source, heartbeat: Heartbeat | None = None
    ) -> AcquisitionResult:
        """Acquire *source*; *heartbeat* is awaited after each crawled level."""
        if source.type is SourceType.TEXT:
            return self._acquire_text(source)
        if source.type is SourceType.QA:
            return self._acquire_qa(source)
        if source.type is SourceType.FILE:
            return await self._acquire_file(source)
        if source.type is SourceType.WEBSITE:
            return await self._acquire_website(source, heartbeat)
        raise ContentError(message=f"Unsupported source type: {source.type}")

    # ------------------------------------------------------------------
    # Manual content
    # ------------------------------------------------------------------

    @staticmethod
    def _acquire_text(source: Source) -> AcquisitionResult:
        content = (source.content or "").strip()
        if not content:
            raise ContentError(message="Text source is empty")
        return AcquisitionResult(
            segments=[AcquiredSegment(text=content)],
            size_bytes=len(content.encode("utf-8")),
        )

    @staticmethod
    def _acquire_qa(source: Source) -> AcquisitionResult:
        if not (source.question or "").strip() or not (source.answer or "").strip():
            raise ContentError(message="Q&A source needs both a question and an answer")
        text = format_qa(source.question, source.answer)
        return AcquisitionResult(
            segments=[AcquiredSegment(text=text)],
            size_bytes=len(text.encode("utf-8")),
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def _acquire_file(self, source: Source) -> AcquisitionResult:
        if not source.storage_path:
            raise ContentError(message="File source has no stored upload")
        path = Path(source.storage_path)
        if not path.exists():
            raise ContentError(message=f"Uploaded file is missing: {path.name}")

        mime_type = (source.mime_type or "").split(";")[0].strip().lower()
        if mime_type in PDF_MIME_TYPES:
            segments = await asyncio.to_thread(_read_pdf_pages, path)
        elif mime_type in DOCX_MIME_TYPES:
            segments = await asyncio.to_thread(_read_docx, path)
        elif mime_type in TEXT_MIME_TYPES:
            segments = await asyncio.to_thread(_read_text, path)
        else:
            raise ContentError(message=f"Unsupported file type: {source.mime_type or 'unknown'}")

        if not segments:
            raise ContentError(message=f"No text could be extracted from {source.name}")

        logger.info(
            "file_acquired",
            source_id=source.id,
            mime_type=mime_type,
            segments=len(segments),
        )
        return AcquisitionResult(segments=segments, size_bytes=path.stat().st_size)

    # ------------------------------------------------------------------
    # Websites
    # ------------------------------------------------------------------

    async def _acquire_website(
        self, source: Source, heartbeat: Heartbeat | None = None
    ) -> AcquisitionResult:
        if not source.url:
            raise ContentError(message="Website source has no URL")

        if source.crawl_mode is CrawlMode.CRAWL:
            pages = await self._crawl(
                source.url, max(1, source.crawl_limit or 1), heartbeat
            )
        else:
            # A single-page scrape propagates fetch errors so the job retries.
            pages = [await self._fetcher.fetch(source.url)]

        segments = [
            AcquiredSegment(text=text, url=page.url, title=page.title)
            for page in pages
            if (text := normalize_whitespace(page.text))
        ]
        if not segments:
            raise ContentError(message=f"No readable pages found at {source.url}")

        logger.info(
            "website_acquired",
            source_id=source.id,
            url=source.url,
            mode=(source.crawl_mode or CrawlMode.SCRAPE).value,
            pages=len(segments),
        )
        return AcquisitionResult(
            segments=segments,
            size_bytes=sum(len(s.text.encode("utf-8")) for s in segments),
            crawled_pages=len(segments),
        )

    async def _crawl(
        self, start_url: str, limit: int, heartbeat: Heartbeat | None = None
    ) -> list[FetchedPage]:
        """Breadth-first crawl of *start_url*'s host, at most *limit* pages with text.

        Individual page failures are logged and skipped; only an empty
        overall result is an error, raised by the caller.
        """
        host = urlparse(start_url).netloc
        seen: set[str] = {start_url}
        frontier = [start_url]
        pages: list[FetchedPage] = []
        semaphore = asyncio.Semaphore(self._crawl_concurrency)

        while frontier and len(pages) < limit:
            batch = frontier[: limit - len(pages)]
            frontier = frontier[len(batch) :]
            results = await throttled_gather(
                [self._fetcher.fetch(url) for url in batch], semaphore
            )
            next_level: list[str] = []
            for url, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.warning("crawl_page_failed", url=url, error=str(result))
                    continue
                if result.text.strip() and len(pages) < limit:
                    pages.append(result)
                for link in result.links:
                    if link not in seen and urlparse(link).netloc == host:
                        seen.add(link)
                        next_level.append(link)
            frontier.extend(next_level)
            await beat(heartbeat)

        logger.debug("crawl_finished", start_url=start_url, pages=len(pages), seen=len(seen))
        return pages


# ---------------------------------------------------------------------------
# Sync file readers (executed via asyncio.to_thread)
# ---------------------------------------------------------------------------

def _read_pdf_pages(path: Path) -> list[AcquiredSegment]:
    try:
        doc = fitz.open(str(path))
    except RuntimeError as exc:  # FileDataError and friends subclass RuntimeError
        raise ContentError(message=f"Could not open PDF {path.name}: {exc}") from exc

    segments: list[AcquiredSegment] = []
    try:
        for page_index in range(len(doc)):
            text = doc[page_index].get_text("text").strip()
            if text:
                segments.append(AcquiredSegment(text=text, page_number=page_index + 1))
    finally:
        doc.close()
    return segments


def _read_docx(path: Path) -> list[AcquiredSegment]:
    try:
        document = Document(str(path))
    except Exception as exc:  # python-docx raises zipfile/KeyError/ValueError variants
        raise ContentError(message=f"Could not open DOCX {path.name}: {exc}") from exc
    text = "\n\n".join(p.text.strip() for p in document.paragraphs if p.text.strip())
    return [AcquiredSegment(text=text)] if text else []


def _read_text(path: Path) -> list[AcquiredSegment]:
    text = path.read_bytes().decode("utf-8", errors="replace").strip()
    return [AcquiredSegment(text=text)] if text else []
