"""Ingestion pipeline: acquisition, chunking, embedding and source lifecycle."""

from ragdesk.services.ingestion.chunker import TextChunker
from ragdesk.services.ingestion.embedding_generator import EmbeddingGenerator, EmbeddingResult
from ragdesk.services.ingestion.fingerprint import fingerprint, normalize_content
from ragdesk.services.ingestion.ingestion_service import IngestionCoordinator
from ragdesk.services.ingestion.source_acquirer import SourceAcquirer
from ragdesk.services.ingestion.source_service import SourceService

__all__ = [
    "EmbeddingGenerator",
    "EmbeddingResult",
    "IngestionCoordinator",
    "SourceAcquirer",
    "SourceService",
    "TextChunker",
    "fingerprint",
    "normalize_content",
]
