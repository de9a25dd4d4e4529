"""
Service assembly.

build_ingestion_service() wires the concrete, settings-driven collaborators
into a DocumentIngestionService. Call it once per unit of work (a Celery
task, a request handler); nothing here is cached except the lock registry,
which has to be shared for per-document serialization to mean anything.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rag_ingestion.core.config import settings
from rag_ingestion.db.repository import DocumentRepository
from rag_ingestion.processing.embeddings import EmbeddingClient
from rag_ingestion.services.ingestion import DocumentIngestionService, IndexRefreshPublisher
from rag_ingestion.services.locks import DocumentLockRegistry
from rag_ingestion.services.ocr_gate import OcrEnrichmentGate
from rag_ingestion.storage.s3 import S3StorageService
from rag_ingestion.vectorstore.base import SearchIndexBase
from rag_ingestion.vectorstore.factory import get_search_index

_LOCKS = DocumentLockRegistry()


def build_ingestion_service(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    search_index:    SearchIndexBase | None = None,
) -> DocumentIngestionService:
    index = search_index or get_search_index()
    return DocumentIngestionService(
        repository=DocumentRepository(session_factory),
        object_store=S3StorageService(),
        search_index=index,
        embedding_client=EmbeddingClient(
            batch_size=settings.embedding_batch_size,
            max_concurrency=settings.embedding_max_concurrency,
            max_retries=settings.embedding_max_retries,
        ),
        ocr_gate=OcrEnrichmentGate(
            index,
            timeout=settings.ocr_timeout_seconds,
            poll_interval=settings.ocr_poll_interval_seconds,
        ),
        refresh_publisher=IndexRefreshPublisher(),
        settings=settings,
        locks=_LOCKS,
    )
