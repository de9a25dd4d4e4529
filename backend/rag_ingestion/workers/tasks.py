"""
Celery Tasks — knowledge-base background work

Task: refresh_ocr_index
  Fired (fire-and-forget) after every successful ingest.
  1. Download the blob from S3
  2. Extract text (PDF via pypdf, DOCX via python-docx, text otherwise)
  3. Write it as merged text into the OCR staging index under the blob's
     bare file name, where the OCR enrichment gate of the next (re-)ingest
     picks it up

Task: reindex_document
  Celery wrapper around DocumentIngestionService.reindex_document.

Task: retry_failed_documents
  Beat task — re-queues 'failed' documents that still have a blob, with
  exponential back-off. A document stops being re-queued after
  retry_max_attempts automatic attempts; a successful index resets its count.

Every task builds its own engine and search index client: asyncio.run()
gives each task a fresh event loop, and pooled connections cannot cross
loops.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import io
import logging
import mimetypes
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from celery import Task
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rag_ingestion.core.config import settings
from rag_ingestion.core.exceptions import DocumentNotFoundError, MissingBlobError
from rag_ingestion.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    # Already inside a loop (eager mode under an async caller)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


@asynccontextmanager
async def task_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Engine + session factory bound to the current task's event loop."""
    from rag_ingestion.db.session import create_engine, create_session_factory

    engine = create_engine()
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# OCR staging refresh
# ---------------------------------------------------------------------------

@celery_app.task(
    name="rag_ingestion.workers.tasks.refresh_ocr_index",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    soft_time_limit=120,
    time_limit=150,
)
def refresh_ocr_index(self: Task, *, blob_name: str) -> dict[str, Any]:
    try:
        return run_async(_refresh_ocr_index_async(blob_name))
    except FileNotFoundError:
        # Blob deleted since the refresh was queued
        logger.warning("Refresh skipped, blob gone | blob=%s", blob_name)
        return {"status": "missing_blob", "blob_name": blob_name}
    except Exception as exc:
        logger.exception("OCR refresh failed | blob=%s", blob_name)
        raise self.retry(exc=exc)


async def _refresh_ocr_index_async(blob_name: str) -> dict[str, Any]:
    from rag_ingestion.storage.s3 import S3StorageService, blob_file_name
    from rag_ingestion.vectorstore.factory import get_search_index

    file_name = blob_file_name(blob_name)
    data = await S3StorageService().download(blob_name)

    content_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"
    text = _extract_text(data, content_type, file_name)
    if not text.strip():
        logger.info("Refresh produced no text | blob=%s", blob_name)
        return {"status": "empty", "blob_name": blob_name}

    index = get_search_index()
    try:
        await index.put_staged_text(file_name, text)
    finally:
        await index.close()

    logger.info("OCR staging refreshed | blob=%s chars=%d", blob_name, len(text))
    return {"status": "refreshed", "blob_name": blob_name, "chars": len(text)}


# ---------------------------------------------------------------------------
# Re-index
# ---------------------------------------------------------------------------

@celery_app.task(
    name="rag_ingestion.workers.tasks.reindex_document",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def reindex_document(self: Task, *, document_id: str) -> dict[str, Any]:
    try:
        return run_async(_reindex_document_async(uuid.UUID(document_id)))
    except (DocumentNotFoundError, MissingBlobError) as exc:
        # Not retryable: the record itself is missing or was never uploaded
        logger.warning("Re-index skipped | doc=%s reason=%s", document_id, exc)
        return {"status": "skipped", "document_id": document_id, "error": str(exc)}
    except Exception as exc:
        logger.exception("Re-index crashed | doc=%s", document_id)
        raise self.retry(exc=exc)


async def _reindex_document_async(document_id: uuid.UUID) -> dict[str, Any]:
    from rag_ingestion.services.factory import build_ingestion_service
    from rag_ingestion.vectorstore.factory import get_search_index

    index = get_search_index()
    try:
        async with task_session_factory() as session_factory:
            service = build_ingestion_service(
                session_factory=session_factory, search_index=index,
            )
            result = await service.reindex_document(document_id)
    finally:
        await index.close()

    logger.info(
        "Re-index finished | doc=%s status=%s chunks=%d",
        document_id, result.status.value, result.chunks_indexed,
    )
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Retry scanner — runs every 5 minutes via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="rag_ingestion.workers.tasks.retry_failed_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def retry_failed_documents() -> dict[str, int]:
    return run_async(_retry_failed_documents_async())


def retry_delay_seconds(attempts: int) -> int:
    """Back-off before the next automatic re-index: base * 2^attempts, capped."""
    delay = settings.retry_base_delay_seconds * (2 ** attempts)
    return min(delay, settings.retry_max_delay_seconds)


async def _retry_failed_documents_async() -> dict[str, int]:
    from rag_ingestion.db.repository import DocumentRepository
    from rag_ingestion.schemas.documents import DocumentStatus

    async with task_session_factory() as session_factory:
        repo = DocumentRepository(session_factory)
        failed = await repo.list_documents(
            status=DocumentStatus.FAILED.value,
            with_blob_only=True,
            max_retry_count=settings.retry_max_attempts,
            limit=settings.retry_failed_batch_size,
        )
        # Attempts are counted before dispatch
        await repo.increment_retry_count(doc.id for doc in failed)

    for doc in failed:
        countdown = retry_delay_seconds(doc.retry_count)
        reindex_document.apply_async(
            kwargs={"document_id": str(doc.id)},
            countdown=countdown,
        )
        logger.info(
            "Re-queued failed document | doc=%s file=%s attempt=%d/%d countdown=%ds",
            doc.id, doc.file_name, doc.retry_count + 1, settings.retry_max_attempts, countdown,
        )

    return {"requeued": len(failed)}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="rag_ingestion.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------

def _extract_text(file_bytes: bytes, content_type: str, filename: str) -> str:
    """
    Plain text from PDF, DOCX, or text content.
    python-docx for DOCX, pypdf for PDF, UTF-8 (latin-1 fallback) otherwise.
    """
    try:
        if content_type == "application/pdf" or filename.endswith(".pdf"):
            return _extract_pdf(file_bytes)
        if "wordprocessingml" in content_type or filename.endswith(".docx"):
            return _extract_docx(file_bytes)
        try:
            return file_bytes.decode("utf-8")
        except UnicodeDecodeError:
            return file_bytes.decode("latin-1", errors="replace")
    except Exception as exc:
        logger.warning("Text extraction warning | type=%s error=%s", content_type, exc)
        raise


def _extract_pdf(data: bytes) -> str:
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(pages)


def _extract_docx(data: bytes) -> str:
    import docx

    doc = docx.Document(io.BytesIO(data))
    return "\n".join(para.text for para in doc.paragraphs if para.text.strip())
