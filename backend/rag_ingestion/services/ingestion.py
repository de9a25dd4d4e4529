"""
Document Ingestion Service

Orchestrates the knowledge-base pipeline for one document:
  1. Record bootstrap   — create a 'processing' Document row, or (re-index)
                          load the existing one and reset it to 'processing'
  2. Blob upload        — knowledge-base/<category>/<id>/<file_name>; blob_name /
                          blob_url persisted immediately (skipped on re-index)
  3. OCR gate           — bounded wait for OCR-merged text, else original text
  4. Chunking
  5. Embedding          — batched, token usage summed
  6. Index upsert       — one entry per chunk, id "<document_id>-chunk-<n>"
  7. Chunk persistence  — rows replaced, never appended
  8. Finalization       — status=indexed, total_chunks, search_doc_id
  9. Index refresh      — fire-and-forget Celery dispatch

Failure invariants:
  - A bootstrap failure is reported as a failed result; nothing to undo.
  - Any failure in steps 2–8 deletes what THIS call created (a freshly
    uploaded blob, the index entries it wrote), marks the Document 'failed'
    and reports the original error. Cleanup errors are collected in a
    CleanupReport and logged; they never replace the original error.
  - The Document row survives every failure; only delete_document removes it.

Callers must serialize operations on the same document id. reindex_document
and delete_document take a per-document lock within this process.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from rag_ingestion.core.config import Settings, settings as default_settings
from rag_ingestion.core.exceptions import (
    DocumentNotFoundError,
    EmptyChunkingError,
    MissingBlobError,
)
from rag_ingestion.db.repository import DocumentRepository
from rag_ingestion.models.documents import Chunk, Document
from rag_ingestion.observability.tracing import traced
from rag_ingestion.processing.chunking import ChunkResult, TextSection, chunk_document
from rag_ingestion.processing.embeddings import EmbeddingClient
from rag_ingestion.schemas.documents import (
    DocumentMetadata,
    DocumentStatus,
    IngestionOptions,
    IngestionResult,
    IngestionStatus,
)
from rag_ingestion.services.locks import DocumentLockRegistry
from rag_ingestion.services.ocr_gate import OcrEnrichmentGate
from rag_ingestion.storage.s3 import (
    S3StorageService,
    blob_file_name,
    build_blob_path,
    sanitize_metadata,
)
from rag_ingestion.vectorstore.base import SearchDocument, SearchIndexBase

logger = logging.getLogger(__name__)

# Strong references to in-flight refresh dispatches; asyncio only keeps weak ones
_BACKGROUND_TASKS: set[asyncio.Task] = set()


def search_chunk_id(document_id: uuid.UUID | str, chunk_index: int) -> str:
    """Join key between a Chunk row and its search index entry."""
    return f"{document_id}-chunk-{chunk_index}"


# ---------------------------------------------------------------------------
# Cleanup bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class CleanupAttempt:
    action: str            # "delete_blob" | "delete_index_entries" | ...
    target: str
    ok:     bool
    error:  str | None = None


@dataclass
class CleanupReport:
    """
    Outcome of each best-effort cleanup step.
    Failures are recorded and logged here and never propagate.
    """
    document_id: uuid.UUID
    attempts:    list[CleanupAttempt] = field(default_factory=list)

    async def attempt(
        self,
        action: str,
        target: str,
        step:   Callable[[], Awaitable[Any]],
    ) -> bool:
        try:
            await step()
        except Exception as exc:
            logger.error(
                "Cleanup failed | doc=%s action=%s target=%s error=%s",
                self.document_id, action, target, exc,
            )
            self.attempts.append(CleanupAttempt(action, target, ok=False, error=str(exc)))
            return False
        logger.info("Cleanup ok | doc=%s action=%s target=%s", self.document_id, action, target)
        self.attempts.append(CleanupAttempt(action, target, ok=True))
        return True

    @property
    def failures(self) -> list[CleanupAttempt]:
        return [a for a in self.attempts if not a.ok]

    @property
    def ok(self) -> bool:
        return not self.failures


# ---------------------------------------------------------------------------
# Index refresh publisher — thin abstraction over Celery apply_async()
# Injected into DocumentIngestionService so it can be mocked in tests.
# ---------------------------------------------------------------------------

class IndexRefreshPublisher:
    """
    Sends the OCR staging refresh task to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_refresh(self, blob_name: str) -> None:
        """Runs apply_async() in a thread executor to avoid blocking the event loop."""
        from rag_ingestion.workers.tasks import refresh_ocr_index

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: refresh_ocr_index.apply_async(
                kwargs={"blob_name": blob_name},
                countdown=2,
            ),
        )
        logger.info("Index refresh published | blob=%s", blob_name)


# ---------------------------------------------------------------------------
# Core ingestion orchestrator
# ---------------------------------------------------------------------------

class DocumentIngestionService:
    """
    Stateless service object — one instance per unit of work.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        repository:        DocumentRepository,
        object_store:      S3StorageService,
        search_index:      SearchIndexBase,
        embedding_client:  EmbeddingClient,
        ocr_gate:          OcrEnrichmentGate,
        refresh_publisher: IndexRefreshPublisher,
        *,
        settings:          Settings | None = None,
        locks:             DocumentLockRegistry | None = None,
    ) -> None:
        self._repo      = repository
        self._store     = object_store
        self._index     = search_index
        self._embedder  = embedding_client
        self._ocr       = ocr_gate
        self._publisher = refresh_publisher
        self._settings  = settings if settings is not None else default_settings
        self._locks     = locks if locks is not None else DocumentLockRegistry()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def ingest(self, options: IngestionOptions) -> IngestionResult:
        """
        Run the full pipeline for one document.
        Never raises for pipeline failures; see IngestionResult.status / error.
        """
        document_id = options.document_id or uuid.uuid4()
        reindex = options.is_reindex

        logger.info(
            "Ingest start | doc=%s file=%s source=%s reindex=%s",
            document_id, options.file_name, options.source_type.value, reindex,
        )

        # ---- Step 1: Record bootstrap ----------------------------------
        try:
            document = await self._bootstrap_record(document_id, options)
        except Exception as exc:
            logger.error(
                "Ingest bootstrap failed | doc=%s file=%s error=%s",
                document_id, options.file_name, exc,
            )
            return IngestionResult.failed(document_id, str(exc))

        category = (
            options.category.value if options.category
            else document.category or self._settings.default_category
        )
        blob_name = document.blob_name
        blob_url  = document.blob_url or ""

        uploaded_blob: str | None = None
        written_ids:   list[str] = []
        chunks_saved   = False

        try:
            # ---- Step 2: Blob upload (new documents only) --------------
            if not reindex:
                stored = await self._store.upload(
                    build_blob_path(category, document_id, options.file_name),
                    options.content,
                    sanitize_metadata({
                        "sourceType": options.source_type.value,
                        "sourceId":   options.source_id or "",
                        "documentId": str(document_id),
                        "category":   category,
                    }),
                )
                uploaded_blob = stored.name
                blob_name, blob_url = stored.name, stored.url

                # Persisted before anything else so a later failure can find the blob
                await self._repo.update_document(
                    document_id, blob_name=blob_name, blob_url=blob_url,
                )
            else:
                logger.info("Re-index: reusing blob | doc=%s blob=%s", document_id, blob_name)

            # ---- Step 3: Effective content (OCR gate) ------------------
            effective = await self._ocr.resolve(blob_file_name(blob_name), options.text_content)

            # ---- Step 4: Chunking --------------------------------------
            chunks = self._chunk(options, effective.content)
            logger.info(
                "Chunked | doc=%s chunks=%d ocr_enriched=%s",
                document_id, len(chunks), effective.enriched,
            )

            # ---- Step 5: Embedding -------------------------------------
            embedded = await self._embedder.embed([c.content for c in chunks])

            # ---- Step 6: Index upsert ----------------------------------
            search_docs = self._build_search_documents(
                document_id, options, category, chunks, embedded.vectors,
            )
            # Tracked before the call: a partially applied upsert is still rolled back
            written_ids.extend(doc.id for doc in search_docs)
            await self._index.upsert(search_docs, batch_size=self._settings.index_batch_size)

            # ---- Step 7: Chunk persistence -----------------------------
            await self._repo.replace_chunks(document_id, [
                {
                    "document_id":     document_id,
                    "chunk_index":     chunk.chunk_index,
                    "content":         chunk.content,
                    "token_count":     chunk.token_count,
                    "search_chunk_id": search_chunk_id(document_id, chunk.chunk_index),
                    "chunk_metadata":  {
                        k: v for k, v in chunk.metadata.items() if k != "chunkIndex"
                    },
                }
                for chunk in chunks
            ])
            chunks_saved = True

            # ---- Step 8: Finalization ----------------------------------
            await self._repo.update_document(
                document_id,
                status=DocumentStatus.INDEXED.value,
                total_chunks=len(chunks),
                search_doc_id=str(document_id),
                error_message=None,
                retry_count=0,
            )

        except Exception as exc:
            logger.exception(
                "Ingest failed | doc=%s file=%s error=%s",
                document_id, options.file_name, exc,
            )
            await self._rollback(
                document_id,
                error=str(exc),
                uploaded_blob=uploaded_blob,
                written_ids=written_ids,
                chunks_saved=chunks_saved,
            )
            return IngestionResult.failed(document_id, str(exc))

        # ---- Step 9: Background refresh (fire-and-forget) --------------
        self._schedule_refresh(document_id, blob_name)

        logger.info(
            "Ingest done | doc=%s chunks=%d tokens=%d ocr_enriched=%s",
            document_id, len(chunks), embedded.total_tokens, effective.enriched,
        )
        return IngestionResult(
            document_id=document_id,
            blob_url=blob_url,
            chunks_indexed=len(chunks),
            total_tokens=embedded.total_tokens,
            status=IngestionStatus.SUCCESS,
            ocr_enriched=effective.enriched,
        )

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    @traced("ingestion.clear_chunks_and_index")
    async def clear_document_chunks_and_index(self, document_id: uuid.UUID) -> None:
        """
        Remove a document's index entries (best-effort) and Chunk rows.
        The Document row is kept.
        """
        chunks = await self._repo.get_chunks(document_id)
        ids = [c.search_chunk_id for c in chunks if c.search_chunk_id]

        if ids:
            try:
                await self._index.delete(ids)
                logger.info("Index entries deleted | doc=%s count=%d", document_id, len(ids))
            except Exception as exc:
                # Continue: the chunk rows still have to go
                logger.error(
                    "Index delete failed | doc=%s count=%d error=%s",
                    document_id, len(ids), exc,
                )

        removed = await self._repo.delete_chunks(document_id)
        logger.info("Chunk rows deleted | doc=%s count=%d", document_id, removed)

    @traced("ingestion.reindex_document")
    async def reindex_document(self, document_id: uuid.UUID) -> IngestionResult:
        """
        Rebuild chunks, embeddings and index entries from the stored blob.

        Raises:
            DocumentNotFoundError: unknown document_id
            MissingBlobError:      the document was never uploaded
        """
        async with self._locks.hold(document_id):
            document = await self._require_document(document_id)
            if not document.blob_name or not document.blob_url:
                raise MissingBlobError(document_id)

            content = await self._store.download(document.blob_name)
            text = content.decode("utf-8", errors="replace")

            await self.clear_document_chunks_and_index(document_id)

            return await self.ingest(IngestionOptions(
                source_type=document.source_type,
                source_id=document.source_id,
                category=document.category,
                file_name=document.file_name,
                content=content,
                text_content=text,
                metadata=DocumentMetadata.model_validate(document.doc_metadata or {}),
                document_id=document.id,
            ))

    @traced("ingestion.delete_document")
    async def delete_document(self, document_id: uuid.UUID) -> CleanupReport:
        """
        Cascade delete: blob (best-effort), index entries and chunk rows,
        then the Document row. Raises DocumentNotFoundError for unknown ids.
        """
        async with self._locks.hold(document_id):
            document = await self._require_document(document_id)
            report = CleanupReport(document_id=document_id)

            if document.blob_name:
                await report.attempt(
                    "delete_blob", document.blob_name,
                    lambda: self._store.delete(document.blob_name),
                )

            await self.clear_document_chunks_and_index(document_id)
            await self._repo.delete_document(document_id)

            logger.info(
                "Document deleted | doc=%s cleanup_failures=%d",
                document_id, len(report.failures),
            )
            return report

    async def get_document_chunks(self, document_id: uuid.UUID) -> list[Chunk]:
        """Chunk rows in chunk_index order."""
        await self._require_document(document_id)
        return await self._repo.get_chunks(document_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _require_document(self, document_id: uuid.UUID) -> Document:
        document = await self._repo.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    async def _bootstrap_record(
        self,
        document_id: uuid.UUID,
        options:     IngestionOptions,
    ) -> Document:
        if options.is_reindex:
            document = await self._require_document(document_id)
            if not document.blob_name or not document.blob_url:
                raise MissingBlobError(document_id)
            await self._repo.update_document(
                document_id,
                status=DocumentStatus.PROCESSING.value,
                total_chunks=0,
                error_message=None,
            )
            return document

        return await self._repo.create_document(
            id=document_id,
            source_type=options.source_type.value,
            source_id=options.source_id,
            category=(
                options.category.value if options.category
                else self._settings.default_category
            ),
            file_name=options.file_name,
            blob_name=None,
            blob_url=None,
            search_doc_id=None,
            index_name=self._index.index_name,
            total_chunks=0,
            status=DocumentStatus.PROCESSING.value,
            doc_metadata=options.metadata.to_record(),
        )

    def _chunk(self, options: IngestionOptions, text: str) -> list[ChunkResult]:
        chunks = chunk_document(
            [TextSection(title=options.file_name, content=text)],
            section_title=options.metadata.section_title,
            page_number=options.metadata.page_number,
            min_tokens=self._settings.chunk_min_tokens,
            max_tokens=self._settings.chunk_max_tokens,
            overlap_tokens=self._settings.chunk_overlap_tokens,
        )
        if not chunks:
            raise EmptyChunkingError(options.file_name)
        return chunks

    @staticmethod
    def _build_search_documents(
        document_id: uuid.UUID,
        options:     IngestionOptions,
        category:    str,
        chunks:      list[ChunkResult],
        vectors:     list[list[float]],
    ) -> list[SearchDocument]:
        created_at = datetime.now(timezone.utc).isoformat()
        meta = options.metadata
        docs = []
        for chunk, vector in zip(chunks, vectors):
            entry_meta = {
                "sectionTitle": chunk.section_title,
                "pageNumber":   chunk.page_number,
                "tags":         meta.tags,
                "vendor":       meta.vendor,
                "project":      meta.project,
            }
            docs.append(SearchDocument(
                id=search_chunk_id(document_id, chunk.chunk_index),
                content=chunk.content,
                embedding=vector,
                source_type=options.source_type.value,
                source_id=options.source_id,
                category=category,
                file_name=options.file_name,
                chunk_index=chunk.chunk_index,
                metadata={k: v for k, v in entry_meta.items() if v is not None},
                created_at=created_at,
            ))
        return docs

    async def _rollback(
        self,
        document_id:   uuid.UUID,
        *,
        error:         str,
        uploaded_blob: str | None,
        written_ids:   list[str],
        chunks_saved:  bool,
    ) -> CleanupReport:
        """Undo what this attempt created, then mark the Document failed."""
        report = CleanupReport(document_id=document_id)
        blob_removed = False

        if uploaded_blob:
            blob_removed = await report.attempt(
                "delete_blob", uploaded_blob,
                lambda: self._store.delete(uploaded_blob),
            )

        if written_ids:
            await report.attempt(
                "delete_index_entries", f"{len(written_ids)} ids",
                lambda: self._index.delete(written_ids),
            )

        if chunks_saved:
            await report.attempt(
                "delete_chunk_rows", str(document_id),
                lambda: self._repo.delete_chunks(document_id),
            )

        fields: dict[str, Any] = {
            "status": DocumentStatus.FAILED.value,
            "error_message": error,
        }
        if blob_removed:
            # The blob is gone; a later re-index must not try to reuse it
            fields.update(blob_name=None, blob_url=None)

        await report.attempt(
            "mark_failed", str(document_id),
            lambda: self._repo.update_document(document_id, **fields),
        )

        if report.failures:
            logger.warning(
                "Rollback incomplete | doc=%s failures=%s",
                document_id, [f"{a.action}:{a.error}" for a in report.failures],
            )
        return report

    def _schedule_refresh(self, document_id: uuid.UUID, blob_name: str | None) -> None:
        if not blob_name:
            return
        task = asyncio.get_running_loop().create_task(
            self._dispatch_refresh(document_id, blob_name)
        )
        _BACKGROUND_TASKS.add(task)
        task.add_done_callback(_BACKGROUND_TASKS.discard)

    async def _dispatch_refresh(self, document_id: uuid.UUID, blob_name: str) -> None:
        try:
            await self._publisher.publish_refresh(blob_name)
        except Exception as exc:
            logger.warning(
                "Index refresh dispatch failed (non-blocking) | doc=%s blob=%s error=%s",
                document_id, blob_name, exc,
            )
