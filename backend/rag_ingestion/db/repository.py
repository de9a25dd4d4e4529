"""
Document Record Store — CRUD over Document and Chunk rows.

Every public method opens its own transaction through get_session(), so a
single call never leaves a Document row half-updated. Callers receive
detached ORM objects (expire_on_commit=False) that stay readable after the
session closes.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rag_ingestion.db.session import get_session
from rag_ingestion.models.documents import Chunk, Document

logger = logging.getLogger(__name__)

# Columns callers may change through update_document()
_UPDATABLE_FIELDS = frozenset({
    "source_type", "source_id", "category", "file_name",
    "blob_name", "blob_url", "search_doc_id", "index_name",
    "total_chunks", "status", "error_message", "retry_count", "doc_metadata",
})


class DocumentRepository:
    """
    Async record store.
    The session factory is injected so tests can bind an in-memory engine.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._factory = session_factory

    def _session(self):
        return get_session(self._factory)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def create_document(self, **fields: Any) -> Document:
        doc = Document(**fields)
        async with self._session() as db:
            db.add(doc)
            await db.flush()
        logger.debug("Document row created | doc=%s status=%s", doc.id, doc.status)
        return doc

    async def get_document(self, document_id: uuid.UUID) -> Document | None:
        async with self._session() as db:
            return await db.get(Document, document_id)

    async def update_document(self, document_id: uuid.UUID, **fields: Any) -> None:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown document fields: {sorted(unknown)}")
        if not fields:
            return

        async with self._session() as db:
            await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(**fields)
            )

    async def update_status(
        self,
        document_id: uuid.UUID,
        status: str,
        error_message: str | None = None,
    ) -> None:
        await self.update_document(document_id, status=status, error_message=error_message)

    async def delete_document(self, document_id: uuid.UUID) -> None:
        """Remove the Document row and every Chunk row it owns."""
        async with self._session() as db:
            await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
            await db.execute(delete(Document).where(Document.id == document_id))
        logger.info("Document row deleted | doc=%s", document_id)

    async def list_documents(
        self,
        *,
        status: str | None = None,
        source_type: str | None = None,
        with_blob_only: bool = False,
        max_retry_count: int | None = None,
        limit: int = 100,
    ) -> list[Document]:
        """max_retry_count keeps only documents retried fewer times than that."""
        stmt = select(Document).order_by(Document.created_at).limit(limit)
        if status:
            stmt = stmt.where(Document.status == status)
        if source_type:
            stmt = stmt.where(Document.source_type == source_type)
        if with_blob_only:
            stmt = stmt.where(Document.blob_name.is_not(None))
        if max_retry_count is not None:
            stmt = stmt.where(Document.retry_count < max_retry_count)

        async with self._session() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def increment_retry_count(self, document_ids: Iterable[uuid.UUID]) -> None:
        ids = list(document_ids)
        if not ids:
            return
        async with self._session() as db:
            await db.execute(
                update(Document)
                .where(Document.id.in_(ids))
                .values(retry_count=Document.retry_count + 1)
            )

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def create_chunks(self, rows: Iterable[dict[str, Any]]) -> list[Chunk]:
        chunks = [Chunk(**row) for row in rows]
        if not chunks:
            return []
        async with self._session() as db:
            db.add_all(chunks)
            await db.flush()
        return chunks

    async def get_chunks(self, document_id: uuid.UUID) -> list[Chunk]:
        async with self._session() as db:
            result = await db.execute(
                select(Chunk)
                .where(Chunk.document_id == document_id)
                .order_by(Chunk.chunk_index)
            )
            return list(result.scalars().all())

    async def delete_chunks(self, document_id: uuid.UUID) -> int:
        async with self._session() as db:
            result = await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
            return result.rowcount or 0

    async def replace_chunks(
        self,
        document_id: uuid.UUID,
        rows: Iterable[dict[str, Any]],
    ) -> list[Chunk]:
        """Swap a document's chunk rows for `rows` in a single transaction."""
        chunks = [Chunk(**row) for row in rows]
        async with self._session() as db:
            result = await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
            db.add_all(chunks)
            await db.flush()

        logger.debug(
            "Chunks replaced | doc=%s removed=%d inserted=%d",
            document_id, result.rowcount or 0, len(chunks),
        )
        return chunks
