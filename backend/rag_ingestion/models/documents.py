"""
SQLAlchemy ORM Models — Knowledge-Base Documents & Chunks

Using SQLAlchemy mapped classes (2.x style) for full async support.

Portable column types:
  Uuid and JSON (with a JSONB variant) keep the models usable on both
  PostgreSQL (asyncpg, production) and SQLite (aiosqlite, tests).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single knowledge-base file from upload → chunking → indexing.

    State machine (status column):
        processing — record created (or re-index started); pipeline running
        indexed    — chunks embedded and written to the search index
        failed     — last attempt failed (see error_message); eligible for re-index

    There is no deleted state: delete_document removes the row.

    blob_name / blob_url stay NULL until the upload step succeeds and are
    persisted immediately afterwards so a later failure can locate the blob.
    """

    __tablename__ = "documents"
    __mapper_args__ = {"eager_defaults": True}   # load server defaults on flush
    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'indexed', 'failed')",
            name="documents_status_check",
        ),
        Index("idx_documents_status",      "status"),
        Index("idx_documents_source",      "source_type", "source_id"),
        Index("idx_documents_category",    "category"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Provenance
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Back-reference to the owning business entity (lookup only)",
    )
    category: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="shared",
        server_default="shared",
        comment="Storage path partition and access filter",
    )

    # Object store reference
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    blob_name: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Object key: knowledge-base/<category>/<document_id>/<file_name>",
    )
    blob_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Search index reference
    search_doc_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    index_name: Mapped[str] = mapped_column(Text, nullable=False)

    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="processing",
        server_default="processing",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Automatic re-index attempts since the last successful index",
    )

    doc_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata",                 # column name stays 'metadata'
        JSONType,
        nullable=True,
        comment="tags, vendor, project, sectionTitle, pageNumber",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} status={self.status} "
            f"category={self.category} file={self.file_name!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model — chunks
# ---------------------------------------------------------------------------

class Chunk(Base):
    """
    One text chunk of a Document.
    search_chunk_id ("<document_id>-chunk-<chunk_index>") is the join key to
    the entry in the search index.
    """

    __tablename__ = "chunks"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_position"),
        Index("idx_chunks_document_id",     "document_id"),
        Index("idx_chunks_search_chunk_id", "search_chunk_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str]     = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    search_chunk_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chunk_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Chunk doc={self.document_id} index={self.chunk_index} id={self.search_chunk_id}>"
