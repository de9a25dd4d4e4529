"""
Search Index — Abstract Base

Every concrete search index backend (Pinecone, Weaviate) implements this
interface. The ingestion service only speaks this protocol, so backends are
swappable without touching the pipeline.

Two logical indexes live behind one instance:
  - the RAG index   : one entry per chunk, keyed "<document_id>-chunk-<n>"
  - the OCR staging index : merged OCR text per blob file name, written by the
                            refresh worker and read by the OCR enrichment gate
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class SearchDocument:
    """One chunk entry in the RAG index."""
    id:          str              # deterministic: "<document_id>-chunk-<chunk_index>"
    content:     str
    embedding:   list[float]
    source_type: str
    source_id:   str | None
    category:    str
    file_name:   str
    chunk_index: int
    metadata:    dict[str, Any] = field(default_factory=dict)
    # sectionTitle, pageNumber, tags, vendor, project
    created_at:  str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def properties(self) -> dict[str, Any]:
        """Filterable payload stored alongside the vector (everything but id/embedding)."""
        payload = asdict(self)
        payload.pop("id")
        payload.pop("embedding")
        return payload


@dataclass
class QueryResult:
    """One result returned from a similarity search."""
    id:         str
    score:      float           # cosine similarity (0–1 for normalized vectors)
    metadata:   dict
    text:       str = field(default="")   # convenience alias for metadata["content"]

    def __post_init__(self) -> None:
        if not self.text and "content" in self.metadata:
            self.text = self.metadata["content"]


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class SearchIndexBase(ABC):
    """Search index bound to one RAG index name and one OCR staging index name."""

    def __init__(self, index_name: str, staging_index_name: str) -> None:
        self._index_name = index_name
        self._staging_index_name = staging_index_name

    @property
    def index_name(self) -> str:
        return self._index_name

    @abstractmethod
    async def upsert(self, documents: list[SearchDocument], batch_size: int = 1000) -> int:
        """
        Insert or overwrite chunk entries, batch_size per request.
        Returns the number of entries written.
        """

    @abstractmethod
    async def delete(self, ids: list[str]) -> None:
        """Delete entries by id. Missing ids are not an error."""

    @abstractmethod
    async def query(
        self,
        vector: list[float],
        top_k: int = 5,
        filter: dict | None = None,
    ) -> list[QueryResult]:
        """Nearest-neighbour search over the RAG index."""

    @abstractmethod
    async def count(self) -> int:
        """Return total entries in the RAG index."""

    # ------------------------------------------------------------------
    # OCR staging index
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_staged_text(self, file_name: str) -> str | None:
        """
        Merged OCR text for a blob file name, or None when the enrichment
        pipeline has not produced it yet.
        """

    @abstractmethod
    async def put_staged_text(self, file_name: str, merged_text: str) -> None:
        """Write (overwrite) the merged OCR text for a blob file name."""

    async def close(self) -> None:
        """Release client connections. No-op for stateless HTTP backends."""
