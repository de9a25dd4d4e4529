"""
Ingestion error taxonomy.

Raised inside pipeline steps and caught once, by the orchestrator, which turns
them into a failed IngestionResult. Lifecycle operations (delete / re-index)
let DocumentNotFoundError propagate to the caller.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for every error raised by the ingestion pipeline."""


class DocumentNotFoundError(IngestionError):
    def __init__(self, document_id) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class MissingBlobError(IngestionError):
    """Re-index requested for a document that was never uploaded."""

    def __init__(self, document_id) -> None:
        super().__init__(
            f"Cannot re-index: existing blob metadata not found for document {document_id}"
        )
        self.document_id = document_id


class EmptyChunkingError(IngestionError):
    def __init__(self, file_name: str) -> None:
        super().__init__(f"No chunks generated from document: {file_name}")
        self.file_name = file_name


class EmbeddingError(IngestionError):
    pass


class SearchIndexError(IngestionError):
    pass


class ObjectStoreError(IngestionError):
    pass
