"""
Search Index Factory

Selects the backend (Pinecone | Weaviate) based on config. The ingestion
service only depends on SearchIndexBase; get_search_index() is the one
place that touches the concrete classes.
"""

from __future__ import annotations

from rag_ingestion.core.config import settings
from rag_ingestion.vectorstore.base import SearchIndexBase


def get_search_index() -> SearchIndexBase:
    """Return a search index for the configured backend."""
    backend = settings.vector_store_backend.lower()

    if backend == "pinecone":
        from rag_ingestion.vectorstore.pinecone_store import PineconeSearchIndex
        return PineconeSearchIndex()

    if backend == "weaviate":
        from rag_ingestion.vectorstore.weaviate_store import (
            WeaviateSearchIndex,
            create_weaviate_client,
        )
        return WeaviateSearchIndex(client=create_weaviate_client())

    raise ValueError(
        f"Unknown vector store backend: '{backend}'. "
        f"Valid options: 'pinecone', 'weaviate'"
    )
