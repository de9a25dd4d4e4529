"""
Root conftest.py — Shared fixtures for all tests

Fixture hierarchy:
  function-scoped : db_engine, session_factory, repository,
                    object_store, search_index, embedding_client,
                    refresh_publisher, ocr_gate, make_service

Environment strategy:
  - The record store runs on in-memory SQLite (aiosqlite + StaticPool), so
    the real DocumentRepository and ORM models are exercised.
  - Object store, search index and embedding client are MagicMock(spec=...)
    doubles whose AsyncMock side effects keep real state in plain dicts,
    so tests can assert on what is (or is no longer) stored.
  - Celery uses the in-memory broker; no task is ever sent to a real queue.

How to run:
  pytest                              # all tests
  pytest -m unit                      # unit tests only
  pytest -m lifecycle                 # re-index / delete behaviour
  pytest backend/tests/unit/test_chunking.py
"""

from __future__ import annotations

import asyncio
import os
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any package imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",              "sqlite+aiosqlite://")
os.environ.setdefault("AWS_REGION",                "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",         "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY",     "test")
os.environ.setdefault("S3_BUCKET",                 "test-bucket")
os.environ.setdefault("VECTOR_STORE_BACKEND",      "weaviate")
os.environ.setdefault("OPENAI_API_KEY",            "sk-test-key")
os.environ.setdefault("CELERY_BROKER_URL",         "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND",     "cache+memory://")
os.environ.setdefault("OCR_TIMEOUT_SECONDS",       "0.05")
os.environ.setdefault("OCR_POLL_INTERVAL_SECONDS", "0.01")
os.environ.setdefault("APP_ENV",                   "development")


INDEX_NAME = "knowledge-base-rag"

TWO_PARAGRAPHS = (
    "Tender standards define the minimum security controls every vendor must meet. "
    "Controls cover identity, encryption at rest and network segmentation.\n\n"
    "Vendor proposals are scored against these standards by the evaluation panel. "
    "Each requirement receives a compliance rating and a written justification."
)


# ─────────────────────────────────────────────────────────────────────────────
# Record store — real repository on in-memory SQLite
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine():
    from sqlalchemy.ext.asyncio import create_async_engine
    from sqlalchemy.pool import StaticPool

    from rag_ingestion.db.session import create_all

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,                         # one shared in-memory DB
        connect_args={"check_same_thread": False},
    )
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from rag_ingestion.db.session import create_session_factory
    return create_session_factory(db_engine)


@pytest.fixture
def repository(session_factory):
    from rag_ingestion.db.repository import DocumentRepository
    return DocumentRepository(session_factory)


# ─────────────────────────────────────────────────────────────────────────────
# Object store double
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def object_store():
    """
    S3StorageService double backed by a dict.
    object_store.blobs    : key → bytes
    object_store.metadata : key → metadata dict passed to upload()
    """
    from rag_ingestion.storage.s3 import S3StorageService, StoredBlob, sanitize_blob_name

    store = MagicMock(spec=S3StorageService)
    store.blobs = {}
    store.metadata = {}

    async def _upload(path, body, metadata=None, content_type=None):
        key = sanitize_blob_name(path)
        store.blobs[key] = body
        store.metadata[key] = dict(metadata or {})
        return StoredBlob(
            url=f"https://test-bucket.s3.amazonaws.com/{key}?X-Amz-Signature=test",
            name=key,
            size_bytes=len(body),
        )

    async def _download(name):
        if name not in store.blobs:
            raise FileNotFoundError(f"Object not found: {name}")
        return store.blobs[name]

    async def _delete(name):
        store.blobs.pop(name, None)

    async def _list(prefix="", max_keys=1000):
        return sorted(k for k in store.blobs if k.startswith(prefix))[:max_keys]

    store.upload   = AsyncMock(side_effect=_upload)
    store.download = AsyncMock(side_effect=_download)
    store.delete   = AsyncMock(side_effect=_delete)
    store.list     = AsyncMock(side_effect=_list)
    return store


# ─────────────────────────────────────────────────────────────────────────────
# Search index double
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def search_index():
    """
    SearchIndexBase double.
    search_index.entries : id → SearchDocument
    search_index.staged  : file_name → merged OCR text
    search_index.batches : sizes of every upsert request
    """
    from rag_ingestion.vectorstore.base import SearchIndexBase

    index = MagicMock(spec=SearchIndexBase)
    index.index_name = INDEX_NAME
    index.entries = {}
    index.staged = {}
    index.batches = []

    async def _upsert(documents, batch_size=1000):
        for i in range(0, len(documents), batch_size):
            batch = documents[i : i + batch_size]
            index.batches.append(len(batch))
            for doc in batch:
                index.entries[doc.id] = doc
        return len(documents)

    async def _delete(ids, batch_size=1000):
        for doc_id in ids:
            index.entries.pop(doc_id, None)

    async def _get_staged_text(file_name):
        return index.staged.get(file_name)

    async def _put_staged_text(file_name, merged_text):
        index.staged[file_name] = merged_text

    async def _count():
        return len(index.entries)

    index.upsert          = AsyncMock(side_effect=_upsert)
    index.delete          = AsyncMock(side_effect=_delete)
    index.get_staged_text = AsyncMock(side_effect=_get_staged_text)
    index.put_staged_text = AsyncMock(side_effect=_put_staged_text)
    index.count           = AsyncMock(side_effect=_count)
    index.query           = AsyncMock(return_value=[])
    index.close           = AsyncMock(return_value=None)
    return index


# ─────────────────────────────────────────────────────────────────────────────
# Embedding client double
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def embedding_client():
    """Deterministic 3-dim vectors; token usage = estimated tokens of each text."""
    from rag_ingestion.processing.chunking import estimate_token_count
    from rag_ingestion.processing.embeddings import EmbeddingBatchResult, EmbeddingClient

    client = MagicMock(spec=EmbeddingClient)

    async def _embed(texts):
        counts = [estimate_token_count(t) for t in texts]
        return EmbeddingBatchResult(
            vectors=[[float(len(t)), 0.0, 1.0] for t in texts],
            token_counts=counts,
            total_tokens=sum(counts),
        )

    client.embed = AsyncMock(side_effect=_embed)
    return client


# ─────────────────────────────────────────────────────────────────────────────
# Refresh publisher / OCR gate
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def refresh_publisher():
    """Mocked IndexRefreshPublisher — records calls without touching Celery/broker."""
    from rag_ingestion.services.ingestion import IndexRefreshPublisher
    publisher = MagicMock(spec=IndexRefreshPublisher)
    publisher.publish_refresh = AsyncMock(return_value=None)
    return publisher


@pytest.fixture
def ocr_gate(search_index):
    """Real gate over the search index double with a short wait."""
    from rag_ingestion.services.ocr_gate import OcrEnrichmentGate
    return OcrEnrichmentGate(search_index, timeout=0.05, poll_interval=0.01)


# ─────────────────────────────────────────────────────────────────────────────
# Service factory
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_service(repository, object_store, search_index, embedding_client, ocr_gate, refresh_publisher):
    """Factory: build a DocumentIngestionService with injected doubles."""
    def _build(**overrides):
        from rag_ingestion.core.config import settings
        from rag_ingestion.services.ingestion import DocumentIngestionService

        deps = {
            "repository":        repository,
            "object_store":      object_store,
            "search_index":      search_index,
            "embedding_client":  embedding_client,
            "ocr_gate":          ocr_gate,
            "refresh_publisher": refresh_publisher,
            "settings":          settings,
        }
        deps.update(overrides)
        return DocumentIngestionService(**deps)
    return _build


@pytest.fixture
def make_options():
    """Factory: IngestionOptions with sensible defaults."""
    def _build(**overrides):
        from rag_ingestion.schemas.documents import IngestionOptions

        fields = {
            "source_type":  "standard",
            "category":     "shared",
            "file_name":    "security-standard.txt",
            "content":      TWO_PARAGRAPHS.encode("utf-8"),
            "text_content": TWO_PARAGRAPHS,
        }
        fields.update(overrides)
        return IngestionOptions(**fields)
    return _build


@pytest.fixture
def drain_background():
    """Awaitable that lets fire-and-forget refresh dispatches finish."""
    from rag_ingestion.services import ingestion

    async def _drain() -> None:
        pending = list(ingestion._BACKGROUND_TASKS)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    return _drain


@pytest.fixture
def random_document_id() -> uuid.UUID:
    return uuid.uuid4()
