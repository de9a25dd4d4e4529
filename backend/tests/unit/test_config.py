"""
Unit Tests — settings, logging setup and the traced decorator
"""

from __future__ import annotations

import logging
import uuid

import pytest

from rag_ingestion.core.config import Settings
from rag_ingestion.core.logging import configure_logging
from rag_ingestion.observability.tracing import traced


@pytest.mark.unit
class TestSettings:

    def test_pipeline_defaults(self, monkeypatch):
        for var in ("OCR_TIMEOUT_SECONDS", "OCR_POLL_INTERVAL_SECONDS"):
            monkeypatch.delenv(var, raising=False)

        s = Settings(_env_file=None)

        assert s.ocr_timeout_seconds == 30.0
        assert s.ocr_poll_interval_seconds == 3.0
        assert (s.chunk_min_tokens, s.chunk_max_tokens, s.chunk_overlap_tokens) == (500, 1000, 100)
        assert s.embedding_batch_size == 16
        assert s.index_batch_size == 1000
        assert s.default_category == "shared"

    def test_azure_needs_endpoint_and_deployment(self):
        assert not Settings(_env_file=None, azure_openai_endpoint="https://x.openai.azure.com").uses_azure_openai
        assert Settings(
            _env_file=None,
            azure_openai_endpoint="https://x.openai.azure.com",
            azure_openai_embedding_deployment="embed-small",
        ).uses_azure_openai

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("INDEX_BATCH_SIZE", "250")
        assert Settings(_env_file=None).index_batch_size == 250


@pytest.mark.unit
class TestLogging:

    def test_quiets_sdk_loggers(self):
        configure_logging("INFO")

        assert logging.getLogger("botocore").level == logging.WARNING
        assert logging.getLogger("openai").level == logging.WARNING


@pytest.mark.unit
class TestTraced:

    async def test_returns_result(self):
        @traced("unit.ok")
        async def _work(x):
            return x * 2

        assert await _work(21) == 42

    async def test_logs_and_reraises(self, caplog):
        @traced()
        async def _broken():
            raise RuntimeError("kaput")

        with caplog.at_level(logging.ERROR, logger="rag_ingestion.observability.tracing"):
            with pytest.raises(RuntimeError, match="kaput"):
                await _broken()

        assert "span=TestTraced.test_logs_and_reraises.<locals>._broken" in caplog.text
        assert "doc=-" in caplog.text
        assert "error=RuntimeError: kaput" in caplog.text

    async def test_span_names_the_document(self, caplog):
        doc_id = uuid.uuid4()

        class _Service:
            @traced("unit.reindex")
            async def reindex_document(self, document_id):
                return document_id

        with caplog.at_level(logging.DEBUG, logger="rag_ingestion.observability.tracing"):
            await _Service().reindex_document(doc_id)
            await _Service().reindex_document(document_id=doc_id)

        spans = [r.getMessage() for r in caplog.records if "span=unit.reindex" in r.getMessage()]
        assert len(spans) == 2
        assert all(f"doc={doc_id}" in s and s.endswith(" ok") for s in spans)

    async def test_custom_document_argument(self, caplog):
        @traced("unit.refresh", doc_arg="blob_name")
        async def _refresh(blob_name):
            raise ConnectionError("broker down")

        with caplog.at_level(logging.ERROR, logger="rag_ingestion.observability.tracing"):
            with pytest.raises(ConnectionError):
                await _refresh("knowledge-base/shared/a.txt")

        assert "doc=knowledge-base/shared/a.txt" in caplog.text
