"""
Unit Tests — OCR enrichment gate and per-document locks

Coverage targets:
  ✅ Staged text returned on first lookup
  ✅ Text appearing mid-wait is picked up
  ✅ Timeout → None, within a bounded time
  ✅ Lookup errors are treated as "not ready"
  ✅ A hanging lookup is cut off at the timeout
  ✅ resolve() never raises and reports enrichment
  ✅ DocumentLockRegistry serializes one id, not different ids
"""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from rag_ingestion.services.locks import DocumentLockRegistry
from rag_ingestion.services.ocr_gate import EffectiveContent, OcrEnrichmentGate
from rag_ingestion.vectorstore.base import SearchIndexBase


def _index(side_effect=None, return_value=None):
    index = MagicMock(spec=SearchIndexBase)
    index.get_staged_text = AsyncMock(side_effect=side_effect, return_value=return_value)
    return index


@pytest.mark.unit
@pytest.mark.ocr
class TestWaitForMergedText:

    async def test_returns_staged_text_immediately(self):
        index = _index(return_value="merged scan text")
        gate = OcrEnrichmentGate(index, timeout=1.0, poll_interval=0.01)

        assert await gate.wait_for_merged_text("annex.pdf") == "merged scan text"
        index.get_staged_text.assert_awaited_once_with("annex.pdf")

    async def test_picks_up_text_that_appears_later(self):
        index = _index(side_effect=[None, None, "late text"])
        gate = OcrEnrichmentGate(index, timeout=1.0, poll_interval=0.01)

        assert await gate.wait_for_merged_text("annex.pdf") == "late text"
        assert index.get_staged_text.await_count == 3

    async def test_times_out_with_none(self):
        index = _index(return_value=None)
        gate = OcrEnrichmentGate(index, timeout=0.05, poll_interval=0.01)

        started = time.monotonic()
        assert await gate.wait_for_merged_text("annex.pdf") is None
        assert time.monotonic() - started < 0.5
        assert index.get_staged_text.await_count >= 2

    async def test_zero_timeout_skips_lookup(self):
        index = _index(return_value="never read")
        gate = OcrEnrichmentGate(index, timeout=0, poll_interval=0.01)

        assert await gate.wait_for_merged_text("annex.pdf") is None
        index.get_staged_text.assert_not_awaited()

    async def test_lookup_errors_count_as_not_ready(self):
        index = _index(side_effect=[ConnectionError("down"), "recovered text"])
        gate = OcrEnrichmentGate(index, timeout=1.0, poll_interval=0.01)

        assert await gate.wait_for_merged_text("annex.pdf") == "recovered text"

    async def test_hanging_lookup_is_cut_off(self):
        async def _hang(file_name):
            await asyncio.sleep(10)

        index = _index(side_effect=_hang)
        gate = OcrEnrichmentGate(index, timeout=0.05, poll_interval=0.01)

        started = time.monotonic()
        assert await gate.wait_for_merged_text("annex.pdf") is None
        assert time.monotonic() - started < 1.0

    async def test_per_call_overrides(self):
        index = _index(return_value=None)
        gate = OcrEnrichmentGate(index, timeout=30.0, poll_interval=5.0)

        assert await gate.wait_for_merged_text("annex.pdf", timeout=0.03, poll_interval=0.01) is None


@pytest.mark.unit
@pytest.mark.ocr
class TestResolve:

    async def test_enriched_when_text_found(self):
        gate = OcrEnrichmentGate(_index(return_value="ocr text"), timeout=0.1, poll_interval=0.01)

        assert await gate.resolve("annex.pdf", "original") == EffectiveContent("ocr text", True)

    async def test_default_text_on_timeout(self):
        gate = OcrEnrichmentGate(_index(return_value=None), timeout=0.02, poll_interval=0.01)

        assert await gate.resolve("annex.pdf", "original") == EffectiveContent("original", False)

    async def test_empty_staged_text_is_not_enrichment(self):
        gate = OcrEnrichmentGate(_index(return_value=""), timeout=0.02, poll_interval=0.01)

        result = await gate.resolve("annex.pdf", "original")

        assert result.enriched is False
        assert result.content == "original"

    async def test_persistent_errors_fall_back(self):
        gate = OcrEnrichmentGate(
            _index(side_effect=RuntimeError("index missing")), timeout=0.03, poll_interval=0.01,
        )

        assert await gate.resolve("annex.pdf", "original") == EffectiveContent("original", False)


@pytest.mark.unit
class TestDocumentLockRegistry:

    async def test_same_id_is_serialized(self):
        locks = DocumentLockRegistry()
        order = []

        async def _worker(name):
            async with locks.hold("doc-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(_worker("a"), _worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    async def test_different_ids_run_concurrently(self):
        locks = DocumentLockRegistry()
        inside = asyncio.Event()

        async def _first():
            async with locks.hold("doc-1"):
                await asyncio.wait_for(inside.wait(), timeout=1.0)

        async def _second():
            async with locks.hold("doc-2"):
                assert locks.is_locked("doc-1")
                inside.set()

        await asyncio.gather(_first(), _second())
        assert not locks.is_locked("doc-1")

    async def test_lock_released_on_error(self):
        locks = DocumentLockRegistry()

        with pytest.raises(ValueError):
            async with locks.hold("doc-1"):
                raise ValueError("boom")

        assert len(locks) == 0
        assert not locks.is_locked("doc-1")
