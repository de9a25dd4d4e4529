"""
OCR Enrichment Gate

After a blob lands in the object store, the OCR pipeline (the
refresh_ocr_index worker, or an external indexer) eventually writes the
merged text for it into the staging index, keyed by the blob's bare file
name. The gate waits a bounded time for that text:

    found      → (merged_text, enriched=True)
    timed out  → (default_text, enriched=False)
    any error  → (default_text, enriched=False)

OCR is a quality enhancement, not a correctness requirement, so the gate
never raises. The timeout is enforced here twice: the poll loop never
sleeps past its deadline, and asyncio.wait_for() cancels a lookup that
hangs beyond it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from rag_ingestion.core.config import settings
from rag_ingestion.vectorstore.base import SearchIndexBase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EffectiveContent:
    content:  str
    enriched: bool


class OcrEnrichmentGate:

    def __init__(
        self,
        search_index:  SearchIndexBase,
        timeout:       float | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self._index = search_index
        self._timeout = settings.ocr_timeout_seconds if timeout is None else timeout
        self._poll_interval = (
            settings.ocr_poll_interval_seconds if poll_interval is None else poll_interval
        )

    async def wait_for_merged_text(
        self,
        file_name:     str,
        timeout:       float | None = None,
        poll_interval: float | None = None,
    ) -> str | None:
        """Merged OCR text for file_name, or None if it did not appear in time."""
        timeout = self._timeout if timeout is None else timeout
        poll_interval = self._poll_interval if poll_interval is None else poll_interval
        if timeout <= 0:
            return None

        try:
            return await asyncio.wait_for(
                self._poll(file_name, timeout, poll_interval),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.info("OCR wait timed out | file=%s timeout=%.1fs", file_name, timeout)
            return None

    async def _poll(self, file_name: str, timeout: float, poll_interval: float) -> str | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempt = 0

        while True:
            attempt += 1
            try:
                text = await self._index.get_staged_text(file_name)
            except Exception as exc:
                # Treated as "not available yet"
                logger.warning(
                    "OCR staging lookup failed | file=%s attempt=%d error=%s",
                    file_name, attempt, exc,
                )
                text = None

            if text:
                logger.info(
                    "OCR text found | file=%s attempt=%d chars=%d",
                    file_name, attempt, len(text),
                )
                return text

            remaining = deadline - loop.time()
            if remaining <= poll_interval:
                logger.debug("OCR text not ready before deadline | file=%s attempts=%d", file_name, attempt)
                return None
            await asyncio.sleep(poll_interval)

    async def resolve(self, file_name: str, default_text: str) -> EffectiveContent:
        """Text to chunk: OCR-merged when available, else default_text."""
        try:
            merged = await self.wait_for_merged_text(file_name)
        except Exception as exc:
            logger.warning("OCR enrichment skipped | file=%s error=%s", file_name, exc)
            merged = None

        if merged:
            return EffectiveContent(content=merged, enriched=True)
        return EffectiveContent(content=default_text, enriched=False)
