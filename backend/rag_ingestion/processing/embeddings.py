"""
Embedding Client  —  Batch Embeddings with Retry
═════════════════════════════════════════════════

Design goals:
  • Bounded batches: EMBEDDING_BATCH_SIZE texts per API call (16, the Azure
    OpenAI input limit; the same limit is applied to api.openai.com)
  • Concurrency: batches are issued concurrently, bounded by a semaphore
  • Retry: exponential back-off on rate limits and transient errors
  • Fail fast: one batch exhausting its retries fails the whole call, so
    the ingestion service never indexes a document with holes in it
  • Token accounting: usage is summed across batches for cost monitoring

Retry policy:
  RateLimitError / APIConnectionError / APITimeoutError / 5xx
      → wait RETRY_BASE_DELAY × 2^attempt (capped)
  AuthenticationError / PermissionDeniedError / BadRequestError / NotFoundError
      → fail immediately (not transient)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Sequence

import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI

from rag_ingestion.core.config import settings
from rag_ingestion.core.exceptions import EmbeddingError
from rag_ingestion.processing.chunking import estimate_token_count

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE     = 16
MAX_CONCURRENT_BATCHES   = 4
MAX_RETRIES              = 3
RETRY_BASE_DELAY         = 2.0    # seconds, doubled each retry
RETRY_MAX_DELAY          = 60.0   # cap

_NON_RETRYABLE = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.NotFoundError,
)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingBatchResult:
    """
    vectors      : one vector per input text, in input order
    token_counts : token usage per API batch, in batch order
    total_tokens : sum of token_counts
    """
    vectors:      list[list[float]] = field(default_factory=list)
    token_counts: list[int]         = field(default_factory=list)
    total_tokens: int               = 0
    elapsed_ms:   float             = 0.0


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

def create_openai_client() -> AsyncOpenAI:
    """Azure OpenAI when an endpoint + deployment is configured, else api.openai.com."""
    if settings.uses_azure_openai:
        return AsyncAzureOpenAI(
            api_key=settings.azure_openai_api_key,
            azure_endpoint=settings.azure_openai_endpoint,
            api_version=settings.azure_openai_api_version,
        )
    return AsyncOpenAI(api_key=settings.openai_api_key)


class EmbeddingClient:
    """
    Stateless embedding client.

    Usage:
        client = EmbeddingClient()
        result = await client.embed([chunk.content for chunk in chunks])
        # result.vectors[i] belongs to chunks[i]
    """

    def __init__(
        self,
        client:           AsyncOpenAI | None = None,
        model:            str | None = None,
        dimensions:       int | None = None,
        batch_size:       int = EMBEDDING_BATCH_SIZE,
        max_concurrency:  int = MAX_CONCURRENT_BATCHES,
        max_retries:      int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ) -> None:
        self._client      = client or create_openai_client()
        self._model       = model or (
            settings.azure_openai_embedding_deployment
            if settings.uses_azure_openai else settings.embedding_model
        )
        self._dimensions  = dimensions or settings.embedding_dimensions
        self._batch_size  = max(1, batch_size)
        self._max_concurrency = max(1, max_concurrency)
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def embed(self, texts: Sequence[str]) -> EmbeddingBatchResult:
        """
        Embed all texts.

        Raises:
            EmbeddingError if any batch fails permanently or the service
            returns a different number of vectors than inputs.
        """
        if not texts:
            return EmbeddingBatchResult()

        t0 = time.monotonic()
        batches = [
            list(texts[i : i + self._batch_size])
            for i in range(0, len(texts), self._batch_size)
        ]

        logger.info(
            "Embedding start | texts=%d batches=%d model=%s",
            len(texts), len(batches), self._model,
        )

        semaphore = asyncio.Semaphore(self._max_concurrency)
        results = await asyncio.gather(
            *(
                self._embed_batch_with_retry(batch, batch_idx, semaphore)
                for batch_idx, batch in enumerate(batches)
            ),
            return_exceptions=True,
        )

        vectors: list[list[float]] = []
        token_counts: list[int] = []
        for batch_idx, result in enumerate(results):
            if isinstance(result, BaseException):
                logger.error("Embedding batch %d permanently failed: %s", batch_idx, result)
                if isinstance(result, EmbeddingError):
                    raise result
                raise EmbeddingError(f"Embedding batch {batch_idx} failed: {result}") from result
            batch_vectors, tokens = result
            vectors.extend(batch_vectors)
            token_counts.append(tokens)

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding count mismatch: expected {len(texts)}, got {len(vectors)}"
            )

        elapsed_ms = (time.monotonic() - t0) * 1000
        total_tokens = sum(token_counts)
        logger.info(
            "Embedding done | vectors=%d tokens=%d elapsed_ms=%.0f",
            len(vectors), total_tokens, elapsed_ms,
        )

        return EmbeddingBatchResult(
            vectors=vectors,
            token_counts=token_counts,
            total_tokens=total_tokens,
            elapsed_ms=elapsed_ms,
        )

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query string with the ingestion model."""
        result = await self.embed([text])
        return result.vectors[0]

    # ------------------------------------------------------------------
    # Batch processing with retry
    # ------------------------------------------------------------------

    async def _embed_batch_with_retry(
        self,
        batch:     list[str],
        batch_idx: int,
        semaphore: asyncio.Semaphore,
    ) -> tuple[list[list[float]], int]:
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = min(self._retry_base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            async with semaphore:
                try:
                    return await self._call_api(batch, batch_idx)
                except _NON_RETRYABLE as exc:
                    logger.error("Non-retryable embedding error batch=%d: %s", batch_idx, exc)
                    raise EmbeddingError(f"Embedding request rejected: {exc}") from exc
                except openai.OpenAIError as exc:
                    last_error = exc
                    logger.warning(
                        "Retryable embedding error batch=%d attempt=%d: %s %s",
                        batch_idx, attempt, type(exc).__name__, exc,
                    )

        raise EmbeddingError(
            f"Embedding batch {batch_idx} failed after {self._max_retries} retries: {last_error}"
        )

    async def _call_api(
        self,
        batch:     list[str],
        batch_idx: int,
    ) -> tuple[list[list[float]], int]:
        t_api = time.monotonic()

        kwargs: dict = {"model": self._model, "input": batch}
        if self._dimensions != 1536:
            # dimensions only applies to text-embedding-3-* models
            kwargs["dimensions"] = self._dimensions

        response = await self._client.embeddings.create(**kwargs)

        tokens_used = (
            response.usage.total_tokens
            if response.usage else sum(estimate_token_count(t) for t in batch)
        )

        logger.debug(
            "OpenAI embeddings | batch=%d size=%d tokens=%d api_ms=%.0f",
            batch_idx, len(batch), tokens_used, (time.monotonic() - t_api) * 1000,
        )

        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered], tokens_used
