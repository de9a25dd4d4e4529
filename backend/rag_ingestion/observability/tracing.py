"""
Pipeline tracing — per-document span logging for lifecycle operations.

Decorator `@traced(name)`:
  Wraps an async service method. Each call emits one span line naming the
  document it worked on:

    trace | span=ingestion.reindex_document doc=<uuid> elapsed_ms=412.7 ok
    trace | span=ingestion.delete_document doc=<uuid> elapsed_ms=9.3 error=RuntimeError: boom

  Success is logged at DEBUG, failure at ERROR with the traceback, and the
  error is re-raised unchanged.

The document id is read from the call's `document_id` argument (positional
or keyword); pass `doc_arg=` when the method names it differently. Calls
without one log `doc=-`.

Usage::

    @traced("ingestion.reindex_document")
    async def reindex_document(self, document_id): ...

    @traced()   # span name defaults to the function's qualified name
    async def _refresh(blob_name): ...
"""

from __future__ import annotations

import functools
import inspect
import logging
import time
from typing import Any, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


def _document_ref(signature: inspect.Signature, doc_arg: str, args: tuple, kwargs: dict) -> str:
    if doc_arg not in signature.parameters:
        return "-"
    try:
        bound = signature.bind_partial(*args, **kwargs)
    except TypeError:
        # the call itself is about to fail with the same error
        return "-"
    value = bound.arguments.get(doc_arg)
    return "-" if value is None else str(value)


def traced(name: str | None = None, doc_arg: str = "document_id") -> Callable[[F], F]:
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__
        signature = inspect.signature(func)

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            doc = _document_ref(signature, doc_arg, args, kwargs)
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                logger.error(
                    "trace | span=%s doc=%s elapsed_ms=%.1f error=%s: %s",
                    span_name, doc, (time.perf_counter() - started) * 1000,
                    type(exc).__name__, exc, exc_info=True,
                )
                raise
            logger.debug(
                "trace | span=%s doc=%s elapsed_ms=%.1f ok",
                span_name, doc, (time.perf_counter() - started) * 1000,
            )
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
