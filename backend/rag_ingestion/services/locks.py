"""
Per-document serialization within one process.

Re-index and delete of the same document must not interleave: a delete
racing a re-index can leave index entries for a record that no longer
exists. DocumentLockRegistry hands out one asyncio.Lock per document id
and forgets it once nobody holds or waits on it.

This only covers a single event loop. Separate worker processes rely on
Celery routing every per-document task through the documents.ingest queue.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID


class DocumentLockRegistry:

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, document_id: UUID | str) -> AsyncIterator[None]:
        key = str(document_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, document_id: UUID | str) -> bool:
        lock = self._locks.get(str(document_id))
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
