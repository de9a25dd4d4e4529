"""
Pinecone Search Index — namespace per logical index

Layout:
  One shared Pinecone index, two namespaces:
    <search_index_name>       chunk entries, id "<document_id>-chunk-<n>"
    <ocr_staging_index_name>  merged OCR text, ids "ocr-<sha256(file_name)>-<part>"

  Namespace creation is implicit — Pinecone creates it on first upsert.

Pinecone stores only flat metadata (str, number, bool, list[str]), so the
nested chunk metadata is flattened to "metadata_<key>" on the way in and
rebuilt on the way out.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from pinecone import Pinecone, ServerlessSpec
from pinecone.exceptions import PineconeException

from rag_ingestion.core.config import settings
from rag_ingestion.core.exceptions import SearchIndexError
from rag_ingestion.vectorstore.base import QueryResult, SearchDocument, SearchIndexBase

logger = logging.getLogger(__name__)

_META_PREFIX = "metadata_"

# Pinecone rejects records whose metadata exceeds 40 KB; leave room for the
# other staging fields.
STAGED_PART_BYTES = 32_000
_STAGED_PARTS_PER_UPSERT = 40


def staging_vector_id(file_name: str) -> str:
    """Deterministic staging id prefix for a blob file name."""
    return "ocr-" + hashlib.sha256(file_name.encode("utf-8")).hexdigest()[:40]


def split_staged_text(text: str, limit: int = STAGED_PART_BYTES) -> list[str]:
    """Split text into pieces of at most `limit` UTF-8 bytes; always at least one."""
    raw = text.encode("utf-8")
    parts: list[str] = []
    start = 0
    while start < len(raw):
        cut = min(start + limit, len(raw))
        # back off to the start of a code point
        while cut < len(raw) and (raw[cut] & 0xC0) == 0x80:
            cut -= 1
        parts.append(raw[start:cut].decode("utf-8"))
        start = cut
    return parts or [""]


def _flatten(doc: SearchDocument) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in doc.properties().items():
        if key == "metadata":
            continue
        if value is not None:
            flat[key] = value
    for key, value in doc.metadata.items():
        if value is not None:
            flat[f"{_META_PREFIX}{key}"] = value
    return flat


def _unflatten(meta: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {"metadata": {}}
    for key, value in meta.items():
        if key.startswith(_META_PREFIX):
            out["metadata"][key[len(_META_PREFIX):]] = value
        else:
            out[key] = value
    return out


class PineconeSearchIndex(SearchIndexBase):
    """Pinecone-backed search index."""

    def __init__(
        self,
        index_name: str | None = None,
        staging_index_name: str | None = None,
        index: Any = None,
    ) -> None:
        super().__init__(
            index_name or settings.search_index_name,
            staging_index_name or settings.ocr_staging_index_name,
        )
        if index is None:
            pc = Pinecone(api_key=settings.pinecone_api_key)
            index = pc.Index(settings.pinecone_index_name)
        self._index = index

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, documents: list[SearchDocument], batch_size: int = 1000) -> int:
        """
        Upsert chunk entries into the RAG namespace, batch_size per request.
        Pinecone caps a request at 2MB / 1000 vectors; callers keep batch_size ≤ 1000.
        """
        total = 0
        for i in range(0, len(documents), batch_size):
            batch = documents[i : i + batch_size]
            vectors = [
                {"id": doc.id, "values": doc.embedding, "metadata": _flatten(doc)}
                for doc in batch
            ]
            try:
                self._index.upsert(vectors=vectors, namespace=self._index_name)
            except PineconeException as exc:
                raise SearchIndexError(f"Pinecone upsert failed: {exc}") from exc

            total += len(batch)
            logger.debug(
                "Pinecone upsert | namespace=%s batch=%d total=%d",
                self._index_name, len(batch), total,
            )
        return total

    async def delete(self, ids: list[str], batch_size: int = 1000) -> None:
        """Delete specific ids from the RAG namespace."""
        if not ids:
            return
        for i in range(0, len(ids), batch_size):
            try:
                self._index.delete(ids=ids[i : i + batch_size], namespace=self._index_name)
            except PineconeException as exc:
                raise SearchIndexError(f"Pinecone delete failed: {exc}") from exc
        logger.info("Pinecone delete | namespace=%s count=%d", self._index_name, len(ids))

    async def query(
        self,
        vector: list[float],
        top_k: int = 5,
        filter: dict | None = None,
    ) -> list[QueryResult]:
        """
        Similarity search over the RAG namespace.
        top_k is capped at 100 (Pinecone limit for metadata-filtered queries).
        """
        top_k = min(top_k, 100)
        pc_filter = (
            {"$and": [{k: {"$eq": v}} for k, v in filter.items()]}
            if filter else None
        )

        resp = self._index.query(
            vector=vector,
            top_k=top_k,
            namespace=self._index_name,
            filter=pc_filter,
            include_metadata=True,
            include_values=False,
        )

        results = []
        for match in resp.get("matches", []):
            meta = _unflatten(match.get("metadata") or {})
            results.append(QueryResult(
                id=match["id"],
                score=match["score"],
                metadata=meta,
            ))

        logger.debug("Pinecone query | top_k=%d results=%d", top_k, len(results))
        return results

    async def count(self) -> int:
        """Return vector count in the RAG namespace."""
        stats = self._index.describe_index_stats()
        ns_stats = stats.get("namespaces", {}).get(self._index_name, {})
        return ns_stats.get("vector_count", 0)

    # ------------------------------------------------------------------
    # OCR staging
    # ------------------------------------------------------------------

    async def get_staged_text(self, file_name: str) -> str | None:
        base = staging_vector_id(file_name)
        head_id = f"{base}-0"
        resp = self._index.fetch(ids=[head_id], namespace=self._staging_index_name)
        record = resp.vectors.get(head_id)
        if record is None:
            return None
        meta = record.metadata or {}
        if meta.get("metadata_storage_name") != file_name:
            return None

        texts = [meta.get("merged_text") or ""]
        parts = int(meta.get("parts", 1))
        if parts > 1:
            rest = [f"{base}-{n}" for n in range(1, parts)]
            fetched = self._index.fetch(ids=rest, namespace=self._staging_index_name).vectors
            missing = [vid for vid in rest if vid not in fetched]
            if missing:
                logger.warning(
                    "Pinecone staged text incomplete | file=%s parts=%d missing=%d",
                    file_name, parts, len(missing),
                )
                return None
            texts.extend((fetched[vid].metadata or {}).get("merged_text") or "" for vid in rest)

        return "".join(texts) or None

    async def put_staged_text(self, file_name: str, merged_text: str) -> None:
        """
        Store merged OCR text as records "<staging id>-0..n".

        Pinecone caps metadata at 40 KB per record, so the text is split on
        UTF-8 boundaries. Record 0 carries the part count and is written last.
        """
        base = staging_vector_id(file_name)
        texts = split_staged_text(merged_text)
        # Staging entries are fetched by id only; the vector is a placeholder.
        placeholder = [1.0] + [0.0] * (settings.embedding_dimensions - 1)
        records = [
            {
                "id": f"{base}-{n}",
                "values": placeholder,
                "metadata": {
                    "metadata_storage_name": file_name,
                    "part": n,
                    "parts": len(texts),
                    "merged_text": text,
                },
            }
            for n, text in enumerate(texts)
        ]
        ordered = records[1:] + records[:1]
        try:
            for i in range(0, len(ordered), _STAGED_PARTS_PER_UPSERT):
                self._index.upsert(
                    vectors=ordered[i : i + _STAGED_PARTS_PER_UPSERT],
                    namespace=self._staging_index_name,
                )
        except PineconeException as exc:
            raise SearchIndexError(f"Pinecone staging write failed: {exc}") from exc
        logger.info(
            "Pinecone staging write | file=%s chars=%d parts=%d",
            file_name, len(merged_text), len(texts),
        )

    # ------------------------------------------------------------------
    # Class-level: index provisioning (run once at platform setup)
    # ------------------------------------------------------------------

    @classmethod
    def ensure_index(cls) -> None:
        """Create the shared Pinecone index if it doesn't exist."""
        pc = Pinecone(api_key=settings.pinecone_api_key)
        existing = [i.name for i in pc.list_indexes()]
        if settings.pinecone_index_name in existing:
            logger.info("Pinecone index '%s' already exists", settings.pinecone_index_name)
            return

        pc.create_index(
            name=settings.pinecone_index_name,
            dimension=settings.embedding_dimensions,
            metric="cosine",
            spec=ServerlessSpec(cloud="aws", region=settings.aws_region),
        )
        logger.info("Pinecone index '%s' created", settings.pinecone_index_name)
