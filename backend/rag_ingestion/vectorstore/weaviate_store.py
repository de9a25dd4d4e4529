"""
Weaviate Search Index — collection per logical index

Layout:
  <search_index_name>       → collection "KnowledgeBaseRag"  (chunk entries)
  <ocr_staging_index_name>  → collection "KnowledgeBaseOcr"  (merged OCR text)

Weaviate object ids must be UUIDs, so the chunk key "<document_id>-chunk-<n>"
is mapped through generate_uuid5() and also stored as the filterable
`chunk_id` property. Deletes go by that property so they stay batchable.
Key-like text properties use FIELD tokenization so filters match the whole
value; WORD tokenization splits "<uuid>-chunk-3" on dashes and lets a
contains_any delete reach other documents' chunks.
"""

from __future__ import annotations

import logging
import re

import weaviate
import weaviate.classes as wvc
from weaviate.classes.config import Configure, DataType, Property, Tokenization
from weaviate.classes.query import Filter, MetadataQuery
from weaviate.util import generate_uuid5

from rag_ingestion.core.config import settings
from rag_ingestion.core.exceptions import SearchIndexError
from rag_ingestion.vectorstore.base import QueryResult, SearchDocument, SearchIndexBase

logger = logging.getLogger(__name__)

_RETURN_PROPERTIES = [
    "chunk_id", "content", "source_type", "source_id", "category",
    "file_name", "chunk_index", "section_title", "page_number",
    "tags", "vendor", "project", "created_at",
]


def collection_name(index_name: str) -> str:
    """
    Weaviate class names must be PascalCase and start with a letter.
    knowledge-base-rag → KnowledgeBaseRag
    """
    parts = [p for p in re.split(r"[^0-9A-Za-z]+", index_name) if p]
    name = "".join(p[:1].upper() + p[1:] for p in parts)
    if not name or not name[0].isalpha():
        name = f"Index{name}"
    return name


class WeaviateSearchIndex(SearchIndexBase):
    """Weaviate-backed search index; collections are created on first use."""

    def __init__(
        self,
        client: weaviate.WeaviateClient,
        index_name: str | None = None,
        staging_index_name: str | None = None,
    ) -> None:
        super().__init__(
            index_name or settings.search_index_name,
            staging_index_name or settings.ocr_staging_index_name,
        )
        self._client = client
        self._ensure_collections()

    # ------------------------------------------------------------------
    # Collection provisioning (idempotent, called at __init__)
    # ------------------------------------------------------------------

    def _ensure_collections(self) -> None:
        chunks = collection_name(self._index_name)
        if not self._client.collections.exists(chunks):
            self._client.collections.create(
                name=chunks,
                description="Knowledge-base document chunks",
                vectorizer_config=Configure.Vectorizer.none(),   # we supply our own vectors
                vector_index_config=Configure.VectorIndex.hnsw(
                    distance_metric=wvc.config.VectorDistances.COSINE,
                    ef_construction=128,
                    max_connections=64,
                ),
                properties=[
                    Property(name="chunk_id",      data_type=DataType.TEXT,  index_filterable=True, tokenization=Tokenization.FIELD),
                    Property(name="content",       data_type=DataType.TEXT,  index_searchable=True),
                    Property(name="source_type",   data_type=DataType.TEXT,  index_filterable=True, tokenization=Tokenization.FIELD),
                    Property(name="source_id",     data_type=DataType.TEXT,  index_filterable=True, tokenization=Tokenization.FIELD),
                    Property(name="category",      data_type=DataType.TEXT,  index_filterable=True, tokenization=Tokenization.FIELD),
                    Property(name="file_name",     data_type=DataType.TEXT,  index_filterable=True, tokenization=Tokenization.FIELD),
                    Property(name="chunk_index",   data_type=DataType.INT,   index_filterable=True),
                    Property(name="section_title", data_type=DataType.TEXT),
                    Property(name="page_number",   data_type=DataType.INT),
                    Property(name="tags",          data_type=DataType.TEXT_ARRAY, index_filterable=True),
                    Property(name="vendor",        data_type=DataType.TEXT,  index_filterable=True),
                    Property(name="project",       data_type=DataType.TEXT,  index_filterable=True),
                    Property(name="created_at",    data_type=DataType.TEXT),
                ],
            )
            logger.info("Weaviate collection created: %s", chunks)

        staging = collection_name(self._staging_index_name)
        if not self._client.collections.exists(staging):
            self._client.collections.create(
                name=staging,
                description="OCR merged text staging",
                vectorizer_config=Configure.Vectorizer.none(),
                properties=[
                    Property(
                        name="metadata_storage_name", data_type=DataType.TEXT,
                        index_filterable=True, tokenization=Tokenization.FIELD,
                    ),
                    Property(name="merged_text", data_type=DataType.TEXT),
                ],
            )
            logger.info("Weaviate collection created: %s", staging)

    def _collection(self):
        return self._client.collections.get(collection_name(self._index_name))

    def _staging(self):
        return self._client.collections.get(collection_name(self._staging_index_name))

    @staticmethod
    def _to_properties(doc: SearchDocument) -> dict:
        meta = doc.metadata
        return {
            "chunk_id":      doc.id,
            "content":       doc.content,
            "source_type":   doc.source_type,
            "source_id":     doc.source_id or "",
            "category":      doc.category,
            "file_name":     doc.file_name,
            "chunk_index":   doc.chunk_index,
            "section_title": meta.get("sectionTitle") or "",
            "page_number":   meta.get("pageNumber") or 0,
            "tags":          list(meta.get("tags") or []),
            "vendor":        meta.get("vendor") or "",
            "project":       meta.get("project") or "",
            "created_at":    doc.created_at,
        }

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, documents: list[SearchDocument], batch_size: int = 1000) -> int:
        """
        Batch upsert using insert_many; existing uuids are overwritten.
        Any per-object error fails the call so the caller can roll back.
        """
        collection = self._collection()
        total = 0

        for i in range(0, len(documents), batch_size):
            batch = documents[i : i + batch_size]
            objects = [
                wvc.data.DataObject(
                    uuid=generate_uuid5(doc.id),
                    properties=self._to_properties(doc),
                    vector=doc.embedding,
                )
                for doc in batch
            ]

            result = collection.data.insert_many(objects)
            if result.has_errors:
                for err in result.errors.values():
                    logger.error("Weaviate upsert error: %s", err)
                raise SearchIndexError(
                    f"Weaviate upsert failed for {len(result.errors)} of {len(batch)} objects"
                )

            total += len(batch)
            logger.debug(
                "Weaviate upsert | collection=%s batch=%d total=%d",
                collection_name(self._index_name), len(batch), total,
            )

        return total

    async def delete(self, ids: list[str], batch_size: int = 1000) -> None:
        """Delete entries by chunk id."""
        if not ids:
            return
        collection = self._collection()
        for i in range(0, len(ids), batch_size):
            collection.data.delete_many(
                where=Filter.by_property("chunk_id").contains_any(ids[i : i + batch_size])
            )
        logger.info(
            "Weaviate delete | collection=%s count=%d",
            collection_name(self._index_name), len(ids),
        )

    async def query(
        self,
        vector: list[float],
        top_k: int = 5,
        filter: dict | None = None,
    ) -> list[QueryResult]:
        """Near-vector search with optional {property: value} equality filters."""
        wv_filter = self._build_filter(filter) if filter else None

        response = self._collection().query.near_vector(
            near_vector=vector,
            limit=top_k,
            return_metadata=MetadataQuery(distance=True),
            return_properties=_RETURN_PROPERTIES,
            filters=wv_filter,
        )

        results = []
        for obj in response.objects:
            props = dict(obj.properties)
            score = 1.0 - (obj.metadata.distance or 0.0)  # distance → similarity
            results.append(QueryResult(
                id=props.get("chunk_id") or str(obj.uuid),
                score=round(score, 4),
                metadata=props,
            ))

        logger.debug("Weaviate query | top_k=%d results=%d", top_k, len(results))
        return results

    @staticmethod
    def _build_filter(filter_dict: dict):
        clauses = [Filter.by_property(k).equal(v) for k, v in filter_dict.items()]
        if len(clauses) == 1:
            return clauses[0]
        return Filter.all_of(clauses)

    async def count(self) -> int:
        agg = self._collection().aggregate.over_all(total_count=True)
        return agg.total_count or 0

    async def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # OCR staging
    # ------------------------------------------------------------------

    async def get_staged_text(self, file_name: str) -> str | None:
        response = self._staging().query.fetch_objects(
            filters=Filter.by_property("metadata_storage_name").equal(file_name),
            limit=1,
            return_properties=["merged_text"],
        )
        if not response.objects:
            return None
        return response.objects[0].properties.get("merged_text") or None

    async def put_staged_text(self, file_name: str, merged_text: str) -> None:
        result = self._staging().data.insert_many([
            wvc.data.DataObject(
                uuid=generate_uuid5(file_name),
                properties={"metadata_storage_name": file_name, "merged_text": merged_text},
            )
        ])
        if result.has_errors:
            raise SearchIndexError(f"Weaviate staging write failed for {file_name}")
        logger.info("Weaviate staging write | file=%s chars=%d", file_name, len(merged_text))


# ---------------------------------------------------------------------------
# Client factory
# ---------------------------------------------------------------------------

def create_weaviate_client() -> weaviate.WeaviateClient:
    """
    Create and return a connected Weaviate client.
    Supports both local (Docker) and Weaviate Cloud modes.
    """
    if settings.weaviate_api_key:
        return weaviate.connect_to_weaviate_cloud(
            cluster_url=settings.weaviate_url,
            auth_credentials=weaviate.auth.AuthApiKey(settings.weaviate_api_key),
        )
    return weaviate.connect_to_local(
        host=settings.weaviate_host,
        port=settings.weaviate_port,
    )
