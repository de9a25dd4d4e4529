"""
Document Processing Package
════════════════════════════

Pure text-to-vector stages of the ingestion pipeline:

  Chunking → Embedding

Modules
───────
  chunking.py   Sentence-window chunker (500–1000 tokens, 100 token overlap)
  embeddings.py Batched OpenAI / Azure OpenAI embeddings with retry and token accounting
"""

from rag_ingestion.processing.chunking import ChunkResult, TextSection, chunk_document, chunk_text
from rag_ingestion.processing.embeddings import EmbeddingBatchResult, EmbeddingClient

__all__ = [
    "ChunkResult",
    "TextSection",
    "chunk_document",
    "chunk_text",
    "EmbeddingBatchResult",
    "EmbeddingClient",
]
