"""
Sentence-Window Chunker
═══════════════════════

Splits a document's effective text into 500–1000 token chunks with a
100 token overlap.

Algorithm
─────────
  1. Split on sentence boundaries ([.!?]+ followed by whitespace); each
     sentence keeps its trailing delimiter so joining reproduces the text.
  2. Grow the current chunk sentence by sentence.
  3. When the next sentence would push the chunk past max_tokens AND the
     chunk already holds at least min_tokens, emit it.
  4. Seed the next chunk with the trailing sentences of the emitted one,
     as many as fit in overlap_tokens.
  5. Flush whatever is left at the end.

A single sentence longer than max_tokens is never split; it becomes an
oversize chunk. Token counts are estimates (1 token ≈ 4 characters) so no
tokenizer is needed at ingestion time.

The chunker is pure and deterministic: identical input always yields
identical chunks, which is what makes re-indexing idempotent.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Optional

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

MIN_CHUNK_TOKENS     = 500
MAX_CHUNK_TOKENS     = 1000
OVERLAP_CHUNK_TOKENS = 100

CHARS_PER_TOKEN = 4

# Capturing group keeps the delimiter in re.split() output
_SENTENCE_SPLIT_RE = re.compile(r"([.!?]+\s+)")


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class TextSection:
    """One titled block of input text."""
    title:       str
    content:     str
    page_number: Optional[int] = None


@dataclass
class ChunkResult:
    """A single chunk ready for embedding."""
    content:       str
    token_count:   int
    chunk_index:   int
    section_title: Optional[str] = None
    page_number:   Optional[int] = None

    @property
    def metadata(self) -> dict:
        """camelCase view stored on Chunk rows and index entries."""
        meta: dict = {"chunkIndex": self.chunk_index}
        if self.section_title is not None:
            meta["sectionTitle"] = self.section_title
        if self.page_number is not None:
            meta["pageNumber"] = self.page_number
        return meta


# ---------------------------------------------------------------------------
# Estimation helpers
# ---------------------------------------------------------------------------

def estimate_token_count(text: str) -> int:
    """ceil(len / 4) — rough but tokenizer-free."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_chunk_count(text: str, max_tokens: int = MAX_CHUNK_TOKENS) -> int:
    return math.ceil(estimate_token_count(text) / max_tokens)


def split_into_sentences(text: str) -> list[str]:
    """Sentences with their trailing delimiter attached; blank pieces dropped."""
    parts = _SENTENCE_SPLIT_RE.split(text)
    sentences: list[str] = []
    for i in range(0, len(parts), 2):
        sentence = parts[i]
        delimiter = parts[i + 1] if i + 1 < len(parts) else ""
        if sentence.strip():
            sentences.append(sentence + delimiter)
    return sentences


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

def chunk_text(
    text: str,
    *,
    min_tokens:     int = MIN_CHUNK_TOKENS,
    max_tokens:     int = MAX_CHUNK_TOKENS,
    overlap_tokens: int = OVERLAP_CHUNK_TOKENS,
    section_title:  Optional[str] = None,
    page_number:    Optional[int] = None,
) -> list[ChunkResult]:
    """
    Chunk one block of text.

    Returns [] for empty or whitespace-only input; otherwise at least one
    chunk, indexed from 0.
    """
    if not text or not text.strip():
        return []

    chunks: list[ChunkResult] = []
    current: list[str] = []
    current_tokens = 0

    def _emit() -> None:
        chunks.append(ChunkResult(
            content=        "".join(current).strip(),
            token_count=    current_tokens,
            chunk_index=    len(chunks),
            section_title=  section_title,
            page_number=    page_number,
        ))

    for sentence in split_into_sentences(text):
        sentence_tokens = estimate_token_count(sentence)

        if current_tokens + sentence_tokens > max_tokens and current_tokens >= min_tokens:
            _emit()

            # Carry trailing sentences into the next chunk
            overlap: list[str] = []
            overlap_count = 0
            for prev in reversed(current):
                prev_tokens = estimate_token_count(prev)
                if overlap_count + prev_tokens > overlap_tokens:
                    break
                overlap.insert(0, prev)
                overlap_count += prev_tokens

            current = overlap
            current_tokens = overlap_count

        current.append(sentence)
        current_tokens += sentence_tokens

    if current:
        _emit()

    return chunks


def chunk_document(
    sections: list[TextSection],
    *,
    section_title:  Optional[str] = None,
    page_number:    Optional[int] = None,
    min_tokens:     int = MIN_CHUNK_TOKENS,
    max_tokens:     int = MAX_CHUNK_TOKENS,
    overlap_tokens: int = OVERLAP_CHUNK_TOKENS,
) -> list[ChunkResult]:
    """
    Chunk every section and renumber chunk_index across the whole document.

    section_title / page_number are document-level defaults: an explicit
    section_title wins over each section's own title, and a section without
    a page number inherits page_number.
    """
    all_chunks: list[ChunkResult] = []
    for section in sections:
        all_chunks.extend(chunk_text(
            section.content,
            min_tokens=min_tokens,
            max_tokens=max_tokens,
            overlap_tokens=overlap_tokens,
            section_title=section_title or section.title,
            page_number=section.page_number if section.page_number is not None else page_number,
        ))

    for index, chunk in enumerate(all_chunks):
        chunk.chunk_index = index

    return all_chunks
