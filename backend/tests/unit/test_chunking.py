"""
Unit Tests — Sentence-window chunker

Coverage targets:
  ✅ Token estimation (ceil(len / 4))
  ✅ Sentence split keeps delimiters, drops blanks
  ✅ Empty / whitespace input → no chunks
  ✅ Short text → exactly one chunk
  ✅ Long text → chunks within [min, max] except the last one
  ✅ Overlap: next chunk starts with the tail of the previous one
  ✅ Oversize sentence is kept whole
  ✅ Deterministic output
  ✅ chunk_document renumbers across sections and applies metadata defaults
"""

from __future__ import annotations

import pytest

from rag_ingestion.processing.chunking import (
    ChunkResult,
    TextSection,
    chunk_document,
    chunk_text,
    estimate_chunk_count,
    estimate_token_count,
    split_into_sentences,
)


def _sentences(n: int, width: int = 200) -> str:
    # Each sentence is exactly `width` chars including ". " → width / 4 tokens
    body = "x" * (width - len("S000") - 2)
    return "".join(f"S{i:03d}{body}. " for i in range(n))


@pytest.mark.unit
class TestEstimation:

    @pytest.mark.parametrize("text,expected", [
        ("", 0),
        ("abc", 1),
        ("abcd", 1),
        ("abcde", 2),
        ("x" * 4000, 1000),
    ])
    def test_estimate_token_count(self, text, expected):
        assert estimate_token_count(text) == expected

    def test_estimate_chunk_count(self):
        assert estimate_chunk_count("x" * 8001) == 3
        assert estimate_chunk_count("x" * 400, max_tokens=50) == 2


@pytest.mark.unit
class TestSentenceSplit:

    def test_delimiters_stay_attached(self):
        parts = split_into_sentences("First one. Second one?! Third one\n")
        assert parts == ["First one. ", "Second one?! ", "Third one\n"]
        assert "".join(parts) == "First one. Second one?! Third one\n"

    def test_blank_pieces_are_dropped(self):
        assert split_into_sentences("   ") == []

    def test_no_delimiter_is_one_sentence(self):
        assert split_into_sentences("no punctuation at all") == ["no punctuation at all"]


@pytest.mark.unit
class TestChunkText:

    @pytest.mark.parametrize("text", ["", "   ", "\n\t\n"])
    def test_empty_input_yields_nothing(self, text):
        assert chunk_text(text) == []

    def test_short_text_is_single_chunk(self):
        chunks = chunk_text("A short clause. Another short clause.")
        assert len(chunks) == 1
        assert chunks[0].content == "A short clause. Another short clause."
        assert chunks[0].chunk_index == 0
        assert chunks[0].token_count == estimate_token_count("A short clause. ") + estimate_token_count(
            "Another short clause."
        )

    def test_long_text_respects_bounds(self):
        chunks = chunk_text(_sentences(60))   # 60 × 50 tokens

        assert len(chunks) > 1
        for chunk in chunks[:-1]:
            assert 500 <= chunk.token_count <= 1000
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))

    def test_overlap_carries_trailing_sentences(self):
        chunks = chunk_text(_sentences(60))

        for prev, nxt in zip(chunks, chunks[1:]):
            prev_sentences = split_into_sentences(prev.content + " ")
            next_sentences = split_into_sentences(nxt.content + " ")
            # 100 token overlap = two 50 token sentences
            assert next_sentences[:2] == prev_sentences[-2:]

    def test_custom_limits(self):
        chunks = chunk_text(_sentences(10), min_tokens=100, max_tokens=150, overlap_tokens=0)

        assert [c.token_count for c in chunks] == [150, 150, 150, 50]

    def test_oversize_sentence_is_not_split(self):
        giant = "y" * 6000 + ". "
        chunks = chunk_text(giant + "Tail sentence.")

        assert len(chunks) == 2
        assert chunks[0].content == "y" * 6000 + "."
        assert chunks[0].token_count > 1000
        # Oversize sentence exceeds the overlap budget, so nothing carries over
        assert chunks[1].content == "Tail sentence."

    def test_deterministic(self):
        text = _sentences(45)
        assert chunk_text(text) == chunk_text(text)

    def test_metadata_view(self):
        chunk = ChunkResult(content="c", token_count=1, chunk_index=3, section_title="Scope", page_number=2)
        assert chunk.metadata == {"chunkIndex": 3, "sectionTitle": "Scope", "pageNumber": 2}

        bare = ChunkResult(content="c", token_count=1, chunk_index=0)
        assert bare.metadata == {"chunkIndex": 0}


@pytest.mark.unit
class TestChunkDocument:

    def test_indices_run_across_sections(self):
        sections = [
            TextSection(title="Intro", content=_sentences(30)),
            TextSection(title="Scope", content=_sentences(30), page_number=4),
        ]

        chunks = chunk_document(sections)

        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert {c.section_title for c in chunks} == {"Intro", "Scope"}
        assert chunks[-1].page_number == 4

    def test_explicit_section_title_wins(self):
        chunks = chunk_document(
            [TextSection(title="file.txt", content="Only sentence.")],
            section_title="Annex B",
        )
        assert chunks[0].section_title == "Annex B"

    def test_page_number_is_a_fallback(self):
        chunks = chunk_document(
            [
                TextSection(title="a", content="First section."),
                TextSection(title="b", content="Second section.", page_number=9),
            ],
            page_number=1,
        )
        assert [c.page_number for c in chunks] == [1, 9]

    def test_empty_sections_are_skipped(self):
        chunks = chunk_document([
            TextSection(title="blank", content="  "),
            TextSection(title="body", content="Real content."),
        ])
        assert len(chunks) == 1
        assert chunks[0].chunk_index == 0
        assert chunks[0].section_title == "body"
