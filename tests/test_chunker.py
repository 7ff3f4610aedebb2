"""Unit tests for ragwatch.chunker."""

import pytest

from ragwatch.chunker import TextChunk, build_file_header, chunk_text, clamp_overlap

# ---------------------------------------------------------------------------
# Tests for chunk_text
# ---------------------------------------------------------------------------


class TestChunkText:
    """Character-based splitting with overlap."""

    def test_empty_text_yields_no_chunks(self):
        assert chunk_text("", 10, 2) == []

    def test_short_text_is_single_chunk(self):
        assert chunk_text("hello", 10, 2) == [TextChunk(0, "hello")]

    def test_exact_fit_is_single_chunk(self):
        chunks = chunk_text("a" * 10, 10, 3)
        assert len(chunks) == 1
        assert chunks[0].text == "a" * 10

    def test_overlap_between_neighbours(self):
        text = "abcdefghijklmnopqrstuvwxyz"
        chunks = chunk_text(text, 10, 3)
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev.text[-3:] == nxt.text[:3]
            assert nxt.start == prev.start + 7

    def test_only_last_chunk_may_be_short(self):
        chunks = chunk_text("x" * 95, 20, 5)
        assert all(len(c.text) == 20 for c in chunks[:-1])
        assert 0 < len(chunks[-1].text) <= 20

    def test_chunk_count_formula(self):
        """count = 1 + ceil((len - max) / (max - overlap)) for long text."""
        length, max_chars, overlap = 1000, 100, 10
        chunks = chunk_text("y" * length, max_chars, overlap)
        step = max_chars - overlap
        expected = 1 + -(-(length - max_chars) // step)
        assert len(chunks) == expected

    def test_every_character_covered_in_order(self):
        text = "".join(chr(ord("a") + i % 26) for i in range(257))
        chunks = chunk_text(text, 32, 7)
        rebuilt = chunks[0].text
        for chunk in chunks[1:]:
            rebuilt += chunk.text[7:]
        assert rebuilt == text
        assert chunks[-1].end == len(text)

    def test_zero_overlap(self):
        chunks = chunk_text("abcdefghij", 4, 0)
        assert [c.text for c in chunks] == ["abcd", "efgh", "ij"]

    def test_oversized_overlap_is_clamped(self):
        chunks = chunk_text("abcdef", 3, 10)
        # overlap clamps to 2, so the window advances one character at a time
        assert [c.text for c in chunks] == ["abc", "bcd", "cde", "def"]

    def test_negative_overlap_treated_as_zero(self):
        chunks = chunk_text("abcdefgh", 4, -5)
        assert [c.text for c in chunks] == ["abcd", "efgh"]

    def test_invalid_max_chars_raises(self):
        with pytest.raises(ValueError):
            chunk_text("abc", 0, 0)

    def test_deterministic(self):
        text = "lorem ipsum dolor sit amet " * 40
        assert chunk_text(text, 50, 5) == chunk_text(text, 50, 5)


class TestClampOverlap:
    def test_within_range_unchanged(self):
        assert clamp_overlap(100, 10) == 10

    def test_upper_bound(self):
        assert clamp_overlap(100, 100) == 99

    def test_lower_bound(self):
        assert clamp_overlap(100, -1) == 0


# ---------------------------------------------------------------------------
# Tests for build_file_header
# ---------------------------------------------------------------------------


class TestBuildFileHeader:
    def test_header_fields(self):
        header = build_file_header("src/app/Main.JAVA")
        assert header == "FILE: src/app/Main.JAVA\nNAME: Main.JAVA\nEXT: java\n---\n"

    def test_no_extension(self):
        header = build_file_header("Makefile")
        assert "NAME: Makefile\n" in header
        assert "EXT: \n" in header
