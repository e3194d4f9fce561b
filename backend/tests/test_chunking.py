from __future__ import annotations

import pytest

from companion_memory.memory.chunking import needs_splitting, split_text, split_with_metadata


def test_short_text_is_kept_whole() -> None:
    result = split_with_metadata("A short note about coffee.", chunk_size=500)
    assert result.chunks == ["A short note about coffee."]
    assert not result.was_split
    assert result.chunk_count == 1


def test_blank_text_produces_no_chunks() -> None:
    assert split_text("   \n  ") == []
    assert split_with_metadata("").chunk_count == 0


def test_paragraphs_split_on_blank_lines_first() -> None:
    paragraphs = ["a" * 300, "b" * 300, "c" * 300]
    chunks = split_text("\n\n".join(paragraphs), chunk_size=500, chunk_overlap=0)

    assert len(chunks) == 3
    assert chunks[0].startswith("a") and chunks[0].rstrip().endswith("a")
    assert chunks[1].strip() == "b" * 300
    assert chunks[2] == "c" * 300


def test_overlap_prefixes_tail_of_previous_chunk() -> None:
    paragraphs = ["a" * 300, "b" * 300]
    chunks = split_text("\n\n".join(paragraphs), chunk_size=400, chunk_overlap=20)

    assert len(chunks) == 2
    assert chunks[1].startswith(chunks[0][-20:])
    assert all(len(chunk) <= 400 + 20 for chunk in chunks)


def test_text_without_separators_is_hard_cut() -> None:
    chunks = split_text("x" * 1200, chunk_size=500, chunk_overlap=0)
    assert [len(chunk) for chunk in chunks] == [500, 500, 200]


def test_small_sentences_are_merged_up_to_chunk_size() -> None:
    text = " ".join(f"Sentence number {index}." for index in range(60))
    chunks = split_text(text, chunk_size=200, chunk_overlap=0)

    assert len(chunks) > 1
    assert all(len(chunk) <= 200 for chunk in chunks)
    assert "".join(chunks) == text


def test_needs_splitting_threshold() -> None:
    assert not needs_splitting("x" * 500)
    assert needs_splitting("x" * 501)


def test_invalid_chunk_size_rejected() -> None:
    with pytest.raises(ValueError):
        split_text("hello", chunk_size=0)


def test_whitespace_runs_never_become_chunks() -> None:
    chunks = split_text("a" + "\n\n" * 300, chunk_size=100, chunk_overlap=10)

    assert len(chunks) == 1
    assert chunks[0].startswith("a")
    assert all(chunk.strip() for chunk in chunks)
