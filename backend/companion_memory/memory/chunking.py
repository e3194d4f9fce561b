"""Recursive character splitting for long memory passages.

Separators are tried from coarse to fine (paragraph, line, sentence
punctuation, comma, space). Pieces that are still too long fall through to
the next separator and finally to a hard character cut. Small neighbouring
pieces are merged back up to ``chunk_size`` and each chunk after the first
is prefixed with the tail of its predecessor so a sentence that straddles a
boundary stays retrievable from either side.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

DEFAULT_CHUNK_SIZE = 500
DEFAULT_CHUNK_OVERLAP = 50

DEFAULT_SEPARATORS: tuple[str, ...] = (
    "\n\n",
    "\n",
    "。",
    "！",
    "？",
    "；",
    ".",
    "!",
    "?",
    ";",
    "，",
    ",",
    " ",
)


@dataclass(frozen=True)
class ChunkResult:
    """Split output with bookkeeping for callers that log or tag chunks."""

    chunks: list[str]
    original_length: int
    was_split: bool
    chunk_count: int


def needs_splitting(text: str, threshold: int = DEFAULT_CHUNK_SIZE) -> bool:
    return len(text) > threshold


def split_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    separators: Sequence[str] = DEFAULT_SEPARATORS,
) -> list[str]:
    """Split ``text`` into chunks of roughly ``chunk_size`` characters."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if not text.strip():
        return []
    if len(text) <= chunk_size:
        return [text]

    pieces = [
        piece for piece in _recursive_split(text, list(separators), chunk_size) if piece.strip()
    ]
    merged = _merge_small_pieces(pieces, chunk_size)
    if len(merged) <= 1 or chunk_overlap <= 0:
        return merged
    return _add_overlap(merged, chunk_overlap)


def split_with_metadata(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> ChunkResult:
    chunks = split_text(text, chunk_size, chunk_overlap)
    return ChunkResult(
        chunks=chunks,
        original_length=len(text),
        was_split=len(chunks) > 1,
        chunk_count=len(chunks),
    )


def _recursive_split(text: str, separators: list[str], chunk_size: int) -> list[str]:
    if len(text) <= chunk_size:
        return [text]
    if not separators:
        return _force_chunk(text, chunk_size)

    separator, remaining = separators[0], separators[1:]
    parts = _split_keep_separator(text, separator)
    if len(parts) <= 1:
        return _recursive_split(text, remaining, chunk_size)

    result: list[str] = []
    for part in parts:
        if len(part) <= chunk_size:
            result.append(part)
        else:
            result.extend(_recursive_split(part, remaining, chunk_size))
    return result


def _split_keep_separator(text: str, separator: str) -> list[str]:
    """Split on ``separator``, keeping it at the end of the preceding piece."""

    if separator not in text:
        return [text]

    result: list[str] = []
    remaining = text
    while remaining:
        index = remaining.find(separator)
        if index == -1:
            if remaining.strip():
                result.append(remaining)
            break
        end = index + len(separator)
        part = remaining[:end]
        if part.strip():
            result.append(part)
        remaining = remaining[end:]
    return result


def _force_chunk(text: str, chunk_size: int) -> list[str]:
    return [text[index : index + chunk_size] for index in range(0, len(text), chunk_size)]


def _merge_small_pieces(pieces: list[str], chunk_size: int) -> list[str]:
    result: list[str] = []
    current = ""
    for piece in pieces:
        if not current:
            current = piece
        elif len(current) + len(piece) <= chunk_size:
            current += piece
        else:
            result.append(current)
            current = piece
    if current:
        result.append(current)
    return result


def _add_overlap(chunks: list[str], overlap: int) -> list[str]:
    result = [chunks[0]]
    for previous, current in zip(chunks, chunks[1:]):
        prefix = previous[-min(overlap, len(previous)) :]
        if current.startswith(prefix):
            result.append(current)
        else:
            result.append(prefix + current)
    return result
