from __future__ import annotations


class MemoryStoreError(RuntimeError):
    """Base class for memory subsystem failures."""


class EmbeddingUnavailable(MemoryStoreError):
    """Raised when the embedding provider cannot produce a vector."""


class DimensionMismatch(MemoryStoreError):
    """Stored vectors do not match the configured embedding dimension."""

    def __init__(self, expected: int, found: int) -> None:
        super().__init__(f"Embedding dimension mismatch: expected {expected}, found {found}")
        self.expected = expected
        self.found = found


class StorageIOError(MemoryStoreError):
    """Raised when the underlying database fails."""
