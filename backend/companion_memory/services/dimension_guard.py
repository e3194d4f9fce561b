from __future__ import annotations

import asyncio
import logging
from typing import Optional

from companion_memory.memory.embedder import Embedder
from companion_memory.memory.errors import DimensionMismatch
from companion_memory.services.memory_store import MemoryStore

logger = logging.getLogger(__name__)


class DimensionGuard:
    """Precondition check run before the first search after startup.

    If the stored vectors were produced by a model with a different output
    size than the configured one, the whole store is wiped. No reprojection
    is attempted. The check is memoised per configured dimension, so switching
    to an embedder of another size re-runs it before the next search.
    """

    def __init__(self, store: MemoryStore, embedder: Optional[Embedder] = None) -> None:
        self._store = store
        self._embedder = embedder or store.embedder
        self._checked_dimension: Optional[int] = None
        self._lock = asyncio.Lock()
        self.last_mismatch: Optional[DimensionMismatch] = None

    @property
    def checked(self) -> bool:
        return self._checked_dimension == self._embedder.dimension

    async def ensure(self) -> Optional[DimensionMismatch]:
        """Verify stored dimension once per configured dimension."""

        expected = self._embedder.dimension
        if self._checked_dimension == expected:
            return None
        async with self._lock:
            if self._checked_dimension == expected:
                return None
            mismatch = await self._store.wipe_if_dimension_differs(expected)
            if mismatch is not None:
                self.last_mismatch = mismatch
                logger.warning(
                    "Memory dimension mismatch: expected %s but found %s; all memories cleared",
                    mismatch.expected,
                    mismatch.found,
                )
            self._checked_dimension = expected
            return mismatch
