from __future__ import annotations

import logging
from typing import Optional

from companion_memory.memory.tags import MemoryTag
from companion_memory.services.memory_store import MemoryStore
from companion_memory.utils.time_utils import MILLIS_PER_DAY, now_millis

logger = logging.getLogger(__name__)

PROTECTED_TAGS = frozenset({MemoryTag.MANUAL.value, MemoryTag.SUMMARY.value})


class RetentionService:
    """Drop memories older than the configured retention window."""

    def __init__(self, store: MemoryStore, retention_days: int) -> None:
        self._store = store
        self._retention_days = retention_days

    @property
    def enabled(self) -> bool:
        return self._retention_days > 0

    async def purge_expired(self, now_ms: Optional[int] = None) -> int:
        """Delete expired records, keeping manual notes and summaries.

        Returns the deleted count.
        """

        if not self.enabled:
            return 0
        cutoff = (now_ms if now_ms is not None else now_millis()) - self._retention_days * MILLIS_PER_DAY
        removed = await self._store.purge_older_than(cutoff, PROTECTED_TAGS)
        if removed:
            logger.info(
                "Retention purge removed %s memories older than %s days",
                removed,
                self._retention_days,
            )
        return removed
