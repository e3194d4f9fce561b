from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request

from companion_memory.memory.chunking import (
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    split_with_metadata,
)
from companion_memory.services.memory_store import MemoryStore, TagLike
from companion_memory.utils.time_utils import now_millis

logger = logging.getLogger(__name__)


class IngestionService:
    """Split long passages and store each fragment as its own memory."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        self._store = store
        self._chunk_size = max(1, chunk_size)
        self._chunk_overlap = max(0, min(chunk_overlap, self._chunk_size - 1))

    async def remember(
        self,
        text: str,
        tag: TagLike,
        session_id: Optional[str] = None,
        emotion_label: Optional[str] = None,
        *,
        allow_degraded: bool = False,
    ) -> list[int]:
        """Store ``text`` as one record, or as tagged chunks when it is long."""

        result = split_with_metadata(text.strip(), self._chunk_size, self._chunk_overlap)
        if not result.chunks:
            return []
        if not result.was_split:
            record_id = await self._store.insert(
                result.chunks[0],
                tag,
                session_id,
                emotion_label,
                allow_degraded=allow_degraded,
            )
            return [record_id]

        logger.debug(
            "Splitting memory of %s chars into %s chunks",
            result.original_length,
            result.chunk_count,
        )
        return await self._store.insert_chunks(
            result.chunks,
            tag,
            session_id,
            emotion_label,
            shared_timestamp=now_millis(),
        )


def get_ingestion_service(request: Request) -> IngestionService:
    """Dependency to access the ingestion service from app state."""

    return request.app.state.ingestion_service
