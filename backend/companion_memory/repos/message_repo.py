from __future__ import annotations

from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from companion_memory.db.models import ChatMessage
from companion_memory.utils.time_utils import now_millis


class MessageRepo:
    """Repository for chat message persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def _next_seq(self, session_id: str) -> int:
        result = await self._db.execute(
            select(func.max(ChatMessage.seq)).where(ChatMessage.session_id == session_id)
        )
        max_seq = result.scalar_one() or 0
        return int(max_seq) + 1

    async def add_message(
        self,
        message_id: str,
        session_id: str,
        role: str,
        content: str,
        raw_content: Optional[str] = None,
        image_url: Optional[str] = None,
        local_image_uri: Optional[str] = None,
        local_video_uri: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> ChatMessage:
        """Insert a new message with an incremented per-session sequence number."""

        message = ChatMessage(
            id=message_id,
            session_id=session_id,
            seq=await self._next_seq(session_id),
            role=role,
            content=content,
            raw_content=raw_content,
            timestamp=timestamp if timestamp is not None else now_millis(),
            image_url=image_url,
            local_image_uri=local_image_uri,
            local_video_uri=local_video_uri,
        )
        self._db.add(message)
        await self._db.flush()
        return message

    async def list_recent(self, session_id: str, limit: int) -> List[ChatMessage]:
        """Return the last ``limit`` messages of a session in ascending order."""

        if limit <= 0:
            return []
        result = await self._db.execute(
            select(ChatMessage)
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.seq.desc())
            .limit(limit)
        )
        rows = list(result.scalars())
        rows.reverse()
        return rows

