from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from companion_memory.db.models import ChatSession
from companion_memory.utils.time_utils import utc_now


class SessionRepo:
    """Repository for chat session persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def create_session(self, session_id: str, title: Optional[str]) -> ChatSession:
        """Persist a new session and return it."""

        now = utc_now()
        session = ChatSession(
            id=session_id,
            title=title,
            created_at=now,
            updated_at=now,
            is_archived=False,
        )
        self._db.add(session)
        await self._db.flush()
        return session

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        """Fetch a session by ID."""

        result = await self._db.execute(select(ChatSession).where(ChatSession.id == session_id))
        return result.scalar_one_or_none()

    async def get_latest_active(self) -> Optional[ChatSession]:
        """Most recently updated session that is not archived."""

        result = await self._db.execute(
            select(ChatSession)
            .where(ChatSession.is_archived.is_(False))
            .order_by(ChatSession.updated_at.desc(), ChatSession.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def touch(self, session_id: str) -> Optional[ChatSession]:
        """Bump ``updated_at`` for a session."""

        session = await self.get_session(session_id)
        if not session:
            return None
        session.updated_at = utc_now()
        await self._db.flush()
        return session

    async def update_title(self, session_id: str, title: str) -> Optional[ChatSession]:
        session = await self.get_session(session_id)
        if not session:
            return None
        session.title = title
        await self._db.flush()
        return session

    async def archive(self, session_id: str) -> Optional[ChatSession]:
        """Soft-delete a session; its messages and memories stay in place."""

        session = await self.get_session(session_id)
        if not session:
            return None
        session.is_archived = True
        await self._db.flush()
        return session

    async def list_sessions(
        self, include_archived: bool = False, limit: int = 100
    ) -> list[ChatSession]:
        """List sessions ordered by update time descending."""

        stmt = select(ChatSession)
        if not include_archived:
            stmt = stmt.where(ChatSession.is_archived.is_(False))
        result = await self._db.execute(
            stmt.order_by(ChatSession.updated_at.desc(), ChatSession.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
