from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from companion_memory.db.models import ChatMessage, ChatSession
from companion_memory.repos.message_repo import MessageRepo
from companion_memory.repos.session_repo import SessionRepo
from companion_memory.services.message_feed import MessageFeed

logger = logging.getLogger(__name__)

MESSAGE_ROLES = frozenset({"user", "assistant", "system"})
AUTO_TITLE_LEN = 20


def derive_title(content: str) -> str:
    """Session title from the first user message."""

    cleaned = " ".join(content.split())
    if len(cleaned) > AUTO_TITLE_LEN:
        return cleaned[:AUTO_TITLE_LEN] + "..."
    return cleaned


def message_payload(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "session_id": message.session_id,
        "seq": message.seq,
        "role": message.role,
        "content": message.content,
        "timestamp": message.timestamp,
        "image_url": message.image_url,
        "local_image_uri": message.local_image_uri,
        "local_video_uri": message.local_video_uri,
    }


class ChatHistoryService:
    """Session and message persistence supplying the recent-turns context."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        feed: Optional[MessageFeed] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._feed = feed or MessageFeed()
        self._append_lock = asyncio.Lock()
        self._session_lock = asyncio.Lock()

    @property
    def feed(self) -> MessageFeed:
        return self._feed

    async def get_or_create_active_session(self) -> ChatSession:
        """Most recently updated non-archived session, created when none exists."""

        async with self._session_lock:
            async with self._sessionmaker() as db:
                async with db.begin():
                    repo = SessionRepo(db)
                    session = await repo.get_latest_active()
                    if session is None:
                        session = await repo.create_session(uuid.uuid4().hex, None)
                        logger.info("Created chat session %s", session.id)
                    return session

    async def create_session(self, title: Optional[str] = None) -> ChatSession:
        async with self._sessionmaker() as db:
            async with db.begin():
                cleaned = (title or "").strip() or None
                return await SessionRepo(db).create_session(uuid.uuid4().hex, cleaned)

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        async with self._sessionmaker() as db:
            return await SessionRepo(db).get_session(session_id)

    async def list_sessions(self, include_archived: bool = False) -> list[ChatSession]:
        async with self._sessionmaker() as db:
            return await SessionRepo(db).list_sessions(include_archived=include_archived)

    async def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        raw_content: Optional[str] = None,
        image_url: Optional[str] = None,
        local_image_uri: Optional[str] = None,
        local_video_uri: Optional[str] = None,
    ) -> ChatMessage:
        """Append one turn, bump the session and auto-title it if needed."""

        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unsupported message role: {role}")

        async with self._append_lock:
            async with self._sessionmaker() as db:
                async with db.begin():
                    session_repo = SessionRepo(db)
                    session = await session_repo.get_session(session_id)
                    if session is None:
                        raise LookupError(f"Chat session not found: {session_id}")
                    message = await MessageRepo(db).add_message(
                        message_id=uuid.uuid4().hex,
                        session_id=session_id,
                        role=role,
                        content=content,
                        raw_content=raw_content,
                        image_url=image_url,
                        local_image_uri=local_image_uri,
                        local_video_uri=local_video_uri,
                    )
                    await session_repo.touch(session_id)
                    if role == "user" and not (session.title or "").strip() and content.strip():
                        session.title = derive_title(content)

        await self._feed.publish(session_id, {"event": "message", "message": message_payload(message)})
        return message

    async def get_recent_messages(self, session_id: str, limit: int) -> list[ChatMessage]:
        """Last ``limit`` turns of a session, oldest first."""

        async with self._sessionmaker() as db:
            return await MessageRepo(db).list_recent(session_id, limit)

    async def observe_messages(
        self, session_id: str, limit: int = 50
    ) -> AsyncIterator[list[ChatMessage]]:
        """Yield the recent window now and again after every append."""

        async with self._feed.subscribe(session_id) as queue:
            yield await self.get_recent_messages(session_id, limit)
            while True:
                await queue.get()
                yield await self.get_recent_messages(session_id, limit)

    async def update_session_title(self, session_id: str, title: str) -> Optional[ChatSession]:
        async with self._sessionmaker() as db:
            async with db.begin():
                return await SessionRepo(db).update_title(session_id, title.strip())

    async def archive_session(self, session_id: str) -> Optional[ChatSession]:
        async with self._sessionmaker() as db:
            async with db.begin():
                return await SessionRepo(db).archive(session_id)


def get_chat_history_service(request: Request) -> ChatHistoryService:
    """Dependency to access the chat history service from app state."""

    return request.app.state.chat_history
