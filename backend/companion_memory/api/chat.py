from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from companion_memory.core.security import sanitize_text
from companion_memory.db.session import get_db_session
from companion_memory.memory.errors import EmbeddingUnavailable
from companion_memory.memory.tags import MemoryTag
from companion_memory.repos.message_repo import MessageRepo
from companion_memory.repos.session_repo import SessionRepo
from companion_memory.schemas.chat import (
    ChatMessageAppendResponse,
    ChatMessageCreateRequest,
    ChatMessageListResponse,
    ChatMessageOut,
    ChatSessionCreateRequest,
    ChatSessionListResponse,
    ChatSessionOut,
    ChatSessionTitlePatch,
    TurnContextRequest,
    TurnContextResponse,
)
from companion_memory.schemas.memory import ScoredMemoryOut
from companion_memory.services.chat_history import ChatHistoryService, get_chat_history_service
from companion_memory.services.ingestion_service import IngestionService, get_ingestion_service
from companion_memory.services.turn_context import TurnContextService, get_turn_context_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

MAX_TITLE_LEN = 200
MAX_CONTENT_LEN = 12000
MAX_QUERY_LEN = 2000

REMEMBERED_ROLES = {
    "user": MemoryTag.USER_INPUT,
    "assistant": MemoryTag.AI_OUTPUT,
}


@router.post("/session", response_model=ChatSessionOut, status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: ChatSessionCreateRequest,
    history: ChatHistoryService = Depends(get_chat_history_service),
) -> ChatSessionOut:
    title = sanitize_text(payload.title or "", MAX_TITLE_LEN) or None
    session = await history.create_session(title)
    return ChatSessionOut.model_validate(session)


@router.get("/sessions", response_model=ChatSessionListResponse)
async def list_sessions(
    include_archived: bool = Query(default=False),
    history: ChatHistoryService = Depends(get_chat_history_service),
) -> ChatSessionListResponse:
    sessions = await history.list_sessions(include_archived=include_archived)
    return ChatSessionListResponse(
        sessions=[ChatSessionOut.model_validate(session) for session in sessions]
    )


@router.get("/active", response_model=ChatSessionOut)
async def get_active_session(
    history: ChatHistoryService = Depends(get_chat_history_service),
) -> ChatSessionOut:
    """Return the latest non-archived session, creating one if needed."""

    return ChatSessionOut.model_validate(await history.get_or_create_active_session())


@router.get("/{session_id}", response_model=ChatSessionOut)
async def get_session(
    session_id: str,
    history: ChatHistoryService = Depends(get_chat_history_service),
) -> ChatSessionOut:
    session = await history.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return ChatSessionOut.model_validate(session)


@router.patch("/{session_id}/title", response_model=ChatSessionOut)
async def update_title(
    session_id: str,
    payload: ChatSessionTitlePatch,
    history: ChatHistoryService = Depends(get_chat_history_service),
) -> ChatSessionOut:
    title = sanitize_text(payload.title, MAX_TITLE_LEN)
    if not title:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is empty")
    session = await history.update_session_title(session_id, title)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return ChatSessionOut.model_validate(session)


@router.post("/{session_id}/archive", response_model=ChatSessionOut)
async def archive_session(
    session_id: str,
    history: ChatHistoryService = Depends(get_chat_history_service),
) -> ChatSessionOut:
    session = await history.archive_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return ChatSessionOut.model_validate(session)


@router.post(
    "/{session_id}/messages",
    response_model=ChatMessageAppendResponse,
    status_code=status.HTTP_201_CREATED,
)
async def append_message(
    session_id: str,
    payload: ChatMessageCreateRequest,
    history: ChatHistoryService = Depends(get_chat_history_service),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> ChatMessageAppendResponse:
    """Append a turn; with ``remember`` it is also stored as a memory."""

    content = sanitize_text(payload.content, MAX_CONTENT_LEN)
    try:
        message = await history.append_message(
            session_id,
            payload.role,
            content,
            raw_content=payload.raw_content,
            image_url=payload.image_url,
            local_image_uri=payload.local_image_uri,
            local_video_uri=payload.local_video_uri,
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found") from exc

    memory_ids: list[int] = []
    memory_degraded = False
    tag = REMEMBERED_ROLES.get(payload.role)
    if payload.remember and tag is not None and content:
        try:
            memory_ids = await ingestion.remember(content, tag, session_id=session_id)
        except EmbeddingUnavailable as exc:
            logger.warning("Message %s kept without a memory record: %s", message.id, exc)
            memory_degraded = True

    return ChatMessageAppendResponse(
        message=ChatMessageOut.model_validate(message),
        memory_ids=memory_ids,
        memory_degraded=memory_degraded,
    )


@router.get("/{session_id}/messages", response_model=ChatMessageListResponse)
async def list_messages(
    session_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db_session),
) -> ChatMessageListResponse:
    """Return the last ``limit`` messages in chronological order."""

    async with db.begin():
        session = await SessionRepo(db).get_session(session_id)
        if not session:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
        messages = await MessageRepo(db).list_recent(session_id, limit)
    return ChatMessageListResponse(
        messages=[ChatMessageOut.model_validate(message) for message in messages]
    )


@router.post("/{session_id}/context", response_model=TurnContextResponse)
async def turn_context(
    session_id: str,
    payload: TurnContextRequest,
    history: ChatHistoryService = Depends(get_chat_history_service),
    turn_context_service: TurnContextService = Depends(get_turn_context_service),
) -> TurnContextResponse:
    """Recent turns plus memory context for the next reply."""

    if await history.get_session(session_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    context = await turn_context_service.gather(
        session_id, sanitize_text(payload.query, MAX_QUERY_LEN)
    )
    return TurnContextResponse(
        session_id=context.session_id,
        recent_messages=[ChatMessageOut.model_validate(message) for message in context.recent_messages],
        memories=[ScoredMemoryOut.model_validate(item) for item in context.memories],
        memory_context=context.memory_context,
        degraded=context.degraded,
        exclude_rounds=context.retrieval.exclude_rounds,
    )
