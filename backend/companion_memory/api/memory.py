from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from companion_memory.core.security import sanitize_text
from companion_memory.memory.errors import EmbeddingUnavailable
from companion_memory.memory.types import RetrievalResult
from companion_memory.schemas.memory import (
    MemoryCountResponse,
    MemoryCreateRequest,
    MemoryCreateResponse,
    MemoryDateGroup,
    MemoryDeleteResponse,
    MemoryGroupedResponse,
    MemoryListResponse,
    MemoryRecordOut,
    MemorySearchRequest,
    MemorySearchResponse,
    MemoryUpdateRequest,
    MemoryUpdateResponse,
    ScoredMemoryOut,
)
from companion_memory.services.chat_history import ChatHistoryService, get_chat_history_service
from companion_memory.services.ingestion_service import IngestionService, get_ingestion_service
from companion_memory.services.memory_store import MemoryStore, get_memory_store
from companion_memory.services.retrieval_service import RetrievalService, get_retrieval_service

router = APIRouter(prefix="/api/memory", tags=["memory"])

MAX_MEMORY_TEXT_LEN = 20000
MAX_QUERY_LEN = 2000


@router.get("", response_model=MemoryListResponse | MemoryGroupedResponse)
async def list_memories(
    group_by_date: bool = Query(default=False),
    store: MemoryStore = Depends(get_memory_store),
) -> MemoryListResponse | MemoryGroupedResponse:
    """Return every memory, oldest first, or grouped by local calendar day."""

    if group_by_date:
        grouped = await store.get_memories_by_date()
        return MemoryGroupedResponse(
            groups=[
                MemoryDateGroup(
                    date=day.isoformat(),
                    items=[MemoryRecordOut.model_validate(record) for record in records],
                )
                for day, records in grouped.items()
            ]
        )
    records = await store.get_all()
    return MemoryListResponse(items=[MemoryRecordOut.model_validate(record) for record in records])


@router.get("/recent", response_model=MemoryListResponse)
async def list_recent_memories(
    limit: int = Query(default=20, ge=1, le=500),
    store: MemoryStore = Depends(get_memory_store),
) -> MemoryListResponse:
    records = await store.get_recent(limit)
    return MemoryListResponse(items=[MemoryRecordOut.model_validate(record) for record in records])


@router.get("/count", response_model=MemoryCountResponse)
async def count_memories(store: MemoryStore = Depends(get_memory_store)) -> MemoryCountResponse:
    return MemoryCountResponse(count=await store.count())


@router.post("", response_model=MemoryCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_memory(
    payload: MemoryCreateRequest,
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> MemoryCreateResponse:
    """Store a manual note, chunking long text."""

    text = sanitize_text(payload.text, MAX_MEMORY_TEXT_LEN)
    if not text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Memory text is empty")
    try:
        ids = await ingestion.remember(
            text,
            payload.tag.strip(),
            session_id=payload.session_id,
            emotion_label=payload.emotion_label,
        )
    except EmbeddingUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    return MemoryCreateResponse(ids=ids)


@router.patch("/{record_id}", response_model=MemoryUpdateResponse)
async def update_memory(
    record_id: int,
    payload: MemoryUpdateRequest,
    store: MemoryStore = Depends(get_memory_store),
) -> MemoryUpdateResponse:
    """Rewrite a memory's text and tag; the vector is recomputed."""

    text = sanitize_text(payload.text, MAX_MEMORY_TEXT_LEN)
    if not text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Memory text is empty")
    try:
        updated = await store.update(record_id, text, payload.tag.strip(), payload.emotion_label)
    except EmbeddingUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Memory not found")
    return MemoryUpdateResponse(updated=True)


@router.delete("/{record_id}", response_model=MemoryDeleteResponse)
async def delete_memory(
    record_id: int,
    store: MemoryStore = Depends(get_memory_store),
) -> MemoryDeleteResponse:
    if not await store.delete(record_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Memory not found")
    return MemoryDeleteResponse(deleted=1)


@router.delete("", response_model=MemoryDeleteResponse)
async def clear_memories(store: MemoryStore = Depends(get_memory_store)) -> MemoryDeleteResponse:
    return MemoryDeleteResponse(deleted=await store.clear_all())


@router.post("/search", response_model=MemorySearchResponse)
async def search_memories(
    payload: MemorySearchRequest,
    retrieval: RetrievalService = Depends(get_retrieval_service),
    history: ChatHistoryService = Depends(get_chat_history_service),
) -> MemorySearchResponse:
    """Run a text query through the retrieval engine.

    With a ``session_id`` the session's recent turns form the live window
    whose memories are left out of the result.
    """

    recent_messages = None
    if payload.session_id:
        recent_messages = await history.get_recent_messages(
            payload.session_id, retrieval.config.history_limit
        )
    result = await retrieval.retrieve(
        sanitize_text(payload.query, MAX_QUERY_LEN),
        session_id=payload.session_id,
        recent_messages=recent_messages,
        limit=payload.limit,
        allowed_tags=payload.allowed_tags,
        include_ai_output=payload.include_ai_output,
        min_similarity=payload.min_similarity,
    )
    return search_response(result)


def search_response(result: RetrievalResult) -> MemorySearchResponse:
    return MemorySearchResponse(
        items=[ScoredMemoryOut.model_validate(item) for item in result.memories],
        degraded=result.degraded,
        exclude_rounds=result.exclude_rounds,
    )
