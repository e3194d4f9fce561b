from __future__ import annotations

from typing import List, Optional

from pydantic import Field

from companion_memory.schemas.common import APIModel

TAG_PATTERN = r"^[A-Za-z0-9_\-]+$"


class MemoryRecordOut(APIModel):
    """Stored memory as returned to clients; the vector itself is omitted."""

    id: int
    text: str
    timestamp: int
    tag: Optional[str] = Field(default=None)
    role: Optional[str] = Field(default=None)
    effective_tag: str
    session_id: Optional[str] = Field(default=None)
    emotion_label: Optional[str] = Field(default=None)
    dimension: Optional[int] = Field(default=None)


class MemoryListResponse(APIModel):
    items: List[MemoryRecordOut]


class MemoryDateGroup(APIModel):
    date: str
    items: List[MemoryRecordOut]


class MemoryGroupedResponse(APIModel):
    groups: List[MemoryDateGroup]


class MemoryCountResponse(APIModel):
    count: int


class MemoryCreateRequest(APIModel):
    """Manual note; long text is split into chunked records."""

    text: str = Field(min_length=1)
    tag: str = Field(default="manual", min_length=1, max_length=64, pattern=TAG_PATTERN)
    session_id: Optional[str] = Field(default=None, max_length=64)
    emotion_label: Optional[str] = Field(default=None, max_length=64)


class MemoryCreateResponse(APIModel):
    ids: List[int]


class MemoryUpdateRequest(APIModel):
    text: str = Field(min_length=1)
    tag: str = Field(min_length=1, max_length=64, pattern=TAG_PATTERN)
    emotion_label: Optional[str] = Field(default=None, max_length=64)


class MemoryUpdateResponse(APIModel):
    updated: bool


class MemoryDeleteResponse(APIModel):
    deleted: int


class MemorySearchRequest(APIModel):
    query: str = Field(min_length=1)
    session_id: Optional[str] = Field(default=None, max_length=64)
    limit: Optional[int] = Field(default=None, ge=1, le=50)
    allowed_tags: Optional[List[str]] = Field(default=None)
    include_ai_output: Optional[bool] = Field(default=None)
    min_similarity: Optional[float] = Field(default=None, ge=-1.0, le=1.0)


class ScoredMemoryOut(APIModel):
    record: MemoryRecordOut
    similarity: float
    adjusted_score: float
    age_days: float


class MemorySearchResponse(APIModel):
    items: List[ScoredMemoryOut]
    degraded: bool
    exclude_rounds: int
