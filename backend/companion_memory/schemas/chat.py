from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import Field

from companion_memory.schemas.common import APIModel
from companion_memory.schemas.memory import ScoredMemoryOut


class ChatSessionCreateRequest(APIModel):
    title: Optional[str] = Field(default=None, max_length=200)


class ChatSessionOut(APIModel):
    id: str
    title: Optional[str] = Field(default=None)
    created_at: datetime
    updated_at: datetime
    is_archived: bool


class ChatSessionListResponse(APIModel):
    sessions: List[ChatSessionOut]


class ChatSessionTitlePatch(APIModel):
    title: str = Field(min_length=1, max_length=200)


class ChatMessageCreateRequest(APIModel):
    """One conversation turn to append."""

    role: Literal["user", "assistant", "system"]
    content: str
    raw_content: Optional[str] = Field(default=None)
    image_url: Optional[str] = Field(default=None, max_length=2048)
    local_image_uri: Optional[str] = Field(default=None, max_length=2048)
    local_video_uri: Optional[str] = Field(default=None, max_length=2048)
    remember: bool = Field(default=False)


class ChatMessageOut(APIModel):
    id: str
    session_id: str
    seq: int
    role: str
    content: str
    timestamp: int
    image_url: Optional[str] = Field(default=None)
    local_image_uri: Optional[str] = Field(default=None)
    local_video_uri: Optional[str] = Field(default=None)


class ChatMessageAppendResponse(APIModel):
    message: ChatMessageOut
    memory_ids: List[int] = Field(default_factory=list)
    memory_degraded: bool = False


class ChatMessageListResponse(APIModel):
    messages: List[ChatMessageOut]


class TurnContextRequest(APIModel):
    query: str


class TurnContextResponse(APIModel):
    session_id: str
    recent_messages: List[ChatMessageOut]
    memories: List[ScoredMemoryOut]
    memory_context: str
    degraded: bool
    exclude_rounds: int
