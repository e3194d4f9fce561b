from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Iterable, Optional

from fastapi import Request

from companion_memory.core.config import RagConfig
from companion_memory.db.models import ChatMessage
from companion_memory.memory.errors import StorageIOError
from companion_memory.memory.types import RetrievalResult, ScoredMemory
from companion_memory.services.chat_history import ChatHistoryService
from companion_memory.services.retrieval_service import PreparedQuery, RetrievalService
from companion_memory.utils.time_utils import millis_to_datetime

logger = logging.getLogger(__name__)

MEMORY_CONTEXT_HEADER = "Relevant Memories:"


@dataclass(frozen=True)
class TurnContext:
    """Recent turns plus the long-term memories selected for one reply."""

    session_id: str
    recent_messages: list[ChatMessage] = field(default_factory=list)
    retrieval: RetrievalResult = field(default_factory=RetrievalResult)
    memory_context: str = ""
    degraded: bool = False

    @property
    def memories(self) -> list[ScoredMemory]:
        return self.retrieval.memories


def format_memory_context(
    memories: Iterable[ScoredMemory],
    max_chars: int = 2000,
    tz: Optional[tzinfo] = None,
) -> str:
    """Render memories as a dated bullet list within ``max_chars``."""

    lines: list[str] = []
    seen: set[str] = set()
    total_chars = len(MEMORY_CONTEXT_HEADER)
    for item in memories:
        text = " ".join(item.record.text.split())
        if not text:
            continue
        dedupe_key = text.casefold()
        if dedupe_key in seen:
            continue

        stamp = millis_to_datetime(item.record.timestamp, tz).strftime("%Y-%m-%d %H:%M")
        line = f"- [{stamp}] {text}"
        projected_chars = total_chars + 1 + len(line)
        if projected_chars > max_chars:
            break

        lines.append(line)
        seen.add(dedupe_key)
        total_chars = projected_chars

    if not lines:
        return ""
    return "\n".join([MEMORY_CONTEXT_HEADER, *lines])


class TurnContextService:
    """Gather history and memory context for one conversation turn."""

    def __init__(
        self,
        retrieval: RetrievalService,
        history: ChatHistoryService,
        config: RagConfig,
        memory_context_max_chars: int = 2000,
    ) -> None:
        self._retrieval = retrieval
        self._history = history
        self._config = config
        self._memory_context_max_chars = max(0, memory_context_max_chars)

    async def gather(self, session_id: str, query_text: str) -> TurnContext:
        """Fetch recent turns and relevant memories concurrently.

        The query embedding runs alongside the history fetch; ranking then
        uses the fetched window to drop memories already in context. A
        storage failure on the memory side leaves a history-only context.
        """

        recent_messages, prepared = await asyncio.gather(
            self._history.get_recent_messages(session_id, self._config.history_limit),
            self._prepare(query_text),
        )
        if prepared.embedding is None:
            return TurnContext(
                session_id=session_id,
                recent_messages=recent_messages,
                retrieval=RetrievalResult(degraded=prepared.degraded),
                degraded=prepared.degraded,
            )

        try:
            result = await self._retrieval.retrieve_by_embedding(
                prepared.embedding,
                session_id=session_id,
                recent_messages=recent_messages,
            )
        except StorageIOError as exc:
            logger.warning("Memory retrieval failed, continuing with history only: %s", exc)
            return TurnContext(
                session_id=session_id,
                recent_messages=recent_messages,
                retrieval=RetrievalResult(degraded=True),
                degraded=True,
            )

        return TurnContext(
            session_id=session_id,
            recent_messages=recent_messages,
            retrieval=result,
            memory_context=format_memory_context(result.memories, self._memory_context_max_chars),
            degraded=result.degraded,
        )

    async def _prepare(self, query_text: str) -> PreparedQuery:
        try:
            return await self._retrieval.prepare_query(query_text)
        except StorageIOError as exc:
            logger.warning("Memory store unavailable, continuing with history only: %s", exc)
            return PreparedQuery(degraded=True)


def get_turn_context_service(request: Request) -> TurnContextService:
    """Dependency to access the turn context service from app state."""

    return request.app.state.turn_context
