from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Optional, Protocol

from fastapi import Request

from companion_memory.core.config import RagConfig
from companion_memory.memory.embedder import Embedder
from companion_memory.memory.errors import EmbeddingUnavailable
from companion_memory.memory.ranking import overfetch_limit, rank_candidates
from companion_memory.memory.tags import DEFAULT_ALLOWED_TAGS, MemoryTag
from companion_memory.memory.types import RetrievalResult, RetrievalStats
from companion_memory.services.dimension_guard import DimensionGuard
from companion_memory.services.memory_store import MemoryStore, current_task_cancelling
from companion_memory.utils.time_utils import now_millis

logger = logging.getLogger(__name__)


class TimedMessage(Protocol):
    timestamp: int


@dataclass(frozen=True)
class PreparedQuery:
    embedding: Optional[list[float]] = None
    degraded: bool = False


def exclude_after_timestamp(
    recent_messages: Sequence[TimedMessage], exclude_rounds: int
) -> Optional[int]:
    """Start of the live context window: the last ``exclude_rounds`` rounds.

    A round is one user turn plus one assistant turn, so the window covers
    the last ``2 * exclude_rounds`` messages.
    """

    if exclude_rounds <= 0 or not recent_messages:
        return None
    window = list(recent_messages)[-(exclude_rounds * 2) :]
    return min(int(message.timestamp) for message in window)


class RetrievalService:
    """Retrieval and ranking engine for long-term memory.

    Memories of the current session that fall inside the live history
    window are excluded here, so callers can merge the result with recent
    turns without resurfacing what is already in context.
    """

    def __init__(
        self,
        *,
        store: MemoryStore,
        embedder: Embedder,
        guard: DimensionGuard,
        config: RagConfig,
        embed_timeout_sec: Optional[float] = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._guard = guard
        self._config = config
        self._embed_timeout_sec = embed_timeout_sec

    @property
    def config(self) -> RagConfig:
        return self._config

    async def retrieve(
        self,
        query_text: str,
        *,
        session_id: Optional[str] = None,
        recent_messages: Optional[Sequence[TimedMessage]] = None,
        limit: Optional[int] = None,
        allowed_tags: Optional[Iterable[str]] = None,
        include_ai_output: Optional[bool] = None,
        min_similarity: Optional[float] = None,
        half_life_days: Optional[float] = None,
        exclude_rounds: Optional[int] = None,
        now_ms: Optional[int] = None,
    ) -> RetrievalResult:
        """Retrieve memories relevant to ``query_text``.

        Embedding failures yield a degraded empty result instead of an
        error; storage failures propagate as ``StorageIOError``.
        """

        prepared = await self.prepare_query(query_text)
        if prepared.embedding is None:
            return RetrievalResult(degraded=prepared.degraded)

        return await self.retrieve_by_embedding(
            prepared.embedding,
            session_id=session_id,
            recent_messages=recent_messages,
            limit=limit,
            allowed_tags=allowed_tags,
            include_ai_output=include_ai_output,
            min_similarity=min_similarity,
            half_life_days=half_life_days,
            exclude_rounds=exclude_rounds,
            now_ms=now_ms,
        )

    async def prepare_query(self, query_text: str) -> PreparedQuery:
        """Embed ``query_text`` unless the store is empty or the query blank.

        Runs the dimension guard first so a freshly wiped store is seen as
        empty by the ranking step.
        """

        cleaned_query = query_text.strip()
        if not cleaned_query:
            return PreparedQuery()

        # Skip the provider round trip when nothing could match.
        if not await self._store.has_any():
            logger.debug("Memory retrieval skipped: store is empty")
            return PreparedQuery()

        await self._guard.ensure()

        try:
            embedding = await self._embed_query(cleaned_query)
        except EmbeddingUnavailable as exc:
            logger.warning("Memory retrieval degraded because query embedding failed: %s", exc)
            return PreparedQuery(degraded=True)
        return PreparedQuery(embedding=embedding)

    async def retrieve_by_embedding(
        self,
        query_embedding: Sequence[float],
        *,
        session_id: Optional[str] = None,
        recent_messages: Optional[Sequence[TimedMessage]] = None,
        limit: Optional[int] = None,
        allowed_tags: Optional[Iterable[str]] = None,
        include_ai_output: Optional[bool] = None,
        min_similarity: Optional[float] = None,
        half_life_days: Optional[float] = None,
        exclude_rounds: Optional[int] = None,
        now_ms: Optional[int] = None,
    ) -> RetrievalResult:
        """Rank stored memories against an already computed query vector."""

        config = self._config
        cap = config.max_items if limit is None else limit
        rounds = config.exclude_rounds if exclude_rounds is None else max(0, exclude_rounds)
        include_ai = config.include_ai_output if include_ai_output is None else include_ai_output
        if allowed_tags is None:
            tags = set(DEFAULT_ALLOWED_TAGS)
            if include_ai:
                tags.add(MemoryTag.AI_OUTPUT.value)
            allowed = frozenset(tags)
        else:
            allowed = frozenset(allowed_tags)
        if cap <= 0:
            return RetrievalResult()

        await self._guard.ensure()

        exclude_after = (
            exclude_after_timestamp(recent_messages, rounds)
            if session_id is not None and recent_messages
            else None
        )
        candidates = await self._store.candidates(
            query_embedding, overfetch_limit(cap, config.top_k_candidates)
        )
        ranked = rank_candidates(
            candidates,
            limit=cap,
            now_ms=now_ms if now_ms is not None else now_millis(),
            allowed_tags=allowed,
            include_ai_output=include_ai,
            min_similarity=config.min_similarity if min_similarity is None else min_similarity,
            half_life_days=config.half_life_days if half_life_days is None else half_life_days,
            exclude_session_id=session_id,
            exclude_after_ms=exclude_after,
        )

        stats = RetrievalStats.from_results(len(candidates), ranked)
        logger.log(
            logging.INFO if config.log_verbose else logging.DEBUG,
            "Memory retrieval: %s",
            stats.summary(),
        )
        return RetrievalResult(
            memories=ranked,
            exclude_rounds=rounds if exclude_after is not None else 0,
            exclude_after_ms=exclude_after,
            stats=stats,
        )

    async def _embed_query(self, text: str) -> list[float]:
        try:
            if self._embed_timeout_sec is not None:
                vector = await asyncio.wait_for(
                    self._embedder.embed(text), timeout=self._embed_timeout_sec
                )
            else:
                vector = await self._embedder.embed(text)
        except EmbeddingUnavailable:
            raise
        except asyncio.CancelledError as exc:
            if current_task_cancelling():
                raise
            raise EmbeddingUnavailable("Query embedding was cancelled") from exc
        except asyncio.TimeoutError as exc:
            raise EmbeddingUnavailable("Query embedding timed out") from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Memory retrieval failed while embedding query")
            raise EmbeddingUnavailable("Query embedding failed") from exc
        if len(vector) != self._embedder.dimension:
            raise EmbeddingUnavailable("Query embedding has unexpected dimension")
        return vector


def get_retrieval_service(request: Request) -> RetrievalService:
    """Dependency to access the retrieval engine from app state."""

    return request.app.state.retrieval_service
