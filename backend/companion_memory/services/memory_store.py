from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import date, tzinfo
from enum import Enum
from typing import AsyncIterator, Optional, Union

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from companion_memory.memory.embedder import Embedder
from companion_memory.memory.errors import DimensionMismatch, EmbeddingUnavailable, StorageIOError
from companion_memory.memory.ranking import DEFAULT_MIN_SIMILARITY, OVERFETCH_FACTOR
from companion_memory.memory.tags import (
    chunk_tag,
    legacy_role_for_tag,
    tag_allowed,
    tag_from_legacy_role,
)
from companion_memory.memory.types import MemoryCandidate, MemoryRecord
from companion_memory.memory.vector_store import SQLiteVectorStore, VectorStore
from companion_memory.repos.memory_repo import MemoryRepo, to_record
from companion_memory.utils.time_utils import millis_to_date, now_millis

logger = logging.getLogger(__name__)

TagLike = Union[str, Enum]


class ReadWriteLock:
    """Asyncio readers-writer lock; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class MemoryStore:
    """Durable memory records with a vector index.

    One instance is shared by every component of the process and passed in
    explicitly. Reads run concurrently; writes, ``clear_all`` and the
    dimension wipe are exclusive. Embeddings are computed before the write
    lock is taken, so a failed or cancelled provider call never leaves a
    partially written row.
    """

    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        embedder: Embedder,
        vector_store: Optional[VectorStore] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._embedder = embedder
        self._vector_store = vector_store or SQLiteVectorStore()
        self._lock = ReadWriteLock()
        self._verified_dimension: Optional[int] = None

    @property
    def embedder(self) -> Embedder:
        return self._embedder

    async def insert(
        self,
        text: str,
        tag: TagLike,
        session_id: Optional[str] = None,
        emotion_label: Optional[str] = None,
        *,
        allow_degraded: bool = False,
        timestamp: Optional[int] = None,
    ) -> int:
        """Embed and persist one memory, returning its id.

        With ``allow_degraded`` an embedding failure stores the text without
        a vector (kept, but unsearchable) instead of raising.
        """

        tag_value = _tag_value(tag)
        embedding: Optional[list[float]]
        try:
            embedding = await self._embed(text)
        except EmbeddingUnavailable:
            if not allow_degraded:
                raise
            logger.warning("Storing memory without embedding; it will not be searchable")
            embedding = None

        async with self._write() as db:
            row = await MemoryRepo(db).add(
                text=text,
                embedding=embedding,
                timestamp=timestamp if timestamp is not None else now_millis(),
                tag=tag_value,
                role=legacy_role_for_tag(tag_value),
                session_id=session_id,
                emotion_label=emotion_label,
            )
            record_id = row.id
        logger.debug("Saved memory id=%s tag=%s", record_id, tag_value)
        return record_id

    async def insert_legacy(self, text: str, role: str) -> int:
        """Entry point for callers that still pass a ``user``/``ai`` role marker."""

        normalized = role.strip().lower()
        tag = tag_from_legacy_role(normalized)
        if tag == "unknown":
            tag = normalized or tag
        embedding = await self._embed(text)
        async with self._write() as db:
            row = await MemoryRepo(db).add(
                text=text,
                embedding=embedding,
                timestamp=now_millis(),
                tag=tag,
                role=normalized or None,
            )
            return row.id

    async def insert_chunks(
        self,
        chunks: Sequence[str],
        tag: TagLike,
        session_id: Optional[str] = None,
        emotion_label: Optional[str] = None,
        shared_timestamp: Optional[int] = None,
    ) -> list[int]:
        """Persist the fragments of one passage; all share one timestamp.

        Every chunk is embedded before anything is written, so a provider
        failure stores none of them.
        """

        if not chunks:
            return []
        base = _tag_value(tag)
        timestamp = shared_timestamp if shared_timestamp is not None else now_millis()
        embeddings = await self._embed_many(chunks)
        role = legacy_role_for_tag(base)

        items = [
            (chunk, embedding, chunk_tag(base, index, len(chunks)))
            for index, (chunk, embedding) in enumerate(zip(chunks, embeddings), start=1)
        ]
        async with self._write() as db:
            rows = await MemoryRepo(db).add_many(
                items,
                timestamp=timestamp,
                role=role,
                session_id=session_id,
                emotion_label=emotion_label,
            )
            ids = [row.id for row in rows]
        logger.debug("Saved %s memory chunks tag=%s", len(ids), base)
        return ids

    async def update(
        self,
        record_id: int,
        text: str,
        tag: TagLike,
        emotion_label: Optional[str] = None,
    ) -> bool:
        """Rewrite one memory and its vector; a missing id is a no-op."""

        if await self.get(record_id) is None:
            return False
        tag_value = _tag_value(tag)
        embedding = await self._embed(text)
        async with self._write() as db:
            row = await MemoryRepo(db).update_content(
                record_id,
                text=text,
                embedding=embedding,
                tag=tag_value,
                role=legacy_role_for_tag(tag_value),
                emotion_label=emotion_label,
            )
            return row is not None

    async def delete(self, record_id: int) -> bool:
        async with self._write() as db:
            return await MemoryRepo(db).delete(record_id) > 0

    async def clear_all(self) -> int:
        async with self._write() as db:
            removed = await MemoryRepo(db).delete_all()
        logger.info("Cleared %s memories", removed)
        return removed

    async def purge_older_than(self, cutoff_ms: int, protected_tags: Iterable[str] = ()) -> int:
        async with self._write() as db:
            return await MemoryRepo(db).delete_older_than(cutoff_ms, protected_tags)

    async def get(self, record_id: int) -> Optional[MemoryRecord]:
        async with self._read() as db:
            row = await MemoryRepo(db).get(record_id)
            return to_record(row) if row is not None else None

    async def get_all(self) -> list[MemoryRecord]:
        async with self._read() as db:
            return [to_record(row) for row in await MemoryRepo(db).list_all()]

    async def get_recent(self, limit: int) -> list[MemoryRecord]:
        if limit <= 0:
            return []
        async with self._read() as db:
            return [to_record(row) for row in await MemoryRepo(db).list_recent(limit)]

    async def get_memories_by_date(
        self, tz: Optional[tzinfo] = None
    ) -> dict[date, list[MemoryRecord]]:
        """Group every memory by calendar day, newest day first."""

        grouped: dict[date, list[MemoryRecord]] = {}
        for record in await self.get_all():
            grouped.setdefault(millis_to_date(record.timestamp, tz), []).append(record)
        return {day: grouped[day] for day in sorted(grouped, reverse=True)}

    async def count(self) -> int:
        async with self._read() as db:
            return await MemoryRepo(db).count()

    async def has_any(self) -> bool:
        async with self._read() as db:
            return await MemoryRepo(db).exists_any()

    async def candidates(
        self, query_embedding: Sequence[float], fetch_limit: int
    ) -> list[MemoryCandidate]:
        """Raw nearest neighbours, best first, before any filtering."""

        async with self._read() as db:
            return await self._vector_store.nearest(
                db=db, query_embedding=query_embedding, limit=fetch_limit
            )

    async def search(
        self,
        query_embedding: Sequence[float],
        limit: int,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> list[MemoryRecord]:
        return await self.search_with_tags(query_embedding, limit, min_similarity=min_similarity)

    async def search_with_tags(
        self,
        query_embedding: Sequence[float],
        limit: int,
        allowed_tags: Iterable[str] = frozenset(),
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> list[MemoryRecord]:
        """Nearest records whose effective tag passes ``allowed_tags``.

        The index is not tag-partitioned, so ``limit * 4`` neighbours are
        fetched and filtered afterwards. Records whose raw similarity is
        below ``min_similarity`` are never returned.
        """

        if limit <= 0:
            return []
        await self.ensure_dimension()
        allowed = frozenset(allowed_tags)
        hits = await self.candidates(query_embedding, limit * OVERFETCH_FACTOR)
        return [
            hit.record
            for hit in hits
            if hit.similarity >= min_similarity and tag_allowed(hit.record.effective_tag, allowed)
        ][:limit]

    async def first_embedding_dim(self) -> Optional[int]:
        async with self._read() as db:
            return await MemoryRepo(db).first_embedding_dim()

    async def ensure_dimension(self) -> Optional[DimensionMismatch]:
        """Wipe the store once per configured dimension if stored vectors differ."""

        expected = self._embedder.dimension
        if self._verified_dimension == expected:
            return None
        mismatch = await self.wipe_if_dimension_differs(expected)
        if mismatch is not None:
            logger.warning(
                "Memory dimension mismatch: expected %s but found %s; all memories cleared",
                mismatch.expected,
                mismatch.found,
            )
        return mismatch

    async def wipe_if_dimension_differs(self, expected: int) -> Optional[DimensionMismatch]:
        """Clear every memory when stored vectors are not ``expected`` long.

        The probe and the wipe run under one exclusive lock so no search can
        observe a half-cleared index.
        """

        async with self._write() as db:
            repo = MemoryRepo(db)
            found = await repo.first_embedding_dim()
            if found is not None and found != expected:
                await repo.delete_all()
        self._verified_dimension = expected
        if found is None or found == expected:
            return None
        return DimensionMismatch(expected=expected, found=found)

    async def _embed(self, text: str) -> list[float]:
        return (await self._embed_many([text]))[0]

    async def _embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed ``texts`` in one provider call, validating every vector."""

        try:
            vectors = await self._embedder.embed_texts(texts)
        except EmbeddingUnavailable:
            raise
        except asyncio.CancelledError as exc:
            if current_task_cancelling():
                raise
            raise EmbeddingUnavailable("Embedding request was cancelled") from exc
        except asyncio.TimeoutError as exc:
            raise EmbeddingUnavailable("Embedding request timed out") from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Embedding provider raised an unexpected error")
            raise EmbeddingUnavailable("Embedding provider failed") from exc

        if len(vectors) != len(texts):
            raise EmbeddingUnavailable(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        expected = self._embedder.dimension
        for vector in vectors:
            if len(vector) != expected:
                raise EmbeddingUnavailable(
                    f"Embedding provider returned {len(vector)} dimensions, expected {expected}"
                )
        return vectors

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[AsyncSession]:
        async with self._lock.read():
            try:
                async with self._sessionmaker() as db:
                    yield db
            except SQLAlchemyError as exc:
                raise StorageIOError("Memory store read failed") from exc
            except OSError as exc:
                raise StorageIOError("Memory store read failed") from exc

    @asynccontextmanager
    async def _write(self) -> AsyncIterator[AsyncSession]:
        async with self._lock.write():
            try:
                async with self._sessionmaker() as db:
                    async with db.begin():
                        yield db
            except SQLAlchemyError as exc:
                raise StorageIOError("Memory store write failed") from exc
            except OSError as exc:
                raise StorageIOError("Memory store write failed") from exc


def current_task_cancelling() -> bool:
    """True when the running task itself was asked to cancel, not just an awaited call."""
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


def _tag_value(tag: TagLike) -> str:
    value = tag.value if isinstance(tag, Enum) else str(tag)
    value = value.strip()
    if not value:
        raise ValueError("Memory tag must not be empty")
    return value


def get_memory_store(request: Request) -> MemoryStore:
    """Dependency to access the memory store from app state."""

    return request.app.state.memory_store
