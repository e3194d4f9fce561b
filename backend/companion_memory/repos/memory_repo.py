from __future__ import annotations

import json
import math
from collections.abc import Iterable, Sequence
from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from companion_memory.db.models import MemoryRecordRow
from companion_memory.memory.types import MemoryRecord


class MemoryRepo:
    """Repository for memory record persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def add(
        self,
        *,
        text: str,
        embedding: Optional[Sequence[float]],
        timestamp: int,
        tag: Optional[str],
        role: Optional[str] = None,
        session_id: Optional[str] = None,
        emotion_label: Optional[str] = None,
    ) -> MemoryRecordRow:
        """Insert one memory row; the id is assigned by the database."""

        row = MemoryRecordRow(
            text=text,
            timestamp=timestamp,
            tag=tag,
            role=role,
            session_id=session_id,
            emotion_label=emotion_label,
        )
        _apply_embedding(row, embedding)
        self._db.add(row)
        await self._db.flush()
        return row

    async def add_many(
        self,
        items: Sequence[tuple[str, Sequence[float], str]],
        *,
        timestamp: int,
        role: Optional[str] = None,
        session_id: Optional[str] = None,
        emotion_label: Optional[str] = None,
    ) -> list[MemoryRecordRow]:
        """Insert several rows sharing provenance; ``items`` are (text, vector, tag)."""

        rows: list[MemoryRecordRow] = []
        for text, embedding, tag in items:
            row = MemoryRecordRow(
                text=text,
                timestamp=timestamp,
                tag=tag,
                role=role,
                session_id=session_id,
                emotion_label=emotion_label,
            )
            _apply_embedding(row, embedding)
            rows.append(row)
        self._db.add_all(rows)
        await self._db.flush()
        return rows

    async def get(self, record_id: int) -> Optional[MemoryRecordRow]:
        return await self._db.get(MemoryRecordRow, record_id)

    async def update_content(
        self,
        record_id: int,
        *,
        text: str,
        embedding: Sequence[float],
        tag: str,
        role: Optional[str],
        emotion_label: Optional[str],
    ) -> Optional[MemoryRecordRow]:
        """Rewrite text, tag and vector of one row together."""

        row = await self.get(record_id)
        if row is None:
            return None
        row.text = text
        row.tag = tag
        row.role = role
        row.emotion_label = emotion_label
        _apply_embedding(row, embedding)
        await self._db.flush()
        return row

    async def delete(self, record_id: int) -> int:
        result = await self._db.execute(
            delete(MemoryRecordRow).where(MemoryRecordRow.id == record_id)
        )
        return result.rowcount or 0

    async def delete_all(self) -> int:
        result = await self._db.execute(delete(MemoryRecordRow))
        return result.rowcount or 0

    async def delete_older_than(
        self, cutoff_ms: int, protected_tags: Iterable[str] = ()
    ) -> int:
        """Delete rows created before ``cutoff_ms``, sparing protected tags."""

        stmt = delete(MemoryRecordRow).where(MemoryRecordRow.timestamp < cutoff_ms)
        protected = list(protected_tags)
        if protected:
            protected_match = or_(
                *[
                    (MemoryRecordRow.tag == tag)
                    | MemoryRecordRow.tag.like(f"{tag}\\_part\\_%", escape="\\")
                    for tag in protected
                ]
            )
            stmt = stmt.where(or_(MemoryRecordRow.tag.is_(None), ~protected_match))
        result = await self._db.execute(stmt)
        return result.rowcount or 0

    async def list_all(self) -> list[MemoryRecordRow]:
        result = await self._db.execute(
            select(MemoryRecordRow).order_by(MemoryRecordRow.timestamp.asc(), MemoryRecordRow.id.asc())
        )
        return list(result.scalars())

    async def list_recent(self, limit: int) -> list[MemoryRecordRow]:
        """List rows by timestamp descending."""

        result = await self._db.execute(
            select(MemoryRecordRow)
            .order_by(MemoryRecordRow.timestamp.desc(), MemoryRecordRow.id.desc())
            .limit(limit)
        )
        return list(result.scalars())

    async def count(self) -> int:
        result = await self._db.execute(select(func.count()).select_from(MemoryRecordRow))
        return int(result.scalar_one())

    async def exists_any(self) -> bool:
        """Existence probe; stops at the first row."""

        result = await self._db.execute(select(MemoryRecordRow.id).limit(1))
        return result.first() is not None

    async def first_embedding_dim(self) -> Optional[int]:
        """Dimension of one stored vector, or None when no vectors exist."""

        result = await self._db.execute(
            select(MemoryRecordRow.embedding_dim, MemoryRecordRow.embedding_json)
            .where(MemoryRecordRow.embedding_json.is_not(None))
            .order_by(MemoryRecordRow.id.asc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None
        dim, embedding_json = row
        if dim is not None:
            return int(dim)
        vector = _decode_vector(embedding_json)
        return len(vector) if vector is not None else None

    async def list_vectors(self, dimension: int) -> list[MemoryRecordRow]:
        """Rows whose stored vector has ``dimension`` components."""

        result = await self._db.execute(
            select(MemoryRecordRow).where(
                MemoryRecordRow.embedding_json.is_not(None),
                or_(
                    MemoryRecordRow.embedding_dim == dimension,
                    MemoryRecordRow.embedding_dim.is_(None),
                ),
            )
        )
        return list(result.scalars())


def to_record(row: MemoryRecordRow) -> MemoryRecord:
    """Detach an ORM row into an immutable record."""

    vector = _decode_vector(row.embedding_json)
    return MemoryRecord(
        id=row.id,
        text=row.text,
        embedding=tuple(vector) if vector is not None else None,
        timestamp=int(row.timestamp),
        tag=row.tag,
        role=row.role,
        session_id=row.session_id,
        emotion_label=row.emotion_label,
    )


def _apply_embedding(row: MemoryRecordRow, embedding: Optional[Sequence[float]]) -> None:
    if embedding is None:
        row.embedding_json = None
        row.embedding_dim = None
        row.vector_norm = None
        return
    vector = [float(value) for value in embedding]
    norm = math.sqrt(sum(value * value for value in vector))
    row.embedding_json = json.dumps(vector, separators=(",", ":"))
    row.embedding_dim = len(vector)
    row.vector_norm = norm if norm > 0 else 1.0


def _decode_vector(payload: Optional[str]) -> Optional[list[float]]:
    if not payload:
        return None
    try:
        candidate = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(candidate, list):
        return None
    try:
        return [float(value) for value in candidate]
    except (TypeError, ValueError):
        return None
