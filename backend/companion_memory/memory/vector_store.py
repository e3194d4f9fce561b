from __future__ import annotations

import heapq
import json
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from companion_memory.db.models import MemoryRecordRow
from companion_memory.memory.types import MemoryCandidate
from companion_memory.repos.memory_repo import MemoryRepo, to_record


class VectorStore(ABC):
    """Nearest-neighbour index over stored memory vectors."""

    @abstractmethod
    async def nearest(
        self,
        *,
        db: AsyncSession,
        query_embedding: Sequence[float],
        limit: int,
    ) -> list[MemoryCandidate]:
        """Return up to ``limit`` records closest to the query by cosine similarity."""


class SQLiteVectorStore(VectorStore):
    """SQLite-backed vector store with in-process cosine similarity.

    Vectors of a different dimension than the query are never compared;
    the dimension guard is responsible for purging them.
    """

    async def nearest(
        self,
        *,
        db: AsyncSession,
        query_embedding: Sequence[float],
        limit: int,
    ) -> list[MemoryCandidate]:
        if limit <= 0:
            return []

        query = [float(value) for value in query_embedding]
        query_norm = math.sqrt(sum(value * value for value in query))
        if query_norm <= 0:
            return []

        rows = await MemoryRepo(db).list_vectors(len(query))
        scored: list[tuple[float, int, int, MemoryRecordRow]] = []
        for row in rows:
            try:
                candidate = json.loads(row.embedding_json or "")
            except json.JSONDecodeError:
                continue
            if not isinstance(candidate, list) or len(candidate) != len(query):
                continue
            try:
                candidate_vector = [float(value) for value in candidate]
            except (TypeError, ValueError):
                continue
            row_norm = float(row.vector_norm or 0.0) or math.sqrt(
                sum(value * value for value in candidate_vector)
            )
            score = cosine_similarity(query, query_norm, candidate_vector, row_norm)
            scored.append((score, int(row.timestamp), int(row.id), row))

        top = heapq.nlargest(limit, scored, key=lambda item: (item[0], item[1], item[2]))
        return [
            MemoryCandidate(record=to_record(row), similarity=score)
            for score, _, _, row in top
        ]


def cosine_similarity(
    left: list[float], left_norm: float, right: list[float], right_norm: float
) -> float:
    if left_norm <= 0 or right_norm <= 0 or len(left) != len(right):
        return 0.0
    dot = 0.0
    for l_value, r_value in zip(left, right):
        dot += l_value * r_value
    return dot / (left_norm * right_norm)
