from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from companion_memory.memory.tags import is_ai_output, tag_allowed
from companion_memory.memory.types import MemoryCandidate, ScoredMemory
from companion_memory.utils.time_utils import age_days as _age_days

OVERFETCH_FACTOR = 4
DEFAULT_MIN_SIMILARITY = 0.30


def overfetch_limit(limit: int, top_k_candidates: int = 0) -> int:
    """Number of nearest neighbours to pull before post-filtering."""

    return max(limit * OVERFETCH_FACTOR, top_k_candidates, limit)


def recency_weight(age_days: float, half_life_days: float) -> float:
    """Exponential half-life decay factor in (0, 1]."""

    if half_life_days <= 0:
        return 1.0
    return 0.5 ** (max(0.0, age_days) / half_life_days)


def adjusted_score(
    similarity: float, timestamp_ms: int, now_ms: int, half_life_days: float
) -> float:
    return similarity * recency_weight(_age_days(timestamp_ms, now_ms), half_life_days)


def rank_candidates(
    candidates: Iterable[MemoryCandidate],
    *,
    limit: int,
    now_ms: int,
    allowed_tags: Iterable[str] = (),
    include_ai_output: bool = True,
    min_similarity: float = 0.0,
    half_life_days: float = 14.0,
    exclude_session_id: Optional[str] = None,
    exclude_after_ms: Optional[int] = None,
) -> list[ScoredMemory]:
    """Filter, re-rank and cap nearest-neighbour candidates.

    The similarity floor applies to the raw cosine score so recency can
    never promote an irrelevant match. Ties on the adjusted score fall back
    to raw similarity, then to the newer record.
    """

    if limit <= 0:
        return []

    allowed = frozenset(allowed_tags)
    ranked: list[ScoredMemory] = []
    for candidate in candidates:
        record = candidate.record
        tag = record.effective_tag
        if not tag_allowed(tag, allowed):
            continue
        if not include_ai_output and is_ai_output(tag):
            continue
        if _in_live_window(record.session_id, record.timestamp, exclude_session_id, exclude_after_ms):
            continue
        if candidate.similarity < min_similarity:
            continue

        age = _age_days(record.timestamp, now_ms)
        ranked.append(
            ScoredMemory(
                record=record,
                similarity=candidate.similarity,
                adjusted_score=candidate.similarity * recency_weight(age, half_life_days),
                age_days=age,
            )
        )

    ranked.sort(
        key=lambda item: (item.adjusted_score, item.similarity, item.record.timestamp),
        reverse=True,
    )
    return ranked[:limit]


def _in_live_window(
    session_id: Optional[str],
    timestamp_ms: int,
    exclude_session_id: Optional[str],
    exclude_after_ms: Optional[int],
) -> bool:
    if exclude_after_ms is None or exclude_session_id is None:
        return False
    return session_id == exclude_session_id and timestamp_ms >= exclude_after_ms
