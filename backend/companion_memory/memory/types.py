from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from companion_memory.memory.tags import effective_tag


@dataclass(frozen=True)
class MemoryRecord:
    """Read-only view of one stored memory."""

    id: int
    text: str
    embedding: Optional[tuple[float, ...]]
    timestamp: int
    tag: Optional[str] = None
    role: Optional[str] = None
    session_id: Optional[str] = None
    emotion_label: Optional[str] = None

    @property
    def effective_tag(self) -> str:
        return effective_tag(self.tag, self.role)

    @property
    def dimension(self) -> Optional[int]:
        return len(self.embedding) if self.embedding is not None else None


@dataclass(frozen=True)
class MemoryCandidate:
    """Nearest-neighbour hit with its raw cosine similarity."""

    record: MemoryRecord
    similarity: float


@dataclass(frozen=True)
class ScoredMemory:
    """Candidate that survived filtering, with its recency-adjusted score."""

    record: MemoryRecord
    similarity: float
    adjusted_score: float
    age_days: float


@dataclass(frozen=True)
class RetrievalStats:
    """Privacy-safe retrieval statistics: counts and scores, never text."""

    candidate_count: int = 0
    kept_count: int = 0
    min_similarity: Optional[float] = None
    max_similarity: Optional[float] = None
    tag_counts: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_results(
        cls, candidate_count: int, kept: list[ScoredMemory]
    ) -> "RetrievalStats":
        scores = [item.similarity for item in kept]
        return cls(
            candidate_count=candidate_count,
            kept_count=len(kept),
            min_similarity=min(scores) if scores else None,
            max_similarity=max(scores) if scores else None,
            tag_counts=dict(Counter(item.record.effective_tag for item in kept)),
        )

    def summary(self) -> str:
        if not self.kept_count:
            return f"candidates={self.candidate_count} kept=0"
        tags = ",".join(f"{tag}:{count}" for tag, count in sorted(self.tag_counts.items()))
        return (
            f"candidates={self.candidate_count} kept={self.kept_count} "
            f"similarity={self.min_similarity:.3f}..{self.max_similarity:.3f} tags={tags}"
        )


@dataclass(frozen=True)
class RetrievalResult:
    """Outcome of one retrieval call.

    ``degraded`` marks an embedding failure; the caller continues without
    memory context. ``exclude_rounds`` reports the live-window size that was
    applied so prompt code can reason about overlap with recent history; it
    is 0 when no window was applied.
    """

    memories: list[ScoredMemory] = field(default_factory=list)
    degraded: bool = False
    exclude_rounds: int = 0
    exclude_after_ms: Optional[int] = None
    stats: RetrievalStats = field(default_factory=RetrievalStats)

    @property
    def records(self) -> list[MemoryRecord]:
        return [item.record for item in self.memories]
