from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass

import pytest

from companion_memory.core.config import RagConfig
from companion_memory.services.dimension_guard import DimensionGuard
from companion_memory.services.memory_store import MemoryStore
from companion_memory.services.retrieval_service import RetrievalService, exclude_after_timestamp
from companion_memory.utils.time_utils import MILLIS_PER_DAY

from conftest import FailingEmbedder, KeywordEmbedder

NOW = 1_700_000_000_000


@dataclass
class Turn:
    timestamp: int


def _service(store: MemoryStore, embedder=None, **config) -> RetrievalService:
    embedder = embedder or store.embedder
    return RetrievalService(
        store=store,
        embedder=embedder,
        guard=DimensionGuard(store, embedder),
        config=RagConfig(**config),
    )


@pytest.fixture
def scenario_embedder():
    return KeywordEmbedder(
        dimension=4,
        overrides={
            "travel": [1.0, 0.0, 0.0, 0.0],
            "I love hiking": [0.5, math.sqrt(0.75), 0.0, 0.0],
            "Paris trip photos": [0.8, 0.6, 0.0, 0.0],
        },
    )


@pytest.mark.anyio
async def test_fresher_higher_similarity_record_ranks_first(sessionmaker, scenario_embedder) -> None:
    store = MemoryStore(sessionmaker=sessionmaker, embedder=scenario_embedder)
    await store.insert("I love hiking", "user_input", timestamp=NOW)
    await store.insert("Paris trip photos", "user_input", timestamp=NOW + 100)

    result = await _service(store).retrieve(
        "travel", limit=5, min_similarity=0.3, half_life_days=14, now_ms=NOW + 100
    )

    assert [item.record.text for item in result.memories] == ["Paris trip photos", "I love hiking"]
    assert result.memories[0].similarity == pytest.approx(0.8)
    assert result.memories[1].similarity == pytest.approx(0.5)


@pytest.mark.anyio
async def test_decay_of_old_record_can_outweigh_similarity(sessionmaker, scenario_embedder) -> None:
    store = MemoryStore(sessionmaker=sessionmaker, embedder=scenario_embedder)
    await store.insert("I love hiking", "user_input", timestamp=NOW)
    await store.insert("Paris trip photos", "user_input", timestamp=NOW - 60 * MILLIS_PER_DAY)

    result = await _service(store).retrieve(
        "travel", limit=5, min_similarity=0.3, half_life_days=14, now_ms=NOW
    )

    assert [item.record.text for item in result.memories] == ["I love hiking", "Paris trip photos"]
    paris = result.memories[1]
    assert paris.similarity == pytest.approx(0.8)
    assert paris.adjusted_score == pytest.approx(0.8 * 0.5 ** (60 / 14))


@pytest.mark.anyio
async def test_empty_store_skips_embedding(store: MemoryStore) -> None:
    embedder = store.embedder
    result = await _service(store).retrieve("anything about hiking")

    assert result.memories == []
    assert not result.degraded
    assert embedder.calls == 0


@pytest.mark.anyio
async def test_fast_path_rechecked_every_call(store: MemoryStore) -> None:
    service = _service(store)
    assert (await service.retrieve("hiking")).memories == []

    await store.insert("weekend hiking trip", "user_input")
    result = await service.retrieve("hiking")
    assert [item.record.text for item in result.memories] == ["weekend hiking trip"]


@pytest.mark.anyio
async def test_blank_query_returns_empty_without_embedding(store: MemoryStore) -> None:
    await store.insert("coffee", "manual")
    calls = store.embedder.calls

    result = await _service(store).retrieve("   ")
    assert result.memories == []
    assert store.embedder.calls == calls


@pytest.mark.anyio
async def test_embedding_failure_returns_degraded_result(store: MemoryStore) -> None:
    await store.insert("coffee", "manual")

    result = await _service(store, FailingEmbedder(dimension=store.embedder.dimension)).retrieve(
        "coffee"
    )

    assert result.degraded
    assert result.memories == []


@pytest.mark.anyio
async def test_cancelled_query_embedding_degrades(store: MemoryStore, monkeypatch) -> None:
    await store.insert("coffee", "manual")

    async def cancelled(text):
        raise asyncio.CancelledError()

    monkeypatch.setattr(store.embedder, "embed", cancelled)

    result = await _service(store).retrieve("coffee")

    assert result.degraded
    assert result.memories == []


@pytest.mark.anyio
async def test_default_policy_hides_ai_output_until_enabled(store: MemoryStore) -> None:
    await store.insert("you said coffee helps", "ai_output")
    await store.insert("I like coffee", "user_input")
    await store.insert("coffee draft", "scratch")

    hidden = await _service(store).retrieve("coffee")
    assert [item.record.text for item in hidden.memories] == ["I like coffee"]

    shown = await _service(store, include_ai_output=True).retrieve("coffee")
    assert {item.record.text for item in shown.memories} == {
        "you said coffee helps",
        "I like coffee",
    }

    everything = await _service(store).retrieve("coffee", allowed_tags=set(), include_ai_output=True)
    assert len(everything.memories) == 3


@pytest.mark.anyio
async def test_live_history_window_is_excluded(store: MemoryStore) -> None:
    history = [Turn(NOW - 4000), Turn(NOW - 3000), Turn(NOW - 2000), Turn(NOW - 1000)]
    await store.insert("coffee earlier today", "user_input", "s1", timestamp=NOW - 3500)
    await store.insert("coffee just now", "user_input", "s1", timestamp=NOW - 1500)
    await store.insert("coffee in another chat", "user_input", "s2", timestamp=NOW - 1500)

    result = await _service(store).retrieve(
        "coffee", session_id="s1", recent_messages=history, exclude_rounds=1, now_ms=NOW
    )

    assert result.exclude_after_ms == NOW - 2000
    assert result.exclude_rounds == 1
    assert {item.record.text for item in result.memories} == {
        "coffee earlier today",
        "coffee in another chat",
    }


@pytest.mark.anyio
async def test_no_history_window_reports_zero_rounds(store: MemoryStore) -> None:
    await store.insert("coffee just now", "user_input", "s1", timestamp=NOW - 1500)

    result = await _service(store).retrieve("coffee", session_id="s1", now_ms=NOW)

    assert result.exclude_after_ms is None
    assert result.exclude_rounds == 0
    assert [item.record.text for item in result.memories] == ["coffee just now"]


@pytest.mark.anyio
async def test_stats_never_carry_text(store: MemoryStore) -> None:
    await store.insert("secret coffee recipe", "manual")

    result = await _service(store).retrieve("coffee")

    assert result.stats.kept_count == 1
    assert result.stats.tag_counts == {"manual": 1}
    assert "secret" not in result.stats.summary()


def test_exclude_after_timestamp_window() -> None:
    turns = [Turn(10), Turn(20), Turn(30), Turn(40), Turn(50)]
    assert exclude_after_timestamp(turns, 2) == 20
    assert exclude_after_timestamp(turns, 10) == 10
    assert exclude_after_timestamp(turns, 0) is None
    assert exclude_after_timestamp([], 4) is None
