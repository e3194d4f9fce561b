from __future__ import annotations

import math

import httpx
import pytest

from companion_memory.core.config import Settings
from companion_memory.memory.embedder import (
    CachingEmbedder,
    DeterministicEmbedder,
    OpenAIEmbedder,
    create_embedder,
)
from companion_memory.memory.errors import EmbeddingUnavailable

from conftest import KeywordEmbedder


def _openai(client: httpx.AsyncClient, **overrides) -> OpenAIEmbedder:
    options = dict(
        base_url="https://api.openai.com",
        api_key="sk-test-embedding-key",
        model_name="text-embedding-3-small",
        dimension=3,
        max_retries=2,
        initial_delay_sec=0.0,
        max_delay_sec=0.0,
        http_client=client,
    )
    options.update(overrides)
    return OpenAIEmbedder(**options)


@pytest.mark.anyio
async def test_openai_embedder_orders_rows_by_index() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/embeddings"
        assert request.headers["Authorization"] == "Bearer sk-test-embedding-key"
        seen.append(request.read().decode())
        return httpx.Response(
            200,
            json={
                "data": [
                    {"index": 1, "embedding": [0.0, 2.0, 0.0]},
                    {"index": 0, "embedding": [3.0, 0.0, 4.0]},
                ]
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        vectors = await _openai(client).embed_texts(["first", "second"])

    assert vectors[0] == pytest.approx([0.6, 0.0, 0.8])
    assert vectors[1] == pytest.approx([0.0, 1.0, 0.0])
    assert len(seen) == 1 and "text-embedding-3-small" in seen[0]


@pytest.mark.anyio
async def test_openai_embedder_retries_transient_errors() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0, 0.0, 0.0]}]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        vector = await _openai(client).embed("hello")

    assert attempts["count"] == 3
    assert vector == [1.0, 0.0, 0.0]


@pytest.mark.anyio
async def test_openai_embedder_gives_up_after_max_retries() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(429, json={"error": "rate limited"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(EmbeddingUnavailable):
            await _openai(client, max_retries=1).embed("hello")

    assert attempts["count"] == 2


@pytest.mark.anyio
async def test_openai_embedder_does_not_retry_client_errors() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(401, json={"error": "bad key"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(EmbeddingUnavailable):
            await _openai(client).embed("hello")

    assert attempts["count"] == 1


@pytest.mark.anyio
async def test_openai_embedder_rejects_wrong_dimension() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0, 0.0]}]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(EmbeddingUnavailable):
            await _openai(client).embed("hello")


@pytest.mark.anyio
async def test_deterministic_embedder_is_stable_and_normalized() -> None:
    embedder = DeterministicEmbedder(dimension=32)
    first = await embedder.embed("Trail running at dawn")
    second = await embedder.embed("Trail running at dawn")

    assert first == second
    assert len(first) == 32
    assert math.isclose(math.sqrt(sum(value * value for value in first)), 1.0)


@pytest.mark.anyio
async def test_caching_embedder_skips_repeated_texts() -> None:
    inner = KeywordEmbedder()
    cache = CachingEmbedder(inner, capacity=2)

    await cache.embed("coffee")
    await cache.embed("coffee")
    assert inner.calls == 1
    assert cache.dimension == inner.dimension

    await cache.embed("cat")
    await cache.embed("hiking")
    assert len(cache) == 2
    await cache.embed("coffee")
    assert inner.calls == 4


def test_create_embedder_falls_back_without_api_key() -> None:
    settings = Settings(EMBED_PROVIDER="openai", EMBED_OPENAI_API_KEY="", EMBED_DIM=64)
    embedder = create_embedder(settings)

    assert isinstance(embedder, CachingEmbedder)
    assert embedder.provider == "deterministic"
    assert embedder.dimension == 64
