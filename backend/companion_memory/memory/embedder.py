from __future__ import annotations

import asyncio
import hashlib
import logging
import math
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Sequence
from typing import Any, Optional

import httpx

from companion_memory.core.config import Settings
from companion_memory.memory.errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class Embedder(ABC):
    """Embedding interface for pluggable providers.

    ``dimension`` is read at call time by the store and the guard; it may
    change between releases when the configured model changes.
    """

    provider: str
    model_name: str
    dimension: int

    @abstractmethod
    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate vectors for each text input."""

    async def embed(self, text: str) -> list[float]:
        """Embed a single text, raising ``EmbeddingUnavailable`` on failure."""

        vectors = await self.embed_texts([text])
        if len(vectors) != 1:
            raise EmbeddingUnavailable("Embedding provider returned no vector")
        return vectors[0]


class DeterministicEmbedder(Embedder):
    """Offline deterministic embedding generator for tests and local runs."""

    provider = "deterministic"

    def __init__(self, dimension: int, model_name: str = "deterministic-v1") -> None:
        if dimension <= 0:
            raise ValueError("Embedding dimension must be > 0")
        self.dimension = int(dimension)
        self.model_name = model_name

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embed_single(text) for text in texts]

    def _embed_single(self, text: str) -> list[float]:
        cleaned = text.strip().lower()
        vector = [0.0] * self.dimension
        if not cleaned:
            vector[0] = 1.0
            return vector

        for token in self._tokenize(cleaned):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=16).digest()
            index = int.from_bytes(digest[:4], byteorder="big") % self.dimension
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            magnitude = 1.0 + (digest[5] / 255.0)
            vector[index] += sign * magnitude
        return normalize_vector(vector)

    @staticmethod
    def _tokenize(text: str) -> list[str]:
        tokens: list[str] = []
        buffer: list[str] = []
        for ch in text:
            if ch.isalnum() or ch in {"_", "-"}:
                buffer.append(ch)
                continue
            if buffer:
                tokens.append("".join(buffer))
                buffer.clear()
            if not ch.isspace() and ch.isprintable():
                tokens.append(ch)
        if buffer:
            tokens.append("".join(buffer))
        return tokens


class OpenAIEmbedder(Embedder):
    """OpenAI-compatible embedding provider with bounded retry."""

    provider = "openai"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model_name: str,
        dimension: int,
        timeout_sec: float = 20.0,
        max_retries: int = 3,
        initial_delay_sec: float = 1.0,
        max_delay_sec: float = 8.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if dimension <= 0:
            raise ValueError("Embedding dimension must be > 0")
        if not api_key.strip():
            raise ValueError("OpenAI embedding API key is empty")
        self.model_name = model_name
        self.dimension = int(dimension)
        self._timeout_sec = timeout_sec
        self._api_key = api_key
        self._max_retries = max(0, max_retries)
        self._initial_delay_sec = initial_delay_sec
        self._max_delay_sec = max_delay_sec
        self._http_client = http_client
        normalized = base_url.rstrip("/")
        self._endpoint = f"{normalized}/v1/embeddings"

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        payload = {"model": self.model_name, "input": list(texts)}
        data = await self._post_with_retry(payload)
        vectors = self._parse_embeddings(data, len(texts))
        return [normalize_vector(vector) for vector in vectors]

    async def _post_with_retry(self, payload: dict[str, Any]) -> Any:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        attempt = 0
        while True:
            try:
                response = await self._post(payload, headers)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as exc:
                retryable = exc.response.status_code in RETRYABLE_STATUS
                error: Exception = exc
            except httpx.RequestError as exc:
                retryable = True
                error = exc
            except ValueError as exc:
                raise EmbeddingUnavailable("Embedding response is not valid JSON") from exc

            if not retryable or attempt >= self._max_retries:
                raise EmbeddingUnavailable(
                    f"Embedding request failed after {attempt + 1} attempt(s)"
                ) from error
            delay = self._next_backoff(attempt)
            logger.warning(
                "Embedding request failed (attempt %s/%s), retrying in %.2fs: %s",
                attempt + 1,
                self._max_retries + 1,
                delay,
                error,
            )
            await asyncio.sleep(delay)
            attempt += 1

    async def _post(self, payload: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(self._endpoint, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self._timeout_sec) as client:
            return await client.post(self._endpoint, json=payload, headers=headers)

    def _next_backoff(self, attempt: int) -> float:
        return min(self._initial_delay_sec * (2**attempt), self._max_delay_sec)

    def _parse_embeddings(self, payload: Any, expected_size: int) -> list[list[float]]:
        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list) or len(rows) != expected_size:
            raise EmbeddingUnavailable("Embedding response shape is invalid")

        if all(isinstance(row, dict) and isinstance(row.get("index"), int) for row in rows):
            rows = sorted(rows, key=lambda row: row["index"])

        vectors: list[list[float]] = []
        for row in rows:
            embedding = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(embedding, list):
                raise EmbeddingUnavailable("Embedding row is missing vector data")
            if len(embedding) != self.dimension:
                raise EmbeddingUnavailable(
                    f"Embedding dimension mismatch: expected {self.dimension}, got {len(embedding)}"
                )
            try:
                vector = [float(value) for value in embedding]
            except (TypeError, ValueError) as exc:
                raise EmbeddingUnavailable("Embedding contains non-numeric values") from exc
            vectors.append(vector)
        return vectors


class CachingEmbedder(Embedder):
    """LRU cache in front of another embedder.

    Repeated phrases in a conversation skip the provider round trip. Only
    successful vectors are cached.
    """

    def __init__(self, inner: Embedder, capacity: int = 100) -> None:
        self._inner = inner
        self._capacity = max(0, capacity)
        self._cache: OrderedDict[str, list[float]] = OrderedDict()

    @property
    def provider(self) -> str:  # type: ignore[override]
        return self._inner.provider

    @property
    def model_name(self) -> str:  # type: ignore[override]
        return self._inner.model_name

    @property
    def dimension(self) -> int:  # type: ignore[override]
        return self._inner.dimension

    @property
    def inner(self) -> Embedder:
        return self._inner

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        results: list[Optional[list[float]]] = []
        missing: list[str] = []
        for text in texts:
            cached = self._lookup(text)
            results.append(cached)
            if cached is None and text not in missing:
                missing.append(text)

        if missing:
            vectors = await self._inner.embed_texts(missing)
            if len(vectors) != len(missing):
                raise EmbeddingUnavailable("Embedding count mismatch")
            fresh = dict(zip(missing, vectors))
            for text, vector in fresh.items():
                self._store(text, vector)
            results = [
                item if item is not None else list(fresh[text])
                for item, text in zip(results, texts)
            ]
        return [list(item) for item in results if item is not None]

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def _lookup(self, text: str) -> Optional[list[float]]:
        vector = self._cache.get(text)
        if vector is None:
            return None
        if len(vector) != self._inner.dimension:
            self._cache.pop(text, None)
            return None
        self._cache.move_to_end(text)
        return vector

    def _store(self, text: str, vector: list[float]) -> None:
        if self._capacity <= 0:
            return
        self._cache[text] = list(vector)
        self._cache.move_to_end(text)
        while len(self._cache) > self._capacity:
            self._cache.popitem(last=False)


def create_embedder(settings: Settings) -> Embedder:
    """Factory for the configured embedding provider."""

    provider = settings.embed_provider.strip().lower()
    embedder: Embedder
    if provider == "openai" and settings.embed_openai_api_key.strip():
        embedder = OpenAIEmbedder(
            base_url=settings.openai_base_url,
            api_key=settings.embed_openai_api_key.strip(),
            model_name=settings.embed_model.strip() or "text-embedding-3-small",
            dimension=settings.embed_dim,
            timeout_sec=settings.embed_timeout_sec,
            max_retries=settings.embed_max_retries,
        )
    else:
        if provider == "openai":
            logger.warning(
                "EMBED_PROVIDER=openai but EMBED_OPENAI_API_KEY is missing; fallback to deterministic"
            )
        elif provider != "deterministic":
            logger.warning("Unknown EMBED_PROVIDER=%s; fallback to deterministic", provider)
        model_name = settings.embed_model.strip() if provider == "deterministic" else ""
        embedder = DeterministicEmbedder(
            dimension=settings.embed_dim, model_name=model_name or "deterministic-v1"
        )

    if settings.embed_cache_size > 0:
        return CachingEmbedder(embedder, capacity=settings.embed_cache_size)
    return embedder


def normalize_vector(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(item * item for item in vector))
    if norm <= 0:
        return vector
    return [item / norm for item in vector]
