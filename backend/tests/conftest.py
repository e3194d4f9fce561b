import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from collections.abc import Sequence

import httpx
import pytest

from companion_memory.core.config import get_settings
from companion_memory.db.base import create_engine, create_sessionmaker, init_db
from companion_memory.main import create_app
from companion_memory.memory.embedder import Embedder, normalize_vector
from companion_memory.memory.errors import EmbeddingUnavailable
from companion_memory.services.chat_history import ChatHistoryService
from companion_memory.services.memory_store import MemoryStore


class KeywordEmbedder(Embedder):
    """Stub embedder: one axis per keyword group, so similarity is predictable."""

    provider = "stub"
    model_name = "keyword-v1"

    GROUPS = (
        ("hiking", "hike", "trail", "mountain"),
        ("paris", "france", "eiffel", "travel", "trip"),
        ("coffee", "espresso", "latte"),
        ("cat", "kitten"),
    )

    def __init__(self, dimension: int = 8, overrides: dict[str, list[float]] | None = None) -> None:
        self.dimension = dimension
        self.overrides = dict(overrides or {})
        self.calls = 0

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls += 1
        return [self._vector(text) for text in texts]

    def _vector(self, text: str) -> list[float]:
        if text in self.overrides:
            return normalize_vector(list(self.overrides[text]))
        lowered = text.lower()
        vector = [0.0] * self.dimension
        for axis, words in enumerate(self.GROUPS):
            if any(word in lowered for word in words):
                vector[axis] = 1.0
        if not any(vector):
            vector[-1] = 1.0
        return normalize_vector(vector)


class FailingEmbedder(Embedder):
    """Embedder whose provider is always down."""

    provider = "stub"
    model_name = "failing"

    def __init__(self, dimension: int = 8) -> None:
        self.dimension = dimension
        self.calls = 0

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls += 1
        raise EmbeddingUnavailable("provider offline")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
async def sessionmaker(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test_memory.db'}")
    await init_db(engine)
    yield create_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def store(sessionmaker, embedder):
    return MemoryStore(sessionmaker=sessionmaker, embedder=embedder)


@pytest.fixture
def history(sessionmaker):
    return ChatHistoryService(sessionmaker)


@pytest.fixture
def app(tmp_path, monkeypatch, embedder):
    db_path = tmp_path / "test_companion.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("EMBED_PROVIDER", "deterministic")
    monkeypatch.setenv("EMBED_DIM", str(embedder.dimension))
    monkeypatch.setenv("MEMORY_RETENTION_DAYS", "0")
    get_settings.cache_clear()
    return create_app(embedder=embedder)


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.engine.dispose()
    get_settings.cache_clear()
