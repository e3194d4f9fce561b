from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from companion_memory.api import chat as chat_api
from companion_memory.api import memory as memory_api
from companion_memory.api import websocket as websocket_api
from companion_memory.core.config import Settings, get_settings
from companion_memory.core.logging import setup_logging
from companion_memory.db.base import create_engine, create_sessionmaker, init_db
from companion_memory.memory.embedder import Embedder, create_embedder
from companion_memory.services.chat_history import ChatHistoryService
from companion_memory.services.dimension_guard import DimensionGuard
from companion_memory.services.ingestion_service import IngestionService
from companion_memory.services.memory_store import MemoryStore
from companion_memory.services.message_feed import MessageFeed
from companion_memory.services.retention_service import RetentionService
from companion_memory.services.retrieval_service import RetrievalService
from companion_memory.services.turn_context import TurnContextService

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None, embedder: Optional[Embedder] = None
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()
    setup_logging(settings.log_level, verbose=settings.log_verbose)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)
    embedder = embedder or create_embedder(settings)
    rag_config = settings.rag_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        await app.state.dimension_guard.ensure()
        await app.state.retention_service.purge_expired()
        logger.info(
            "Memory service ready provider=%s model=%s dim=%s",
            embedder.provider,
            embedder.model_name,
            embedder.dimension,
        )
        yield
        await engine.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.embedder = embedder
    app.state.memory_store = MemoryStore(sessionmaker=sessionmaker, embedder=embedder)
    app.state.dimension_guard = DimensionGuard(app.state.memory_store, embedder)
    app.state.retrieval_service = RetrievalService(
        store=app.state.memory_store,
        embedder=embedder,
        guard=app.state.dimension_guard,
        config=rag_config,
        embed_timeout_sec=settings.embed_timeout_sec,
    )
    app.state.ingestion_service = IngestionService(
        app.state.memory_store,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    )
    app.state.retention_service = RetentionService(
        app.state.memory_store, settings.memory_retention_days
    )
    app.state.message_feed = MessageFeed()
    app.state.chat_history = ChatHistoryService(sessionmaker, app.state.message_feed)
    app.state.turn_context = TurnContextService(
        app.state.retrieval_service,
        app.state.chat_history,
        rag_config,
        memory_context_max_chars=settings.memory_context_max_chars,
    )

    app.include_router(memory_api.router)
    app.include_router(chat_api.router)
    app.include_router(websocket_api.router)

    return app


def run() -> None:
    """Serve the application with uvicorn."""

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.app_host, port=settings.app_port)


if __name__ == "__main__":
    run()
