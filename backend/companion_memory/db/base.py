from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for SQLAlchemy ORM models."""


def create_engine(db_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine for the provided database URL."""

    return create_async_engine(db_url, future=True)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async sessionmaker bound to the given engine."""

    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database tables for all ORM models."""

    # Register mappers on Base.metadata before create_all.
    from companion_memory.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if engine.dialect.name == "sqlite":
            await _migrate_sqlite_schema(conn)


async def _migrate_sqlite_schema(conn) -> None:
    """Apply lightweight SQLite migrations for additive columns.

    Memory tables written by older releases only carried text, vector,
    timestamp and a coarse role marker.
    """

    for column_name, column_definition in (
        ("role", "role TEXT"),
        ("tag", "tag TEXT"),
        ("session_id", "session_id TEXT"),
        ("emotion_label", "emotion_label TEXT"),
        ("embedding_dim", "embedding_dim INTEGER"),
        ("vector_norm", "vector_norm FLOAT"),
    ):
        await _ensure_sqlite_column(
            conn,
            table_name="memory_records",
            column_name=column_name,
            column_definition=column_definition,
        )
    await _ensure_sqlite_column(
        conn,
        table_name="chat_messages",
        column_name="local_video_uri",
        column_definition="local_video_uri TEXT",
    )


async def _ensure_sqlite_column(
    conn,
    *,
    table_name: str,
    column_name: str,
    column_definition: str,
) -> None:
    result = await conn.execute(text(f"PRAGMA table_info({table_name})"))
    existing_columns = {row[1] for row in result.fetchall()}
    if column_name in existing_columns:
        return
    await conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_definition}"))
