from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from companion_memory.db.base import Base
from companion_memory.utils.time_utils import now_millis, utc_now


class MemoryRecordRow(Base):
    """Long-term memory fragment with its embedding vector."""

    __tablename__ = "memory_records"
    __table_args__ = (
        Index("ix_memory_timestamp", "timestamp"),
        Index("ix_memory_embedding_dim", "embedding_dim"),
        Index("ix_memory_session", "session_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    embedding_dim: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    vector_norm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_millis)
    tag: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    role: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # Association only: sessions may be removed without touching memories.
    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    emotion_label: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class ChatSession(Base):
    """A conversation container."""

    __tablename__ = "chat_sessions"
    __table_args__ = (Index("ix_chat_session_updated", "updated_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ChatMessage(Base):
    """One conversation turn."""

    __tablename__ = "chat_messages"
    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_chat_message_session_seq"),
        Index("ix_chat_message_session_ts", "session_id", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(String, ForeignKey("chat_sessions.id"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    raw_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_millis)
    image_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    local_image_uri: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    local_video_uri: Mapped[Optional[str]] = mapped_column(String, nullable=True)
