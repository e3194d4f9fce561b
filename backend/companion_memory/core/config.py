from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class RagConfig:
    """Retrieval tuning values consumed by the retrieval engine."""

    history_limit: int = 20
    top_k_candidates: int = 0
    max_items: int = 5
    min_similarity: float = 0.30
    half_life_days: float = 14.0
    exclude_rounds: int = 4
    include_ai_output: bool = False
    log_verbose: bool = False


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="127.0.0.1", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    db_url: str = Field(default="sqlite+aiosqlite:///./companion_memory.db", alias="DB_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_verbose: bool = Field(default=False, alias="LOG_VERBOSE")
    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")
    embed_provider: str = Field(default="deterministic", alias="EMBED_PROVIDER")
    embed_model: str = Field(default="deterministic-v1", alias="EMBED_MODEL")
    embed_dim: int = Field(default=256, alias="EMBED_DIM")
    embed_openai_api_key: str = Field(default="", alias="EMBED_OPENAI_API_KEY")
    embed_timeout_sec: float = Field(default=20.0, alias="EMBED_TIMEOUT_SEC")
    embed_max_retries: int = Field(default=3, alias="EMBED_MAX_RETRIES")
    embed_cache_size: int = Field(default=100, alias="EMBED_CACHE_SIZE")
    rag_history_limit: int = Field(default=20, alias="RAG_HISTORY_LIMIT")
    rag_top_k_candidates: int = Field(default=0, alias="RAG_TOP_K_CANDIDATES")
    rag_max_items: int = Field(default=5, alias="RAG_MAX_ITEMS")
    rag_min_similarity: float = Field(default=0.30, alias="RAG_MIN_SIMILARITY")
    rag_half_life_days: float = Field(default=14.0, alias="RAG_HALF_LIFE_DAYS")
    rag_exclude_rounds: int = Field(default=4, alias="RAG_EXCLUDE_ROUNDS")
    rag_include_ai_output: bool = Field(default=False, alias="RAG_INCLUDE_AI_OUTPUT")
    memory_context_max_chars: int = Field(default=2000, alias="MEMORY_CONTEXT_MAX_CHARS")
    memory_retention_days: int = Field(default=0, alias="MEMORY_RETENTION_DAYS")
    chunk_size: int = Field(default=500, alias="CHUNK_SIZE")
    chunk_overlap: int = Field(default=50, alias="CHUNK_OVERLAP")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def rag_config(self) -> RagConfig:
        """Return the retrieval tuning values as an immutable value object."""

        return RagConfig(
            history_limit=max(0, self.rag_history_limit),
            top_k_candidates=max(0, self.rag_top_k_candidates),
            max_items=max(1, self.rag_max_items),
            min_similarity=self.rag_min_similarity,
            half_life_days=self.rag_half_life_days,
            exclude_rounds=max(0, self.rag_exclude_rounds),
            include_ai_output=self.rag_include_ai_output,
            log_verbose=self.log_verbose,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
