"""
Process configuration
----------------------
Static defaults for every tenant-configurable knob, read once from the
environment (``.env`` is honoured through python-dotenv).

Variable names follow the ``RAG_*`` convention used by the tenant settings
form, so a tenant override and a process default for the same knob share
one key:

  RAG_OPENAI_API_KEY / RAG_OPENAI_BASE_URL    embedding (and fallback chat) provider
  RAG_EMBEDDING_MODEL / RAG_EMBEDDING_DIMENSIONS
  RAG_CHAT_MODEL / RAG_CHAT_API_KEY / RAG_CHAT_BASE_URL / RAG_TEMPERATURE
  RAG_CHUNK_SIZE / RAG_CHUNK_OVERLAP          splitter window (characters)
  RAG_RETRIEVAL_K / RAG_SCORE_THRESHOLD       retrieval defaults
  RAG_DEBOUNCE_SECONDS                        trailing delay for update bursts
  RAG_TABLE_NAME / RAG_POOL_MAX_SIZE / DATABASE_URL / RAG_INDEX_DIR
  REDIS_URL                                   shared job queue (in-process queue when unset)
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

# Debounce delay: 5 minutes in production, 30 seconds elsewhere
_PRODUCTION_DEBOUNCE_SECONDS = 300.0
_DEVELOPMENT_DEBOUNCE_SECONDS = 30.0

# Built-in k for chat when neither the caller nor the tenant sets one
CHAT_DEFAULT_K = 10


class RagConfig(BaseModel):
    """Process-wide defaults. Tenant overrides are layered on top of these."""

    app_env: str = "development"

    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    embedding_model: str = "BAAI/bge-m3"
    embedding_dimensions: int = Field(default=1024, ge=128, le=4096)

    chat_model: str = "gpt-3.5-turbo"
    chat_api_key: Optional[str] = None
    chat_base_url: Optional[str] = None
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)

    chunk_size: int = Field(default=500, ge=100, le=2000)
    chunk_overlap: int = Field(default=50, ge=0, le=500)
    retrieval_k: int = Field(default=3, ge=1, le=20)
    score_threshold: float = 0.4

    debounce_seconds: float = Field(default=_DEVELOPMENT_DEBOUNCE_SECONDS, ge=0.0)

    table_name: str = "rag_vectors"
    database_url: Optional[str] = None
    pool_max_size: int = Field(default=5, ge=1, le=50)
    index_dir: str = "data/index"
    redis_url: Optional[str] = None
    queue_prefix: str = "ragsync:queue"

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    def as_overrides(self) -> dict[str, Any]:
        """Express the defaults in the ``RAG_*`` key space used by tenant settings."""
        return {
            "RAG_OPENAI_API_KEY": self.openai_api_key,
            "RAG_OPENAI_BASE_URL": self.openai_base_url,
            "RAG_EMBEDDING_MODEL": self.embedding_model,
            "RAG_EMBEDDING_DIMENSIONS": self.embedding_dimensions,
            "RAG_CHAT_MODEL": self.chat_model,
            "RAG_CHAT_API_KEY": self.chat_api_key,
            "RAG_CHAT_BASE_URL": self.chat_base_url,
            "RAG_TEMPERATURE": self.temperature,
            "RAG_CHUNK_SIZE": self.chunk_size,
            "RAG_CHUNK_OVERLAP": self.chunk_overlap,
            "RAG_RETRIEVAL_K": self.retrieval_k,
            "RAG_SCORE_THRESHOLD": self.score_threshold,
        }


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def load_config() -> RagConfig:
    """Build a RagConfig from the current environment."""
    app_env = _env("APP_ENV") or _env("NODE_ENV") or "development"
    debounce_default = (
        _PRODUCTION_DEBOUNCE_SECONDS
        if app_env.lower() == "production"
        else _DEVELOPMENT_DEBOUNCE_SECONDS
    )

    raw: dict[str, Any] = {
        "app_env": app_env,
        "openai_api_key": _env("RAG_OPENAI_API_KEY"),
        "openai_base_url": _env("RAG_OPENAI_BASE_URL"),
        "embedding_model": _env("RAG_EMBEDDING_MODEL"),
        "embedding_dimensions": _env("RAG_EMBEDDING_DIMENSIONS"),
        "chat_model": _env("RAG_CHAT_MODEL"),
        "chat_api_key": _env("RAG_CHAT_API_KEY"),
        "chat_base_url": _env("RAG_CHAT_BASE_URL"),
        "temperature": _env("RAG_TEMPERATURE"),
        "chunk_size": _env("RAG_CHUNK_SIZE"),
        "chunk_overlap": _env("RAG_CHUNK_OVERLAP"),
        "retrieval_k": _env("RAG_RETRIEVAL_K"),
        "score_threshold": _env("RAG_SCORE_THRESHOLD"),
        "debounce_seconds": _env("RAG_DEBOUNCE_SECONDS") or debounce_default,
        "table_name": _env("RAG_TABLE_NAME"),
        "database_url": _env("DATABASE_URL"),
        "pool_max_size": _env("RAG_POOL_MAX_SIZE"),
        "index_dir": _env("RAG_INDEX_DIR"),
        "redis_url": _env("REDIS_URL"),
        "queue_prefix": _env("RAG_QUEUE_PREFIX"),
    }
    # Unset variables fall through to the model defaults
    return RagConfig(**{k: v for k, v in raw.items() if v is not None})


@lru_cache(maxsize=1)
def get_config() -> RagConfig:
    return load_config()
