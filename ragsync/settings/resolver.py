"""
Tenant Settings Resolver
-------------------------
Resolves the effective provider credentials and indexing parameters for a
tenant by layering its stored overrides over the process defaults.

Resolution never fails the caller: a missing tenant, missing settings or an
unavailable store all degrade to the process defaults.
"""
from __future__ import annotations

from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel

from ragsync.config import RagConfig, get_config
from ragsync.settings.stores import TenantSettingsStore


class EmbeddingSettings(BaseModel):
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: str
    dimensions: int


class ChatSettings(BaseModel):
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: str
    temperature: float = 0.1


class EffectiveSettings(BaseModel):
    """Per-operation view of a tenant's configuration. Never persisted."""

    embedding: EmbeddingSettings
    chat: ChatSettings
    chunk_size: int
    chunk_overlap: int
    retrieval_k: int
    score_threshold: float


def _present(value: Any) -> bool:
    return value is not None and not (isinstance(value, str) and not value.strip())


def build_effective_settings(
    overrides: dict[str, Any],
    defaults: RagConfig,
) -> EffectiveSettings:
    """Layer tenant ``RAG_*`` overrides on top of the process defaults."""
    merged = {k: v for k, v in defaults.as_overrides().items() if _present(v)}
    merged.update({k: v for k, v in overrides.items() if _present(v)})

    return EffectiveSettings(
        embedding=EmbeddingSettings(
            api_key=merged.get("RAG_OPENAI_API_KEY"),
            base_url=merged.get("RAG_OPENAI_BASE_URL"),
            model=merged["RAG_EMBEDDING_MODEL"],
            dimensions=merged["RAG_EMBEDDING_DIMENSIONS"],
        ),
        chat=ChatSettings(
            api_key=merged.get("RAG_CHAT_API_KEY") or merged.get("RAG_OPENAI_API_KEY"),
            base_url=merged.get("RAG_CHAT_BASE_URL") or merged.get("RAG_OPENAI_BASE_URL"),
            model=merged["RAG_CHAT_MODEL"],
            temperature=merged["RAG_TEMPERATURE"],
        ),
        chunk_size=merged["RAG_CHUNK_SIZE"],
        chunk_overlap=merged["RAG_CHUNK_OVERLAP"],
        retrieval_k=merged["RAG_RETRIEVAL_K"],
        score_threshold=merged["RAG_SCORE_THRESHOLD"],
    )


class TenantSettingsResolver:
    """
    Reads tenant overrides from a TenantSettingsStore.

    Usage:
        resolver = TenantSettingsResolver(store)
        settings = await resolver.resolve(team_id)
    """

    def __init__(
        self,
        store: Optional[TenantSettingsStore] = None,
        defaults: Optional[RagConfig] = None,
    ) -> None:
        self.store = store
        self.defaults = defaults or get_config()

    async def get_overrides(self, tenant_id: Optional[str]) -> dict[str, Any]:
        """Raw tenant overrides; ``{}`` when there is nothing to layer."""
        if not tenant_id or self.store is None:
            return {}
        try:
            settings = await self.store.get(tenant_id)
        except Exception as exc:
            logger.warning(f"[Settings] Failed to fetch settings for tenant {tenant_id}: {exc}")
            return {}
        return dict(settings or {})

    async def resolve(self, tenant_id: Optional[str]) -> EffectiveSettings:
        _, settings = await self.resolve_layers(tenant_id)
        return settings

    async def resolve_layers(
        self, tenant_id: Optional[str]
    ) -> tuple[dict[str, Any], EffectiveSettings]:
        """Both the raw overrides and the settings built from them."""
        overrides = await self.get_overrides(tenant_id)
        try:
            return overrides, build_effective_settings(overrides, self.defaults)
        except (ValueError, TypeError, KeyError) as exc:
            # A malformed override must not take the tenant down with it
            logger.warning(
                f"[Settings] Ignoring invalid overrides for tenant {tenant_id}: {exc}"
            )
            return {}, build_effective_settings({}, self.defaults)
