"""
Provider client factory
------------------------
Builds embedding and chat clients from resolved settings, one per distinct
settings value. Tenants with identical credentials share a client; tenants
with different credentials never do.

The cache is an optimisation only; ``clear`` may be called at any time.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from loguru import logger

from ragsync.providers.chat import ChatModel, OpenAIChatModel
from ragsync.providers.embedder import Embedder, OpenAIEmbedder
from ragsync.settings.resolver import ChatSettings, EmbeddingSettings
from ragsync.utils.helpers import fingerprint

EmbedderBuilder = Callable[[EmbeddingSettings], Embedder]
ChatBuilder = Callable[[ChatSettings], ChatModel]


def _build_embedder(settings: EmbeddingSettings) -> Embedder:
    return OpenAIEmbedder(
        api_key=settings.api_key,
        model=settings.model,
        dimensions=settings.dimensions,
        base_url=settings.base_url,
    )


def _build_chat_model(settings: ChatSettings) -> ChatModel:
    return OpenAIChatModel(
        api_key=settings.api_key,
        model=settings.model,
        base_url=settings.base_url,
        temperature=settings.temperature,
    )


class ProviderClientFactory:
    def __init__(
        self,
        embedder_builder: Optional[EmbedderBuilder] = None,
        chat_builder: Optional[ChatBuilder] = None,
    ) -> None:
        self._embedder_builder = embedder_builder or _build_embedder
        self._chat_builder = chat_builder or _build_chat_model
        self._clients: dict[str, Any] = {}

    def embedder(self, settings: EmbeddingSettings) -> Embedder:
        return self._get("embedding", settings, self._embedder_builder)

    def chat_model(self, settings: ChatSettings) -> ChatModel:
        return self._get("chat", settings, self._chat_builder)

    def _get(self, kind: str, settings: Any, builder: Callable[[Any], Any]) -> Any:
        key = f"{kind}:{fingerprint(settings.model_dump(mode='json'))}"
        client = self._clients.get(key)
        if client is None:
            client = builder(settings)
            self._clients[key] = client
            logger.debug(f"[Providers] Built {kind} client | model={settings.model}")
        return client

    async def clear(self) -> None:
        """Close and forget every cached client."""
        clients, self._clients = self._clients, {}
        for client in clients.values():
            close = getattr(client, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as exc:
                    logger.warning(f"[Providers] Failed to close client: {exc}")
