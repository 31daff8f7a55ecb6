"""
Retrieval Engine
-----------------
Embeds the user query with the tenant's embedding settings and runs a
filtered similarity search against the vector store.

Scores are distances (lower = more similar). After the store returns:
  1. membership predicates of the filter (e.g. collectionId in {...}) and
     plain equality predicates are re-checked against each result's own
     metadata, in case the store ignored or only partly applied the filter
  2. results with a distance above the tenant's score threshold are dropped
  3. duplicate passages of the same document are collapsed to the best score

The retriever is stateless per query; share one instance freely.
"""
from __future__ import annotations

from typing import Any, Optional

from langsmith import traceable
from loguru import logger

from ragsync.providers.factory import ProviderClientFactory
from ragsync.schemas import IndexedChunk, RetrievedSource
from ragsync.settings.resolver import EffectiveSettings, TenantSettingsResolver
from ragsync.vectorstore.base import VectorStore
from ragsync.vectorstore.filters import matches

ScoredChunk = tuple[IndexedChunk, float]


def apply_score_threshold(results: list[ScoredChunk], threshold: float) -> list[ScoredChunk]:
    """Keep results whose distance does not exceed ``threshold``."""
    return [(chunk, score) for chunk, score in results if score <= threshold]


def deduplicate(results: list[ScoredChunk]) -> list[ScoredChunk]:
    """Collapse identical passages of one document, keeping the best (lowest) score."""
    best: dict[tuple[Any, str], ScoredChunk] = {}
    for chunk, score in results:
        key = (chunk.document_id or chunk.id, chunk.content)
        if key not in best or score < best[key][1]:
            best[key] = (chunk, score)
    return sorted(best.values(), key=lambda item: item[1])


def to_sources(results: list[ScoredChunk]) -> list[RetrievedSource]:
    return [
        RetrievedSource(content=chunk.content, metadata=chunk.metadata, score=score)
        for chunk, score in results
    ]


class RetrievalEngine:
    def __init__(
        self,
        store: VectorStore,
        settings: TenantSettingsResolver,
        providers: ProviderClientFactory,
    ) -> None:
        self.store = store
        self.settings = settings
        self.providers = providers

    @traceable(name="retrieve", run_type="retriever")
    async def retrieve(
        self,
        query: str,
        k: Optional[int] = None,
        filter: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
        settings: Optional[EffectiveSettings] = None,
    ) -> list[ScoredChunk]:
        """
        Filtered, thresholded, deduplicated search.

        Args:
            query:     Raw user query string.
            k:         Candidates to request from the store (tenant default if None).
            filter:    Metadata filter, e.g. {"teamId": t, "collectionId": {"$in": [...]}}.
            tenant_id: Tenant whose settings apply.
            settings:  Already-resolved settings (skips a second lookup).

        Returns:
            List of (IndexedChunk, distance) sorted by distance ascending.
        """
        settings = settings or await self.settings.resolve(tenant_id)
        results = await self._search(query, k or settings.retrieval_k, filter, settings)
        fetched = len(results)

        results = [(chunk, score) for chunk, score in results if matches(chunk.metadata, filter)]
        results = apply_score_threshold(results, settings.score_threshold)
        results = deduplicate(results)

        logger.info(
            f"[Retriever] {len(results)}/{fetched} results kept "
            f"(threshold={settings.score_threshold})"
            + (f" | best score: {results[0][1]:.4f}" if results else "")
        )
        return results

    async def similarity_search_with_score(
        self,
        query: str,
        k: Optional[int] = None,
        filter: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> list[ScoredChunk]:
        """Raw nearest neighbours with their distances; no threshold applied."""
        settings = await self.settings.resolve(tenant_id)
        return await self._search(query, k or settings.retrieval_k, filter, settings)

    async def similarity_search(
        self,
        query: str,
        k: Optional[int] = None,
        filter: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> list[IndexedChunk]:
        results = await self.similarity_search_with_score(query, k, filter, tenant_id)
        return [chunk for chunk, _ in results]

    async def _search(
        self,
        query: str,
        k: int,
        filter: Optional[dict[str, Any]],
        settings: EffectiveSettings,
    ) -> list[ScoredChunk]:
        logger.debug(f"[Retriever] Query: {query[:80]!r} | k={k} | filter={filter}")
        embedder = self.providers.embedder(settings.embedding)
        vector = await embedder.embed_query(query)
        return await self.store.query(vector, k, filter or None)
