"""
Embedding client
-----------------
Async client for any OpenAI-compatible ``/embeddings`` endpoint (OpenAI,
SiliconFlow, a local gateway ...).

Requests are split into batches of ``batch_size`` inputs; up to
``concurrency`` batches are in flight at once and results are reassembled
in input order. Each batch call is retried with tenacity and traced with
LangSmith. Token usage is accumulated on ``usage``.

One client is built per resolved embedding settings value; see
ragsync.providers.factory.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import numpy as np
from langsmith import traceable
from loguru import logger
from openai import AsyncOpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from ragsync.errors import ConfigurationError

BATCH_SIZE = 512
CONCURRENCY = 4


class Embedder(Protocol):
    async def embed_query(self, text: str) -> np.ndarray:
        ...

    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        ...


@dataclass
class EmbeddingUsage:
    requests: int = 0
    tokens: int = 0

    def record(self, tokens: int) -> None:
        self.requests += 1
        self.tokens += tokens


class OpenAIEmbedder:
    """
    Vectors come back as float32 rows; the vector store picks the metric
    (cosine distance in pgvector, inner product over normalised rows in FAISS).
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        dimensions: int,
        base_url: Optional[str] = None,
        batch_size: int = BATCH_SIZE,
        concurrency: int = CONCURRENCY,
    ) -> None:
        if not api_key:
            raise ConfigurationError("Embedding API key not configured")
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.usage = EmbeddingUsage()
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url or None)
        self._slots = asyncio.Semaphore(concurrency)

    async def embed_query(self, text: str) -> np.ndarray:
        matrix = await self.embed_texts([text])
        return matrix[0]

    @traceable(name="embed_texts", run_type="embedding")
    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        """Embed ``texts`` into an (N, dimensions) float32 matrix, order preserved."""
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        batches = [texts[start:start + self.batch_size] for start in range(0, len(texts), self.batch_size)]
        results = await asyncio.gather(*(self._embed_limited(batch) for batch in batches))
        matrix = np.asarray([row for rows in results for row in rows], dtype=np.float32)

        logger.debug(
            f"[Embedder] {len(texts)} texts in {len(batches)} batch(es) | model={self.model} | "
            f"usage: {self.usage.requests} requests, {self.usage.tokens} tokens"
        )
        return matrix

    async def _embed_limited(self, batch: list[str]) -> list[list[float]]:
        async with self._slots:
            return await self._request(batch)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    async def _request(self, batch: list[str]) -> list[list[float]]:
        # Blank inputs are rejected by most providers
        inputs = [text if text.strip() else " " for text in batch]
        started = time.perf_counter()
        response = await self._client.embeddings.create(model=self.model, input=inputs)

        tokens = response.usage.total_tokens if response.usage else 0
        self.usage.record(tokens)
        logger.debug(
            f"[Embedder] Request ok | {len(batch)} inputs | {tokens} tokens | "
            f"{time.perf_counter() - started:.2f}s"
        )
        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]

    async def close(self) -> None:
        await self._client.close()
