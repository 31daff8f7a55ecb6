"""
Shared fixtures for the ragsync test suite.

Provider calls are replaced by deterministic fakes:
- HashingEmbedder   bag-of-words vectors, no network
- FakeChatModel     scripted deltas, records close/cancel
- StubStore         returns preset (chunk, distance) pairs from query()
"""
from __future__ import annotations

import asyncio
import hashlib
import re
from datetime import datetime, timedelta
from typing import Any, Optional

import numpy as np
import pytest
from loguru import logger

from ragsync.config import RagConfig
from ragsync.documents import InMemoryDocumentRepository
from ragsync.providers.factory import ProviderClientFactory
from ragsync.schemas import HostDocument, IndexedChunk, utcnow
from ragsync.service import RagService
from ragsync.settings.stores import InMemoryTenantSettingsStore
from ragsync.vectorstore.faiss_store import FaissVectorStore

DIMENSIONS = 128
TEAM = "team-1"


# --- Fakes --------------------------------------------------------------------

class HashingEmbedder:
    """Deterministic embeddings: each lowercase word bumps one hashed bucket."""

    def __init__(self, dimensions: int = DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.calls = 0
        self.texts_embedded = 0

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimensions, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        return vector

    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        self.calls += 1
        self.texts_embedded += len(texts)
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)
        return np.stack([self._vector(t) for t in texts])

    async def embed_query(self, text: str) -> np.ndarray:
        return self._vector(text)


class FakeChatModel:
    def __init__(self, deltas: Optional[list[str]] = None, error: Optional[Exception] = None) -> None:
        self.deltas = ["Hello", ", ", "world"] if deltas is None else deltas
        self.error = error
        self.messages: list[list[dict[str, str]]] = []
        self.closed = False
        self.cancelled = False

    async def complete(self, messages) -> str:
        self.messages.append(list(messages))
        return "".join(self.deltas)

    async def stream(self, messages, cancel: Optional[asyncio.Event] = None):
        self.messages.append(list(messages))
        try:
            for delta in self.deltas:
                if cancel is not None and cancel.is_set():
                    self.cancelled = True
                    return
                yield delta
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class StubStore:
    """VectorStore whose query() ignores the filter and returns preset results."""

    def __init__(self, results: Optional[list[tuple[IndexedChunk, float]]] = None) -> None:
        self.results = results or []
        self.queries: list[tuple[int, Optional[dict[str, Any]]]] = []

    async def add_chunks(self, chunks, vectors) -> None:
        return None

    async def delete_where(self, predicate) -> int:
        return 0

    async def query(self, vector, k, filter=None):
        self.queries.append((k, filter))
        return list(self.results[:k])

    async def find_one_where(self, predicate):
        return None

    async def aggregate_documents(self, team_id):
        return []

    async def document_chunks(self, document_id, team_id):
        return []

    async def close(self) -> None:
        return None


class RecordingStore(FaissVectorStore):
    """FAISS store that counts writes and can be told to fail them."""

    def __init__(self, dimensions: int = DIMENSIONS) -> None:
        super().__init__(dimensions=dimensions)
        self.add_calls = 0
        self.delete_calls = 0
        self.fail_delete: Optional[Exception] = None
        self.fail_add: Optional[Exception] = None

    async def add_chunks(self, chunks, vectors) -> None:
        self.add_calls += 1
        if self.fail_add is not None:
            raise self.fail_add
        await super().add_chunks(chunks, vectors)

    async def delete_where(self, predicate) -> int:
        self.delete_calls += 1
        if self.fail_delete is not None:
            raise self.fail_delete
        return await super().delete_where(predicate)


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_chunk(
    content: str,
    document_id: str = "doc-1",
    collection_id: str = "col-1",
    team_id: str = TEAM,
    **extra: Any,
) -> IndexedChunk:
    return IndexedChunk(
        content=content,
        metadata={
            "documentId": document_id,
            "collectionId": collection_id,
            "teamId": team_id,
            "documentTitle": extra.pop("title", f"Title {document_id}"),
            **extra,
        },
    )


def make_document(
    document_id: str = "doc-1",
    text: str = "Key rotation happens every ninety days.",
    published: bool = True,
    updated_at: Optional[datetime] = None,
    **fields: Any,
) -> HostDocument:
    updated_at = updated_at or utcnow() - timedelta(minutes=5)
    return HostDocument(
        id=document_id,
        title=fields.pop("title", f"Title {document_id}"),
        text=text,
        team_id=fields.pop("team_id", TEAM),
        collection_id=fields.pop("collection_id", "col-1"),
        updated_at=updated_at,
        published_at=updated_at if published else None,
        **fields,
    )


def paragraphs(count: int, width: int = 66) -> str:
    """``count`` paragraphs of ~400 characters each, one chunk apiece at size 500."""
    return "\n\n".join(" ".join([f"para{i}"] * width) for i in range(count))


# --- Fixtures -----------------------------------------------------------------

@pytest.fixture
def config() -> RagConfig:
    return RagConfig(
        openai_api_key="test-key",
        embedding_dimensions=DIMENSIONS,
        debounce_seconds=30.0,
    )


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def chat_model() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture
def providers(embedder, chat_model) -> ProviderClientFactory:
    return ProviderClientFactory(
        embedder_builder=lambda settings: embedder,
        chat_builder=lambda settings: chat_model,
    )


@pytest.fixture
def settings_store() -> InMemoryTenantSettingsStore:
    return InMemoryTenantSettingsStore()


@pytest.fixture
def documents() -> InMemoryDocumentRepository:
    return InMemoryDocumentRepository()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(store, documents, settings_store, config, providers, clock) -> RagService:
    return RagService(
        store,
        documents,
        settings_store,
        config=config,
        providers=providers,
        clock=clock,
    )


@pytest.fixture
def log_messages():
    """Collect loguru output at WARNING and above."""
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(str(message)), level="WARNING")
    yield messages
    logger.remove(handler_id)
