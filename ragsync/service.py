"""
RagService
-----------
Explicitly constructed owner of every long-lived resource: the connection
pool, the vector store, the queues and their workers, and the provider
client cache. Queues live in Redis when REDIS_URL is set, so API and worker
processes share one schedule; otherwise they are in-process. Callers
receive it by injection; nothing in ragsync reaches for a global instance.

    service = await RagService.create()          # from environment
    service.start_workers()
    ...
    await service.close()                        # stops workers, closes clients and pool

Tests and embedded uses build it directly with in-memory collaborators.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional, Sequence

import asyncpg
from loguru import logger

from ragsync.config import RagConfig, get_config
from ragsync.db import create_pool
from ragsync.documents import (
    DocumentRepository,
    InMemoryDocumentRepository,
    PostgresDocumentRepository,
)
from ragsync.generation.chat_service import StreamingChatOrchestrator
from ragsync.indexing.orchestrator import ChunkUpsertOrchestrator
from ragsync.indexing.pipeline import LifecyclePipeline
from ragsync.indexing.processor import DocumentIndexProcessor
from ragsync.providers.factory import ProviderClientFactory
from ragsync.queue.base import EVENTS_QUEUE, PROCESSOR_QUEUE, Job, JobQueue
from ragsync.queue.memory_queue import InMemoryJobQueue
from ragsync.queue.redis_queue import RedisJobQueue
from ragsync.queue.worker import QueueWorker
from ragsync.retrieval.retriever import RetrievalEngine, ScoredChunk
from ragsync.schemas import (
    ChatMessage,
    ChatStreamEvent,
    EventName,
    IndexedChunk,
    IndexingStatus,
    LifecycleEvent,
    utcnow,
)
from ragsync.settings.resolver import TenantSettingsResolver
from ragsync.settings.stores import (
    InMemoryTenantSettingsStore,
    PostgresTenantSettingsStore,
    TenantSettingsStore,
)
from ragsync.status.aggregator import JobStatusAggregator
from ragsync.vectorstore.base import VectorStore
from ragsync.vectorstore.faiss_store import FaissVectorStore
from ragsync.vectorstore.pgvector_store import PgVectorStore


class RagService:
    def __init__(
        self,
        store: VectorStore,
        documents: DocumentRepository,
        settings_store: Optional[TenantSettingsStore] = None,
        config: Optional[RagConfig] = None,
        providers: Optional[ProviderClientFactory] = None,
        pool: Optional[asyncpg.Pool] = None,
        queues: Optional[tuple[JobQueue, JobQueue]] = None,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: float = 1.0,
    ) -> None:
        self.config = config or get_config()
        self.store = store
        self.documents = documents
        self.pool = pool

        self.settings = TenantSettingsResolver(settings_store, self.config)
        self.providers = providers or ProviderClientFactory()

        self.indexer = ChunkUpsertOrchestrator(store, self.settings, self.providers)
        self.retriever = RetrievalEngine(store, self.settings, self.providers)
        self.chat = StreamingChatOrchestrator(self.retriever, self.settings, self.providers)

        if queues is None:
            queues = (
                InMemoryJobQueue(EVENTS_QUEUE, clock=clock),
                InMemoryJobQueue(PROCESSOR_QUEUE, clock=clock),
            )
        self.events_queue, self.processor_queue = queues
        self.processor = DocumentIndexProcessor(
            documents,
            self.indexer,
            self.events_queue,
            debounce_seconds=self.config.debounce_seconds,
        )
        self.pipeline = LifecyclePipeline(
            self.events_queue, self.processor_queue, [self.processor]
        )
        self.status = JobStatusAggregator(
            store, documents, self.events_queue, self.processor_queue
        )

        self._workers = [
            QueueWorker(self.events_queue, self.pipeline.handle_event_job, poll_interval),
            QueueWorker(self.processor_queue, self.pipeline.handle_processor_job, poll_interval),
        ]
        self._tasks: list[asyncio.Task] = []

    @classmethod
    async def create(cls, config: Optional[RagConfig] = None) -> "RagService":
        """
        Build from configuration: pgvector + Postgres repositories when
        DATABASE_URL is set, otherwise a FAISS store under RAG_INDEX_DIR with
        in-memory documents and tenant settings.
        """
        config = config or get_config()
        queues = None
        if config.redis_url:
            queues = (
                RedisJobQueue.from_url(config.redis_url, EVENTS_QUEUE, prefix=config.queue_prefix),
                RedisJobQueue.from_url(config.redis_url, PROCESSOR_QUEUE, prefix=config.queue_prefix),
            )
        elif config.database_url:
            logger.warning(
                "[RagService] REDIS_URL not set: jobs are in-process only and are lost on restart"
            )

        if config.database_url:
            pool = await create_pool(config.database_url, config.pool_max_size)
            store = PgVectorStore(pool, config.table_name, config.embedding_dimensions)
            await store.ensure_schema()
            logger.info("[RagService] Using pgvector backend")
            return cls(
                store,
                PostgresDocumentRepository(pool),
                PostgresTenantSettingsStore(pool),
                config=config,
                pool=pool,
                queues=queues,
            )

        logger.info(f"[RagService] DATABASE_URL not set, using FAISS backend at {config.index_dir}")
        return cls(
            FaissVectorStore.open(config.index_dir, config.embedding_dimensions),
            InMemoryDocumentRepository(),
            InMemoryTenantSettingsStore(),
            config=config,
            queues=queues,
        )

    # --- Lifecycle ------------------------------------------------------------

    def start_workers(self) -> None:
        if self._tasks:
            return
        self._tasks = [asyncio.create_task(worker.run()) for worker in self._workers]

    async def run_pending(self) -> int:
        """Process queued jobs until both queues have nothing runnable."""
        total = 0
        while True:
            processed = 0
            for worker in self._workers:
                processed += await worker.drain()
            if not processed:
                return total
            total += processed

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.events_queue.close()
        await self.processor_queue.close()
        await self.providers.clear()
        await self.store.close()
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
        logger.info("[RagService] Closed")

    # --- Indexing surface -----------------------------------------------------

    async def handle_event(self, event: LifecycleEvent) -> Job:
        return await self.pipeline.publish(event)

    async def index_document(
        self,
        content: str,
        metadata: dict[str, Any],
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        return await self.indexer.index_document(content, metadata, tenant_id, user_id)

    async def delete_document(self, document_id: str) -> int:
        return await self.indexer.delete_document(document_id)

    async def find_document_metadata(self, document_id: str) -> Optional[dict[str, Any]]:
        return await self.indexer.find_document_metadata(document_id)

    async def reindex(self, document_id: str, force: bool = False) -> int:
        document = await self.documents.find(document_id)
        if document is None:
            logger.warning(f"[RagService] Document {document_id} not found")
            return 0
        return await self.indexer.reindex(document, forced=force)

    async def index_all(
        self,
        team_id: str,
        collection_id: Optional[str] = None,
        force: bool = False,
    ) -> dict[str, Any]:
        """Queue a ``documents.index`` event for every published document of a team."""
        documents = await self.documents.find_published(team_id, collection_id)
        queued_documents = []
        for document in documents:
            await self.pipeline.publish(
                LifecycleEvent(
                    name=EventName.INDEX,
                    document_id=document.id,
                    team_id=document.team_id,
                    collection_id=document.collection_id,
                    data={"force": force},
                )
            )
            queued_documents.append({"id": document.id, "title": document.title})

        logger.info(f"[RagService] Queued {len(queued_documents)} documents for indexing | team={team_id}")
        return {
            "total": len(documents),
            "queued": len(queued_documents),
            "queuedDocuments": queued_documents,
        }

    async def get_indexing_status(self, team_id: str) -> IndexingStatus:
        return await self.status.get_indexing_status(team_id)

    async def document_chunks(self, document_id: str, team_id: str) -> list[IndexedChunk]:
        return await self.store.document_chunks(document_id, team_id)

    # --- Retrieval & chat surface ---------------------------------------------

    async def similarity_search(
        self,
        query: str,
        k: Optional[int] = None,
        filter: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> list[IndexedChunk]:
        return await self.retriever.similarity_search(query, k, filter, tenant_id)

    async def similarity_search_with_score(
        self,
        query: str,
        k: Optional[int] = None,
        filter: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> list[ScoredChunk]:
        return await self.retriever.similarity_search_with_score(query, k, filter, tenant_id)

    def stream_answer(
        self,
        question: str,
        k: Optional[int] = None,
        history: Sequence[ChatMessage] = (),
        collection_ids: Optional[Sequence[str]] = None,
        tenant_id: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ChatStreamEvent]:
        return self.chat.stream_answer(question, k, history, collection_ids, tenant_id, cancel)

    async def answer_question(
        self,
        question: str,
        k: Optional[int] = None,
        history: Sequence[ChatMessage] = (),
        collection_ids: Optional[Sequence[str]] = None,
        tenant_id: Optional[str] = None,
    ) -> dict[str, Any]:
        return await self.chat.answer_question(question, k, history, collection_ids, tenant_id)
