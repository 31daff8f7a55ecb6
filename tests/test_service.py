"""
Tests for ragsync/service.py
Ownership and lifecycle of the RagService container.
"""
import asyncio

from ragsync.config import RagConfig
from ragsync.providers.factory import ProviderClientFactory
from ragsync.schemas import EventName, LifecycleEvent
from ragsync.service import RagService
from ragsync.vectorstore.faiss_store import FaissVectorStore

from conftest import DIMENSIONS, make_document, paragraphs


class ClosableClient:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class TestRagService:
    async def test_background_workers_process_events(self, store, documents, settings_store, config, providers):
        service = RagService(store, documents, settings_store, config=config, providers=providers, poll_interval=0.01)
        documents.put(make_document(text=paragraphs(2)))

        service.start_workers()
        await service.handle_event(LifecycleEvent(name=EventName.PUBLISH, document_id="doc-1", team_id="team-1"))
        for _ in range(100):
            if store.chunks:
                break
            await asyncio.sleep(0.01)
        await service.close()

        assert len(store.chunks) == 2

    async def test_close_releases_clients(self, store, documents, config, embedder):
        client = ClosableClient()
        providers = ProviderClientFactory(lambda s: client, lambda s: client)
        service = RagService(store, documents, config=config, providers=providers)
        resolved = await service.settings.resolve(None)
        providers.embedder(resolved.embedding)

        await service.close()

        assert client.closed

    async def test_create_without_database_uses_faiss(self, tmp_path):
        config = RagConfig(embedding_dimensions=DIMENSIONS, index_dir=str(tmp_path / "index"))

        service = await RagService.create(config)
        await service.close()

        assert isinstance(service.store, FaissVectorStore)
        assert service.pool is None
        assert (tmp_path / "index" / "faiss.index").exists()

    async def test_find_document_metadata(self, service, documents):
        documents.put(make_document(text=paragraphs(1)))
        await service.reindex("doc-1")

        metadata = await service.find_document_metadata("doc-1")

        assert metadata["documentTitle"] == "Title doc-1"
        assert await service.reindex("missing") == 0
