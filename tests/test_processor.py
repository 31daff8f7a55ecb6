"""
Tests for ragsync/indexing/processor.py and ragsync/indexing/pipeline.py
Lifecycle events end to end through the two in-memory queues.
"""
from datetime import timedelta

from ragsync.errors import VectorStoreError
from ragsync.indexing.processor import debounce_job_id
from ragsync.schemas import EventName, JobState, LifecycleEvent, utcnow

from conftest import make_document, paragraphs


def _event(name, document_id="doc-1", **fields):
    return LifecycleEvent(name=name, document_id=document_id, team_id="team-1", **fields)


def _chunks_of(store, document_id):
    return [c for c in store.chunks.values() if c.document_id == document_id]


class TestPublish:
    """Test publish / index events."""

    async def test_publish_indexes_document(self, service, documents, store):
        documents.put(make_document(text=paragraphs(2)))

        await service.handle_event(_event(EventName.PUBLISH))
        await service.run_pending()

        assert len(_chunks_of(store, "doc-1")) == 2
        assert len(service.events_queue) == 0
        assert len(service.processor_queue) == 0

    async def test_missing_document_is_dropped(self, service, store):
        await service.handle_event(_event(EventName.PUBLISH, "ghost"))
        await service.run_pending()

        assert store.add_calls == 0
        assert await service.processor_queue.list_by_state(JobState.FAILED) == []

    async def test_index_event_force_flag(self, service, documents, store):
        documents.put(make_document(text=paragraphs(2)))
        await service.handle_event(_event(EventName.PUBLISH))
        await service.run_pending()

        await service.handle_event(_event(EventName.INDEX, data={"force": True}))
        await service.run_pending()

        assert store.add_calls == 2


class TestDebounce:
    """Test update coalescing."""

    async def test_burst_of_updates_collapses_to_one_job(self, service, documents, embedder, clock, config):
        documents.put(make_document(text=paragraphs(2)))

        for _ in range(3):
            await service.handle_event(_event(EventName.UPDATE))
        await service.run_pending()

        delayed = await service.events_queue.list_by_state(JobState.DELAYED)
        assert [job.id for job in delayed] == [debounce_job_id("doc-1")]
        assert delayed[0].data["name"] == EventName.UPDATE_DEBOUNCED.value
        assert embedder.calls == 0

        clock.advance(config.debounce_seconds + 1)
        await service.run_pending()

        assert embedder.calls == 1
        assert len(service.events_queue) == 0

    async def test_nothing_runs_before_the_delay(self, service, documents, embedder, clock, config):
        documents.put(make_document(text=paragraphs(2)))

        await service.handle_event(_event(EventName.UPDATE))
        await service.run_pending()
        clock.advance(config.debounce_seconds - 1)
        await service.run_pending()

        assert embedder.calls == 0

    async def test_unpublished_update_schedules_nothing(self, service, documents):
        documents.put(make_document(published=False))

        await service.handle_event(_event(EventName.UPDATE))
        await service.run_pending()

        assert await service.events_queue.list_by_state(JobState.DELAYED) == []
        assert len(service.events_queue) == 0

    async def test_settle_skips_document_changed_afterwards(self, service, documents, embedder):
        """A debounced event older than the document's last edit is dropped."""
        created = utcnow() - timedelta(minutes=2)
        documents.put(make_document(updated_at=created + timedelta(minutes=1)))

        await service.processor.perform(_event(EventName.UPDATE_DEBOUNCED, created_at=created))

        assert embedder.calls == 0

    async def test_settle_indexes_current_document(self, service, documents, store):
        documents.put(make_document(text=paragraphs(2)))

        await service.processor.perform(_event(EventName.UPDATE_DEBOUNCED))

        assert len(_chunks_of(store, "doc-1")) == 2

    async def test_settle_skips_unpublished(self, service, documents, embedder):
        documents.put(make_document(published=False))

        await service.processor.perform(_event(EventName.UPDATE_DEBOUNCED))

        assert embedder.calls == 0


class TestRemoval:
    """Test delete / archive events."""

    async def test_delete_removes_chunks(self, service, documents, store):
        documents.put(make_document(text=paragraphs(2)))
        await service.handle_event(_event(EventName.PUBLISH))
        await service.run_pending()

        await service.handle_event(_event(EventName.DELETE))
        await service.run_pending()

        assert _chunks_of(store, "doc-1") == []

    async def test_archive_removes_chunks(self, service, documents, store):
        documents.put(make_document(text=paragraphs(2)))
        await service.processor.perform(_event(EventName.PUBLISH))

        await service.processor.perform(_event(EventName.ARCHIVE))

        assert _chunks_of(store, "doc-1") == []

    async def test_delete_is_best_effort(self, service, store, log_messages):
        store.fail_delete = VectorStoreError("store offline")

        await service.handle_event(_event(EventName.DELETE))
        await service.run_pending()

        assert await service.processor_queue.list_by_state(JobState.FAILED) == []
        assert any("Failed to remove document doc-1" in m for m in log_messages)


class TestRetries:
    """Test processor job retries."""

    async def test_failing_reindex_is_retried_then_failed(self, service, documents, store, clock):
        documents.put(make_document(text=paragraphs(2)))
        store.fail_add = VectorStoreError("insert failed")

        await service.handle_event(_event(EventName.PUBLISH))
        await service.run_pending()

        delayed = await service.processor_queue.list_by_state(JobState.DELAYED)
        assert len(delayed) == 1
        assert delayed[0].attempts_made == 1

        clock.advance(10)
        await service.run_pending()
        clock.advance(20)
        await service.run_pending()

        failed = await service.processor_queue.list_by_state(JobState.FAILED)
        assert len(failed) == 1
        assert failed[0].failed_reason == "insert failed"
        assert store.add_calls == 3


class TestIndexAll:
    """Test queueing every published document of a team."""

    async def test_queues_published_documents_only(self, service, documents, store):
        documents.put(make_document("doc-1", text=paragraphs(1)))
        documents.put(make_document("doc-2", text=paragraphs(1)))
        documents.put(make_document("doc-3", published=False))
        documents.put(make_document("doc-4", team_id="team-2"))

        result = await service.index_all("team-1")

        assert result["total"] == 2
        assert result["queued"] == 2
        assert {d["id"] for d in result["queuedDocuments"]} == {"doc-1", "doc-2"}

        await service.run_pending()
        assert len(_chunks_of(store, "doc-1")) == 1
        assert len(_chunks_of(store, "doc-2")) == 1

    async def test_collection_scope(self, service, documents):
        documents.put(make_document("doc-1", collection_id="col-1"))
        documents.put(make_document("doc-2", collection_id="col-2"))

        result = await service.index_all("team-1", collection_id="col-2")

        assert [d["id"] for d in result["queuedDocuments"]] == ["doc-2"]
