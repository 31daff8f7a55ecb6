"""
Tests for ragsync/status/aggregator.py
"""
from ragsync.indexing.processor import debounce_job_id
from ragsync.schemas import EventName, IndexingState, LifecycleEvent

from conftest import make_document, paragraphs


def _event_data(name, document_id):
    return LifecycleEvent(name=name, document_id=document_id, team_id="team-1").model_dump(mode="json")


async def _fail_processor_job(service, document_id, reason):
    job = await service.processor_queue.schedule(
        {"processor": "DocumentIndexProcessor", "event": _event_data(EventName.PUBLISH, document_id)}
    )
    await service.processor_queue.take()
    await service.processor_queue.fail(job, RuntimeError(reason), retryable=False)


class TestIndexingStatus:
    """Test JobStatusAggregator.get_indexing_status."""

    async def test_indexed_documents_listed(self, service, documents):
        documents.put(make_document("doc-1", text=paragraphs(3)))
        await service.indexer.reindex(await documents.find("doc-1"))

        status = await service.get_indexing_status("team-1")

        assert len(status.indexed) == 1
        row = status.indexed[0]
        assert row.document_id == "doc-1"
        assert row.document_title == "Title doc-1"
        assert row.chunks == 3
        assert status.indexing == []

    async def test_queue_states_classified(self, service, documents):
        for doc_id in ("doc-1", "doc-2", "doc-3", "doc-4"):
            documents.put(make_document(doc_id))

        await service.events_queue.schedule(
            _event_data(EventName.UPDATE_DEBOUNCED, "doc-1"), delay=30, job_id=debounce_job_id("doc-1")
        )
        await service.events_queue.schedule(_event_data(EventName.PUBLISH, "doc-2"))
        await service.processor_queue.schedule(
            {"processor": "DocumentIndexProcessor", "event": _event_data(EventName.INDEX, "doc-3")}
        )
        await _fail_processor_job(service, "doc-4", "Embedding API key not configured")

        status = await service.get_indexing_status("team-1")

        states = {row.document_id: row for row in status.indexing}
        assert states["doc-1"].status == IndexingState.PENDING
        assert states["doc-2"].status == IndexingState.INDEXING
        assert states["doc-3"].status == IndexingState.INDEXING
        assert states["doc-4"].status == IndexingState.FAILED
        assert states["doc-4"].error == "Embedding API key not configured"
        assert all(row.chunks == 0 for row in status.indexing)

    async def test_retrying_job(self, service, documents):
        documents.put(make_document("doc-1"))
        job = await service.processor_queue.schedule(
            {"processor": "DocumentIndexProcessor", "event": _event_data(EventName.PUBLISH, "doc-1")},
            attempts=3,
        )
        await service.processor_queue.take()
        await service.processor_queue.fail(job, RuntimeError("timeout"))

        status = await service.get_indexing_status("team-1")

        assert status.indexing[0].status == IndexingState.RETRYING

    async def test_first_classification_wins(self, service, documents):
        """A document queued again is not reported as failed by an older record."""
        documents.put(make_document("doc-1"))
        await _fail_processor_job(service, "doc-1", "old failure")
        await service.events_queue.schedule(
            _event_data(EventName.UPDATE_DEBOUNCED, "doc-1"), delay=30, job_id=debounce_job_id("doc-1")
        )

        status = await service.get_indexing_status("team-1")

        assert len(status.indexing) == 1
        assert status.indexing[0].status == IndexingState.PENDING
        assert status.indexing[0].error is None

    async def test_removal_events_ignored(self, service, documents):
        documents.put(make_document("doc-1"))
        await service.events_queue.schedule(_event_data(EventName.DELETE, "doc-1"))
        await service.processor_queue.schedule(
            {"processor": "DocumentIndexProcessor", "event": _event_data(EventName.ARCHIVE, "doc-1")}
        )

        status = await service.get_indexing_status("team-1")

        assert status.indexing == []

    async def test_other_teams_and_unknown_documents_excluded(self, service, documents):
        documents.put(make_document("doc-1"))
        documents.put(make_document("doc-9", team_id="team-2"))
        for doc_id in ("doc-1", "doc-9", "ghost"):
            await service.events_queue.schedule(_event_data(EventName.PUBLISH, doc_id))

        status = await service.get_indexing_status("team-1")

        assert [row.document_id for row in status.indexing] == ["doc-1"]
        assert documents.title_lookups == 1

    async def test_no_lookup_when_nothing_in_flight(self, service, documents):
        await service.get_indexing_status("team-1")

        assert documents.title_lookups == 0

    async def test_camel_case_serialisation(self, service, documents):
        documents.put(make_document("doc-1"))
        await service.events_queue.schedule(_event_data(EventName.PUBLISH, "doc-1"))

        status = await service.get_indexing_status("team-1")
        payload = status.model_dump(mode="json", by_alias=True)

        assert payload["indexing"][0] == {
            "documentId": "doc-1",
            "documentTitle": "Title doc-1",
            "chunks": 0,
            "status": "indexing",
            "error": None,
        }
