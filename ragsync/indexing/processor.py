"""
Event Intake & Debounce Scheduler
----------------------------------
Reacts to document lifecycle events. Only published documents are indexed.

    publish / index        -> reindex now (honours data.force)
    update                 -> schedule update.debounced under rag-index-<id>;
                              a later update replaces the pending job, so a
                              burst of edits collapses into one trailing reindex
    update.debounced       -> reindex, unless the document is gone,
                              unpublished, or changed after the event was
                              created (a newer debounce job will run instead)
    delete / archive       -> best-effort removal of the document's chunks
"""
from __future__ import annotations

from loguru import logger

from ragsync.documents import DocumentRepository
from ragsync.indexing.orchestrator import ChunkUpsertOrchestrator
from ragsync.queue.base import JobQueue
from ragsync.schemas import EventName, LifecycleEvent
from ragsync.utils.helpers import parse_timestamp

APPLICABLE_EVENTS: frozenset[EventName] = frozenset(
    {
        EventName.PUBLISH,
        EventName.UPDATE,
        EventName.UPDATE_DEBOUNCED,
        EventName.DELETE,
        EventName.ARCHIVE,
        EventName.INDEX,
    }
)


def debounce_job_id(document_id: str) -> str:
    return f"rag-index-{document_id}"


class DocumentIndexProcessor:
    name = "DocumentIndexProcessor"
    applicable_events = APPLICABLE_EVENTS

    def __init__(
        self,
        documents: DocumentRepository,
        orchestrator: ChunkUpsertOrchestrator,
        events_queue: JobQueue,
        debounce_seconds: float,
    ) -> None:
        self.documents = documents
        self.orchestrator = orchestrator
        self.events_queue = events_queue
        self.debounce_seconds = debounce_seconds

    async def perform(self, event: LifecycleEvent) -> None:
        if event.name in (EventName.PUBLISH, EventName.INDEX):
            await self._index(event)
        elif event.name == EventName.UPDATE:
            await self._schedule_debounced(event)
        elif event.name == EventName.UPDATE_DEBOUNCED:
            await self._settle(event)
        elif event.name in (EventName.DELETE, EventName.ARCHIVE):
            await self.orchestrator.remove_document(event.document_id)

    async def _index(self, event: LifecycleEvent) -> None:
        document = await self.documents.find(event.document_id)
        if document is None:
            logger.info(f"[Processor] Document {event.document_id} not found, nothing to index")
            return
        await self.orchestrator.reindex(document, forced=event.force)

    async def _schedule_debounced(self, event: LifecycleEvent) -> None:
        document = await self.documents.find(event.document_id)
        if document is None or not document.is_published:
            logger.debug(f"[Processor] Ignoring update for unpublished document {event.document_id}")
            return

        job = await self.events_queue.schedule(
            event.renamed(EventName.UPDATE_DEBOUNCED).model_dump(mode="json"),
            delay=self.debounce_seconds,
            job_id=debounce_job_id(event.document_id),
        )
        logger.debug(
            f"[Processor] Debounced update for {event.document_id} | "
            f"job={job.id} delay={self.debounce_seconds:.0f}s"
        )

    async def _settle(self, event: LifecycleEvent) -> None:
        document = await self.documents.find(event.document_id)
        if document is None or not document.is_published:
            return

        if parse_timestamp(document.updated_at) > parse_timestamp(event.created_at):
            logger.debug(
                f"[Processor] Document {event.document_id} changed after this event, "
                "a newer debounce job will index it"
            )
            return

        await self.orchestrator.reindex(document, forced=event.force)
