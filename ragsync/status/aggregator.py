"""
Job Status Aggregator
----------------------
Answers "what is the state of this team's index" by merging what is in
the vector store with what is still in flight on the two queues.

Scan order, first classification wins:

    events queue    active/delayed/waiting   update.debounced -> pending
                                             publish, index   -> indexing
    processor queue active/waiting           -> indexing
    processor queue delayed                  -> retrying
    processor queue failed                   -> failed (with reason)

so a document that is being indexed again is never reported as failed
because an older failed record is still around.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from loguru import logger

from ragsync.documents import DocumentRepository
from ragsync.queue.base import Job, JobQueue
from ragsync.schemas import (
    EventName,
    IndexingDocumentStatus,
    IndexingState,
    IndexingStatus,
    JobState,
)
from ragsync.vectorstore.base import VectorStore

_EVENTS_QUEUE_STATES: dict[str, IndexingState] = {
    EventName.UPDATE_DEBOUNCED.value: IndexingState.PENDING,
    EventName.PUBLISH.value: IndexingState.INDEXING,
    EventName.INDEX.value: IndexingState.INDEXING,
}

_INDEXING_EVENTS = frozenset(
    {
        EventName.PUBLISH.value,
        EventName.UPDATE.value,
        EventName.UPDATE_DEBOUNCED.value,
        EventName.INDEX.value,
    }
)


def _processor_event(job: Job) -> Optional[dict]:
    event = job.data.get("event")
    if isinstance(event, dict) and event.get("name") in _INDEXING_EVENTS:
        return event
    return None


class JobStatusAggregator:
    def __init__(
        self,
        store: VectorStore,
        documents: DocumentRepository,
        events_queue: JobQueue,
        processor_queue: JobQueue,
    ) -> None:
        self.store = store
        self.documents = documents
        self.events_queue = events_queue
        self.processor_queue = processor_queue

    async def get_indexing_status(self, team_id: str) -> IndexingStatus:
        indexed = await self.store.aggregate_documents(team_id)

        (
            events_active,
            events_delayed,
            events_waiting,
            processor_active,
            processor_waiting,
            processor_delayed,
            processor_failed,
        ) = await asyncio.gather(
            self.events_queue.list_by_state(JobState.ACTIVE),
            self.events_queue.list_by_state(JobState.DELAYED),
            self.events_queue.list_by_state(JobState.WAITING),
            self.processor_queue.list_by_state(JobState.ACTIVE),
            self.processor_queue.list_by_state(JobState.WAITING),
            self.processor_queue.list_by_state(JobState.DELAYED),
            self.processor_queue.list_by_state(JobState.FAILED),
        )

        in_flight: dict[str, tuple[IndexingState, Optional[str]]] = {}

        def classify(document_id: Optional[str], state: IndexingState, error: Optional[str] = None) -> None:
            if document_id and document_id not in in_flight:
                in_flight[document_id] = (state, error)

        for job in [*events_active, *events_delayed, *events_waiting]:
            state = _EVENTS_QUEUE_STATES.get(job.data.get("name"))
            if state is not None:
                classify(job.data.get("document_id"), state)

        for job in [*processor_active, *processor_waiting]:
            event = _processor_event(job)
            if event:
                classify(event.get("document_id"), IndexingState.INDEXING)

        for job in processor_delayed:
            event = _processor_event(job)
            if event:
                classify(event.get("document_id"), IndexingState.RETRYING)

        for job in processor_failed:
            event = _processor_event(job)
            if event:
                classify(event.get("document_id"), IndexingState.FAILED, job.failed_reason)

        indexing: list[IndexingDocumentStatus] = []
        if in_flight:
            # One batch lookup, scoped to the team: jobs for other teams' documents drop out here
            titles = await self.documents.find_titles(list(in_flight), team_id)
            for document_id, (state, error) in in_flight.items():
                if document_id not in titles:
                    continue
                indexing.append(
                    IndexingDocumentStatus(
                        document_id=document_id,
                        document_title=titles[document_id],
                        chunks=0,
                        status=state,
                        error=error,
                    )
                )

        logger.debug(
            f"[Status] team={team_id} | indexed={len(indexed)} in_flight={len(indexing)}"
        )
        return IndexingStatus(indexed=indexed, indexing=indexing)
