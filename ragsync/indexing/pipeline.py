"""
Lifecycle pipeline
-------------------
Two-stage queueing, as the host's event bus does it:

    host event -> EVENTS_QUEUE job (the event itself)
               -> one PROCESSOR_QUEUE job per interested processor
                  ({"processor": name, "event": event})
               -> processor.perform(event), retried with backoff on failure

Debounced updates are scheduled back onto EVENTS_QUEUE, so a pending
debounce shows up there as a delayed job, and a failing reindex shows up
on PROCESSOR_QUEUE as delayed (retrying) or failed.
"""
from __future__ import annotations

from typing import Protocol

from loguru import logger

from ragsync.queue.base import Job, JobQueue
from ragsync.schemas import EventName, LifecycleEvent


class Processor(Protocol):
    name: str
    applicable_events: frozenset[EventName]

    async def perform(self, event: LifecycleEvent) -> None:
        ...


class LifecyclePipeline:
    def __init__(
        self,
        events_queue: JobQueue,
        processor_queue: JobQueue,
        processors: list[Processor],
        attempts: int = 3,
        backoff_seconds: float = 10.0,
    ) -> None:
        self.events_queue = events_queue
        self.processor_queue = processor_queue
        self.processors = {p.name: p for p in processors}
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds

    async def publish(self, event: LifecycleEvent) -> Job:
        """Entry point for host lifecycle notifications."""
        return await self.events_queue.schedule(event.model_dump(mode="json"))

    async def handle_event_job(self, job: Job) -> None:
        event = LifecycleEvent.model_validate(job.data)
        for processor in self.processors.values():
            if event.name not in processor.applicable_events:
                continue
            await self.processor_queue.schedule(
                {"processor": processor.name, "event": job.data},
                attempts=self.attempts,
                backoff_seconds=self.backoff_seconds,
            )

    async def handle_processor_job(self, job: Job) -> None:
        processor = self.processors.get(job.data.get("processor"))
        if processor is None:
            logger.warning(f"[Pipeline] No processor named {job.data.get('processor')!r}")
            return
        await processor.perform(LifecycleEvent.model_validate(job.data["event"]))
