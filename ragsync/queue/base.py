"""Job queue capability used by the lifecycle pipeline and the status projection."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from ragsync.schemas import JobState

# Queue names: lifecycle events land on EVENTS_QUEUE; each event is fanned
# out to the processors that handle it on PROCESSOR_QUEUE.
EVENTS_QUEUE = "globalEvents"
PROCESSOR_QUEUE = "processors"


@dataclass
class Job:
    id: str
    queue: str
    data: dict[str, Any]
    state: JobState
    run_at: datetime
    created_at: datetime
    attempts: int = 1
    attempts_made: int = 0
    backoff_seconds: float = 1.0
    failed_reason: Optional[str] = None
    # Unique per enqueued job; several jobs can share an id
    uid: str = field(default_factory=lambda: uuid.uuid4().hex)


class JobQueue(Protocol):
    name: str

    async def schedule(
        self,
        data: dict[str, Any],
        delay: float = 0.0,
        job_id: Optional[str] = None,
        attempts: int = 1,
        backoff_seconds: float = 1.0,
    ) -> Job:
        """
        Enqueue ``data`` to run after ``delay`` seconds.

        A job scheduled under an existing ``job_id`` replaces that job while
        it is still waiting or delayed, so at most one pending job exists
        per key.
        """
        ...

    async def list_by_state(self, state: JobState) -> list[Job]:
        ...

    async def take(self) -> Optional[Job]:
        """Claim the oldest runnable job, marking it active."""
        ...

    async def complete(self, job: Job) -> None:
        ...

    async def fail(self, job: Job, error: BaseException, retryable: bool = True) -> None:
        ...

    async def depth(self) -> int:
        """Number of pending and active jobs."""
        ...

    async def close(self) -> None:
        ...
