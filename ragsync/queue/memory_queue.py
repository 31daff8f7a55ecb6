"""
In-process job queue
---------------------
asyncio implementation of the JobQueue capability for tests and
single-process development. Same state model as RedisJobQueue:
waiting -> active -> (completed | delayed for retry | failed). Delayed
jobs become waiting once their run_at passes.

Scheduling under an existing job id replaces the pending job with that id.
If the job with that id is already active, the new job is queued alongside
it; the settle step's timestamp check drops whichever one turns out stale.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from loguru import logger

from ragsync.queue.base import Job
from ragsync.schemas import JobState, utcnow

_PENDING = (JobState.WAITING, JobState.DELAYED)


class InMemoryJobQueue:
    def __init__(
        self,
        name: str,
        clock: Callable[[], datetime] = utcnow,
        keep_failed: int = 100,
    ) -> None:
        self.name = name
        self.clock = clock
        self.keep_failed = keep_failed
        self._jobs: list[Job] = []
        self._lock = asyncio.Lock()

    async def schedule(
        self,
        data: dict[str, Any],
        delay: float = 0.0,
        job_id: Optional[str] = None,
        attempts: int = 1,
        backoff_seconds: float = 1.0,
    ) -> Job:
        now = self.clock()
        job = Job(
            id=job_id or str(uuid.uuid4()),
            queue=self.name,
            data=data,
            state=JobState.DELAYED if delay > 0 else JobState.WAITING,
            run_at=now + timedelta(seconds=delay),
            created_at=now,
            attempts=max(1, attempts),
            backoff_seconds=backoff_seconds,
        )
        async with self._lock:
            if job_id is not None:
                before = len(self._jobs)
                self._jobs = [
                    j for j in self._jobs if not (j.id == job_id and j.state in _PENDING)
                ]
                if len(self._jobs) < before:
                    logger.debug(f"[Queue:{self.name}] Replaced pending job {job_id}")
            self._jobs.append(job)
        return job

    async def list_by_state(self, state: JobState) -> list[Job]:
        self._promote_due()
        return [j for j in self._jobs if j.state == state]

    async def take(self) -> Optional[Job]:
        """Claim the oldest runnable job, marking it active."""
        async with self._lock:
            self._promote_due()
            for job in self._jobs:
                if job.state == JobState.WAITING:
                    job.state = JobState.ACTIVE
                    return job
        return None

    async def complete(self, job: Job) -> None:
        async with self._lock:
            job.state = JobState.COMPLETED
            self._jobs = [j for j in self._jobs if j is not job]

    async def fail(self, job: Job, error: BaseException, retryable: bool = True) -> None:
        async with self._lock:
            job.attempts_made += 1
            job.failed_reason = str(error) or error.__class__.__name__
            if retryable and job.attempts_made < job.attempts:
                delay = job.backoff_seconds * (2 ** (job.attempts_made - 1))
                job.state = JobState.DELAYED
                job.run_at = self.clock() + timedelta(seconds=delay)
                logger.warning(
                    f"[Queue:{self.name}] Job {job.id} failed "
                    f"(attempt {job.attempts_made}/{job.attempts}), retrying in {delay:.1f}s"
                )
                return

            job.state = JobState.FAILED
            logger.error(
                f"[Queue:{self.name}] Job {job.id} failed permanently: {job.failed_reason}"
            )
            failed = [j for j in self._jobs if j.state == JobState.FAILED]
            for stale in failed[: max(0, len(failed) - self.keep_failed)]:
                self._jobs.remove(stale)

    def _promote_due(self) -> None:
        now = self.clock()
        for job in self._jobs:
            if job.state == JobState.DELAYED and job.run_at <= now:
                job.state = JobState.WAITING

    async def depth(self) -> int:
        return len(self)

    async def close(self) -> None:
        self._jobs = []

    def __len__(self) -> int:
        return sum(1 for j in self._jobs if j.state in _PENDING or j.state == JobState.ACTIVE)
