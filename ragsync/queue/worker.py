"""
Queue worker
-------------
Pulls runnable jobs from a JobQueue and hands them to an async
handler. Handler failures go back to the queue's retry policy, except
configuration errors, which fail the job at once: retrying cannot fix a
missing credential.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from ragsync.errors import ConfigurationError
from ragsync.queue.base import Job, JobQueue

JobHandler = Callable[[Job], Awaitable[None]]


class QueueWorker:
    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        poll_interval: float = 1.0,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.poll_interval = poll_interval

    async def process_one(self) -> bool:
        """Run one runnable job. Returns False when nothing was runnable."""
        job = await self.queue.take()
        if job is None:
            return False
        try:
            await self.handler(job)
        except ConfigurationError as exc:
            await self.queue.fail(job, exc, retryable=False)
        except Exception as exc:
            logger.opt(exception=exc).debug(f"[Worker:{self.queue.name}] Job {job.id} raised")
            await self.queue.fail(job, exc)
        else:
            await self.queue.complete(job)
        return True

    async def drain(self) -> int:
        """Run jobs until none is runnable right now. Returns the count processed."""
        processed = 0
        while await self.process_one():
            processed += 1
        return processed

    async def run(self) -> None:
        """Poll forever; cancel the task to stop."""
        logger.info(f"[Worker:{self.queue.name}] Started | poll={self.poll_interval}s")
        try:
            while True:
                if not await self.process_one():
                    await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            logger.info(f"[Worker:{self.queue.name}] Stopped")
            raise
