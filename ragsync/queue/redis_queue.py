"""
Redis job queue
----------------
JobQueue backed by Redis, shared by every API and worker process that points
at the same server. Jobs outlive restarts, so a debounced reindex or a
pending retry is not lost when a process goes away.

Layout under ``{prefix}:{queue}``:

    job:<uid>   JSON record for one enqueued job
    waiting     sorted set of uids, scored by run_at
    delayed     sorted set of uids, scored by run_at
    active      sorted set of uids, scored by claim time
    failed      sorted set of uids, scored by failure time
    ids         hash job id -> uid of the latest job scheduled under it

Scheduling under a job id replaces the job that ``ids`` points at while it
is still waiting or delayed. The check and the swap run in one
WATCH/MULTI transaction, so two processes scheduling the same id leave one
pending job.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import orjson
from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import WatchError

from ragsync.queue.base import Job
from ragsync.schemas import JobState, utcnow
from ragsync.utils.helpers import parse_timestamp

DEFAULT_PREFIX = "ragsync:queue"


class RedisJobQueue:
    def __init__(
        self,
        redis: Redis,
        name: str,
        prefix: str = DEFAULT_PREFIX,
        clock: Callable[[], datetime] = utcnow,
        keep_failed: int = 100,
    ) -> None:
        self.name = name
        self.clock = clock
        self.keep_failed = keep_failed
        self._redis = redis
        self._owns_client = False

        base = f"{prefix}:{name}"
        self._job_prefix = f"{base}:job:"
        self._ids = f"{base}:ids"
        self._keys = {
            JobState.WAITING: f"{base}:waiting",
            JobState.DELAYED: f"{base}:delayed",
            JobState.ACTIVE: f"{base}:active",
            JobState.FAILED: f"{base}:failed",
        }

    @classmethod
    def from_url(cls, url: str, name: str, **kwargs: Any) -> "RedisJobQueue":
        queue = cls(Redis.from_url(url, decode_responses=True), name, **kwargs)
        queue._owns_client = True
        logger.info(f"[Queue:{name}] Using Redis at {url.rsplit('@', 1)[-1]}")
        return queue

    # --- Scheduling -----------------------------------------------------------

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
        target = self._keys[job.state]

        if job_id is None:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.uid), _dump(job))
                pipe.zadd(target, {job.uid: job.run_at.timestamp()})
                await pipe.execute()
            return job

        waiting, delayed = self._keys[JobState.WAITING], self._keys[JobState.DELAYED]
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self._ids, waiting, delayed)
                    previous = await pipe.hget(self._ids, job_id)
                    replaced = previous is not None and (
                        await pipe.zscore(waiting, previous) is not None
                        or await pipe.zscore(delayed, previous) is not None
                    )
                    pipe.multi()
                    if replaced:
                        pipe.zrem(waiting, previous)
                        pipe.zrem(delayed, previous)
                        pipe.delete(self._job_key(previous))
                    pipe.set(self._job_key(job.uid), _dump(job))
                    pipe.zadd(target, {job.uid: job.run_at.timestamp()})
                    pipe.hset(self._ids, job_id, job.uid)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        if replaced:
            logger.debug(f"[Queue:{self.name}] Replaced pending job {job_id}")
        return job

    async def list_by_state(self, state: JobState) -> list[Job]:
        key = self._keys.get(state)
        if key is None:
            return []
        await self._promote_due()
        uids = await self._redis.zrange(key, 0, -1)
        if not uids:
            return []
        records = await self._redis.mget([self._job_key(uid) for uid in uids])
        return [
            _load(uid, raw, self.name, state)
            for uid, raw in zip(uids, records)
            if raw is not None
        ]

    # --- Worker side ----------------------------------------------------------

    async def take(self) -> Optional[Job]:
        """Claim the oldest runnable job, marking it active."""
        await self._promote_due()
        waiting, active = self._keys[JobState.WAITING], self._keys[JobState.ACTIVE]

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(waiting)
                    head = await pipe.zrange(waiting, 0, 0)
                    if not head:
                        return None
                    uid = head[0]
                    pipe.multi()
                    pipe.zrem(waiting, uid)
                    pipe.zadd(active, {uid: self.clock().timestamp()})
                    pipe.get(self._job_key(uid))
                    _, _, raw = await pipe.execute()
                    break
                except WatchError:
                    continue

        if raw is None:
            logger.warning(f"[Queue:{self.name}] Job record {uid} missing, dropping")
            await self._redis.zrem(active, uid)
            return None
        return _load(uid, raw, self.name, JobState.ACTIVE)

    async def complete(self, job: Job) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._keys[JobState.ACTIVE], job.uid)
            pipe.delete(self._job_key(job.uid))
            await pipe.execute()
        job.state = JobState.COMPLETED
        await self._release_id(job)

    async def fail(self, job: Job, error: BaseException, retryable: bool = True) -> None:
        job.attempts_made += 1
        job.failed_reason = str(error) or error.__class__.__name__
        now = self.clock()

        if retryable and job.attempts_made < job.attempts:
            delay = job.backoff_seconds * (2 ** (job.attempts_made - 1))
            job.state = JobState.DELAYED
            job.run_at = now + timedelta(seconds=delay)
            await self._move(job, JobState.DELAYED, job.run_at.timestamp())
            logger.warning(
                f"[Queue:{self.name}] Job {job.id} failed "
                f"(attempt {job.attempts_made}/{job.attempts}), retrying in {delay:.1f}s"
            )
            return

        job.state = JobState.FAILED
        await self._move(job, JobState.FAILED, now.timestamp())
        await self._release_id(job)
        logger.error(f"[Queue:{self.name}] Job {job.id} failed permanently: {job.failed_reason}")
        await self._trim_failed()

    async def depth(self) -> int:
        async with self._redis.pipeline(transaction=False) as pipe:
            for state in (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE):
                pipe.zcard(self._keys[state])
            counts = await pipe.execute()
        return sum(counts)

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()

    # --- Internals ------------------------------------------------------------

    def _job_key(self, uid: str) -> str:
        return f"{self._job_prefix}{uid}"

    async def _move(self, job: Job, state: JobState, score: float) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._keys[JobState.ACTIVE], job.uid)
            pipe.set(self._job_key(job.uid), _dump(job))
            pipe.zadd(self._keys[state], {job.uid: score})
            await pipe.execute()

    async def _promote_due(self) -> None:
        delayed, waiting = self._keys[JobState.DELAYED], self._keys[JobState.WAITING]
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(delayed)
                due = await pipe.zrangebyscore(delayed, "-inf", self.clock().timestamp(), withscores=True)
                if not due:
                    return
                pipe.multi()
                pipe.zrem(delayed, *[uid for uid, _ in due])
                pipe.zadd(waiting, dict(due))
                await pipe.execute()
            except WatchError:
                # Another process moved them first
                return

    async def _release_id(self, job: Job) -> None:
        """Drop the id mapping if it still points at this job."""
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self._ids)
                    if await pipe.hget(self._ids, job.id) != job.uid:
                        return
                    pipe.multi()
                    pipe.hdel(self._ids, job.id)
                    await pipe.execute()
                    return
                except WatchError:
                    continue

    async def _trim_failed(self) -> None:
        failed = self._keys[JobState.FAILED]
        excess = await self._redis.zcard(failed) - self.keep_failed
        if excess <= 0:
            return
        stale = await self._redis.zrange(failed, 0, excess - 1)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(failed, *stale)
            pipe.delete(*[self._job_key(uid) for uid in stale])
            await pipe.execute()


def _dump(job: Job) -> bytes:
    return orjson.dumps(
        {
            "id": job.id,
            "data": job.data,
            "runAt": job.run_at,
            "createdAt": job.created_at,
            "attempts": job.attempts,
            "attemptsMade": job.attempts_made,
            "backoffSeconds": job.backoff_seconds,
            "failedReason": job.failed_reason,
        }
    )


def _load(uid: str, raw: str | bytes, queue: str, state: JobState) -> Job:
    record = orjson.loads(raw)
    return Job(
        id=record["id"],
        queue=queue,
        data=record["data"],
        state=state,
        run_at=parse_timestamp(record["runAt"]),
        created_at=parse_timestamp(record["createdAt"]),
        attempts=record["attempts"],
        attempts_made=record["attemptsMade"],
        backoff_seconds=record["backoffSeconds"],
        failed_reason=record["failedReason"],
        uid=uid,
    )
