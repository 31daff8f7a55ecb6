"""
Tests for ragsync/queue/redis_queue.py
Runs against fakeredis. Two queue objects on one server stand in for two
processes sharing a Redis instance.
"""
import fakeredis
import pytest

from ragsync.queue.base import EVENTS_QUEUE, PROCESSOR_QUEUE
from ragsync.queue.redis_queue import RedisJobQueue
from ragsync.queue.worker import QueueWorker
from ragsync.schemas import EventName, JobState, LifecycleEvent
from ragsync.service import RagService

from conftest import make_document


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def queue(redis, clock):
    return RedisJobQueue(redis, "test", clock=clock)


class TestSchedule:
    """Test RedisJobQueue.schedule."""

    async def test_immediate_job_is_waiting(self, queue):
        job = await queue.schedule({"n": 1})

        waiting = await queue.list_by_state(JobState.WAITING)

        assert [j.uid for j in waiting] == [job.uid]
        assert waiting[0].data == {"n": 1}

    async def test_delayed_job_promoted_when_due(self, queue, clock):
        await queue.schedule({"n": 1}, delay=30)
        assert await queue.take() is None

        clock.advance(30)
        job = await queue.take()

        assert job.data == {"n": 1}
        assert job.state == JobState.ACTIVE
        assert await queue.list_by_state(JobState.DELAYED) == []

    async def test_same_id_from_two_processes_keeps_one_pending_job(self, redis, clock):
        first = RedisJobQueue(redis, "test", clock=clock)
        second = RedisJobQueue(redis, "test", clock=clock)

        await first.schedule({"n": 1}, delay=30, job_id="rag-index-d1")
        await second.schedule({"n": 2}, delay=30, job_id="rag-index-d1")

        delayed = await first.list_by_state(JobState.DELAYED)

        assert len(delayed) == 1
        assert delayed[0].data == {"n": 2}
        assert await second.depth() == 1

    async def test_active_job_is_not_replaced(self, queue):
        await queue.schedule({"n": 1}, job_id="rag-index-d1")
        active = await queue.take()

        await queue.schedule({"n": 2}, delay=30, job_id="rag-index-d1")

        assert [j.uid for j in await queue.list_by_state(JobState.ACTIVE)] == [active.uid]
        assert len(await queue.list_by_state(JobState.DELAYED)) == 1
        assert await queue.depth() == 2

    async def test_completing_the_active_job_keeps_the_newer_one_replaceable(self, queue):
        await queue.schedule({"n": 1}, job_id="rag-index-d1")
        active = await queue.take()
        await queue.schedule({"n": 2}, delay=30, job_id="rag-index-d1")

        await queue.complete(active)
        await queue.schedule({"n": 3}, delay=30, job_id="rag-index-d1")

        delayed = await queue.list_by_state(JobState.DELAYED)
        assert [j.data for j in delayed] == [{"n": 3}]

    async def test_queues_are_isolated_by_name(self, redis, clock):
        events = RedisJobQueue(redis, EVENTS_QUEUE, clock=clock)
        processors = RedisJobQueue(redis, PROCESSOR_QUEUE, clock=clock)

        await events.schedule({}, job_id="rag-index-d1")

        assert await events.depth() == 1
        assert await processors.depth() == 0


class TestFail:
    """Test retry and failure bookkeeping."""

    async def test_backoff_doubles_then_fails(self, queue, clock):
        await queue.schedule({}, attempts=3, backoff_seconds=10)

        job = await queue.take()
        await queue.fail(job, RuntimeError("first"))
        assert job.state == JobState.DELAYED
        assert (job.run_at - clock()).total_seconds() == 10

        clock.advance(10)
        job = await queue.take()
        assert job.attempts_made == 1
        await queue.fail(job, RuntimeError("second"))
        assert (job.run_at - clock()).total_seconds() == 20

        clock.advance(20)
        job = await queue.take()
        await queue.fail(job, RuntimeError("third"))

        failed = await queue.list_by_state(JobState.FAILED)
        assert len(failed) == 1
        assert failed[0].failed_reason == "third"
        assert failed[0].attempts_made == 3

    async def test_failed_history_is_bounded(self, redis, clock):
        queue = RedisJobQueue(redis, "test", clock=clock, keep_failed=2)
        for i in range(4):
            await queue.schedule({"n": i})
            job = await queue.take()
            await queue.fail(job, RuntimeError(str(i)))
            clock.advance(1)

        failed = await queue.list_by_state(JobState.FAILED)

        assert [j.data["n"] for j in failed] == [2, 3]

    async def test_worker_drains_redis_queue(self, queue):
        seen = []

        async def handler(job):
            seen.append(job.data["n"])

        for n in range(3):
            await queue.schedule({"n": n})

        processed = await QueueWorker(queue, handler).drain()

        assert processed == 3
        assert seen == [0, 1, 2]
        assert await queue.depth() == 0


class TestSharedService:
    """Two RagService instances on one Redis behave like one schedule."""

    def _service(self, redis, store, documents, settings_store, config, providers, clock):
        queues = (
            RedisJobQueue(redis, EVENTS_QUEUE, clock=clock),
            RedisJobQueue(redis, PROCESSOR_QUEUE, clock=clock),
        )
        return RagService(
            store,
            documents,
            settings_store,
            config=config,
            providers=providers,
            queues=queues,
            clock=clock,
        )

    async def test_updates_from_two_processes_debounce_to_one_job(
        self, redis, store, documents, settings_store, config, providers, clock
    ):
        documents.put(make_document())
        api = self._service(redis, store, documents, settings_store, config, providers, clock)
        worker = self._service(redis, store, documents, settings_store, config, providers, clock)
        update = LifecycleEvent(name=EventName.UPDATE, document_id="doc-1", team_id="team-1")

        await api.handle_event(update)
        await worker.handle_event(update)
        await api.run_pending()
        await worker.run_pending()

        delayed = await worker.events_queue.list_by_state(JobState.DELAYED)
        assert [j.id for j in delayed] == ["rag-index-doc-1"]
