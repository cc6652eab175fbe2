"""Tests for the in-memory job queue and the queue worker."""

from unittest.mock import AsyncMock

import pytest

from matchday.errors import UnknownJobKindError
from matchday.models import JobStatus, ScheduledJob
from matchday.queue.base import FailOutcome, QueuedJob, RetryPolicy
from matchday.queue.memory import InMemoryJobQueue
from matchday.queue.worker import QueueWorker


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue(
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=30),
        lease_seconds=60,
        clock=clock,
    )


# =============================================================================
# QUEUE SEMANTICS
# =============================================================================


class TestRetryPolicy:
    def test_exponential_backoff(self):
        policy = RetryPolicy(backoff_seconds=30)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [30, 60, 120, 240]


class TestInMemoryJobQueue:
    @pytest.mark.asyncio
    async def test_duplicate_id_is_a_no_op(self, queue):
        assert await queue.enqueue("forecast_generate:1", "forecast_generate", {"fixture_id": 1}, 60) is True
        assert await queue.enqueue("forecast_generate:1", "forecast_generate", {"fixture_id": 1}, 10) is False
        assert len(queue.jobs) == 1
        assert queue.delayed["forecast_generate:1"] == queue.clock() + 60

    @pytest.mark.asyncio
    async def test_claims_only_due_jobs_once(self, queue, clock):
        await queue.enqueue("a", "data_refresh", {}, 0)
        await queue.enqueue("b", "data_refresh", {}, 120)

        first = await queue.claim(10)
        second = await queue.claim(10)

        assert [j.id for j in first] == ["a"]
        assert second == []

        clock.advance(121)
        assert [j.id for j in await queue.claim(10)] == ["b"]

    @pytest.mark.asyncio
    async def test_claim_respects_limit_and_order(self, queue, clock):
        for i, delay in enumerate([3, 1, 2]):
            await queue.enqueue(f"job-{i}", "data_refresh", {}, delay)
        clock.advance(5)

        claimed = await queue.claim(2)

        assert [j.id for j in claimed] == ["job-1", "job-2"]

    @pytest.mark.asyncio
    async def test_remove_only_while_waiting(self, queue):
        await queue.enqueue("waiting", "data_refresh", {}, 60)
        await queue.enqueue("running", "data_refresh", {}, 0)
        await queue.claim(1)

        assert await queue.remove("waiting") is True
        assert await queue.remove("running") is False
        assert await queue.remove("missing") is False
        # A removed id can be enqueued again (reschedule)
        assert await queue.enqueue("waiting", "data_refresh", {}, 30) is True

    @pytest.mark.asyncio
    async def test_failure_retries_with_backoff_then_dead_letters(self, queue, clock):
        await queue.enqueue("flaky", "forecast_generate", {"fixture_id": 7}, 0)

        outcomes = []
        for _ in range(3):
            [job] = await queue.claim(1)
            outcomes.append(await queue.fail(job, "boom"))
            clock.advance(queue.retry_policy.delay_for(job.attempts))

        assert outcomes == [FailOutcome.RETRYING, FailOutcome.RETRYING, FailOutcome.DEAD]
        dead = await queue.list_dead()
        assert [d.job.id for d in dead] == ["flaky"]
        assert dead[0].job.attempts == 3
        assert dead[0].as_dict()["payload"] == {"fixture_id": 7}
        # Dead-lettered id is released
        assert "flaky" not in queue.jobs

    @pytest.mark.asyncio
    async def test_retry_not_before_backoff(self, queue, clock):
        await queue.enqueue("flaky", "data_refresh", {}, 0)
        [job] = await queue.claim(1)
        await queue.fail(job, "boom")

        clock.advance(29)
        assert await queue.claim(1) == []
        clock.advance(2)
        assert [j.id for j in await queue.claim(1)] == ["flaky"]

    @pytest.mark.asyncio
    async def test_retry_dead_gives_fresh_budget(self, queue):
        await queue.enqueue("x", "data_refresh", {"fixture_id": 3}, 0)
        for _ in range(3):
            [job] = await queue.claim(1)
            await queue.fail(job, "boom")
            queue.delayed = {k: 0 for k in queue.delayed}

        assert await queue.retry_dead("x") is True
        assert await queue.retry_dead("x") is False
        [job] = await queue.claim(1)
        assert job.attempts == 0
        assert job.payload == {"fixture_id": 3}

    @pytest.mark.asyncio
    async def test_dead_letter_is_bounded(self, clock):
        queue = InMemoryJobQueue(
            retry_policy=RetryPolicy(max_attempts=1), dead_max_entries=2, clock=clock
        )
        for i in range(3):
            await queue.enqueue(f"j{i}", "data_refresh", {}, 0)
            [job] = await queue.claim(1)
            await queue.fail(job, "boom")
            clock.advance(1)

        assert sorted(queue.dead) == ["j1", "j2"]

    @pytest.mark.asyncio
    async def test_requeue_stalled_after_lease(self, queue, clock):
        await queue.enqueue("crashy", "data_refresh", {}, 0)
        [job] = await queue.claim(1)

        assert await queue.requeue_stalled() == 0
        clock.advance(61)
        assert await queue.requeue_stalled() == 1

        [again] = await queue.claim(1)
        assert again.id == "crashy"
        assert again.attempts == job.attempts

    @pytest.mark.asyncio
    async def test_counts(self, queue):
        await queue.enqueue("due", "data_refresh", {}, 0)
        await queue.enqueue("later", "data_refresh", {}, 600)
        await queue.enqueue("running", "data_refresh", {}, -1)
        await queue.claim(1)

        assert await queue.counts() == {"due": 1, "delayed": 1, "active": 1, "dead": 0}


class TestQueuedJobSerialization:
    def test_json_shape(self):
        job = QueuedJob(id="data_refresh:9", kind="data_refresh", payload={"fixture_id": 9}, run_at=5.0)
        assert QueuedJob.from_json(job.to_json()) == job


# =============================================================================
# WORKER
# =============================================================================


class TestQueueWorker:
    @staticmethod
    async def _scheduled_row(session_factory, make_fixture, job_id: str) -> ScheduledJob:
        fixture = await make_fixture()
        row = ScheduledJob(
            fixture_id=fixture.id,
            kind=job_id.split(":")[0],
            run_at=fixture.kickoff_at,
            queue_job_id=job_id,
        )
        async with session_factory() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
        return row

    @pytest.mark.asyncio
    async def test_success_completes_and_marks_done(self, queue, session_factory, make_fixture, get_row):
        row = await self._scheduled_row(session_factory, make_fixture, "data_refresh:1")
        handler = AsyncMock(return_value={"status": "ok"})
        worker = QueueWorker(queue, {"data_refresh": handler}, session_factory=session_factory)
        await queue.enqueue("data_refresh:1", "data_refresh", {"fixture_id": 1}, 0)

        [job] = await queue.claim(1)
        result = await worker.process(job)

        assert result["status"] == "done"
        handler.assert_awaited_once_with(job)
        assert queue.jobs == {}
        assert (await get_row(ScheduledJob, row.id)).status == JobStatus.DONE

    @pytest.mark.asyncio
    async def test_failure_is_retried_then_marked_dead(self, queue, session_factory, make_fixture, get_row):
        row = await self._scheduled_row(session_factory, make_fixture, "forecast_generate:1")
        handler = AsyncMock(side_effect=RuntimeError("provider down"))
        worker = QueueWorker(queue, {"forecast_generate": handler}, session_factory=session_factory)
        await queue.enqueue("forecast_generate:1", "forecast_generate", {"fixture_id": 1}, 0)

        statuses = []
        for _ in range(3):
            queue.delayed = {k: 0 for k in queue.delayed}
            [job] = await queue.claim(1)
            statuses.append((await worker.process(job))["status"])

        assert statuses == ["retrying", "retrying", "dead"]
        stored = await get_row(ScheduledJob, row.id)
        assert stored.status == JobStatus.DEAD
        assert stored.attempts == 3
        assert "provider down" in stored.last_error

    @pytest.mark.asyncio
    async def test_unknown_kind_goes_through_failure_path(self, queue):
        worker = QueueWorker(queue, {})
        await queue.enqueue("mystery:1", "mystery", {}, 0)
        [job] = await queue.claim(1)

        result = await worker.process(job)

        assert result["status"] == "retrying"
        assert UnknownJobKindError.__name__ in job.last_error

    @pytest.mark.asyncio
    async def test_run_once_bounded_by_concurrency(self, queue):
        handler = AsyncMock(return_value={})
        worker = QueueWorker(queue, {"data_refresh": handler}, concurrency=2)
        for i in range(5):
            await queue.enqueue(f"data_refresh:{i}", "data_refresh", {}, 0)

        claimed = await worker.run_once()
        await worker.drain()

        assert claimed == 2
        assert handler.await_count == 2
        assert len(queue.delayed) == 3
