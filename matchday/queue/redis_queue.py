"""
Redis-backed delayed job queue.

Keys (all under "q:{name}:"):
    jobs         HASH  job id -> job JSON (present while waiting or claimed)
    delayed      ZSET  job id -> run_at (epoch seconds)
    active       ZSET  job id -> lease expiry (claimed by a worker)
    dead         HASH  job id -> dead-letter JSON
    dead:index   ZSET  job id -> failed_at (for ordering / trimming)

Enqueue, claim, remove and stalled-requeue are Lua scripts so each is atomic
across any number of workers: a due job moves from `delayed` to `active` in
one step, so it is handed to at most one worker.
"""

import logging
import time
from typing import Callable, Optional

from redis.asyncio import Redis

from matchday.queue.base import (
    DeadLetterEntry,
    FailOutcome,
    JobQueue,
    QueuedJob,
    RetryPolicy,
)
from matchday.telemetry.metrics import record_queue_event, set_dead_letter_size

logger = logging.getLogger(__name__)

ENQUEUE_LUA = """
if redis.call('HEXISTS', KEYS[1], ARGV[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return 1
"""

CLAIM_LUA = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('ZADD', KEYS[2], ARGV[3], id)
end
return ids
"""

REMOVE_LUA = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 1 then
    redis.call('HDEL', KEYS[2], ARGV[1])
    return 1
end
return 0
"""

REQUEUE_STALLED_LUA = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('ZADD', KEYS[2], ARGV[1], id)
end
return #ids
"""


class RedisJobQueue(JobQueue):
    def __init__(
        self,
        redis: Redis,
        name: str = "matchday",
        retry_policy: Optional[RetryPolicy] = None,
        lease_seconds: int = 300,
        dead_max_entries: int = 1000,
        dead_alert_threshold: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(retry_policy or RetryPolicy())
        self.redis = redis
        self.name = name
        self.lease_seconds = lease_seconds
        self.dead_max_entries = dead_max_entries
        self.dead_alert_threshold = dead_alert_threshold
        self.clock = clock

        prefix = f"q:{name}:"
        self.jobs_key = prefix + "jobs"
        self.delayed_key = prefix + "delayed"
        self.active_key = prefix + "active"
        self.dead_key = prefix + "dead"
        self.dead_index_key = prefix + "dead:index"

        self._enqueue = redis.register_script(ENQUEUE_LUA)
        self._claim = redis.register_script(CLAIM_LUA)
        self._remove = redis.register_script(REMOVE_LUA)
        self._requeue_stalled = redis.register_script(REQUEUE_STALLED_LUA)

    async def enqueue(self, job_id: str, kind: str, payload: dict, delay_seconds: float) -> bool:
        now = self.clock()
        job = QueuedJob(
            id=job_id,
            kind=kind,
            payload=payload,
            run_at=now + max(delay_seconds, 0.0),
            max_attempts=self.retry_policy.max_attempts,
            enqueued_at=now,
        )
        added = await self._enqueue(
            keys=[self.jobs_key, self.delayed_key],
            args=[job_id, job.to_json(), job.run_at],
        )
        record_queue_event(kind, "enqueued" if added else "duplicate")
        return bool(added)

    async def remove(self, job_id: str) -> bool:
        removed = await self._remove(keys=[self.delayed_key, self.jobs_key], args=[job_id])
        return bool(removed)

    async def claim(self, limit: int) -> list[QueuedJob]:
        if limit <= 0:
            return []
        now = self.clock()
        ids = await self._claim(
            keys=[self.delayed_key, self.active_key],
            args=[now, limit, now + self.lease_seconds],
        )
        if not ids:
            return []

        raws = await self.redis.hmget(self.jobs_key, ids)
        jobs = []
        for job_id, raw in zip(ids, raws):
            if raw is None:
                # Removed between claim and read
                await self.redis.zrem(self.active_key, job_id)
                continue
            jobs.append(QueuedJob.from_json(raw))
        return jobs

    async def complete(self, job: QueuedJob) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.active_key, job.id)
            pipe.hdel(self.jobs_key, job.id)
            await pipe.execute()
        record_queue_event(job.kind, "completed")

    async def fail(self, job: QueuedJob, error: str) -> FailOutcome:
        now = self.clock()
        job.attempts += 1
        job.last_error = error[:1000]

        if job.attempts < job.max_attempts:
            delay = self.retry_policy.delay_for(job.attempts)
            job.run_at = now + delay
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self.jobs_key, job.id, job.to_json())
                pipe.zrem(self.active_key, job.id)
                pipe.zadd(self.delayed_key, {job.id: job.run_at})
                await pipe.execute()
            logger.warning(
                f"[QUEUE] Job {job.id} failed (attempt {job.attempts}/{job.max_attempts}), "
                f"retrying in {delay:.0f}s: {error}"
            )
            record_queue_event(job.kind, "retried")
            return FailOutcome.RETRYING

        entry = DeadLetterEntry(job=job, failed_at=now, error=job.last_error)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.active_key, job.id)
            pipe.hdel(self.jobs_key, job.id)
            pipe.hset(self.dead_key, job.id, entry.to_json())
            pipe.zadd(self.dead_index_key, {job.id: now})
            await pipe.execute()

        logger.error(f"[QUEUE] Job {job.id} dead-lettered after {job.attempts} attempts: {error}")
        record_queue_event(job.kind, "dead")
        await self._trim_dead()
        return FailOutcome.DEAD

    async def _trim_dead(self) -> None:
        size = await self.redis.zcard(self.dead_index_key)
        overflow = size - self.dead_max_entries
        if overflow > 0:
            oldest = await self.redis.zrange(self.dead_index_key, 0, overflow - 1)
            if oldest:
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.zrem(self.dead_index_key, *oldest)
                    pipe.hdel(self.dead_key, *oldest)
                    await pipe.execute()
            size -= len(oldest)

        set_dead_letter_size(size)
        if size >= self.dead_alert_threshold:
            logger.error(f"[QUEUE] Dead-letter list has {size} jobs (threshold {self.dead_alert_threshold})")

    async def requeue_stalled(self) -> int:
        count = await self._requeue_stalled(
            keys=[self.active_key, self.delayed_key],
            args=[self.clock()],
        )
        if count:
            logger.warning(f"[QUEUE] Requeued {count} stalled jobs (expired worker lease)")
        return int(count)

    async def list_dead(self, limit: int = 100) -> list[DeadLetterEntry]:
        ids = await self.redis.zrevrange(self.dead_index_key, 0, limit - 1)
        if not ids:
            return []
        raws = await self.redis.hmget(self.dead_key, ids)
        return [DeadLetterEntry.from_json(raw) for raw in raws if raw is not None]

    async def retry_dead(self, job_id: str) -> bool:
        raw = await self.redis.hget(self.dead_key, job_id)
        if raw is None:
            return False
        entry = DeadLetterEntry.from_json(raw)
        added = await self.enqueue(job_id, entry.job.kind, entry.job.payload, 0)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self.dead_key, job_id)
            pipe.zrem(self.dead_index_key, job_id)
            await pipe.execute()
        logger.info(f"[QUEUE] Dead job {job_id} requeued (added={added})")
        return True

    async def counts(self) -> dict:
        now = self.clock()
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcount(self.delayed_key, "-inf", now)
            pipe.zcard(self.delayed_key)
            pipe.zcard(self.active_key)
            pipe.zcard(self.dead_index_key)
            due, delayed, active, dead = await pipe.execute()
        return {"due": due, "delayed": delayed - due, "active": active, "dead": dead}

    async def close(self) -> None:
        await self.redis.aclose()
