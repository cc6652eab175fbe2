"""In-memory JobQueue for tests and single-process development.

Same semantics as RedisJobQueue (dedupe by id, lease, retry, dead letter) but
only safe inside one event loop.
"""

import logging
import time
from typing import Callable, Optional

from matchday.queue.base import (
    DeadLetterEntry,
    FailOutcome,
    JobQueue,
    QueuedJob,
    RetryPolicy,
)

logger = logging.getLogger(__name__)


class InMemoryJobQueue(JobQueue):
    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        lease_seconds: int = 300,
        dead_max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(retry_policy or RetryPolicy())
        self.lease_seconds = lease_seconds
        self.dead_max_entries = dead_max_entries
        self.clock = clock
        self.jobs: dict[str, QueuedJob] = {}
        self.delayed: dict[str, float] = {}
        self.active: dict[str, float] = {}
        self.dead: dict[str, DeadLetterEntry] = {}

    async def enqueue(self, job_id: str, kind: str, payload: dict, delay_seconds: float) -> bool:
        if job_id in self.jobs:
            return False
        now = self.clock()
        job = QueuedJob(
            id=job_id,
            kind=kind,
            payload=dict(payload),
            run_at=now + max(delay_seconds, 0.0),
            max_attempts=self.retry_policy.max_attempts,
            enqueued_at=now,
        )
        self.jobs[job_id] = job
        self.delayed[job_id] = job.run_at
        return True

    async def remove(self, job_id: str) -> bool:
        if job_id not in self.delayed:
            return False
        del self.delayed[job_id]
        del self.jobs[job_id]
        return True

    async def claim(self, limit: int) -> list[QueuedJob]:
        now = self.clock()
        due = sorted((run_at, job_id) for job_id, run_at in self.delayed.items() if run_at <= now)
        claimed = []
        for _, job_id in due[:max(limit, 0)]:
            del self.delayed[job_id]
            self.active[job_id] = now + self.lease_seconds
            claimed.append(self.jobs[job_id])
        return claimed

    async def complete(self, job: QueuedJob) -> None:
        self.active.pop(job.id, None)
        self.jobs.pop(job.id, None)

    async def fail(self, job: QueuedJob, error: str) -> FailOutcome:
        now = self.clock()
        job.attempts += 1
        job.last_error = error[:1000]
        self.active.pop(job.id, None)

        if job.attempts < job.max_attempts:
            job.run_at = now + self.retry_policy.delay_for(job.attempts)
            self.jobs[job.id] = job
            self.delayed[job.id] = job.run_at
            return FailOutcome.RETRYING

        self.jobs.pop(job.id, None)
        self.dead[job.id] = DeadLetterEntry(job=job, failed_at=now, error=job.last_error)
        while len(self.dead) > self.dead_max_entries:
            oldest = min(self.dead.values(), key=lambda e: e.failed_at)
            del self.dead[oldest.job.id]
        logger.error(f"[QUEUE] Job {job.id} dead-lettered after {job.attempts} attempts: {error}")
        return FailOutcome.DEAD

    async def requeue_stalled(self) -> int:
        now = self.clock()
        stalled = [job_id for job_id, lease in self.active.items() if lease <= now]
        for job_id in stalled:
            del self.active[job_id]
            self.delayed[job_id] = now
        return len(stalled)

    async def list_dead(self, limit: int = 100) -> list[DeadLetterEntry]:
        entries = sorted(self.dead.values(), key=lambda e: e.failed_at, reverse=True)
        return entries[:limit]

    async def retry_dead(self, job_id: str) -> bool:
        entry = self.dead.pop(job_id, None)
        if entry is None:
            return False
        await self.enqueue(job_id, entry.job.kind, entry.job.payload, 0)
        return True

    async def counts(self) -> dict:
        now = self.clock()
        due = sum(1 for run_at in self.delayed.values() if run_at <= now)
        return {
            "due": due,
            "delayed": len(self.delayed) - due,
            "active": len(self.active),
            "dead": len(self.dead),
        }
