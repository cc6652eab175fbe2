"""Queue worker: claims due jobs and dispatches them to handlers by kind."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from sqlalchemy import update

from matchday.database import SessionFactory
from matchday.errors import UnknownJobKindError
from matchday.models import JobStatus, ScheduledJob
from matchday.queue.base import FailOutcome, JobQueue, QueuedJob
from matchday.telemetry.sentry import sentry_job_context
from matchday.utils.time import utcnow

logger = logging.getLogger(__name__)

JobHandler = Callable[[QueuedJob], Awaitable[dict]]


class QueueWorker:
    """
    Pulls jobs from a shared JobQueue with bounded concurrency.

    Any number of workers (in any number of processes) may run against the
    same queue; the queue's atomic claim hands each job to one of them.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, JobHandler],
        session_factory: Optional[SessionFactory] = None,
        concurrency: int = 4,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.handlers = handlers
        self.session_factory = session_factory
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._semaphore = asyncio.Semaphore(concurrency)
        self._in_flight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        """Claim what fits in the free slots and process it. Returns claimed count."""
        free = self.concurrency - len(self._in_flight)
        if free <= 0:
            return 0
        jobs = await self.queue.claim(free)
        for job in jobs:
            task = asyncio.create_task(self._run_job(job))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        return len(jobs)

    async def drain(self) -> None:
        """Wait for every in-flight job to finish."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _run_job(self, job: QueuedJob) -> None:
        async with self._semaphore:
            await self.process(job)

    async def process(self, job: QueuedJob) -> dict:
        handler = self.handlers.get(job.kind)
        start = time.time()
        try:
            if handler is None:
                raise UnknownJobKindError(f"No handler for job kind {job.kind!r}")
            with sentry_job_context(job.kind, queue_job_id=job.id, attempt=job.attempts + 1):
                result = await handler(job)
        except Exception as e:
            logger.warning(f"[WORKER] Job {job.id} failed: {type(e).__name__}: {e}")
            outcome = await self.queue.fail(job, f"{type(e).__name__}: {e}")
            status = JobStatus.DEAD if outcome == FailOutcome.DEAD else JobStatus.PENDING
            await self._mark(job, status, error=str(e))
            return {"status": outcome.value, "job_id": job.id}

        await self.queue.complete(job)
        await self._mark(job, JobStatus.DONE)
        duration_ms = int((time.time() - start) * 1000)
        logger.info(f"[WORKER] Job {job.id} done in {duration_ms}ms: {result}")
        return {"status": "done", "job_id": job.id, "result": result}

    async def _mark(self, job: QueuedJob, status: str, error: Optional[str] = None) -> None:
        """Mirror the queue outcome onto the ScheduledJob row (if the job has one)."""
        if self.session_factory is None:
            return
        values = {"status": status, "attempts": job.attempts, "updated_at": utcnow()}
        if error is not None:
            values["last_error"] = error[:1000]
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(ScheduledJob)
                    .where(ScheduledJob.queue_job_id == job.id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except Exception as e:
            # The queue already holds the truth; the row is repaired by the next reconcile
            logger.error(f"[WORKER] Failed to update scheduled_jobs for {job.id}: {e}")

    async def _loop(self) -> None:
        logger.info(f"[WORKER] Started (concurrency={self.concurrency})")
        while not self._stopping.is_set():
            try:
                claimed = await self.run_once()
            except Exception as e:
                logger.error(f"[WORKER] Claim failed: {e}")
                claimed = 0
            if claimed == 0:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        await self.drain()
        logger.info("[WORKER] Stopped")

    def start(self) -> None:
        if self._loop_task is None:
            self._stopping.clear()
            self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop claiming; in-flight jobs are allowed to complete."""
        if self._loop_task is None:
            return
        self._stopping.set()
        await self._loop_task
        self._loop_task = None
