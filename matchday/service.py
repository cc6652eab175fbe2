"""
Service wiring and lifecycle.

MatchdayService owns the periodic tasks (APScheduler) and the queue workers.
All collaborators are injected so tests can run it against an in-memory
queue and a SQLite database; `build_service()` wires the production ones from
Settings.

Roles:
    scheduler  reconcile + live poll + recovery sweep + queue maintenance
    worker     queue workers only (scale horizontally)
    all        both, in one process
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from redis.asyncio import Redis

from matchday.cache.client import CacheClient
from matchday.cache.invalidation import InvalidationCoordinator
from matchday.config import Settings
from matchday.database import SessionFactory, configure_database
from matchday.health.manager import PredictorHealthManager
from matchday.jobs.handlers import JobHandlers
from matchday.jobs.scheduler import FixtureJobScheduler
from matchday.jobs.tracking import cleanup_old_runs, run_tracked
from matchday.live.poller import LivePoller
from matchday.providers.api_football import ApiFootballSource
from matchday.providers.base import ForecastGenerator, LiveDataSource
from matchday.providers.forecast import ChatForecastGenerator
from matchday.queue.base import JobQueue, RetryPolicy
from matchday.queue.memory import InMemoryJobQueue
from matchday.queue.redis_queue import RedisJobQueue
from matchday.queue.worker import QueueWorker
from matchday.telemetry.metrics import set_dead_letter_size

logger = logging.getLogger(__name__)


@dataclass
class ServiceIntervals:
    reconcile: timedelta = timedelta(minutes=10)
    schedule_window: timedelta = timedelta(hours=48)
    live_poll: timedelta = timedelta(seconds=60)
    recovery: timedelta = timedelta(minutes=5)
    queue_maintenance: timedelta = timedelta(minutes=1)
    cleanup: timedelta = timedelta(hours=6)
    done_job_retention: timedelta = timedelta(hours=72)
    job_run_retention_days: int = 7


class MatchdayService:
    def __init__(
        self,
        session_factory: SessionFactory,
        queue: JobQueue,
        cache: CacheClient,
        source: LiveDataSource,
        forecaster: ForecastGenerator,
        job_scheduler: FixtureJobScheduler,
        health: PredictorHealthManager,
        poller: LivePoller,
        workers: list[QueueWorker],
        intervals: Optional[ServiceIntervals] = None,
        role: str = "all",
        aps_scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.cache = cache
        self.source = source
        self.forecaster = forecaster
        self.job_scheduler = job_scheduler
        self.health = health
        self.poller = poller
        self.workers = workers
        self.intervals = intervals or ServiceIntervals()
        self.role = role
        self.aps = aps_scheduler or AsyncIOScheduler(timezone="UTC")
        self._started = False

    @property
    def runs_periodic_tasks(self) -> bool:
        return self.role in ("all", "scheduler")

    @property
    def runs_workers(self) -> bool:
        return self.role in ("all", "worker")

    # ── periodic tasks ───────────────────────────────────────────────────

    async def reconcile(self) -> dict:
        return await run_tracked(
            "reconcile",
            lambda: self.job_scheduler.reconcile_schedule(self.intervals.schedule_window),
            self.session_factory,
        )

    async def live_poll(self) -> dict:
        return await run_tracked("live_poll", self.poller.poll_cycle, self.session_factory)

    async def recovery_sweep(self) -> dict:
        return await run_tracked("predictor_recovery", self.health.attempt_recovery, self.session_factory)

    async def queue_maintenance(self) -> dict:
        async def _maintain() -> dict:
            requeued = await self.queue.requeue_stalled()
            counts = await self.queue.counts()
            set_dead_letter_size(counts.get("dead", 0))
            return {"requeued": requeued, **counts}

        return await run_tracked("queue_maintenance", _maintain)

    async def cleanup(self) -> dict:
        async def _cleanup() -> dict:
            deleted = await self.job_scheduler.cleanup_finished_jobs(self.intervals.done_job_retention)
            runs_deleted = await cleanup_old_runs(self.session_factory, self.intervals.job_run_retention_days)
            return {"deleted": deleted, "job_runs_deleted": runs_deleted}

        return await run_tracked("scheduled_jobs_cleanup", _cleanup, self.session_factory)

    def _add_interval_job(self, func, interval: timedelta, job_id: str, name: str) -> None:
        self.aps.add_job(
            func,
            trigger=IntervalTrigger(seconds=int(interval.total_seconds())),
            id=job_id,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=int(interval.total_seconds()),
        )

    # ── lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            logger.warning("Service already started, skipping duplicate start")
            return

        if self.runs_periodic_tasks:
            # Catch-up before anything else: repair schedules lost while we were down
            await self.reconcile()

            self._add_interval_job(self.reconcile, self.intervals.reconcile, "reconcile", "Fixture schedule reconcile")
            self._add_interval_job(self.live_poll, self.intervals.live_poll, "live_poll", "Live poll + settlement")
            self._add_interval_job(self.recovery_sweep, self.intervals.recovery, "predictor_recovery", "Predictor recovery sweep")
            self._add_interval_job(self.queue_maintenance, self.intervals.queue_maintenance, "queue_maintenance", "Queue stalled-job requeue")
            self._add_interval_job(self.cleanup, self.intervals.cleanup, "scheduled_jobs_cleanup", "Finished scheduled_jobs and old job_runs cleanup")
            self.aps.start()
            logger.info(f"Scheduler started with {len(self.aps.get_jobs())} periodic tasks")

        if self.runs_workers:
            for worker in self.workers:
                worker.start()
            logger.info(f"Started {len(self.workers)} queue workers")

        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        logger.info("Stopping matchday service...")
        if self.aps.running:
            self.aps.shutdown(wait=False)
        for worker in self.workers:
            await worker.stop()
        await self.source.close()
        await self.forecaster.close()
        await self.queue.close()
        await self.cache.close()
        self._started = False
        logger.info("Matchday service stopped")


def build_service(settings: Settings, session_factory: Optional[SessionFactory] = None) -> MatchdayService:
    """Wire the production service from settings. Call settings.validate_required() first."""
    session_factory = session_factory or configure_database(settings.DATABASE_URL)

    retry_policy = RetryPolicy(
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        backoff_seconds=settings.QUEUE_BACKOFF_SECONDS,
    )
    redis: Optional[Redis] = None
    if settings.QUEUE_BACKEND == "redis":
        redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
        queue: JobQueue = RedisJobQueue(
            redis,
            name=settings.QUEUE_NAME,
            retry_policy=retry_policy,
            lease_seconds=settings.QUEUE_LEASE_SECONDS,
            dead_max_entries=settings.DLQ_MAX_ENTRIES,
            dead_alert_threshold=settings.DLQ_ALERT_THRESHOLD,
        )
    else:
        logger.warning("QUEUE_BACKEND=memory: jobs do not survive restarts and are not shared across processes")
        queue = InMemoryJobQueue(retry_policy=retry_policy, lease_seconds=settings.QUEUE_LEASE_SECONDS)

    cache = CacheClient(redis) if redis is not None else CacheClient.from_url(settings.REDIS_URL)
    invalidator = InvalidationCoordinator(cache)

    source = ApiFootballSource(
        api_key=settings.FOOTBALL_API_KEY,
        base_url=settings.FOOTBALL_API_BASE_URL,
        timeout=settings.FOOTBALL_API_TIMEOUT_SECONDS,
        max_retries=settings.FOOTBALL_API_MAX_RETRIES,
    )
    forecaster = ChatForecastGenerator(
        api_url=settings.FORECAST_API_URL,
        api_key=settings.FORECAST_API_KEY,
        timeout=settings.FORECAST_TIMEOUT_SECONDS,
    )

    job_scheduler = FixtureJobScheduler(
        session_factory,
        queue,
        invalidator,
        data_refresh_offset=timedelta(minutes=settings.DATA_REFRESH_OFFSET_MINUTES),
        forecast_offset=timedelta(minutes=settings.FORECAST_OFFSET_MINUTES),
        live_trigger_grace=timedelta(minutes=settings.LIVE_TRIGGER_GRACE_MINUTES),
    )
    health = PredictorHealthManager(
        session_factory,
        invalidator,
        failure_threshold=settings.HEALTH_FAILURE_THRESHOLD,
        cooldown=timedelta(minutes=settings.HEALTH_COOLDOWN_MINUTES),
    )
    poller = LivePoller(
        session_factory,
        source,
        job_scheduler,
        invalidator,
        tracked_competitions=settings.tracked_competition_ids,
        lookback=timedelta(hours=settings.LIVE_LOOKBACK_HOURS),
        lookahead=timedelta(minutes=settings.LIVE_LOOKAHEAD_MINUTES),
        redis=redis,
        lock_ttl_seconds=max(settings.LIVE_POLL_INTERVAL_SECONDS - 5, 5),
    )
    handlers = JobHandlers(session_factory, job_scheduler, source, forecaster, health, poller)
    worker = QueueWorker(
        queue,
        handlers.as_mapping(),
        session_factory=session_factory,
        concurrency=settings.WORKER_CONCURRENCY,
        poll_interval=settings.QUEUE_POLL_INTERVAL_SECONDS,
    )

    intervals = ServiceIntervals(
        reconcile=timedelta(minutes=settings.RECONCILE_INTERVAL_MINUTES),
        schedule_window=timedelta(hours=settings.SCHEDULE_WINDOW_HOURS),
        live_poll=timedelta(seconds=settings.LIVE_POLL_INTERVAL_SECONDS),
        recovery=timedelta(minutes=settings.RECOVERY_INTERVAL_MINUTES),
        done_job_retention=timedelta(hours=settings.DONE_JOB_RETENTION_HOURS),
        job_run_retention_days=settings.JOB_RUN_RETENTION_DAYS,
    )

    return MatchdayService(
        session_factory=session_factory,
        queue=queue,
        cache=cache,
        source=source,
        forecaster=forecaster,
        job_scheduler=job_scheduler,
        health=health,
        poller=poller,
        workers=[worker],
        intervals=intervals,
        role=settings.SERVICE_ROLE,
    )
