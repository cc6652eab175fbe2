"""
Fixture job scheduler.

For every upcoming fixture three delayed jobs are derived from its kickoff:

    data_refresh       kickoff - 6h    (late-runnable until kickoff)
    forecast_generate  kickoff - 30m   (late-runnable until kickoff)
    live_poll_trigger  kickoff         (late-runnable until kickoff + 10m)

The queue job id is the dedupe key "{kind}:{fixture_id}" and the
scheduled_jobs row is unique on (fixture_id, kind), so scheduling the same
fixture any number of times yields one job per kind. Jobs that already ran
(done/dead rows) are never re-created by catch-up.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update

from matchday.cache.invalidation import InvalidationCoordinator
from matchday.database import SessionFactory
from matchday.db_utils import upsert
from matchday.models import Fixture, FixtureStatus, JobStatus, ScheduledJob
from matchday.queue.base import JobKind, JobQueue
from matchday.telemetry.metrics import record_enqueue_failure
from matchday.utils.time import utcnow

logger = logging.getLogger(__name__)

LATE_ENQUEUE_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class JobPlan:
    kind: JobKind
    run_at: datetime
    late_until: datetime  # last moment the job is still worth running


def job_id_for(kind: JobKind, fixture_id: int) -> str:
    return f"{kind.value}:{fixture_id}"


class FixtureJobScheduler:
    def __init__(
        self,
        session_factory: SessionFactory,
        queue: JobQueue,
        invalidator: Optional[InvalidationCoordinator] = None,
        data_refresh_offset: timedelta = timedelta(hours=6),
        forecast_offset: timedelta = timedelta(minutes=30),
        live_trigger_grace: timedelta = timedelta(minutes=10),
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.invalidator = invalidator
        self.data_refresh_offset = data_refresh_offset
        self.forecast_offset = forecast_offset
        self.live_trigger_grace = live_trigger_grace

    def plan_for(self, kickoff_at: datetime) -> list[JobPlan]:
        return [
            JobPlan(JobKind.DATA_REFRESH, kickoff_at - self.data_refresh_offset, kickoff_at),
            JobPlan(JobKind.FORECAST_GENERATE, kickoff_at - self.forecast_offset, kickoff_at),
            JobPlan(JobKind.LIVE_POLL_TRIGGER, kickoff_at, kickoff_at + self.live_trigger_grace),
        ]

    async def schedule_jobs_for_fixture(self, fixture: Fixture, now: Optional[datetime] = None) -> dict:
        """
        Upsert and enqueue every job of a fixture. Safe to call repeatedly.

        Enqueue failures are logged and counted, never raised: the next
        reconcile pass retries them.
        """
        now = now or utcnow()
        summary = {
            "fixture_id": fixture.id,
            "enqueued": 0,
            "duplicate": 0,
            "rescheduled": 0,
            "already_ran": 0,
            "too_late": 0,
            "failed": 0,
        }
        if fixture.status != FixtureStatus.SCHEDULED:
            summary["status"] = "skipped"
            summary["reason"] = f"status_{fixture.status}"
            return summary

        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledJob).where(ScheduledJob.fixture_id == fixture.id)
            )
            existing = {row.kind: row for row in result.scalars().all()}

            for plan in self.plan_for(fixture.kickoff_at):
                row = existing.get(plan.kind.value)
                if row is not None and row.status in (JobStatus.DONE, JobStatus.DEAD):
                    summary["already_ran"] += 1
                    continue

                if plan.run_at > now:
                    delay = (plan.run_at - now).total_seconds()
                elif now <= plan.late_until:
                    delay = LATE_ENQUEUE_DELAY_SECONDS
                else:
                    summary["too_late"] += 1
                    continue

                job_id = job_id_for(plan.kind, fixture.id)
                try:
                    if row is not None and row.run_at != plan.run_at:
                        # Kickoff moved: drop the waiting job so it is re-added with the new delay
                        await self.queue.remove(job_id)
                        summary["rescheduled"] += 1
                    added = await self.queue.enqueue(
                        job_id, plan.kind.value, {"fixture_id": fixture.id}, delay
                    )
                except Exception as e:
                    logger.warning(f"[SCHEDULER] Enqueue {job_id} failed, will retry on next reconcile: {e}")
                    record_enqueue_failure(plan.kind.value)
                    summary["failed"] += 1
                    continue

                summary["enqueued" if added else "duplicate"] += 1
                await upsert(
                    session,
                    ScheduledJob,
                    {
                        "fixture_id": fixture.id,
                        "kind": plan.kind.value,
                        "run_at": plan.run_at,
                        "queue_job_id": job_id,
                        "status": JobStatus.PENDING,
                        "created_at": now,
                        "updated_at": now,
                    },
                    conflict_columns=["fixture_id", "kind"],
                    update_columns=["run_at", "updated_at"],
                    update_where=ScheduledJob.status == JobStatus.PENDING,
                )

            await session.commit()

        summary["status"] = "ok"
        if summary["enqueued"] or summary["failed"]:
            logger.info(
                f"[SCHEDULER] Fixture {fixture.id}: enqueued={summary['enqueued']} "
                f"duplicate={summary['duplicate']} rescheduled={summary['rescheduled']} "
                f"failed={summary['failed']}"
            )
        return summary

    async def cancel_jobs_for_fixture(self, fixture_id: int) -> dict:
        """Remove every waiting job of a fixture and delete its scheduled_jobs rows."""
        removed = 0
        for kind in JobKind:
            try:
                if await self.queue.remove(job_id_for(kind, fixture_id)):
                    removed += 1
            except Exception as e:
                logger.error(f"[SCHEDULER] Failed to remove {kind.value} job for fixture {fixture_id}: {e}")

        async with self.session_factory() as session:
            result = await session.execute(
                delete(ScheduledJob).where(ScheduledJob.fixture_id == fixture_id)
            )
            await session.commit()

        logger.info(f"[SCHEDULER] Cancelled jobs for fixture {fixture_id}: {removed} removed from queue")
        return {"fixture_id": fixture_id, "removed": removed, "rows_deleted": result.rowcount}

    async def reconcile_schedule(
        self, window: timedelta = timedelta(hours=48), now: Optional[datetime] = None
    ) -> dict:
        """
        Catch-up pass: (re)schedule every scheduled fixture kicking off inside the window.

        Also covers fixtures that kicked off moments ago, so their live trigger
        can still fire inside its grace period after a restart.
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Fixture)
                .where(Fixture.status == FixtureStatus.SCHEDULED)
                .where(Fixture.kickoff_at >= now - self.live_trigger_grace)
                .where(Fixture.kickoff_at <= now + window)
                .order_by(Fixture.kickoff_at)
            )
            fixtures = result.scalars().all()

        totals = {"fixtures": len(fixtures), "enqueued": 0, "duplicate": 0, "failed": 0, "errors": 0}
        for fixture in fixtures:
            try:
                summary = await self.schedule_jobs_for_fixture(fixture, now=now)
            except Exception as e:
                logger.error(f"[SCHEDULER] Reconcile failed for fixture {fixture.id}: {e}", exc_info=True)
                totals["errors"] += 1
                continue
            totals["enqueued"] += summary["enqueued"]
            totals["duplicate"] += summary["duplicate"]
            totals["failed"] += summary["failed"]

        logger.info(
            f"[SCHEDULER] Reconcile: {totals['fixtures']} fixtures, {totals['enqueued']} enqueued, "
            f"{totals['duplicate']} already queued, {totals['failed']} failed"
        )
        return totals

    async def reschedule_fixture(self, fixture_id: int, new_kickoff: datetime) -> dict:
        """Persist a changed kickoff and re-derive the fixture's jobs."""
        async with self.session_factory() as session:
            fixture = await session.get(Fixture, fixture_id)
            if fixture is None or fixture.status != FixtureStatus.SCHEDULED:
                return {"status": "skipped", "fixture_id": fixture_id}
            old_kickoff = fixture.kickoff_at
            fixture.kickoff_at = new_kickoff
            fixture.updated_at = utcnow()
            await session.commit()

        logger.info(f"[SCHEDULER] Fixture {fixture_id} kickoff moved {old_kickoff} -> {new_kickoff}")
        if self.invalidator is not None:
            await self.invalidator.invalidate_fixture(fixture_id)
        return await self.schedule_jobs_for_fixture(fixture)

    async def void_fixture(self, fixture_id: int, reason: str = "") -> bool:
        """
        Mark a fixture voided (terminal) and cancel its waiting jobs.

        Jobs already running are not interrupted; their handlers see the voided
        status and discard their result.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(Fixture)
                .where(Fixture.id == fixture_id)
                .where(Fixture.status.in_([FixtureStatus.SCHEDULED, FixtureStatus.LIVE]))
                .values(status=FixtureStatus.VOIDED, clock=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount == 0:
            return False

        logger.warning(f"[SCHEDULER] Fixture {fixture_id} voided ({reason or 'no reason'})")
        await self.cancel_jobs_for_fixture(fixture_id)
        if self.invalidator is not None:
            await self.invalidator.invalidate_fixture(fixture_id)
        return True

    async def cleanup_finished_jobs(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        """Delete done/dead rows of fixtures that kicked off before the retention horizon."""
        now = now or utcnow()
        old_fixtures = select(Fixture.id).where(Fixture.kickoff_at < now - retention)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(ScheduledJob)
                .where(ScheduledJob.status.in_([JobStatus.DONE, JobStatus.DEAD]))
                .where(ScheduledJob.fixture_id.in_(old_fixtures))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.info(f"[SCHEDULER] Cleaned up {result.rowcount} finished scheduled_jobs rows")
        return result.rowcount
