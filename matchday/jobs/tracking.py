"""Periodic task run tracking.

Every periodic task (reconcile, live poll, recovery sweep, ...) is recorded to
Prometheus and to the job_runs table, so the last successful run survives a
restart that resets the in-process counters.

Usage:
    result = await run_tracked("reconcile", scheduler.reconcile_schedule, session_factory)
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import delete, select

from matchday.database import SessionFactory
from matchday.models import JobRun
from matchday.telemetry.metrics import record_job_run as record_job_metric
from matchday.telemetry.sentry import sentry_job_context
from matchday.utils.time import utcnow

logger = logging.getLogger(__name__)


async def record_job_run(
    session_factory: SessionFactory,
    job_name: str,
    status: str,
    started_at: datetime,
    error: Optional[str] = None,
    metrics: Optional[dict] = None,
) -> None:
    """
    Record a job execution in the database.

    Args:
        session_factory: Session factory.
        job_name: Periodic task identifier.
        status: ok, error, skipped.
        started_at: When the job started (naive UTC).
        error: Error message if failed.
        metrics: Optional job summary dict.
    """
    finished_at = utcnow()
    duration_ms = int((finished_at - started_at).total_seconds() * 1000)
    try:
        async with session_factory() as session:
            session.add(
                JobRun(
                    job_name=job_name,
                    status=status,
                    started_at=started_at,
                    finished_at=finished_at,
                    duration_ms=duration_ms,
                    error_message=error[:1000] if error else None,
                    metrics=metrics,
                )
            )
            await session.commit()
    except Exception as e:
        logger.debug(f"[JOB_TRACKING] DB persist failed (non-blocking): {e}")
        return

    logger.debug(f"[JOB_TRACKING] Recorded {job_name} run: {status} in {duration_ms}ms")


async def get_last_success_at(session_factory: SessionFactory, job_name: str) -> Optional[datetime]:
    """Last successful run timestamp for a job, or None."""
    async with session_factory() as session:
        result = await session.execute(
            select(JobRun.finished_at)
            .where(JobRun.job_name == job_name)
            .where(JobRun.status == "ok")
            .order_by(JobRun.finished_at.desc())
            .limit(1)
        )
        row = result.first()
    return row[0] if row else None


async def run_tracked(
    job_name: str,
    func: Callable[[], Awaitable[object]],
    session_factory: Optional[SessionFactory] = None,
) -> Optional[object]:
    """
    Run a periodic task with metrics, Sentry context and job_runs persistence.

    Exceptions are logged and recorded, not raised: APScheduler would only log
    them again, and the next tick retries anyway.
    """
    started_at = utcnow()
    start = time.time()
    status, error, result = "ok", None, None

    try:
        with sentry_job_context(job_name):
            result = await func()
        if isinstance(result, dict) and result.get("status") == "skipped":
            status = "skipped"
    except Exception as e:
        status, error = "error", f"{type(e).__name__}: {e}"
        logger.error(f"[{job_name.upper()}] Failed: {error}", exc_info=True)

    record_job_metric(job_name, status, (time.time() - start) * 1000)
    if session_factory is not None:
        await record_job_run(
            session_factory,
            job_name,
            status,
            started_at,
            error=error,
            metrics=result if isinstance(result, dict) else None,
        )
    return result


async def cleanup_old_runs(
    session_factory: SessionFactory,
    days_to_keep: int = 7,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete job runs older than specified days.

    Args:
        session_factory: Session factory.
        days_to_keep: Keep runs from the last N days.
        now: Reference time (naive UTC), defaults to now.

    Returns:
        Number of rows deleted.
    """
    cutoff = (now or utcnow()) - timedelta(days=days_to_keep)
    async with session_factory() as session:
        result = await session.execute(
            delete(JobRun)
            .where(JobRun.started_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    deleted = result.rowcount or 0
    if deleted > 0:
        logger.info(f"[JOB_TRACKING] Cleaned up {deleted} old job runs")
    return deleted
