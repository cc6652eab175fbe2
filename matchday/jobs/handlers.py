"""
Queue job handlers, one per JobKind.

Handlers raise on transient failure so the queue's retry/backoff applies, and
return a summary dict on success. Every handler re-reads the fixture first: a
job that was already running when its fixture was voided finds the voided
status here and discards its work.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from matchday.database import SessionFactory
from matchday.errors import ForecastError, ForecastUnavailableError
from matchday.health.manager import PredictorHealthManager
from matchday.jobs.scheduler import FixtureJobScheduler
from matchday.live.poller import LivePoller
from matchday.models import Fixture, FixtureStatus, Prediction, Predictor
from matchday.providers.base import (
    FixtureContext,
    ForecastGenerator,
    LiveDataSource,
    PredictorConfig,
)
from matchday.queue.base import JobKind, QueuedJob
from matchday.queue.worker import JobHandler
from matchday.telemetry.sentry import capture_exception
from matchday.utils.time import utcnow

logger = logging.getLogger(__name__)


class JobHandlers:
    def __init__(
        self,
        session_factory: SessionFactory,
        scheduler: FixtureJobScheduler,
        source: LiveDataSource,
        forecaster: ForecastGenerator,
        health: PredictorHealthManager,
        poller: LivePoller,
        forecast_concurrency: int = 5,
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.source = source
        self.forecaster = forecaster
        self.health = health
        self.poller = poller
        self.forecast_concurrency = forecast_concurrency

    def as_mapping(self) -> dict[str, JobHandler]:
        return {
            JobKind.DATA_REFRESH.value: self.data_refresh,
            JobKind.FORECAST_GENERATE.value: self.forecast_generate,
            JobKind.LIVE_POLL_TRIGGER.value: self.live_poll_trigger,
        }

    async def _load_fixture(self, job: QueuedJob) -> Optional[Fixture]:
        fixture_id = job.payload.get("fixture_id")
        async with self.session_factory() as session:
            return await session.get(Fixture, fixture_id)

    # ── data refresh ─────────────────────────────────────────────────────

    async def data_refresh(self, job: QueuedJob) -> dict:
        """Re-read the fixture from the provider; apply kickoff moves and cancellations."""
        fixture = await self._load_fixture(job)
        if fixture is None:
            return {"status": "skipped", "reason": "fixture_not_found"}
        if fixture.status != FixtureStatus.SCHEDULED:
            return {"status": "skipped", "reason": f"status_{fixture.status}"}

        snapshots = await self.source.get_fixtures_by_external_ids([fixture.external_id])
        if not snapshots:
            logger.warning(f"[REFRESH] Fixture {fixture.id} (ext {fixture.external_id}) not returned by provider")
            return {"status": "skipped", "reason": "not_in_provider"}
        snapshot = snapshots[0]

        if snapshot.status == FixtureStatus.VOIDED:
            await self.scheduler.void_fixture(fixture.id, reason=f"provider status {snapshot.status_code}")
            return {"status": "voided", "fixture_id": fixture.id}

        if snapshot.kickoff_at is not None and snapshot.kickoff_at != fixture.kickoff_at:
            await self.scheduler.reschedule_fixture(fixture.id, snapshot.kickoff_at)
            return {
                "status": "rescheduled",
                "fixture_id": fixture.id,
                "kickoff_at": snapshot.kickoff_at.isoformat(),
            }

        return {"status": "ok", "fixture_id": fixture.id, "changed": False}

    # ── forecast generation ──────────────────────────────────────────────

    async def forecast_generate(self, job: QueuedJob) -> dict:
        """
        Ask every active predictor without a prediction for this fixture.

        Each predictor's outcome feeds the health manager, except provider-wide
        failures (ForecastUnavailableError), which are nobody's fault. When some
        predictors failed and are still active, or the provider was unavailable,
        the job raises so the queue retries them (predictors that already
        succeeded are skipped on the retry).
        """
        fixture = await self._load_fixture(job)
        if fixture is None:
            return {"status": "skipped", "reason": "fixture_not_found"}
        if fixture.status != FixtureStatus.SCHEDULED or fixture.kickoff_at <= utcnow():
            return {"status": "skipped", "reason": "fixture_not_upcoming"}

        async with self.session_factory() as session:
            already = select(Prediction.predictor_id).where(Prediction.fixture_id == fixture.id)
            result = await session.execute(
                select(Predictor)
                .where(Predictor.active.is_(True))
                .where(Predictor.id.not_in(already))
                .order_by(Predictor.id)
            )
            predictors = [
                PredictorConfig(predictor_id=p.id, name=p.name, provider_model=p.provider_model)
                for p in result.scalars().all()
            ]

        if not predictors:
            return {"status": "ok", "fixture_id": fixture.id, "generated": 0}

        context = FixtureContext(
            fixture_id=fixture.id,
            competition_id=fixture.competition_id,
            home_team=fixture.home_team,
            away_team=fixture.away_team,
            kickoff_at=fixture.kickoff_at,
        )
        semaphore = asyncio.Semaphore(self.forecast_concurrency)

        async def run_one(predictor: PredictorConfig) -> str:
            async with semaphore:
                return await self._forecast_one(predictor, context)

        outcomes = await asyncio.gather(*(run_one(p) for p in predictors))
        summary = {
            "status": "ok",
            "fixture_id": fixture.id,
            "generated": outcomes.count("generated"),
            "failed": outcomes.count("failed") + outcomes.count("failed_disabled"),
            "unavailable": outcomes.count("unavailable"),
            "discarded": outcomes.count("discarded"),
        }
        logger.info(
            f"[FORECAST] Fixture {fixture.id}: {summary['generated']}/{len(predictors)} generated, "
            f"{summary['failed']} failed, {summary['unavailable']} provider unavailable"
        )

        retryable = outcomes.count("failed") + outcomes.count("unavailable")
        if retryable:
            raise ForecastError(
                f"{retryable} predictors failed for fixture {fixture.id} "
                f"({summary['generated']} generated)"
            )
        return summary

    async def _forecast_one(self, predictor: PredictorConfig, context: FixtureContext) -> str:
        try:
            home, away = await self.forecaster.generate_forecast(predictor, context)
        except ForecastUnavailableError as e:
            # Provider-wide outage or missing credentials: not this predictor's fault
            logger.warning(f"[FORECAST] Provider unavailable for predictor {predictor.predictor_id}: {e}")
            return "unavailable"
        except Exception as e:
            # Per-predictor isolation: any error here only counts against this predictor
            outcome = await self.health.record_failure(predictor.predictor_id, f"{type(e).__name__}: {e}")
            return "failed_disabled" if outcome["disabled"] else "failed"

        async with self.session_factory() as session:
            fixture = await session.get(Fixture, context.fixture_id)
            if fixture is None or fixture.status != FixtureStatus.SCHEDULED:
                # Voided (or kicked off) while we were waiting on the model
                await self.health.record_success(predictor.predictor_id)
                return "discarded"
            session.add(
                Prediction(
                    fixture_id=context.fixture_id,
                    predictor_id=predictor.predictor_id,
                    predicted_home=home,
                    predicted_away=away,
                )
            )
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.error(
                    f"[FORECAST] Duplicate prediction rejected for fixture {context.fixture_id} "
                    f"predictor {predictor.predictor_id}: {e.orig}"
                )
                capture_exception(e, job_id="forecast_generate", fixture_id=context.fixture_id)
                return "discarded"

        await self.health.record_success(predictor.predictor_id)
        return "generated"

    # ── live trigger ─────────────────────────────────────────────────────

    async def live_poll_trigger(self, job: QueuedJob) -> dict:
        """Kick the poller at kickoff instead of waiting for the next interval tick."""
        fixture = await self._load_fixture(job)
        if fixture is None:
            return {"status": "skipped", "reason": "fixture_not_found"}
        if fixture.status in (FixtureStatus.VOIDED, FixtureStatus.FINISHED):
            return {"status": "skipped", "reason": f"status_{fixture.status}"}
        return await self.poller.poll_cycle()
