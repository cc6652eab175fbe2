"""Tests for the data_refresh, forecast_generate and live_poll_trigger handlers."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, update

from matchday.errors import ForecastError
from matchday.health.manager import PredictorHealthManager
from matchday.jobs.handlers import JobHandlers
from matchday.jobs.scheduler import FixtureJobScheduler
from matchday.models import Fixture, FixtureStatus, Prediction, Predictor
from matchday.providers.base import FixtureSnapshot, ForecastGenerator
from matchday.providers.forecast import ChatForecastGenerator
from matchday.queue.base import JobKind, QueuedJob
from matchday.queue.memory import InMemoryJobQueue
from matchday.utils.time import utcnow


class ScriptedForecaster(ForecastGenerator):
    """Returns a fixed score per predictor name, or raises for names in `failing`."""

    def __init__(self, scores=None, failing=(), on_call=None):
        self.scores = scores or {}
        self.failing = set(failing)
        self.on_call = on_call
        self.calls: list[str] = []

    async def generate_forecast(self, predictor, context):
        self.calls.append(predictor.name)
        if self.on_call is not None:
            await self.on_call()
        if predictor.name in self.failing:
            raise ForecastError(f"{predictor.name}: HTTP 503")
        return self.scores.get(predictor.name, (1, 0))


def _job(kind: JobKind, fixture_id: int) -> QueuedJob:
    return QueuedJob(id=f"{kind.value}:{fixture_id}", kind=kind.value, payload={"fixture_id": fixture_id})


@pytest.fixture
def queue():
    return InMemoryJobQueue()


@pytest.fixture
def scheduler(session_factory, queue, invalidator):
    return FixtureJobScheduler(session_factory, queue, invalidator=invalidator)


@pytest.fixture
def health(session_factory, invalidator):
    return PredictorHealthManager(session_factory, invalidator, failure_threshold=3)


@pytest.fixture
def make_handlers(session_factory, scheduler, health):
    def _make(forecaster=None, source=None, poller=None):
        return JobHandlers(
            session_factory,
            scheduler,
            source or AsyncMock(),
            forecaster or ScriptedForecaster(),
            health,
            poller or AsyncMock(),
            forecast_concurrency=1,
        )

    return _make


async def _predictions(session_factory, fixture_id):
    async with session_factory() as session:
        result = await session.execute(select(Prediction).where(Prediction.fixture_id == fixture_id))
        return result.scalars().all()


# =============================================================================
# FORECAST GENERATION
# =============================================================================


class TestForecastGenerate:
    @pytest.mark.asyncio
    async def test_every_active_predictor_forecasts_once(
        self, make_handlers, make_fixture, make_predictor, session_factory
    ):
        fixture = await make_fixture()
        await make_predictor("alpha")
        await make_predictor("bravo")
        await make_predictor("retired", active=False)
        forecaster = ScriptedForecaster(scores={"alpha": (2, 1), "bravo": (0, 0)})
        handlers = make_handlers(forecaster=forecaster)

        summary = await handlers.forecast_generate(_job(JobKind.FORECAST_GENERATE, fixture.id))

        assert summary["generated"] == 2
        assert sorted(forecaster.calls) == ["alpha", "bravo"]
        stored = {(p.predicted_home, p.predicted_away) for p in await _predictions(session_factory, fixture.id)}
        assert stored == {(2, 1), (0, 0)}

        # Re-running the job does not ask again
        again = await handlers.forecast_generate(_job(JobKind.FORECAST_GENERATE, fixture.id))
        assert again["generated"] == 0
        assert len(forecaster.calls) == 2

    @pytest.mark.asyncio
    async def test_partial_failure_raises_and_retry_only_asks_failed(
        self, make_handlers, make_fixture, make_predictor, session_factory, get_row
    ):
        fixture = await make_fixture()
        alpha = await make_predictor("alpha")
        bravo = await make_predictor("bravo")
        forecaster = ScriptedForecaster(failing={"bravo"})
        handlers = make_handlers(forecaster=forecaster)

        with pytest.raises(ForecastError):
            await handlers.forecast_generate(_job(JobKind.FORECAST_GENERATE, fixture.id))

        predictions = await _predictions(session_factory, fixture.id)
        assert [p.predictor_id for p in predictions] == [alpha.id]
        assert (await get_row(Predictor, bravo.id)).consecutive_failures == 1

        forecaster.failing.clear()
        forecaster.calls.clear()
        summary = await handlers.forecast_generate(_job(JobKind.FORECAST_GENERATE, fixture.id))

        assert forecaster.calls == ["bravo"]
        assert summary["generated"] == 1
        assert (await get_row(Predictor, bravo.id)).consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_failure_that_disables_predictor_does_not_retry(
        self, make_handlers, make_fixture, make_predictor, health, get_row
    ):
        fixture = await make_fixture()
        flaky = await make_predictor("flaky")
        for _ in range(2):
            await health.record_failure(flaky.id, "timeout")
        handlers = make_handlers(forecaster=ScriptedForecaster(failing={"flaky"}))

        summary = await handlers.forecast_generate(_job(JobKind.FORECAST_GENERATE, fixture.id))

        assert summary["failed"] == 1
        assert (await get_row(Predictor, flaky.id)).active is False

    @pytest.mark.asyncio
    async def test_fixture_voided_mid_generation_discards_forecasts(
        self, make_handlers, make_fixture, make_predictor, session_factory
    ):
        fixture = await make_fixture()
        await make_predictor("alpha")

        async def void_now():
            async with session_factory() as session:
                await session.execute(
                    update(Fixture).where(Fixture.id == fixture.id).values(status=FixtureStatus.VOIDED)
                )
                await session.commit()

        handlers = make_handlers(forecaster=ScriptedForecaster(on_call=void_now))

        summary = await handlers.forecast_generate(_job(JobKind.FORECAST_GENERATE, fixture.id))

        assert summary["discarded"] == 1
        assert await _predictions(session_factory, fixture.id) == []

    @pytest.mark.asyncio
    async def test_voided_fixture_is_skipped(self, make_handlers, make_fixture, make_predictor):
        fixture = await make_fixture(status=FixtureStatus.VOIDED)
        await make_predictor()
        forecaster = ScriptedForecaster()

        summary = await make_handlers(forecaster=forecaster).forecast_generate(
            _job(JobKind.FORECAST_GENERATE, fixture.id)
        )

        assert summary == {"status": "skipped", "reason": "fixture_not_upcoming"}
        assert forecaster.calls == []

    @pytest.mark.asyncio
    async def test_missing_forecast_key_does_not_count_against_predictors(
        self, make_handlers, make_fixture, make_predictor, get_row, invalidator
    ):
        predictor = await make_predictor("alpha")
        handlers = make_handlers(forecaster=ChatForecastGenerator("https://forecast.test/v1/chat", ""))

        # More fixtures than the failure threshold
        for _ in range(5):
            fixture = await make_fixture()
            with pytest.raises(ForecastError, match="1 predictors failed"):
                await handlers.forecast_generate(_job(JobKind.FORECAST_GENERATE, fixture.id))

        row = await get_row(Predictor, predictor.id)
        assert row.active is True
        assert row.consecutive_failures == 0
        invalidator.invalidate_on_predictor_change.assert_not_awaited()


# =============================================================================
# DATA REFRESH
# =============================================================================


class TestDataRefresh:
    @staticmethod
    def _snapshot(fixture, status=FixtureStatus.SCHEDULED, code="NS", kickoff_at=None):
        return FixtureSnapshot(
            external_id=fixture.external_id,
            competition_id=fixture.competition_id,
            status_code=code,
            status=status,
            clock=None,
            home_score=None,
            away_score=None,
            kickoff_at=kickoff_at or fixture.kickoff_at,
        )

    @pytest.mark.asyncio
    async def test_unchanged_fixture(self, make_handlers, make_fixture):
        fixture = await make_fixture()
        source = AsyncMock()
        source.get_fixtures_by_external_ids.return_value = [self._snapshot(fixture)]

        summary = await make_handlers(source=source).data_refresh(_job(JobKind.DATA_REFRESH, fixture.id))

        assert summary == {"status": "ok", "fixture_id": fixture.id, "changed": False}
        source.get_fixtures_by_external_ids.assert_awaited_once_with([fixture.external_id])

    @pytest.mark.asyncio
    async def test_moved_kickoff_reschedules(self, make_handlers, make_fixture, scheduler, queue, get_row):
        fixture = await make_fixture(kickoff_at=utcnow() + timedelta(hours=20))
        await scheduler.schedule_jobs_for_fixture(fixture)
        new_kickoff = fixture.kickoff_at + timedelta(days=1)
        source = AsyncMock()
        source.get_fixtures_by_external_ids.return_value = [self._snapshot(fixture, kickoff_at=new_kickoff)]

        summary = await make_handlers(source=source).data_refresh(_job(JobKind.DATA_REFRESH, fixture.id))

        assert summary["status"] == "rescheduled"
        assert (await get_row(Fixture, fixture.id)).kickoff_at == new_kickoff
        assert len(queue.jobs) == 3

    @pytest.mark.asyncio
    async def test_cancelled_fixture_is_voided(self, make_handlers, make_fixture, scheduler, queue, get_row):
        fixture = await make_fixture()
        await scheduler.schedule_jobs_for_fixture(fixture)
        source = AsyncMock()
        source.get_fixtures_by_external_ids.return_value = [
            self._snapshot(fixture, status=FixtureStatus.VOIDED, code="CANC")
        ]

        summary = await make_handlers(source=source).data_refresh(_job(JobKind.DATA_REFRESH, fixture.id))

        assert summary["status"] == "voided"
        assert (await get_row(Fixture, fixture.id)).status == FixtureStatus.VOIDED
        assert queue.jobs == {}

    @pytest.mark.asyncio
    async def test_missing_fixture(self, make_handlers):
        summary = await make_handlers().data_refresh(_job(JobKind.DATA_REFRESH, 31337))
        assert summary["reason"] == "fixture_not_found"


# =============================================================================
# LIVE TRIGGER
# =============================================================================


class TestLivePollTrigger:
    @pytest.mark.asyncio
    async def test_kicks_the_poller(self, make_handlers, make_fixture):
        fixture = await make_fixture(kickoff_at=utcnow())
        poller = AsyncMock()
        poller.poll_cycle.return_value = {"status": "ok", "external_calls": 1}

        summary = await make_handlers(poller=poller).live_poll_trigger(_job(JobKind.LIVE_POLL_TRIGGER, fixture.id))

        assert summary["status"] == "ok"
        poller.poll_cycle.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_voided_fixture_does_not_poll(self, make_handlers, make_fixture):
        fixture = await make_fixture(status=FixtureStatus.VOIDED)
        poller = AsyncMock()

        summary = await make_handlers(poller=poller).live_poll_trigger(_job(JobKind.LIVE_POLL_TRIGGER, fixture.id))

        assert summary["status"] == "skipped"
        poller.poll_cycle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mapping_covers_every_kind(self, make_handlers):
        assert set(make_handlers().as_mapping()) == {kind.value for kind in JobKind}
