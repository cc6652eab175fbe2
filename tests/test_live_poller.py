"""
Tests for the live poller.

The live data source is a scripted fake; the database is the shared
in-memory SQLite fixture, so transitions and settlement are real.
"""

import asyncio
from datetime import timedelta
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from matchday.jobs.scheduler import FixtureJobScheduler
from matchday.live.poller import LivePoller
from matchday.live.transitions import TransitionKind
from matchday.models import Fixture, FixtureStatus, Prediction, PredictionStatus
from matchday.providers.base import FixtureSnapshot, LiveDataSource
from matchday.queue.memory import InMemoryJobQueue
from matchday.utils.time import utcnow


class FakeLiveSource(LiveDataSource):
    def __init__(self, live: Optional[list] = None, by_id: Optional[dict] = None):
        self.live = live or []
        self.by_id = by_id or {}
        self.live_calls = 0
        self.id_calls: list[list[int]] = []

    async def get_live_fixtures(self):
        self.live_calls += 1
        return list(self.live)

    async def get_fixtures_by_external_ids(self, external_ids):
        self.id_calls.append(list(external_ids))
        return [self.by_id[i] for i in external_ids if i in self.by_id]


def _snap(external_id, status, code, home=None, away=None, clock=None, competition_id=39):
    return FixtureSnapshot(
        external_id=external_id,
        competition_id=competition_id,
        status_code=code,
        status=status,
        clock=clock,
        home_score=home,
        away_score=away,
    )


@pytest.fixture
def queue():
    return InMemoryJobQueue()


@pytest.fixture
def scheduler(session_factory, queue, invalidator):
    return FixtureJobScheduler(session_factory, queue, invalidator=invalidator)


@pytest.fixture
def make_poller(session_factory, scheduler, invalidator):
    def _make(source, tracked=None):
        return LivePoller(
            session_factory,
            source,
            scheduler,
            invalidator,
            tracked_competitions=tracked,
        )

    return _make


class TestLocalGuard:
    @pytest.mark.asyncio
    async def test_no_candidates_means_no_external_calls(self, make_poller, make_fixture):
        await make_fixture(kickoff_at=utcnow() + timedelta(hours=5))
        await make_fixture(kickoff_at=utcnow() - timedelta(hours=6))
        source = FakeLiveSource()

        summary = await make_poller(source).poll_cycle()

        assert summary["status"] == "idle"
        assert summary["external_calls"] == 0
        assert source.live_calls == 0
        assert source.id_calls == []

    @pytest.mark.asyncio
    async def test_upcoming_kickoff_triggers_poll(self, make_poller, make_fixture):
        await make_fixture(kickoff_at=utcnow() + timedelta(minutes=3))
        source = FakeLiveSource()

        summary = await make_poller(source).poll_cycle()

        assert summary["status"] == "ok"
        assert source.live_calls == 1


class TestTransitions:
    @pytest.mark.asyncio
    async def test_kickoff_and_clock_update(self, make_poller, make_fixture, get_row, invalidator):
        fixture = await make_fixture(kickoff_at=utcnow() - timedelta(minutes=1))
        source = FakeLiveSource(live=[_snap(fixture.external_id, FixtureStatus.LIVE, "1H", 0, 0, "2'")])

        summary = await make_poller(source).poll_cycle()

        assert summary["updated"] == 1
        row = await get_row(Fixture, fixture.id)
        assert row.status == FixtureStatus.LIVE
        assert row.clock == "2'"
        invalidator.invalidate_fixture.assert_awaited_with(fixture.id)

    @pytest.mark.asyncio
    async def test_untracked_competition_is_ignored(self, make_poller, make_fixture, get_row):
        fixture = await make_fixture(kickoff_at=utcnow() - timedelta(minutes=1), competition_id=140)
        source = FakeLiveSource(
            live=[_snap(fixture.external_id, FixtureStatus.LIVE, "1H", 0, 0, "2'", competition_id=140)]
        )

        await make_poller(source, tracked={39}).poll_cycle()

        assert (await get_row(Fixture, fixture.id)).status == FixtureStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_vanished_live_fixture_is_looked_up_and_settled(
        self, make_poller, make_fixture, make_predictor, make_prediction, get_row, invalidator
    ):
        fixture = await make_fixture(kickoff_at=utcnow() - timedelta(minutes=110), status=FixtureStatus.LIVE)
        predictor = await make_predictor()
        prediction = await make_prediction(fixture.id, predictor.id, 2, 1)
        source = FakeLiveSource(
            live=[],
            by_id={fixture.external_id: _snap(fixture.external_id, FixtureStatus.FINISHED, "FT", 2, 1, "FT")},
        )

        summary = await make_poller(source).poll_cycle()

        assert source.id_calls == [[fixture.external_id]]
        assert summary["external_calls"] == 2
        assert summary["settled"] == 1
        row = await get_row(Fixture, fixture.id)
        assert row.status == FixtureStatus.FINISHED
        assert row.settled_at is not None
        scored = await get_row(Prediction, prediction.id)
        assert scored.status == PredictionStatus.SCORED
        assert scored.total_points == 2 + 1 + 3
        invalidator.invalidate_on_fixture_settled.assert_awaited_once_with(fixture.id)

    @pytest.mark.asyncio
    async def test_overdue_scheduled_fixture_is_looked_up(self, make_poller, make_fixture, get_row):
        fixture = await make_fixture(kickoff_at=utcnow() - timedelta(minutes=30))
        source = FakeLiveSource(
            by_id={fixture.external_id: _snap(fixture.external_id, FixtureStatus.LIVE, "2H", 1, 1, "76'")}
        )

        await make_poller(source).poll_cycle()

        row = await get_row(Fixture, fixture.id)
        assert row.status == FixtureStatus.LIVE
        assert (row.home_score, row.away_score) == (1, 1)

    @pytest.mark.asyncio
    async def test_chunked_lookup_counts_every_request(self, make_poller, make_fixture):
        for _ in range(25):
            await make_fixture(kickoff_at=utcnow() - timedelta(minutes=60), status=FixtureStatus.LIVE)
        source = FakeLiveSource(live=[])

        summary = await make_poller(source).poll_cycle()

        assert len(source.id_calls[0]) == 25
        # One live-feed call plus ceil(25 / 20) id lookups
        assert summary["external_calls"] == 3

    @pytest.mark.asyncio
    async def test_voided_status_cancels_jobs(self, make_poller, make_fixture, scheduler, queue, get_row):
        fixture = await make_fixture(kickoff_at=utcnow() + timedelta(minutes=2))
        await scheduler.schedule_jobs_for_fixture(fixture)
        assert len(queue.jobs) == 3
        source = FakeLiveSource(live=[_snap(fixture.external_id, FixtureStatus.VOIDED, "CANC")])

        summary = await make_poller(source).poll_cycle()

        assert summary["voided"] == 1
        assert (await get_row(Fixture, fixture.id)).status == FixtureStatus.VOIDED
        assert queue.jobs == {}

    @pytest.mark.asyncio
    async def test_one_bad_fixture_does_not_block_others(self, make_poller, make_fixture, get_row):
        good = await make_fixture(kickoff_at=utcnow() - timedelta(minutes=1))
        bad = await make_fixture(kickoff_at=utcnow() - timedelta(minutes=1))
        source = FakeLiveSource(live=[
            _snap(bad.external_id, FixtureStatus.LIVE, "1H", 0, 0, "2'"),
            _snap(good.external_id, FixtureStatus.LIVE, "1H", 0, 0, "2'"),
        ])
        poller = make_poller(source)
        real_apply = poller.apply_snapshot

        async def flaky_apply(fixture_id, snapshot):
            if fixture_id == bad.id:
                raise RuntimeError("row lock timeout")
            return await real_apply(fixture_id, snapshot)

        poller.apply_snapshot = flaky_apply

        summary = await poller.poll_cycle()

        assert summary["errors"] == 1
        assert summary["updated"] == 1
        assert (await get_row(Fixture, good.id)).status == FixtureStatus.LIVE

    @pytest.mark.asyncio
    async def test_score_correction_rescores(
        self, make_poller, make_fixture, make_predictor, make_prediction, get_row, session_factory
    ):
        fixture = await make_fixture(kickoff_at=utcnow() - timedelta(minutes=100), status=FixtureStatus.LIVE)
        predictor = await make_predictor()
        prediction = await make_prediction(fixture.id, predictor.id, 1, 1)
        poller = make_poller(FakeLiveSource())

        kind = await poller.apply_snapshot(
            fixture.id, _snap(fixture.external_id, FixtureStatus.FINISHED, "FT", 1, 0, "FT")
        )
        assert kind == TransitionKind.FINISH
        assert (await get_row(Prediction, prediction.id)).total_points == 0

        kind = await poller.apply_snapshot(
            fixture.id, _snap(fixture.external_id, FixtureStatus.FINISHED, "FT", 1, 1, "FT")
        )
        assert kind == TransitionKind.SCORE_CORRECTION
        assert (await get_row(Prediction, prediction.id)).total_points == 6


class TestBacklog:
    @pytest.mark.asyncio
    async def test_finished_unsettled_fixture_is_settled_without_polling(
        self, make_poller, make_fixture, get_row
    ):
        fixture = await make_fixture(
            kickoff_at=utcnow() - timedelta(hours=5), status=FixtureStatus.FINISHED, home_score=0, away_score=0
        )
        source = FakeLiveSource()

        summary = await make_poller(source).poll_cycle()

        assert summary["settled"] == 1
        assert summary["external_calls"] == 0
        assert (await get_row(Fixture, fixture.id)).settled_at is not None


class TestOverlap:
    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, make_poller, make_fixture):
        await make_fixture(kickoff_at=utcnow() - timedelta(minutes=1))
        release = asyncio.Event()

        class SlowSource(FakeLiveSource):
            async def get_live_fixtures(self):
                await release.wait()
                return await super().get_live_fixtures()

        source = SlowSource()
        poller = make_poller(source)

        first = asyncio.create_task(poller.poll_cycle())
        await asyncio.sleep(0.05)
        second = await poller.poll_cycle()
        release.set()
        await first

        assert second == {"status": "skipped", "reason": "in_flight", "external_calls": 0}
        assert source.live_calls == 1

    @pytest.mark.asyncio
    async def test_distributed_lock_held_elsewhere(self, make_poller, make_fixture):
        await make_fixture(kickoff_at=utcnow() - timedelta(minutes=1))
        source = FakeLiveSource()
        poller = make_poller(source)
        poller.redis = AsyncMock()
        poller.redis.set.return_value = None

        summary = await poller.poll_cycle()

        assert summary["reason"] == "lock_held"
        assert source.live_calls == 0
