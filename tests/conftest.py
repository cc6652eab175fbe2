"""Shared fixtures: in-memory SQLite database and row factories."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlmodel import SQLModel

import matchday.models  # noqa: F401  (registers tables on the metadata)
from matchday.database import build_engine, make_session_factory
from matchday.models import Fixture, FixtureStatus, Prediction, Predictor
from matchday.utils.time import utcnow


@pytest_asyncio.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def invalidator():
    """Invalidation coordinator double that records calls."""
    mock = AsyncMock()
    mock.invalidate_on_predictor_change.return_value = True
    mock.invalidate_on_fixture_settled.return_value = True
    mock.invalidate_fixture.return_value = True
    return mock


@pytest.fixture
def make_fixture(session_factory):
    counter = {"next_external_id": 1000}

    async def _make(
        kickoff_at: datetime = None,
        status: str = FixtureStatus.SCHEDULED,
        competition_id: int = 39,
        home_score: int = None,
        away_score: int = None,
        external_id: int = None,
    ) -> Fixture:
        counter["next_external_id"] += 1
        fixture = Fixture(
            external_id=external_id or counter["next_external_id"],
            competition_id=competition_id,
            home_team="Arsenal",
            away_team="Chelsea",
            kickoff_at=kickoff_at or utcnow() + timedelta(hours=24),
            status=status,
            home_score=home_score,
            away_score=away_score,
        )
        async with session_factory() as session:
            session.add(fixture)
            await session.commit()
            await session.refresh(fixture)
        return fixture

    return _make


@pytest.fixture
def make_predictor(session_factory):
    counter = {"n": 0}

    async def _make(name: str = None, active: bool = True) -> Predictor:
        counter["n"] += 1
        predictor = Predictor(
            name=name or f"model-{counter['n']}",
            provider_model=f"provider/model-{counter['n']}",
            active=active,
            disabled_at=None if active else utcnow(),
        )
        async with session_factory() as session:
            session.add(predictor)
            await session.commit()
            await session.refresh(predictor)
        return predictor

    return _make


@pytest.fixture
def make_prediction(session_factory):
    async def _make(fixture_id: int, predictor_id: int, home: int, away: int) -> Prediction:
        prediction = Prediction(
            fixture_id=fixture_id,
            predictor_id=predictor_id,
            predicted_home=home,
            predicted_away=away,
        )
        async with session_factory() as session:
            session.add(prediction)
            await session.commit()
            await session.refresh(prediction)
        return prediction

    return _make


@pytest.fixture
def get_row(session_factory):
    """Fresh read of one row (bypasses any identity map)."""

    async def _get(model, row_id):
        async with session_factory() as session:
            return await session.get(model, row_id)

    return _get
