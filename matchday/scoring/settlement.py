"""
Fixture settlement: persist quota scores for every prediction of a finished fixture.

Double counting is prevented at two levels:
1. The settlement claim is a compare-and-set on fixtures.settled_at
   (UPDATE ... WHERE settled_at IS NULL). Only one caller can win it, and it
   happens in the same transaction as the score writes.
2. Predictor aggregates are adjusted by delta (new total - previously stored
   total), so a re-score after a corrected result converges to the same
   aggregate no matter how many times it runs.
"""

import logging
from collections import defaultdict
from typing import Optional

from sqlalchemy import select, update

from matchday.cache.invalidation import InvalidationCoordinator
from matchday.database import SessionFactory
from matchday.errors import AlreadySettledError
from matchday.models import Fixture, FixtureStatus, Prediction, PredictionStatus, Predictor
from matchday.scoring.quota import PredictionInput, QuotaSet, score_fixture
from matchday.telemetry.metrics import record_settlement
from matchday.utils.time import utcnow

logger = logging.getLogger(__name__)


async def settle_fixture(
    session_factory: SessionFactory,
    fixture_id: int,
    invalidator: Optional[InvalidationCoordinator] = None,
    strict: bool = False,
) -> dict:
    """
    Score all predictions of a finished fixture exactly once.

    Returns a summary dict. With strict=True a second settlement raises
    AlreadySettledError instead of returning {"status": "already_settled"}.
    """
    now = utcnow()
    async with session_factory() as session:
        fixture = await session.get(Fixture, fixture_id)
        if fixture is None:
            return {"status": "skipped", "reason": "fixture_not_found", "fixture_id": fixture_id}
        if fixture.status != FixtureStatus.FINISHED:
            return {"status": "skipped", "reason": f"status_{fixture.status}", "fixture_id": fixture_id}
        if fixture.home_score is None or fixture.away_score is None:
            logger.error(f"[SETTLE] Fixture {fixture_id} finished without final score, not settling")
            return {"status": "skipped", "reason": "missing_score", "fixture_id": fixture_id}

        claim = await session.execute(
            update(Fixture)
            .where(Fixture.id == fixture_id)
            .where(Fixture.settled_at.is_(None))
            .values(settled_at=now, updated_at=now)
        )
        if claim.rowcount == 0:
            await session.rollback()
            logger.warning(f"[SETTLE] Fixture {fixture_id} already settled, rejecting duplicate settlement")
            record_settlement("already_settled")
            if strict:
                raise AlreadySettledError(fixture_id)
            return {"status": "already_settled", "fixture_id": fixture_id}

        predictions = await _load_predictions(session, fixture_id)
        if not predictions:
            await session.commit()
            logger.info(f"[SETTLE] Fixture {fixture_id} has no predictions, nothing to score")
            record_settlement("no_predictions")
            return {"status": "no_predictions", "fixture_id": fixture_id}

        quotas, scored = await _apply_scores(
            session, fixture, predictions, fixture.home_score, fixture.away_score, now
        )
        await session.commit()

    logger.info(
        f"[SETTLE] Fixture {fixture_id} settled: {scored} predictions scored, "
        f"quotas H={quotas.home} D={quotas.draw} A={quotas.away}"
    )
    record_settlement("settled", scored=scored)

    if invalidator is not None:
        await invalidator.invalidate_on_fixture_settled(fixture_id)

    return {
        "status": "settled",
        "fixture_id": fixture_id,
        "scored": scored,
        "quotas": {"home": quotas.home, "draw": quotas.draw, "away": quotas.away},
    }


async def rescore_fixture(
    session_factory: SessionFactory,
    fixture_id: int,
    invalidator: Optional[InvalidationCoordinator] = None,
) -> dict:
    """Re-run scoring for a settled fixture whose final score was corrected."""
    now = utcnow()
    async with session_factory() as session:
        result = await session.execute(
            select(Fixture).where(Fixture.id == fixture_id).with_for_update()
        )
        fixture = result.scalar_one_or_none()
        if fixture is None:
            return {"status": "skipped", "reason": "fixture_not_found", "fixture_id": fixture_id}
        if fixture.status != FixtureStatus.FINISHED or fixture.settled_at is None:
            return {"status": "skipped", "reason": "not_settled", "fixture_id": fixture_id}

        predictions = await _load_predictions(session, fixture_id)
        if not predictions:
            return {"status": "no_predictions", "fixture_id": fixture_id}

        quotas, scored = await _apply_scores(
            session, fixture, predictions, fixture.home_score, fixture.away_score, now
        )
        fixture.settled_at = now
        fixture.updated_at = now
        await session.commit()

    logger.info(f"[SETTLE] Fixture {fixture_id} re-scored ({scored} predictions)")
    record_settlement("rescored", scored=scored)

    if invalidator is not None:
        await invalidator.invalidate_on_fixture_settled(fixture_id)

    return {"status": "rescored", "fixture_id": fixture_id, "scored": scored}


async def _load_predictions(session, fixture_id: int) -> list[Prediction]:
    result = await session.execute(
        select(Prediction).where(Prediction.fixture_id == fixture_id).order_by(Prediction.id)
    )
    return list(result.scalars().all())


async def _apply_scores(
    session,
    fixture: Fixture,
    predictions: list[Prediction],
    actual_home: int,
    actual_away: int,
    now,
) -> tuple[QuotaSet, int]:
    """Write breakdowns, persist quotas and adjust predictor aggregates by delta."""
    inputs = [
        PredictionInput(
            prediction_id=p.id,
            predicted_home=p.predicted_home,
            predicted_away=p.predicted_away,
        )
        for p in predictions
    ]
    quotas, breakdowns = score_fixture(inputs, actual_home, actual_away)

    points_delta: dict[int, int] = defaultdict(int)
    count_delta: dict[int, int] = defaultdict(int)

    for pred in predictions:
        breakdown = breakdowns[pred.id]
        previous_total = pred.total_points if pred.status == PredictionStatus.SCORED else None

        pred.tendency_points = breakdown.tendency_points
        pred.goal_diff_bonus = breakdown.goal_diff_bonus
        pred.exact_score_bonus = breakdown.exact_score_bonus
        pred.total_points = breakdown.total
        pred.status = PredictionStatus.SCORED
        pred.scored_at = now

        if previous_total is None:
            points_delta[pred.predictor_id] += breakdown.total
            count_delta[pred.predictor_id] += 1
        else:
            points_delta[pred.predictor_id] += breakdown.total - (previous_total or 0)

    fixture.quota_home = quotas.home
    fixture.quota_draw = quotas.draw
    fixture.quota_away = quotas.away

    for predictor_id, delta in points_delta.items():
        added = count_delta.get(predictor_id, 0)
        if delta == 0 and added == 0:
            continue
        await session.execute(
            update(Predictor)
            .where(Predictor.id == predictor_id)
            .values(
                total_points=Predictor.total_points + delta,
                scored_predictions=Predictor.scored_predictions + added,
            )
        )

    return quotas, len(predictions)
