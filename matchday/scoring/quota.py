"""
Quota-based scoring (pari-mutuel style).

The points for a correct tendency are not fixed odds: they are derived from
how the predictors themselves split across the three outcome classes. An
outcome backed by few predictors pays more than a consensus pick.

    quota(outcome) = clamp(round(total / backers(outcome)), 2, 6)

A prediction then scores:
    tendency  = quota[actual outcome] if the predicted outcome is right, else 0
    goal diff = +1 if the outcome is right and the goal difference matches
    exact     = +3 if both scores match
    total     = tendency + goal diff + exact   (max 6 + 1 + 3 = 10)

Everything in this module is pure: it takes in-memory snapshots and never
touches the database.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Mapping, Optional

QUOTA_MIN = 2
QUOTA_MAX = 6
GOAL_DIFF_BONUS = 1
EXACT_SCORE_BONUS = 3
MAX_TOTAL_POINTS = QUOTA_MAX + GOAL_DIFF_BONUS + EXACT_SCORE_BONUS


class Outcome(str, Enum):
    HOME = "home"
    DRAW = "draw"
    AWAY = "away"


@dataclass(frozen=True)
class PredictionInput:
    """Snapshot of one prediction, detached from the ORM."""

    prediction_id: int
    predicted_home: int
    predicted_away: int


@dataclass(frozen=True)
class QuotaSet:
    """Quota per outcome. None means nobody backed that outcome."""

    home: Optional[int]
    draw: Optional[int]
    away: Optional[int]
    total_predictions: int

    def for_outcome(self, outcome: Outcome) -> Optional[int]:
        return getattr(self, outcome.value)


@dataclass(frozen=True)
class ScoreBreakdown:
    tendency_points: int
    goal_diff_bonus: int
    exact_score_bonus: int

    @property
    def total(self) -> int:
        return self.tendency_points + self.goal_diff_bonus + self.exact_score_bonus


def outcome_of(home: int, away: int) -> Outcome:
    """Outcome class of a score pair."""
    if home > away:
        return Outcome.HOME
    if home < away:
        return Outcome.AWAY
    return Outcome.DRAW


def _round_half_up(value: Decimal) -> int:
    # round() in Python is banker's rounding: 5/2 must give 3, not 2
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def quota_for(total: int, backers: int) -> Optional[int]:
    """Clamped quota for an outcome with `backers` predictions out of `total`."""
    if backers <= 0:
        return None
    raw = _round_half_up(Decimal(total) / Decimal(backers))
    return max(QUOTA_MIN, min(QUOTA_MAX, raw))


def compute_quotas(predictions: Iterable[PredictionInput]) -> QuotaSet:
    """Compute the quota for each outcome class from the prediction distribution."""
    counts = {Outcome.HOME: 0, Outcome.DRAW: 0, Outcome.AWAY: 0}
    total = 0
    for pred in predictions:
        counts[outcome_of(pred.predicted_home, pred.predicted_away)] += 1
        total += 1

    return QuotaSet(
        home=quota_for(total, counts[Outcome.HOME]),
        draw=quota_for(total, counts[Outcome.DRAW]),
        away=quota_for(total, counts[Outcome.AWAY]),
        total_predictions=total,
    )


def score_one_prediction(
    pred: PredictionInput,
    actual_home: int,
    actual_away: int,
    quotas: QuotaSet,
) -> ScoreBreakdown:
    """Score a single prediction against the final result."""
    predicted = outcome_of(pred.predicted_home, pred.predicted_away)
    actual = outcome_of(actual_home, actual_away)
    tendency_hit = predicted == actual

    tendency = 0
    if tendency_hit:
        # A hit always has at least one backer (this prediction), so the quota is defined
        tendency = quotas.for_outcome(actual) or 0

    goal_diff = 0
    if tendency_hit and (pred.predicted_home - pred.predicted_away) == (actual_home - actual_away):
        goal_diff = GOAL_DIFF_BONUS

    exact = 0
    if pred.predicted_home == actual_home and pred.predicted_away == actual_away:
        exact = EXACT_SCORE_BONUS

    return ScoreBreakdown(
        tendency_points=tendency,
        goal_diff_bonus=goal_diff,
        exact_score_bonus=exact,
    )


def score_fixture(
    predictions: list[PredictionInput],
    actual_home: int,
    actual_away: int,
) -> tuple[QuotaSet, Mapping[int, ScoreBreakdown]]:
    """Compute quotas once and score every prediction of a fixture."""
    quotas = compute_quotas(predictions)
    scores = {
        pred.prediction_id: score_one_prediction(pred, actual_home, actual_away, quotas)
        for pred in predictions
    }
    return quotas, scores
