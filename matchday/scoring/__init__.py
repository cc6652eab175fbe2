"""Quota scoring engine and fixture settlement."""

from matchday.scoring.quota import (
    Outcome,
    PredictionInput,
    QuotaSet,
    ScoreBreakdown,
    compute_quotas,
    outcome_of,
    score_fixture,
    score_one_prediction,
)

__all__ = [
    "Outcome",
    "PredictionInput",
    "QuotaSet",
    "ScoreBreakdown",
    "compute_quotas",
    "outcome_of",
    "score_fixture",
    "score_one_prediction",
]
