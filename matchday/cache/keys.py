"""Derived-cache key names and TTLs.

Keys consumed by the presentation layer. Anything derived from predictors or
settled fixtures must be listed in one of the invalidation sets below.
"""

LEADERBOARD_PREFIX = "db:leaderboard:"
PREDICTOR_STATS_PREFIX = "db:model:"

STATS_OVERALL = "db:stats:overall"
TOP_PERFORMING = "db:models:top-performing"
ACTIVE_PREDICTORS = "db:models:active"
PREDICTOR_HEALTH_ALL = "db:models:health:all"


def fixture_predictions(fixture_id: int) -> str:
    return f"db:predictions:{fixture_id}"


def fixture_detail(fixture_id: int) -> str:
    return f"db:fixture:{fixture_id}"


def leaderboard(period: str, sort_by: str = "points") -> str:
    return f"{LEADERBOARD_PREFIX}{period}:{sort_by}"


def predictor_stats(predictor_id: int) -> str:
    return f"{PREDICTOR_STATS_PREFIX}{predictor_id}:stats"


# TTLs (seconds)
TTL_LEADERBOARD = 300
TTL_STATS = 600
TTL_ACTIVE_PREDICTORS = 300
TTL_FIXTURE_PREDICTIONS = 120


PREDICTOR_CHANGE_KEYS = (ACTIVE_PREDICTORS, PREDICTOR_HEALTH_ALL, STATS_OVERALL, TOP_PERFORMING)
PREDICTOR_CHANGE_PREFIXES = (LEADERBOARD_PREFIX, PREDICTOR_STATS_PREFIX)

SETTLEMENT_KEYS = (STATS_OVERALL, TOP_PERFORMING)
SETTLEMENT_PREFIXES = (LEADERBOARD_PREFIX, PREDICTOR_STATS_PREFIX)
