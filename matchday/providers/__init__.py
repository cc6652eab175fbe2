"""External collaborators: live fixture data and forecast generation."""

from matchday.providers.base import (
    FixtureContext,
    FixtureSnapshot,
    ForecastGenerator,
    LiveDataSource,
    PredictorConfig,
)

__all__ = [
    "FixtureContext",
    "FixtureSnapshot",
    "ForecastGenerator",
    "LiveDataSource",
    "PredictorConfig",
]
