"""Abstract interfaces for the external collaborators (live data, forecasts)."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class FixtureSnapshot:
    """Data transfer object for one fixture as reported by the live data source."""

    external_id: int
    competition_id: Optional[int]
    status_code: str            # Raw provider code: NS, 1H, HT, FT, ...
    status: str                 # Mapped FixtureStatus value
    clock: Optional[str]        # Display clock: 67', HT, 90'+3
    home_score: Optional[int]
    away_score: Optional[int]
    kickoff_at: Optional[datetime] = None
    home_team: Optional[str] = None
    away_team: Optional[str] = None


@dataclass
class FixtureContext:
    """What a predictor is told about the fixture it must forecast."""

    fixture_id: int
    competition_id: int
    home_team: str
    away_team: str
    kickoff_at: datetime


@dataclass
class PredictorConfig:
    predictor_id: int
    name: str
    provider_model: str


class LiveDataSource(ABC):
    """External live/fixture data source."""

    # Ids per targeted-lookup request; larger lookups are split into chunks
    max_ids_per_request: int = 20

    @abstractmethod
    async def get_live_fixtures(self) -> list[FixtureSnapshot]:
        """All fixtures currently in play (one batched call)."""

    @abstractmethod
    async def get_fixtures_by_external_ids(self, external_ids: list[int]) -> list[FixtureSnapshot]:
        """Targeted lookup by provider fixture id."""

    async def close(self) -> None:
        return None


class ForecastGenerator(ABC):
    """Produces one score forecast for one predictor."""

    @abstractmethod
    async def generate_forecast(
        self, predictor: PredictorConfig, context: FixtureContext
    ) -> tuple[int, int]:
        """Return (home, away) or raise ForecastError."""

    async def close(self) -> None:
        return None
