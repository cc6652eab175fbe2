"""Database models using SQLModel."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from matchday.utils.time import utcnow


class FixtureStatus:
    SCHEDULED = "scheduled"
    LIVE = "live"
    FINISHED = "finished"
    VOIDED = "voided"


class JobStatus:
    PENDING = "pending"
    DONE = "done"
    DEAD = "dead"


class PredictionStatus:
    PENDING = "pending"
    SCORED = "scored"


class Fixture(SQLModel, table=True):
    """One scheduled football match."""

    __tablename__ = "fixtures"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: int = Field(unique=True, index=True, description="API-Football fixture ID")
    competition_id: int = Field(index=True, description="API-Football league ID")
    home_team: str = Field(max_length=255)
    away_team: str = Field(max_length=255)
    kickoff_at: datetime = Field(index=True, description="Kickoff (naive UTC)")

    status: str = Field(
        default=FixtureStatus.SCHEDULED, max_length=20, index=True,
        description="scheduled, live, finished, voided",
    )
    status_code: Optional[str] = Field(default=None, max_length=10, description="Raw provider status (NS, 1H, FT...)")
    clock: Optional[str] = Field(default=None, max_length=20, description="Display clock: 67', HT, 90'+3")
    home_score: Optional[int] = Field(default=None)
    away_score: Optional[int] = Field(default=None)

    # Quotas persisted at settlement for display
    quota_home: Optional[int] = Field(default=None)
    quota_draw: Optional[int] = Field(default=None)
    quota_away: Optional[int] = Field(default=None)
    settled_at: Optional[datetime] = Field(default=None, description="Set once predictions are scored")

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Predictor(SQLModel, table=True):
    """An independent forecasting agent (one prediction per fixture)."""

    __tablename__ = "predictors"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, max_length=100)
    provider_model: str = Field(max_length=200, description="Forecast model identifier")

    # Health
    active: bool = Field(default=True, index=True)
    consecutive_failures: int = Field(default=0)
    disabled_at: Optional[datetime] = Field(default=None)
    auto_disabled: bool = Field(default=False, description="Disabled by failure threshold (eligible for recovery)")
    failure_reason: Optional[str] = Field(default=None, max_length=500)
    last_success_at: Optional[datetime] = Field(default=None)
    last_failure_at: Optional[datetime] = Field(default=None)

    # Aggregates maintained by settlement
    total_points: int = Field(default=0)
    scored_predictions: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow)


class Prediction(SQLModel, table=True):
    """A predicted score for one (fixture, predictor) pair."""

    __tablename__ = "predictions"
    __table_args__ = (
        UniqueConstraint("fixture_id", "predictor_id", name="uq_prediction_fixture_predictor"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    fixture_id: int = Field(foreign_key="fixtures.id", index=True)
    predictor_id: int = Field(foreign_key="predictors.id", index=True)
    predicted_home: int
    predicted_away: int

    status: str = Field(default=PredictionStatus.PENDING, max_length=20, index=True)
    tendency_points: Optional[int] = Field(default=None)
    goal_diff_bonus: Optional[int] = Field(default=None)
    exact_score_bonus: Optional[int] = Field(default=None)
    total_points: Optional[int] = Field(default=None)
    scored_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)


class ScheduledJob(SQLModel, table=True):
    """A time-offset job for one fixture. Unique per (fixture, kind)."""

    __tablename__ = "scheduled_jobs"
    __table_args__ = (
        UniqueConstraint("fixture_id", "kind", name="uq_scheduled_job_fixture_kind"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    fixture_id: int = Field(foreign_key="fixtures.id", index=True)
    kind: str = Field(max_length=40, description="data_refresh, forecast_generate, live_poll_trigger")
    run_at: datetime = Field(index=True)
    queue_job_id: str = Field(max_length=100, description="Dedupe key used as queue job id")
    status: str = Field(default=JobStatus.PENDING, max_length=20, index=True)
    attempts: int = Field(default=0)
    last_error: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class JobRun(SQLModel, table=True):
    """One execution of a periodic task (ops visibility across restarts)."""

    __tablename__ = "job_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_name: str = Field(max_length=100, index=True)
    status: str = Field(max_length=20, description="ok, error, skipped")
    started_at: datetime
    finished_at: datetime
    duration_ms: int = Field(default=0)
    error_message: Optional[str] = Field(default=None, max_length=1000)
    metrics: Optional[dict] = Field(default=None, sa_column=Column(JSON))
