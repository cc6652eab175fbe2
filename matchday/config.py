"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings

from matchday.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = ""

    # Redis (queue + derived cache)
    REDIS_URL: str = ""
    QUEUE_BACKEND: str = "redis"  # "redis" | "memory" (single-process dev only)
    QUEUE_NAME: str = "matchday"

    # API-Football (live/fixture data source)
    FOOTBALL_API_KEY: str = ""
    FOOTBALL_API_BASE_URL: str = "https://v3.football.api-sports.io"
    FOOTBALL_API_TIMEOUT_SECONDS: float = 15.0
    FOOTBALL_API_MAX_RETRIES: int = 3
    TRACKED_COMPETITIONS: str = ""  # Comma list of league ids, empty = all

    # Forecast generator (OpenAI-compatible chat completions)
    FORECAST_API_URL: str = "https://openrouter.ai/api/v1/chat/completions"
    FORECAST_API_KEY: str = ""
    FORECAST_TIMEOUT_SECONDS: float = 60.0

    # ═══════════════════════════════════════════════════════════════
    # Fixture job scheduler
    # ═══════════════════════════════════════════════════════════════
    DATA_REFRESH_OFFSET_MINUTES: int = 360  # kickoff - 6h
    FORECAST_OFFSET_MINUTES: int = 30       # kickoff - 30m
    LIVE_TRIGGER_GRACE_MINUTES: int = 10    # live trigger may still fire until kickoff + 10m
    SCHEDULE_WINDOW_HOURS: int = 48
    RECONCILE_INTERVAL_MINUTES: int = 10
    DONE_JOB_RETENTION_HOURS: int = 72
    JOB_RUN_RETENTION_DAYS: int = 7

    # ═══════════════════════════════════════════════════════════════
    # Live poller
    # ═══════════════════════════════════════════════════════════════
    LIVE_POLL_INTERVAL_SECONDS: int = 60
    LIVE_LOOKBACK_HOURS: int = 3
    LIVE_LOOKAHEAD_MINUTES: int = 5

    # ═══════════════════════════════════════════════════════════════
    # Predictor health
    # ═══════════════════════════════════════════════════════════════
    HEALTH_FAILURE_THRESHOLD: int = 5
    HEALTH_COOLDOWN_MINUTES: int = 60
    RECOVERY_INTERVAL_MINUTES: int = 5

    # ═══════════════════════════════════════════════════════════════
    # Queue retry / dead letter
    # ═══════════════════════════════════════════════════════════════
    QUEUE_MAX_ATTEMPTS: int = 5
    QUEUE_BACKOFF_SECONDS: float = 30.0
    QUEUE_LEASE_SECONDS: int = 300
    QUEUE_POLL_INTERVAL_SECONDS: float = 1.0
    DLQ_MAX_ENTRIES: int = 1000
    DLQ_ALERT_THRESHOLD: int = 50
    WORKER_CONCURRENCY: int = 4

    # Process role: "all" runs scheduler + poller + workers in one process
    SERVICE_ROLE: str = "all"  # "all" | "scheduler" | "worker"

    # Ops API security
    API_KEY: str = ""
    API_KEY_HEADER: str = "X-API-Key"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def tracked_competition_ids(self) -> set[int]:
        """Parsed TRACKED_COMPETITIONS. Empty set means every competition."""
        return {int(x) for x in self.TRACKED_COMPETITIONS.split(",") if x.strip()}

    def validate_required(self) -> None:
        """Fail fast on missing credentials before any component starts."""
        missing = []
        if not self.DATABASE_URL:
            missing.append("DATABASE_URL")
        if not self.FOOTBALL_API_KEY:
            missing.append("FOOTBALL_API_KEY")
        if not self.FORECAST_API_KEY:
            missing.append("FORECAST_API_KEY")
        if self.QUEUE_BACKEND == "redis" and not self.REDIS_URL:
            missing.append("REDIS_URL")
        if self.QUEUE_BACKEND not in ("redis", "memory"):
            raise ConfigurationError(f"Unknown QUEUE_BACKEND: {self.QUEUE_BACKEND}")
        if self.SERVICE_ROLE not in ("all", "scheduler", "worker"):
            raise ConfigurationError(f"Unknown SERVICE_ROLE: {self.SERVICE_ROLE}")
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
