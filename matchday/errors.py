"""Error taxonomy for the matchday core.

- Transient external failures (ProviderError, ForecastError): retried by the
  queue's backoff, dead-lettered after exhaustion. ForecastUnavailableError
  marks a provider-wide failure that is not charged to predictor health.
- Invariant violations (AlreadySettledError, unique-constraint IntegrityError):
  rejected at the storage boundary and logged as bugs.
- Degraded dependencies (cache unreachable): logged and swallowed where they occur.
- ConfigurationError: fatal, raised at startup before anything runs.
"""


class MatchdayError(Exception):
    """Base class for all matchday errors."""


class ConfigurationError(MatchdayError):
    """Missing or invalid required configuration."""


class ProviderError(MatchdayError):
    """External live/fixture data source failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ForecastError(MatchdayError):
    """Forecast generation failed for one predictor."""


class ForecastUnavailableError(ForecastError):
    """The forecast provider itself is unusable (not configured, circuit open).

    Not counted against any predictor's health.
    """


class AlreadySettledError(MatchdayError):
    """A fixture was submitted for settlement twice."""

    def __init__(self, fixture_id: int):
        super().__init__(f"Fixture {fixture_id} is already settled")
        self.fixture_id = fixture_id


class UnknownJobKindError(MatchdayError):
    """A queued job carries a kind no handler is registered for."""
