"""
Consecutive-failure circuit breaker for external providers.

    closed     requests pass; `failure_threshold` consecutive failures open it
    open       requests fail fast until `reset_timeout` has passed
    half_open  one trial request passes; success closes, failure re-opens

State is per process. Each worker trips its own breaker, which is enough to
stop one process hammering a provider that is down.
"""

import logging
import time
from typing import Callable

from matchday.telemetry.metrics import set_circuit_breaker_state

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock
        self.consecutive_failures = 0
        self._opened_at: float | None = None
        self._trial_started_at: float | None = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return CLOSED
        if self.clock() - self._opened_at >= self.reset_timeout:
            return HALF_OPEN
        return OPEN

    def allow_request(self) -> bool:
        """False while open. In half-open only one trial request is let through."""
        state = self.state
        if state == CLOSED:
            return True
        if state == HALF_OPEN and not self._trial_pending():
            self._trial_started_at = self.clock()
            logger.info(f"[CIRCUIT] {self.provider}: half-open, sending trial request")
            return True
        return False

    def _trial_pending(self) -> bool:
        # A trial that never reported back (cancelled task) expires after one reset period
        return (
            self._trial_started_at is not None
            and self.clock() - self._trial_started_at < self.reset_timeout
        )

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info(f"[CIRCUIT] {self.provider}: closed (provider recovered)")
        self.consecutive_failures = 0
        self._opened_at = None
        self._trial_started_at = None
        set_circuit_breaker_state(self.provider, False, 0)

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        reopen = self._trial_started_at is not None
        self._trial_started_at = None
        if reopen or (self._opened_at is None and self.consecutive_failures >= self.failure_threshold):
            self._opened_at = self.clock()
            logger.warning(
                f"[CIRCUIT] {self.provider}: OPEN after {self.consecutive_failures} consecutive failures, "
                f"retry in {self.reset_timeout:.0f}s"
            )
        set_circuit_breaker_state(self.provider, self._opened_at is not None, self.consecutive_failures)
