"""Delayed job queue interface shared by the Redis queue and the in-memory fake."""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class JobKind(str, Enum):
    DATA_REFRESH = "data_refresh"
    FORECAST_GENERATE = "forecast_generate"
    LIVE_POLL_TRIGGER = "live_poll_trigger"


@dataclass
class QueuedJob:
    """A job as stored in the queue. `id` is the dedupe key."""

    id: str
    kind: str
    payload: dict = field(default_factory=dict)
    run_at: float = 0.0
    attempts: int = 0
    max_attempts: int = 5
    last_error: Optional[str] = None
    enqueued_at: float = 0.0

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "QueuedJob":
        return cls(**json.loads(raw))


@dataclass
class DeadLetterEntry:
    job: QueuedJob
    failed_at: float
    error: str

    def to_json(self) -> str:
        return json.dumps({"job": asdict(self.job), "failed_at": self.failed_at, "error": self.error})

    @classmethod
    def from_json(cls, raw: str) -> "DeadLetterEntry":
        data = json.loads(raw)
        return cls(job=QueuedJob(**data["job"]), failed_at=data["failed_at"], error=data["error"])

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job.id,
            "kind": self.job.kind,
            "payload": self.job.payload,
            "attempts": self.job.attempts,
            "failed_at": self.failed_at,
            "error": self.error,
        }


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff: 30s, 60s, 120s, ... for attempt 1, 2, 3."""
        return self.backoff_seconds * (2 ** max(attempt - 1, 0))


class FailOutcome(str, Enum):
    RETRYING = "retrying"
    DEAD = "dead"


class JobQueue(ABC):
    """
    Delayed queue with at-most-one-worker claims.

    A job id stays reserved from enqueue until the job completes or is
    dead-lettered, so enqueueing the same id twice is a no-op.
    """

    def __init__(self, retry_policy: RetryPolicy):
        self.retry_policy = retry_policy

    @abstractmethod
    async def enqueue(self, job_id: str, kind: str, payload: dict, delay_seconds: float) -> bool:
        """Add a delayed job. Returns False (not an error) when the id already exists."""

    @abstractmethod
    async def remove(self, job_id: str) -> bool:
        """Delete a job that is still waiting. Claimed jobs are left to finish."""

    @abstractmethod
    async def claim(self, limit: int) -> list[QueuedJob]:
        """Atomically claim up to `limit` due jobs for this worker."""

    @abstractmethod
    async def complete(self, job: QueuedJob) -> None:
        ...

    @abstractmethod
    async def fail(self, job: QueuedJob, error: str) -> FailOutcome:
        """Schedule a retry with backoff, or dead-letter after the last attempt."""

    @abstractmethod
    async def requeue_stalled(self) -> int:
        """Return jobs whose worker lease expired (crashed worker) to the waiting set."""

    @abstractmethod
    async def list_dead(self, limit: int = 100) -> list[DeadLetterEntry]:
        ...

    @abstractmethod
    async def retry_dead(self, job_id: str) -> bool:
        """Move a dead-lettered job back to the queue with a fresh attempt budget."""

    @abstractmethod
    async def counts(self) -> dict:
        ...

    async def close(self) -> None:
        return None
