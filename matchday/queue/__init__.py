"""Delayed job queue (Redis in production, in-memory for tests)."""

from matchday.queue.base import (
    DeadLetterEntry,
    FailOutcome,
    JobKind,
    JobQueue,
    QueuedJob,
    RetryPolicy,
)
from matchday.queue.memory import InMemoryJobQueue
from matchday.queue.redis_queue import RedisJobQueue

__all__ = [
    "DeadLetterEntry",
    "FailOutcome",
    "JobKind",
    "JobQueue",
    "QueuedJob",
    "RetryPolicy",
    "InMemoryJobQueue",
    "RedisJobQueue",
]
