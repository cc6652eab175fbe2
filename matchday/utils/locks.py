"""Cross-process single-flight lock on Redis (SET NX EX)."""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def redis_cycle_lock(redis: Optional[Redis], lock_key: str, ttl_seconds: int = 55):
    """
    Yield True when this process holds the lock for one cycle, False when another does.

    Without Redis (or when Redis errors) the lock degrades to always-acquired:
    the in-process lock and the scheduler's max_instances still prevent overlap.
    """
    if redis is None:
        yield True
        return

    lock_value = str(uuid.uuid4())
    try:
        acquired = await redis.set(lock_key, lock_value, ex=ttl_seconds, nx=True)
    except Exception:
        logger.exception("Failed to acquire redis lock")
        yield True
        return

    if not acquired:
        yield False
        return

    try:
        yield True
    finally:
        try:
            current = await redis.get(lock_key)
            if current == lock_value:
                await redis.delete(lock_key)
        except Exception:
            logger.exception("Failed to release redis lock")
