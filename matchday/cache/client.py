"""Distributed derived-data cache (Redis).

The cache is strictly derived and disposable: every operation degrades to a
logged no-op when Redis is unreachable or not configured. Callers never see a
cache exception.
"""

import json
import logging
from typing import Any, Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

SCAN_BATCH = 200


class CacheUnavailable(Exception):
    """Raised by the strict variants when Redis cannot be reached."""


class CacheClient:
    """Thin async wrapper over Redis for JSON values."""

    def __init__(self, redis: Optional[Redis]):
        self.redis = redis

    @classmethod
    def from_url(cls, url: str) -> "CacheClient":
        if not url:
            logger.info("[CACHE] REDIS_URL not set, cache disabled")
            return cls(None)
        return cls(Redis.from_url(url, decode_responses=True))

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    async def get(self, key: str) -> Optional[Any]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(key)
        except Exception as e:
            logger.warning(f"[CACHE] get {key} failed: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"[CACHE] Corrupt value at {key}, dropping")
            return None

    async def set_with_ttl(self, key: str, value: Any, ttl_seconds: int) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.set(key, json.dumps(value, default=str), ex=ttl_seconds)
            return True
        except Exception as e:
            logger.warning(f"[CACHE] set {key} failed: {e}")
            return False

    async def delete(self, *keys: str) -> int:
        """Delete exact keys. Raises CacheUnavailable so the coordinator can report it."""
        if self.redis is None or not keys:
            return 0
        try:
            return await self.redis.delete(*keys)
        except Exception as e:
            raise CacheUnavailable(str(e)) from e

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with `prefix` (SCAN + batched DEL)."""
        if self.redis is None:
            return 0
        deleted = 0
        batch: list[str] = []
        try:
            async for key in self.redis.scan_iter(match=f"{prefix}*", count=SCAN_BATCH):
                batch.append(key)
                if len(batch) >= SCAN_BATCH:
                    deleted += await self.redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.redis.delete(*batch)
        except Exception as e:
            raise CacheUnavailable(str(e)) from e
        return deleted

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
