"""Cache invalidation coordinator.

Called (awaited) right after the source-of-truth commit of the operation that
changed the data. A failure here leaves a stale but safe cache, so it is logged
and counted but never raised.
"""

import logging

from matchday.cache import keys
from matchday.cache.client import CacheClient
from matchday.telemetry.metrics import record_cache_invalidation

logger = logging.getLogger(__name__)


class InvalidationCoordinator:
    def __init__(self, cache: CacheClient):
        self.cache = cache

    async def invalidate_on_predictor_change(self) -> bool:
        """Predictor active-set or health changed."""
        return await self._invalidate(
            "predictor_change",
            keys.PREDICTOR_CHANGE_KEYS,
            keys.PREDICTOR_CHANGE_PREFIXES,
        )

    async def invalidate_on_fixture_settled(self, fixture_id: int) -> bool:
        """A fixture was (re)scored: per-fixture summaries and every aggregate are stale."""
        exact = (
            keys.fixture_predictions(fixture_id),
            keys.fixture_detail(fixture_id),
            *keys.SETTLEMENT_KEYS,
        )
        return await self._invalidate("fixture_settled", exact, keys.SETTLEMENT_PREFIXES)

    async def invalidate_fixture(self, fixture_id: int) -> bool:
        """Fixture state changed without settlement (live update, void)."""
        return await self._invalidate(
            "fixture_update",
            (keys.fixture_predictions(fixture_id), keys.fixture_detail(fixture_id)),
            (),
        )

    async def _invalidate(self, reason: str, exact_keys, prefixes) -> bool:
        if not self.cache.enabled:
            return True
        try:
            deleted = await self.cache.delete(*exact_keys)
            for prefix in prefixes:
                deleted += await self.cache.delete_prefix(prefix)
        except Exception as e:
            logger.warning(f"[CACHE] Invalidation ({reason}) failed, serving stale cache: {e}")
            record_cache_invalidation(reason, "error")
            return False

        logger.debug(f"[CACHE] Invalidated {deleted} keys ({reason})")
        record_cache_invalidation(reason, "ok")
        return True
