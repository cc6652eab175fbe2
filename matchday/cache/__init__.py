"""Derived-data cache and invalidation."""

from matchday.cache.client import CacheClient, CacheUnavailable
from matchday.cache.invalidation import InvalidationCoordinator

__all__ = ["CacheClient", "CacheUnavailable", "InvalidationCoordinator"]
