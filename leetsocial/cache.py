"""
Cache Manager
Optional Redis layer; every call degrades to a miss when Redis is absent or failing
"""
import json
from typing import Any, Optional, List
from . import core
import logging

logger = logging.getLogger(__name__)

class CacheManager:
    """
    JSON cache over the shared Redis client.
    Reads the client from ``core.REDIS`` at call time so startup order does not matter.
    """

    def __init__(self, default_ttl: int = 3600):
        self.default_ttl = default_ttl

    @property
    def client(self):
        return core.REDIS

    def _make_key(self, key: str, prefix: str = "") -> str:
        if prefix:
            return f"{prefix}:{key}"
        return key

    async def set(self, key: str, value: Any, ttl: int = None, prefix: str = "") -> bool:
        """Set cache value with TTL"""
        redis = self.client
        if not redis:
            return False

        cache_key = self._make_key(key, prefix)
        try:
            await redis.set(cache_key, json.dumps(value, default=str), ex=ttl or self.default_ttl)
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for key {cache_key}: {e}")
            return False

    async def get(self, key: str, prefix: str = "") -> Optional[Any]:
        """Get cache value, None on miss"""
        redis = self.client
        if not redis:
            return None

        cache_key = self._make_key(key, prefix)
        try:
            value = await redis.get(cache_key)
            if value is None:
                return None
            return json.loads(value)
        except Exception as e:
            logger.warning(f"Cache get failed for key {cache_key}: {e}")
            return None

    async def delete(self, key: str, prefix: str = "") -> bool:
        redis = self.client
        if not redis:
            return False

        cache_key = self._make_key(key, prefix)
        try:
            return await redis.delete(cache_key) > 0
        except Exception as e:
            logger.warning(f"Cache delete failed for key {cache_key}: {e}")
            return False

# Global cache manager instance
cache = CacheManager()

# Leaderboard
async def cache_leaderboard(limit: int, rows: List[dict], ttl: int = 60):
    return await cache.set(f"global:{limit}", rows, ttl, "leaderboard")

async def get_cached_leaderboard(limit: int) -> Optional[List[dict]]:
    return await cache.get(f"global:{limit}", "leaderboard")

async def invalidate_leaderboard(limit: int = 100):
    await cache.delete(f"global:{limit}", "leaderboard")

# Friends
async def cache_friend_ids(user_id: int, friend_ids: List[int], ttl: int = 600):
    return await cache.set(str(user_id), friend_ids, ttl, "friends")

async def get_cached_friend_ids(user_id: int) -> Optional[List[int]]:
    return await cache.get(str(user_id), "friends")

async def invalidate_friends_cache(*user_ids: int):
    for user_id in user_ids:
        await cache.delete(str(user_id), "friends")

# Presence mirror, advisory only
async def set_presence(user_id: int, ttl: int = 300):
    return await cache.set(str(user_id), 'online', ttl, "presence")

async def clear_presence(user_id: int):
    await cache.delete(str(user_id), "presence")
