import json
from datetime import datetime, date
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from viraloop.utils.logger import logger


class DateTimeEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime objects."""
    def default(self, obj):
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        return super().default(obj)


class Cache:
    """Read-through cache over Redis, keyed under the ``cache:`` prefix.

    A cache built without a Redis client is a no-op: every ``get`` misses and
    every write is dropped. Redis failures are logged and treated as misses,
    the cache never becomes the reason a billing operation fails.
    """

    PREFIX = "cache:"

    def __init__(self, redis: Optional[Redis] = None):
        self._redis = redis

    def attach(self, redis: Optional[Redis]) -> None:
        self._redis = redis

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    async def get(self, key: str) -> Optional[Any]:
        if self._redis is None:
            return None
        try:
            result = await self._redis.get(f"{self.PREFIX}{key}")
        except RedisError as e:
            logger.warning(f"[CACHE] get failed for {key}: {e}")
            return None
        if result:
            return json.loads(result)
        return None

    async def set(self, key: str, value: Any, ttl: int = 15 * 60) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(f"{self.PREFIX}{key}", json.dumps(value, cls=DateTimeEncoder), ex=ttl)
        except RedisError as e:
            logger.warning(f"[CACHE] set failed for {key}: {e}")

    async def invalidate(self, *keys: str) -> None:
        if self._redis is None or not keys:
            return
        try:
            await self._redis.delete(*[f"{self.PREFIX}{key}" for key in keys])
        except RedisError as e:
            logger.warning(f"[CACHE] invalidate failed for {keys}: {e}")
