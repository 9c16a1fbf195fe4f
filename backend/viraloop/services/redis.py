"""Redis client owned by the application context.

Unlike a lazily-populated module global, a ``RedisClient`` is constructed
explicitly and handed to whoever needs it. ``initialize()`` opens the pool
and verifies the connection; ``close()`` tears it down.
"""

from typing import Optional

from redis.asyncio import Redis, ConnectionPool
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError, BusyLoadingError
from redis.retry import Retry

from viraloop.utils.logger import logger


class RedisClient:
    def __init__(self, url: str, max_connections: int = 20):
        self.url = url
        self.max_connections = max_connections
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise RuntimeError("Redis client not initialized")
        return self._client

    async def initialize(self) -> None:
        if self._client is not None:
            return

        host = self.url.split("@")[-1]
        logger.info(f"Initializing Redis to {host} with max {self.max_connections} connections")

        self._pool = ConnectionPool.from_url(
            self.url,
            decode_responses=True,
            socket_timeout=10.0,
            socket_connect_timeout=5.0,
            socket_keepalive=True,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=self.max_connections,
        )
        self._client = Redis(
            connection_pool=self._pool,
            retry=Retry(ExponentialBackoff(), 3),
            retry_on_error=[BusyLoadingError, RedisConnectionError],
        )
        await self._client.ping()
        logger.info("Successfully connected to Redis")

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis client: {e}")
            finally:
                self._client = None

        if self._pool is not None:
            try:
                await self._pool.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis pool: {e}")
            finally:
                self._pool = None

        logger.info("Redis connection and pool closed")
