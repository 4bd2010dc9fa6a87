"""
Read-model cache (Redis)

Workers only ever invalidate: the API layer repopulates `home:{studentId}`
and `learning:{studentId}` on the next read.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from shared.config.app_config import AppConfig
from shared.config.settings import RedisSettings, get_settings

logger = logging.getLogger(__name__)


class CacheStore:
    """
    Async Redis client for student view caches.

    Features:
    - Connection pooling
    - Lazy connect (a Redis outage must not block worker startup)
    """

    def __init__(self, redis_settings: Optional[RedisSettings] = None, *, client: Optional[redis.Redis] = None):
        self._settings = redis_settings or get_settings().redis
        self._client = client
        self._pool: Optional[ConnectionPool] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._pool = ConnectionPool.from_url(
                self._settings.redis_url,
                decode_responses=True,
                socket_timeout=self._settings.socket_timeout,
                socket_connect_timeout=self._settings.socket_timeout,
                health_check_interval=30,
            )
            self._client = redis.Redis(connection_pool=self._pool)
        return self._client

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def invalidate_student(self, student_id: str) -> int:
        """
        Delete every cached view of a student.

        Returns:
            Number of keys that existed

        Raises:
            RedisError: the caller decides whether that matters
        """
        keys = AppConfig.get_student_cache_keys(student_id)
        deleted = int(await self.client.delete(*keys))
        logger.info(f"Invalidated {keys} (deleted={deleted})")
        return deleted

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
