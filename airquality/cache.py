#file: airquality/cache.py

import json
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from airquality.models import AirQualityReadingsInfo

DASHBOARD_CACHE_TTL_SECONDS = 900
DEFAULT_TTL_SECONDS = 3600


class CachePort(Protocol):
    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        ...


class RedisCache:
    """JSON values in Redis. Failures are logged and never raised."""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.Redis.from_url(url, socket_connect_timeout=1, socket_timeout=1))

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
            return json.loads(raw) if raw else None
        except (RedisError, OSError, ValueError) as e:
            logging.warning(f"Cache get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        try:
            await self.client.set(key, json.dumps(value), ex=ttl_seconds)
        except (RedisError, OSError, TypeError, ValueError) as e:
            logging.warning(f"Cache set failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except (RedisError, OSError) as e:
            logging.warning(f"Cache delete failed for {key}: {e}")

    async def close(self) -> None:
        await self.client.aclose()


class DashboardCache:
    """Read-through cache for a user's 24h air quality series."""

    def __init__(self, cache: CachePort, ttl_seconds: int = DASHBOARD_CACHE_TTL_SECONDS):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key_for(user_id: str) -> str:
        return f"airQualityReadingsInfo:userId:{user_id}"

    async def _read(self, key: str) -> Optional[AirQualityReadingsInfo]:
        try:
            cached = await self.cache.get(key)
            return AirQualityReadingsInfo.model_validate(cached) if cached is not None else None
        except Exception as e:
            # any cache problem, including a stale payload shape, is just a miss
            logging.warning(f"Ignoring cached value for {key}: {e}")
            return None

    async def _write(self, key: str, info: AirQualityReadingsInfo) -> None:
        try:
            await self.cache.set(key, info.model_dump(mode="json"), self.ttl_seconds)
        except Exception as e:
            logging.warning(f"Could not cache {key}: {e}")

    async def get_or_compute(self, user_id: str,
                             compute: Callable[[], Awaitable[AirQualityReadingsInfo]]) -> AirQualityReadingsInfo:
        key = self.key_for(user_id)
        cached = await self._read(key)
        if cached is not None:
            logging.info(f"Cache hit for {key}")
            return cached

        info = await compute()
        await self._write(key, info)
        return info
