from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from redis import asyncio as redis
from redis.asyncio.client import Redis

from swapcore.common import log_event


@dataclass(slots=True, frozen=True)
class RedisConfigSettings:
    redis_url: str = ""
    config_key: str = "swapcore:config"

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    @classmethod
    def from_env(cls) -> "RedisConfigSettings":
        return cls(
            redis_url=os.getenv("REDIS_URL", "").strip(),
            config_key=os.getenv("SWAPCORE_CONFIG_KEY", "swapcore:config").strip() or "swapcore:config",
        )


class RedisConfigSource:
    """Reads runtime overrides for ``CoreConfig.with_overrides`` from a Redis hash."""

    def __init__(self, settings: RedisConfigSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
            config_key=self.settings.config_key,
        )

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis

    async def get_overrides(self) -> dict[str, str]:
        redis_client = self._require_redis()
        overrides = await redis_client.hgetall(self.settings.config_key)
        log_event(
            self._logger,
            level="info",
            event="config_overrides_loaded",
            message="Loaded runtime config overrides from Redis",
            items=len(overrides),
        )
        return dict(overrides)

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None
