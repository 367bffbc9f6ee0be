"""
Redis client for availability caching.
Separated from business logic for clean architecture.

Constructed once in the application lifespan and handed to whoever needs it;
there is no module-level connection. When Redis is disabled or unreachable,
`redis` stays None and every cache call degrades to a miss.
"""

from typing import Optional

import redis.asyncio as redis

from app.core.config import Settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Owns one redis.asyncio connection pool with an explicit lifecycle."""

    def __init__(self, url: str, *, enabled: bool = True, default_ttl: int = 60):
        self.url = url
        self.enabled = enabled
        self.default_ttl = default_ttl
        self.redis: Optional[redis.Redis] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisClient":
        return cls(
            settings.REDIS_URL,
            enabled=settings.REDIS_ENABLED,
            default_ttl=settings.REDIS_CACHE_TTL,
        )

    @property
    def available(self) -> bool:
        return self.redis is not None

    async def connect(self) -> None:
        if not self.enabled:
            logger.info("redis_disabled")
            return

        client = redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        try:
            await client.ping()
        except redis.RedisError as e:
            # Caching is optional; the service runs straight off the database
            logger.error("redis_connection_failed", url=self.url, error=str(e))
            await client.aclose()
            return

        self.redis = client
        logger.info("redis_connected", url=self.url)

    async def close(self) -> None:
        """Close Redis connection on shutdown."""
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
