"""
Redis caching service for ticket availability.

CACHING STRATEGY
================

What we cache:
  - Availability snapshots per ticket type (JSON-serialized)
  - Cache key pattern: "tickets:availability:{ticket_type_id}"

Why:
  - Availability is polled by every client sitting on an event page
  - Serving from Redis: ~1ms vs PostgreSQL: ~15-50ms

Invalidation strategy:
  - Every reserve/release deletes the key for that ticket type, after commit
  - TTL-based expiry as safety net (REDIS_CACHE_TTL)

The cache only ever serves display reads. Reservations always read the row
itself, so a stale snapshot can never lead to an oversell.
"""

import json
from typing import Optional

from redis.exceptions import RedisError

from app.core.logging import get_logger
from app.core.metrics import record_cache_operation
from app.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)


def _make_availability_key(ticket_type_id: int) -> str:
    return f"tickets:availability:{ticket_type_id}"


async def get_cached_availability(cache: Optional[RedisClient], ticket_type_id: int) -> Optional[dict]:
    """Retrieve a cached availability snapshot."""
    if cache is None or not cache.available:
        return None

    key = _make_availability_key(ticket_type_id)
    try:
        data = await cache.redis.get(key)
    except RedisError as e:
        record_cache_operation("get", "error")
        logger.error("cache_get_error", key=key, error=str(e))
        return None

    if data:
        record_cache_operation("get", "hit")
        logger.debug("cache_hit", key=key)
        return json.loads(data)

    record_cache_operation("get", "miss")
    logger.debug("cache_miss", key=key)
    return None


async def set_cached_availability(cache: Optional[RedisClient], ticket_type_id: int, data: dict) -> None:
    """Cache an availability snapshot with TTL."""
    if cache is None or not cache.available:
        return

    key = _make_availability_key(ticket_type_id)
    try:
        await cache.redis.setex(key, cache.default_ttl, json.dumps(data, default=str))
        record_cache_operation("set", "ok")
        logger.debug("cache_set", key=key, ttl=cache.default_ttl)
    except RedisError as e:
        record_cache_operation("set", "error")
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_availability(cache: Optional[RedisClient], *ticket_type_ids: int) -> None:
    """Drop cached snapshots for the given ticket types."""
    if cache is None or not cache.available or not ticket_type_ids:
        return

    keys = [_make_availability_key(tid) for tid in ticket_type_ids]
    try:
        deleted = await cache.redis.delete(*keys)
        record_cache_operation("invalidate", "ok")
        logger.info("cache_invalidated", keys_deleted=deleted)
    except RedisError as e:
        record_cache_operation("invalidate", "error")
        logger.error("cache_invalidation_error", error=str(e))


async def get_cache_stats(cache: Optional[RedisClient]) -> dict:
    """Get Redis cache statistics for monitoring."""
    if cache is None or not cache.available:
        return {"status": "disabled"}

    try:
        info = await cache.redis.info("stats")
    except RedisError as e:
        return {"status": "error", "error": str(e)}

    hits = info.get("keyspace_hits", 0)
    misses = info.get("keyspace_misses", 0)
    return {
        "status": "connected",
        "hits": hits,
        "misses": misses,
        "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
    }
