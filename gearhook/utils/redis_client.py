"""
Shared async Redis connection (force-replay confirmations, worker heartbeats).
Nothing here is a source of truth: event state lives in Postgres.
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from gearhook.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None


async def write_heartbeat(worker_name: str, ttl_seconds: int = 600) -> None:
    """Store a worker heartbeat timestamp. Best effort."""
    try:
        redis = await get_redis()
        await redis.set(
            f"gearhook:worker_health:{worker_name}",
            datetime.now(timezone.utc).isoformat(),
            ex=ttl_seconds,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))
