"""
Redis connection and worker heartbeats.

Workers write a timestamp under hookrelay:worker_health:<name> every cycle;
the readiness endpoint reads them back. Redis being down never blocks a worker.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

HEARTBEAT_KEY_PREFIX = "hookrelay:worker_health:"

_redis_client = None


async def get_redis():
    """Get or create the shared Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from hookrelay.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def record_heartbeat(worker_name: str, ttl_seconds: int = 300) -> None:
    try:
        redis = await get_redis()
        await redis.set(
            f"{HEARTBEAT_KEY_PREFIX}{worker_name}",
            datetime.now(timezone.utc).isoformat(),
            ex=ttl_seconds,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))


async def last_heartbeat(worker_name: str) -> Optional[str]:
    """ISO timestamp of the worker's last heartbeat, or None if missing/expired."""
    try:
        redis = await get_redis()
        return await redis.get(f"{HEARTBEAT_KEY_PREFIX}{worker_name}")
    except Exception as e:
        logger.debug("Heartbeat read failed for %s: %s", worker_name, str(e))
        return None
