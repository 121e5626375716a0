"""
Shared Redis client accessor.

Everyone imports the client from here instead of from main.py, which would
otherwise create a circular import with the API routers.
"""

import json
import redis.asyncio as aioredis
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)

MATCH_EVENTS_CHANNEL = "match_events"

_redis_client: Optional[aioredis.Redis] = None


async def init_redis(url: str) -> aioredis.Redis:
    """Initialize the shared Redis connection. Called once during app lifespan startup."""
    global _redis_client
    _redis_client = aioredis.from_url(url, encoding="utf-8", decode_responses=False)
    return _redis_client


def get_redis_client() -> Optional[aioredis.Redis]:
    """Get the shared Redis client. Returns None if not initialized."""
    return _redis_client


async def close_redis() -> None:
    """Close the shared Redis connection. Called during app lifespan shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None


async def publish_match_event(event: str, payload: dict[str, Any]) -> None:
    """Publish a match event for the frontend stream. No-op without Redis."""
    redis = get_redis_client()
    if not redis:
        return

    message = json.dumps({"event": event, "data": payload}, default=str)
    try:
        await redis.publish(MATCH_EVENTS_CHANNEL, message)
    except Exception as e:
        # The stream is best-effort; engine state never depends on it
        logger.warning(f"Failed to publish {event}: {e}")
