"""Redis connection for state shared between API and worker processes.

Circuit breaker state and rate limit windows live here so every process
sees the same view of a webhook.
"""
import redis.asyncio as redis

from enrollment_webhooks.config import Settings


def create_redis(settings: Settings) -> redis.Redis:
    """
    Create the shared Redis client.

    Connections are opened lazily on first command.
    """
    return redis.from_url(
        str(settings.redis_url),
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )


def cache_key(entity_type: str, entity_id: object, suffix: str = "") -> str:
    """
    Generate consistent cache key.

    Args:
        entity_type: Key namespace (circuit, rate_limit:test, ...)
        entity_id: Entity ID
        suffix: Optional suffix for variations

    Returns:
        Cache key string
    """
    if suffix:
        return f"{entity_type}:{entity_id}:{suffix}"
    return f"{entity_type}:{entity_id}"
