"""Redis connection used by the batch task store."""
import logging

import redis

from app.config import Settings

logger = logging.getLogger(__name__)


def create_redis_client(settings: Settings) -> redis.Redis:
    """Create a client returning str values, with bounded socket timeouts."""
    client = redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
        health_check_interval=30,
    )
    logger.info("🔌 Redis client created")
    return client
