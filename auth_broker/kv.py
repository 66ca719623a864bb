"""
Redis client for the broker's key-value state. One shared client per process;
redis-py's connection pool makes it safe to use from concurrent request threads.
"""
import logging
import time

import redis

from auth_broker.config import REDIS_CONNECT_BACKOFF_SECONDS, REDIS_CONNECT_RETRIES, REDIS_URL

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
    return _client


def wait_for_redis(
    client: redis.Redis,
    retries: int = REDIS_CONNECT_RETRIES,
    backoff_seconds: float = REDIS_CONNECT_BACKOFF_SECONDS,
) -> None:
    """Ping until the server answers. Raises the last connection or timeout error after `retries` attempts."""
    for attempt in range(1, retries + 1):
        try:
            client.ping()
            logger.info("Connected to Redis")
            return
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.warning("Redis not reachable (attempt %s/%s): %s", attempt, retries, e)
            if attempt == retries:
                logger.error("Giving up on Redis after %s attempts", retries)
                raise
            time.sleep(backoff_seconds)
