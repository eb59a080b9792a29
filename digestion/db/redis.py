"""
Redis Connection Management

Provides the shared connection pool used by the broker, event bus, and API,
and the Redis settings for the ARQ worker runtime.
"""

from urllib.parse import urlparse

from arq.connections import RedisSettings
from redis.asyncio import ConnectionPool, Redis

from digestion.config import config
from digestion.utils.logger import get_logger

logger = get_logger(__name__)

# Global connection pool, reused by every broker operation
_redis_pool: ConnectionPool | None = None


def parse_redis_url(url: str) -> dict:
    """Parse Redis URL into connection parameters."""
    parsed = urlparse(url)
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 6379,
        "password": parsed.password,
        "database": int(parsed.path.lstrip("/") or 0),
        "ssl": parsed.scheme == "rediss",
    }


def get_redis_settings() -> RedisSettings:
    """
    Get ARQ Redis connection settings.

    Returns:
        RedisSettings configured from environment variables.
    """
    redis_params = parse_redis_url(config.redis_url)

    settings = RedisSettings(
        host=redis_params["host"],
        port=redis_params["port"],
        password=redis_params["password"],
        database=redis_params["database"],
        ssl=redis_params["ssl"],
        conn_timeout=30,
        conn_retries=5,
        conn_retry_delay=1.0,
    )

    logger.debug(
        f"Redis settings configured: {redis_params['host']}:{redis_params['port']}/{redis_params['database']}"
    )

    return settings


def get_redis_pool() -> ConnectionPool:
    """Get or create the shared Redis connection pool.

    Idle connections are checked every `broker_heartbeat_seconds` before reuse.

    Returns:
        Redis ConnectionPool
    """
    global _redis_pool

    if _redis_pool is None:
        _redis_pool = ConnectionPool.from_url(
            config.redis_url,
            decode_responses=True,
            max_connections=config.redis_max_connections,
            health_check_interval=config.broker_heartbeat_seconds,
            socket_keepalive=True,
        )
        redis_params = parse_redis_url(config.redis_url)
        logger.info(
            f"Redis connection pool created: {redis_params['host']}:{redis_params['port']}"
        )

    return _redis_pool


def get_redis_client() -> Redis:
    """Get a Redis client on the shared pool.

    Returns:
        Configured Redis client
    """
    return Redis(connection_pool=get_redis_pool())


async def close_redis_pool() -> None:
    """Disconnect the shared pool on shutdown."""
    global _redis_pool

    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None
        logger.info("Redis connection pool closed")


class RedisHealthCheck:
    """Health check utilities for Redis connection."""

    @staticmethod
    async def check_connection(client: Redis | None = None) -> bool:
        """
        Check if Redis is reachable.

        Returns:
            True if connection successful, False otherwise.
        """
        try:
            await (client or get_redis_client()).ping()
            return True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False
