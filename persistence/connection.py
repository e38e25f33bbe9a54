"""
Gatekeeper Redis Connection

One pooled redis-py client per process, shared by every RedisKeyValueStore.

Environment:
    REDIS_HOST              hostname (default: localhost)
    REDIS_PORT              port (default: 6379)
    REDIS_DB                database index (default: 0)
    REDIS_PASSWORD          required; the backend refuses to start without it
    REDIS_MAX_CONNECTIONS   pool size (default: 20)
    REDIS_SOCKET_TIMEOUT    seconds per socket operation (default: 5)
"""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import redis
from redis.exceptions import AuthenticationError, RedisError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedisSettings:
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    max_connections: int = 20
    socket_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> "RedisSettings":
        return cls(
            host=os.getenv("REDIS_HOST", cls.host),
            port=int(os.getenv("REDIS_PORT", cls.port)),
            db=int(os.getenv("REDIS_DB", cls.db)),
            password=os.getenv("REDIS_PASSWORD"),
            max_connections=int(os.getenv("REDIS_MAX_CONNECTIONS", cls.max_connections)),
            socket_timeout=float(os.getenv("REDIS_SOCKET_TIMEOUT", cls.socket_timeout)),
        )


@lru_cache(maxsize=1)
def get_redis_client() -> redis.Redis:
    """
    Build the shared client from the environment and ping it once.

    Call get_redis_client.cache_clear() to pick up changed settings.

    Raises:
        ValueError: REDIS_PASSWORD is not set.
        RedisError: the server is unreachable or rejects the credentials.
    """
    settings = RedisSettings.from_env()
    address = f"{settings.host}:{settings.port}/{settings.db}"

    if not settings.password:
        logger.critical("REDIS_PASSWORD is not set, cannot use the Redis store")
        raise ValueError("REDIS_PASSWORD is required for the Redis store")

    pool = redis.ConnectionPool(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
        decode_responses=True,
        max_connections=settings.max_connections,
        socket_timeout=settings.socket_timeout
    )
    client = redis.Redis(connection_pool=pool)

    try:
        client.ping()
    except AuthenticationError:
        logger.critical(f"Redis at {address} rejected REDIS_PASSWORD")
        raise
    except RedisError as e:
        logger.critical(f"Redis at {address} unreachable: {e}")
        raise

    logger.info(f"Connected to Redis at {address}")
    return client
