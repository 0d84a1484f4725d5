"""
Pooled redis-py access for cart snapshots, with reconnect and backoff.
"""
import logging
import random
import time
from typing import Any, Optional

import redis
from redis.exceptions import AuthenticationError, ConnectionError, RedisError, TimeoutError

from cartsync.config import Config
from cartsync.exceptions import RedisConnectionError

logger = logging.getLogger(__name__)

_TRANSIENT = (ConnectionError, TimeoutError, RedisConnectionError)


class RedisClient:
    """
    Connects on first use. Transient failures are retried with exponential
    backoff and jitter, reconnecting before each new attempt; anything else
    surfaces as RedisConnectionError.
    """

    def __init__(self, url: Optional[str] = None, max_retries: Optional[int] = None):
        self.url = url or Config.redis_url()
        self.max_retries = max_retries or Config.REDIS_MAX_RETRIES
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = None

    def _open_pool(self) -> redis.Redis:
        self.pool = redis.ConnectionPool.from_url(
            self.url,
            max_connections=Config.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=Config.REDIS_SOCKET_CONNECT_TIMEOUT,
            socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
            retry_on_timeout=Config.REDIS_RETRY_ON_TIMEOUT,
            decode_responses=True
        )
        connection = redis.Redis(connection_pool=self.pool)
        try:
            connection.ping()
        except (ConnectionError, TimeoutError, AuthenticationError) as e:
            raise RedisConnectionError(f"Failed to connect to Redis: {e}")
        return connection

    def _connection(self) -> redis.Redis:
        if self.client is None:
            self.client = self._open_pool()
        return self.client

    def _call(self, command: str, *args, **kwargs) -> Any:
        """Run one redis command, retrying transient failures"""
        delay = Config.REDIS_INITIAL_BACKOFF_SECONDS

        for attempt in range(1, self.max_retries + 1):
            try:
                return getattr(self._connection(), command)(*args, **kwargs)
            except _TRANSIENT as e:
                self.client = None
                if attempt == self.max_retries:
                    raise RedisConnectionError(
                        f"Redis {command} failed after {self.max_retries} attempts: {e}"
                    )
                logger.warning(
                    f"Redis {command} failed, retrying",
                    extra={"attempt": attempt, "error_type": type(e).__name__}
                )
                time.sleep(delay + random.uniform(0, delay * 0.1))
                delay = min(delay * 2, Config.REDIS_MAX_BACKOFF_SECONDS)
            except RedisError as e:
                raise RedisConnectionError(f"Redis {command} rejected: {e}")

    def get(self, key: str) -> Optional[str]:
        return self._call("get", key)

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        return self._call("set", key, value, ex=ex)

    def delete(self, *keys: str) -> int:
        return self._call("delete", *keys)

    def ping(self) -> bool:
        """Single health check, no retries"""
        try:
            return bool(self._connection().ping())
        except (RedisConnectionError, RedisError):
            self.client = None
            return False

    def close(self) -> None:
        if self.pool is not None:
            self.pool.disconnect()
        self.pool = None
        self.client = None


_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """Process-wide client used when no explicit one is injected"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
