"""
Durable cart snapshots keyed by user email.

Snapshots are a startup/offline fallback only; a resync against the backend
always replaces whatever was restored from here.
"""
import logging
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from cartsync.config import Config
from cartsync.logging_config import hash_identifier
from cartsync.models import CartState
from cartsync.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Reads and writes serialized CartState values in Redis"""

    def __init__(self, redis_client: Optional[RedisClient] = None, ttl: Optional[int] = None):
        self._redis = redis_client
        self.ttl = ttl if ttl is not None else Config.SNAPSHOT_TTL_SECONDS

    @property
    def redis(self) -> RedisClient:
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    def _get_key(self, email: str) -> str:
        """Generate Redis key for a user's snapshot"""
        return f"{Config.SNAPSHOT_KEY_PREFIX}:{email.strip().lower()}"

    def save(self, email: str, state: CartState) -> None:
        """
        Write a snapshot.

        Raises:
            RedisConnectionError: If Redis is unavailable
        """
        self.redis.set(self._get_key(email), state.model_dump_json(), ex=self.ttl)

    def load(self, email: str) -> Optional[CartState]:
        """
        Read a snapshot, or None if there is none.

        Corrupted snapshots are deleted and treated as missing.

        Raises:
            RedisConnectionError: If Redis is unavailable
        """
        key = self._get_key(email)
        data = self.redis.get(key)
        if not data:
            return None

        try:
            return CartState.model_validate_json(data)
        except PydanticValidationError as e:
            logger.warning(
                f"Discarding corrupted cart snapshot: {e.error_count()} errors",
                extra={"hashed_email": hash_identifier(email)}
            )
            self.redis.delete(key)
            return None

    def delete(self, email: str) -> bool:
        return self.redis.delete(self._get_key(email)) > 0
