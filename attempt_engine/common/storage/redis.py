"""
Redis Store Backend Module

This module implements a Redis store backend, used when attempt records must
survive a restart of the process that runs the controller.
"""

import json
import logging
import math
from typing import Any, Dict, Optional

import redis
from redis.exceptions import RedisError

from .base import StoreBackend, StoreResult

# Setup logging
logger = logging.getLogger(__name__)


class RedisStoreBackend(StoreBackend):
    """
    Redis store backend implementation.

    Values are stored as JSON under ``key_prefix + key``. A positive TTL is
    applied atomically with the write so Redis drops stale records on its own.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "attempt_engine:",
        name: str = "redis"
    ):
        """
        Initialize the Redis store backend.

        Args:
            redis_client: Optional existing Redis client to use
            host: Redis server hostname (default: "localhost")
            port: Redis server port (default: 6379)
            db: Redis database number (default: 0)
            password: Redis password (optional)
            key_prefix: Prefix for all Redis keys (default: "attempt_engine:")
            name: Name for this backend (default: "redis")
        """
        self._key_prefix = key_prefix
        self._name = name

        if redis_client is not None:
            self._redis = redis_client
        else:
            self._redis = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=False  # We handle decoding ourselves
            )

        # Statistics counters
        self._hits = 0
        self._misses = 0

        # Test connection
        try:
            self._redis.ping()
        except RedisError as e:
            logger.warning(f"Redis connection test failed: {e}")

    @property
    def name(self) -> str:
        """Get the name of this backend."""
        return self._name

    def _build_key(self, key: str) -> str:
        """
        Build a Redis key with the configured prefix.

        Args:
            key: The original store key

        Returns:
            The prefixed Redis key
        """
        return f"{self._key_prefix}{key}"

    def _serialize(self, value: Any) -> bytes:
        return json.dumps(value).encode('utf-8')

    def _deserialize(self, data: bytes) -> Any:
        """
        Deserialize data from Redis.

        Args:
            data: The serialized data

        Returns:
            The deserialized value, or None if it cannot be decoded
        """
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode('utf-8')
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            logger.error(f"JSON deserialization failed: {e}")
            return None

    def get(self, key: str) -> StoreResult[Any]:
        """
        Get a value from Redis.

        Args:
            key: The store key

        Returns:
            StoreResult containing the value and metadata
        """
        redis_key = self._build_key(key)
        try:
            pipe = self._redis.pipeline()
            pipe.get(redis_key)
            pipe.ttl(redis_key)
            value_data, ttl = pipe.execute()
        except RedisError as e:
            logger.error(f"Redis error in get: {e}")
            return StoreResult(success=False, source=self.name, error=str(e))

        if value_data is None:
            self._misses += 1
            return StoreResult(success=False, source=self.name, error="Key not found")

        value = self._deserialize(value_data)
        if value is None:
            self._misses += 1
            return StoreResult(success=False, source=self.name, error="Deserialization failed")

        self._hits += 1
        return StoreResult(
            success=True,
            value=value,
            hit=True,
            ttl=ttl if ttl and ttl > 0 else None,
            source=self.name
        )

    def set(self, key: str, value: Any, ttl: float = 0) -> StoreResult[Any]:
        """
        Set a value in Redis.

        Args:
            key: The store key
            value: The value to store
            ttl: Time-to-live in seconds (0 means no expiration)

        Returns:
            StoreResult indicating success/failure
        """
        redis_key = self._build_key(key)
        try:
            value_data = self._serialize(value)
        except (TypeError, ValueError) as e:
            logger.error(f"JSON serialization failed for {key}: {e}")
            return StoreResult(success=False, source=self.name, error=str(e))

        try:
            if ttl and ttl > 0:
                self._redis.set(redis_key, value_data, ex=math.ceil(ttl))
            else:
                self._redis.set(redis_key, value_data)
        except RedisError as e:
            logger.error(f"Redis error in set: {e}")
            return StoreResult(success=False, source=self.name, error=str(e))

        return StoreResult(success=True, value=value, ttl=ttl or None, source=self.name)

    def delete(self, key: str) -> bool:
        """
        Delete a value from Redis.

        Args:
            key: The store key

        Returns:
            True if the key was found and deleted, False otherwise
        """
        try:
            return bool(self._redis.delete(self._build_key(key)))
        except RedisError as e:
            logger.error(f"Redis error in delete: {e}")
            return False

    def has(self, key: str) -> bool:
        try:
            return bool(self._redis.exists(self._build_key(key)))
        except RedisError as e:
            logger.error(f"Redis error in has: {e}")
            return False

    def clear(self) -> bool:
        """
        Clear all values with our prefix from Redis.

        Returns:
            True if the operation was successful, False otherwise
        """
        try:
            keys = list(self._redis.scan_iter(match=f"{self._key_prefix}*"))
            if keys:
                self._redis.delete(*keys)
            return True
        except RedisError as e:
            logger.error(f"Redis error in clear: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the backend.

        Returns:
            Dictionary containing backend statistics
        """
        stats = {
            'backend': 'redis',
            'key_prefix': self._key_prefix,
            'hits': self._hits,
            'misses': self._misses,
        }
        try:
            info = self._redis.info()
            stats['used_memory'] = info.get('used_memory_human')
            stats['connected_clients'] = info.get('connected_clients')
        except RedisError as e:
            logger.warning(f"Redis error in get_stats: {e}")
            stats['error'] = str(e)
        return stats
