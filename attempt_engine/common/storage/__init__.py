"""
Durable Key/Value Storage

This package provides the synchronous key/value backends that hold
in-progress attempt records: an in-process memory backend and a Redis
backend, both with TTL support.
"""

import logging
from typing import Optional

from attempt_engine.common.storage.base import StoreBackend, StoreResult
from attempt_engine.common.storage.entry import StoreEntry
from attempt_engine.common.storage.key_builder import KeyBuilder
from attempt_engine.common.storage.memory import MemoryStoreBackend
from attempt_engine.common.storage.redis import RedisStoreBackend

logger = logging.getLogger(__name__)

__all__ = [
    'StoreBackend',
    'StoreResult',
    'StoreEntry',
    'KeyBuilder',
    'MemoryStoreBackend',
    'RedisStoreBackend',
    'create_backend',
]


def create_backend(storage_config=None) -> StoreBackend:
    """
    Create the backend selected by the storage configuration.

    Args:
        storage_config: A ``StorageConfig``; the process configuration is
            used when omitted

    Returns:
        A ready-to-use store backend
    """
    if storage_config is None:
        from attempt_engine.config import get_config
        storage_config = get_config().storage

    if storage_config.backend == "redis":
        logger.info(
            f"Using Redis attempt store at {storage_config.redis_host}:{storage_config.redis_port}"
        )
        return RedisStoreBackend(
            host=storage_config.redis_host,
            port=storage_config.redis_port,
            db=storage_config.redis_db,
            password=storage_config.redis_password,
            key_prefix=storage_config.redis_key_prefix,
        )

    return MemoryStoreBackend(max_size=storage_config.memory_max_size)
