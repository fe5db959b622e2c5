"""
Memory Store Backend Module

This module implements an in-process store backend using a dictionary with
thread safety, TTL expiry and LRU eviction. It is the default backend and
the one used by the tests.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict

from .base import StoreBackend, StoreResult
from .entry import StoreEntry

# Setup logging
logger = logging.getLogger(__name__)


class MemoryStoreBackend(StoreBackend):
    """
    In-memory store backend implementation.

    Features:
    - Thread-safe operations
    - LRU eviction when reaching maximum size
    - Expired entries are dropped when touched or on ``purge_expired``
    - Statistics tracking
    """

    def __init__(
        self,
        max_size: int = 10000,
        name: str = "memory",
        time_func: Callable[[], float] = time.time
    ):
        """
        Initialize the memory store backend.

        Args:
            max_size: Maximum number of entries to store (default: 10000)
            name: Name for this backend (default: "memory")
            time_func: Source of the current epoch time in seconds
        """
        self._data: "OrderedDict[str, StoreEntry[Any]]" = OrderedDict()
        self._lock = threading.RLock()
        self._max_size = max_size
        self._name = name
        self._time = time_func

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def name(self) -> str:
        """Get the name of this backend."""
        return self._name

    def get(self, key: str) -> StoreResult[Any]:
        """
        Get a value from the store.

        Args:
            key: The store key

        Returns:
            A StoreResult containing the value and metadata
        """
        with self._lock:
            entry = self._data.get(key)

            if entry is None:
                self._misses += 1
                return StoreResult(success=False, source=self.name, error="Key not found")

            if entry.is_expired():
                del self._data[key]
                self._expirations += 1
                self._misses += 1
                return StoreResult(success=False, source=self.name, error="Entry expired")

            # Update access stats and move to end of OrderedDict (LRU)
            entry.access()
            self._data.move_to_end(key)
            self._hits += 1

            return StoreResult(
                success=True,
                value=entry.value,
                hit=True,
                ttl=entry.get_ttl(),
                source=self.name
            )

    def set(self, key: str, value: Any, ttl: float = 0) -> StoreResult[Any]:
        """
        Set a value in the store.

        Args:
            key: The store key
            value: The value to store
            ttl: Time-to-live in seconds, 0 for no expiration

        Returns:
            StoreResult indicating success/failure
        """
        with self._lock:
            entry = StoreEntry(value, ttl=ttl, time_func=self._time)

            if key not in self._data and len(self._data) >= self._max_size:
                self._evict_entries()

            self._data[key] = entry
            self._data.move_to_end(key)

            return StoreResult(
                success=True,
                value=value,
                ttl=ttl or None,
                source=self.name
            )

    def delete(self, key: str) -> bool:
        """
        Delete a value from the store.

        Args:
            key: The store key

        Returns:
            True if the key was found and deleted, False otherwise
        """
        with self._lock:
            if key in self._data:
                del self._data[key]
                return True
            return False

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._data.get(key)

            if entry is None:
                return False

            if entry.is_expired():
                del self._data[key]
                self._expirations += 1
                return False

            return True

    def clear(self) -> bool:
        with self._lock:
            self._data.clear()
            return True

    def purge_expired(self) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            expired_keys = [key for key, entry in self._data.items() if entry.is_expired()]
            for key in expired_keys:
                del self._data[key]
            self._expirations += len(expired_keys)
            return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the store.

        Returns:
            Dictionary containing store statistics
        """
        with self._lock:
            total = self._hits + self._misses
            hit_rate = self._hits / total if total > 0 else 0

            return {
                'backend': 'memory',
                'size': len(self._data),
                'max_size': self._max_size,
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': hit_rate,
                'evictions': self._evictions,
                'expirations': self._expirations
            }

    def _evict_entries(self) -> None:
        """
        Evict entries using LRU policy until the store is under max size.
        """
        while len(self._data) >= self._max_size:
            key, _ = self._data.popitem(last=False)  # least recently used
            self._evictions += 1
            logger.debug(f"Evicted {key} from {self.name}")

    def __len__(self) -> int:
        """Return the number of entries in the store."""
        with self._lock:
            return len(self._data)
