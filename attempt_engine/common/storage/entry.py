"""
Store Entry Module

This module provides the StoreEntry class, which wraps a stored value with
the metadata needed for expiration and access tracking.
"""

import time
from typing import Callable, Generic, Optional, TypeVar

# Type variable for stored value
V = TypeVar('V')


class StoreEntry(Generic[V]):
    """
    Represents a stored value with metadata.

    Attributes:
        value: The stored value
        created_at: When the entry was created (epoch seconds)
        expires_at: When the entry expires (epoch seconds), or None for no expiration
        access_count: Number of times the entry has been read
        last_accessed: When the entry was last read (epoch seconds)
    """

    def __init__(
        self,
        value: V,
        ttl: Optional[float] = None,
        time_func: Callable[[], float] = time.time
    ):
        """
        Initialize an entry with a value and optional TTL.

        Args:
            value: The value to store
            ttl: Time-to-live in seconds, or None/0 for no expiration
            time_func: Source of the current epoch time in seconds
        """
        self._time = time_func
        self.value = value
        self.created_at = self._time()
        self.expires_at = self.created_at + ttl if ttl else None
        self.access_count = 0
        self.last_accessed = self.created_at

    def is_expired(self) -> bool:
        """
        Check if the entry has expired.

        Returns:
            True if the entry has expired, False otherwise
        """
        if self.expires_at is None:
            return False
        return self._time() >= self.expires_at

    def access(self) -> None:
        """Record a read of this entry."""
        self.access_count += 1
        self.last_accessed = self._time()

    def get_ttl(self) -> Optional[float]:
        """
        Get the remaining TTL in seconds.

        Returns:
            Remaining TTL in seconds, or None if no expiration
        """
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._time())
