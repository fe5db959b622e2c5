"""
Base Storage Module

This module defines the core interface and result type for the key/value
stores that hold in-progress attempt records.

Unlike a cache, these stores are synchronous: a write completes before the
mutation that caused it returns, so a crash never leaves a half-written
record behind.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

# Type variable for stored value type
V = TypeVar('V')


@dataclass
class StoreResult(Generic[V]):
    """
    Result of a store operation.

    Attributes:
        success: Whether the operation was successful
        value: The value retrieved or stored
        hit: Whether the value was found (for get operations)
        ttl: Remaining time-to-live in seconds
        source: Name of the backend that served the operation
        error: Optional error message if the operation failed
    """
    success: bool
    value: Optional[V] = None
    hit: bool = False
    ttl: Optional[float] = None
    source: Optional[str] = None
    error: Optional[str] = None


class StoreBackend(ABC):
    """
    Abstract interface for durable key/value backends.

    Values are JSON-compatible objects. Concrete implementations decide how
    they are held (process memory, Redis, ...).
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the name of this backend."""
        pass

    @abstractmethod
    def get(self, key: str) -> StoreResult[Any]:
        """
        Retrieve a value.

        Args:
            key: The store key

        Returns:
            StoreResult with the value and metadata
        """
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float = 0) -> StoreResult[Any]:
        """
        Store a value, replacing any previous value under the key.

        Args:
            key: The store key
            value: The value to store
            ttl: Time-to-live in seconds (0 means no expiration)

        Returns:
            StoreResult indicating success/failure
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Delete a value.

        Args:
            key: The store key

        Returns:
            True if the value was deleted, False otherwise
        """
        pass

    @abstractmethod
    def has(self, key: str) -> bool:
        """
        Check if a key exists and has not expired.

        Args:
            key: The store key

        Returns:
            True if the key exists, False otherwise
        """
        pass

    @abstractmethod
    def clear(self) -> bool:
        """
        Remove all entries owned by this backend.

        Returns:
            True if the store was cleared, False otherwise
        """
        pass

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the backend.

        Returns:
            Dictionary containing backend statistics
        """
        pass
