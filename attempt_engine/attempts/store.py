"""
Durable Attempt Store

Keeps the durable record of an in-progress attempt so it can be resumed
after a reload or crash. Records are written synchronously with the
mutation that changed them and are only resumed while fresh.
"""

import logging
from typing import Any, Optional

from attempt_engine.attempts.clock import WallClock
from attempt_engine.attempts.models import AttemptSession, is_stale, mark_persisted
from attempt_engine.attempts.schemas import AssessmentDefinition
from attempt_engine.common.error_handling import StorageError
from attempt_engine.common.logger import app_logger
from attempt_engine.common.storage import MemoryStoreBackend, StoreBackend

logger = app_logger.getChild("attempts.store")

DEFAULT_STALENESS_WINDOW_MS = 6 * 60 * 60 * 1000


class DurableAttemptStore:
    """
    Attempt records on top of a key/value backend.

    A record is treated as absent, and deleted, when it is older than the
    staleness window, belongs to another assessment, or cannot be decoded.
    """

    def __init__(
        self,
        backend: Optional[StoreBackend] = None,
        staleness_window_ms: int = DEFAULT_STALENESS_WINDOW_MS,
        clock: Any = None
    ):
        """
        Initialize the store.

        Args:
            backend: Key/value backend (defaults to an in-process memory backend)
            staleness_window_ms: Age after which a record is never resumed
            clock: Object with ``now_ms()`` (defaults to the wall clock)
        """
        self.backend = backend if backend is not None else MemoryStoreBackend()
        self.staleness_window_ms = staleness_window_ms
        self.clock = clock or WallClock()

    def load(self, session_key: str, definition: AssessmentDefinition) -> Optional[AttemptSession]:
        """
        Read the record for ``session_key`` if it can be resumed.

        Args:
            session_key: Key of the attempt
            definition: Definition the attempt must belong to

        Returns:
            The stored session as written (no elapsed-time correction applied),
            or None when there is no resumable record
        """
        try:
            result = self.backend.get(session_key)
        except Exception as e:
            logger.warning(f"Could not read attempt record {session_key}: {e}")
            return None

        if not result.success:
            return None

        snapshot = result.value
        if not isinstance(snapshot, dict):
            logger.warning(f"Discarding malformed attempt record {session_key}")
            self.remove(session_key)
            return None

        if str(snapshot.get("assessmentId")) != str(definition.id):
            logger.warning(
                f"Discarding attempt record {session_key}: belongs to assessment "
                f"{snapshot.get('assessmentId')}, expected {definition.id}"
            )
            self.remove(session_key)
            return None

        now = self.clock.now_ms()
        try:
            stamp = snapshot.get("lastPersistedAtEpochMs")
            if is_stale(None if stamp is None else int(stamp), now, self.staleness_window_ms):
                logger.info(f"Discarding stale attempt record {session_key}")
                self.remove(session_key)
                return None
            return AttemptSession.from_snapshot(session_key, snapshot, definition)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding undecodable attempt record {session_key}: {e}")
            self.remove(session_key)
            return None

    def save(self, session: AttemptSession) -> AttemptSession:
        """
        Write a session, overwriting any earlier record under its key.

        Args:
            session: Session to write

        Returns:
            The session stamped with the time of this write

        Raises:
            StorageError: If the backend rejected the write
        """
        persisted = mark_persisted(session, self.clock.now_ms())
        ttl_seconds = self.staleness_window_ms / 1000
        try:
            result = self.backend.set(session.session_key, persisted.to_snapshot(), ttl=ttl_seconds)
        except Exception as e:
            raise StorageError("write", session.session_key, cause=e) from e

        if not result.success:
            raise StorageError("write", session.session_key, details={"error": result.error})
        return persisted

    def remove(self, session_key: str) -> bool:
        """
        Delete the record for ``session_key``.

        Returns:
            True if a record was deleted
        """
        try:
            removed = self.backend.delete(session_key)
        except Exception as e:
            logger.warning(f"Could not delete attempt record {session_key}: {e}")
            return False
        if removed:
            logger.debug(f"Removed attempt record {session_key}")
        return removed

    def exists(self, session_key: str) -> bool:
        try:
            return self.backend.has(session_key)
        except Exception as e:
            logger.warning(f"Could not check attempt record {session_key}: {e}")
            return False
