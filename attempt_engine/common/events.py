"""
Domain Events

Base event type and an in-process dispatcher. The attempt controller
publishes its lifecycle events through a dispatcher, and page signals
(visibility, navigation, unload, exit) reach the controller through another.
"""

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

__all__ = ['DomainEvent', 'EventDispatcher']


class DomainEvent:
    """Base class for all domain events"""

    def __init__(self, event_id: str = None, timestamp: float = None):
        """Initialize a domain event with optional ID and timestamp"""
        self.event_id = event_id or str(uuid.uuid4())
        self.timestamp = timestamp or time.time()
        self.event_type = self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Public attributes of the event as a dictionary"""
        return {k: v for k, v in vars(self).items() if not k.startswith('_')}

    def __repr__(self) -> str:
        return f"{self.event_type}({self.event_id})"


class EventDispatcher:
    """
    Event dispatcher for domain events.

    Handlers are keyed by ``event.event_type``. A handler may be a plain
    function or a coroutine function; coroutines are scheduled on the running
    loop and the resulting tasks are returned from ``dispatch`` so callers
    that care can await them.
    """

    def __init__(self):
        """Initialize the event dispatcher"""
        self._subscribers: Dict[str, List[Callable]] = {}
        self._pending = set()

    def subscribe(self, event_type: str, handler: Callable) -> None:
        """Subscribe a handler to an event type"""
        if event_type not in self._subscribers:
            self._subscribers[event_type] = []
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Callable) -> None:
        """Unsubscribe a handler from an event type"""
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def has_subscribers(self, event_type: str) -> bool:
        return bool(self._subscribers.get(event_type))

    def dispatch(self, event: DomainEvent) -> List[asyncio.Task]:
        """
        Dispatch an event to all subscribers.

        Args:
            event: The event to dispatch

        Returns:
            Tasks created for coroutine handlers (empty for sync handlers)
        """
        tasks = []
        # Copy so handlers may unsubscribe while being called
        for handler in list(self._subscribers.get(event.event_type, [])):
            try:
                result = handler(event)
            except Exception as e:
                logger.exception(f"Handler {handler!r} failed for {event.event_type}: {e}")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._task_done)
                tasks.append(task)
        return tasks

    async def dispatch_and_wait(self, event: DomainEvent) -> None:
        """Dispatch an event and wait for any coroutine handlers to finish"""
        tasks = self.dispatch(event)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async event handler failed: {exc!r}")

    def clear(self, event_type: Optional[str] = None) -> None:
        """Remove all handlers, or only those of one event type"""
        if event_type is None:
            self._subscribers.clear()
        else:
            self._subscribers.pop(event_type, None)
