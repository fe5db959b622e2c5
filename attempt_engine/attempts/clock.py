"""
Clock Source

Wall-clock reader and periodic ticker used to drive the attempt countdown.
Both are injected into the controller so tests can replace them with fakes.
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Union[None, Awaitable[Any]]]


class WallClock:
    """Reads the current wall-clock time"""

    def now_ms(self) -> int:
        """Current time in epoch milliseconds"""
        return int(time.time() * 1000)


class Ticker(ABC):
    """Emits a callback at a fixed interval until stopped"""

    @property
    @abstractmethod
    def running(self) -> bool:
        pass

    @abstractmethod
    def start(self, callback: TickCallback) -> None:
        """
        Begin calling ``callback`` once per interval.

        Args:
            callback: Plain function or coroutine function taking no arguments
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop emitting; no callback fires after this returns"""
        pass


class IntervalTicker(Ticker):
    """
    Asyncio ticker running as a background task.

    ``stop`` cancels the task while it is sleeping between ticks. When called
    from inside the callback itself (the countdown reaching zero) the loop
    simply ends once the callback returns, so work the callback awaits is not
    cancelled underneath it.
    """

    def __init__(self, interval_seconds: float = 1.0):
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopped = True
        self._in_callback = False

    @property
    def running(self) -> bool:
        return not self._stopped

    def start(self, callback: TickCallback) -> None:
        if self._task is not None and not self._task.done():
            logger.debug("Ticker already running")
            return
        self._stopped = False
        self._task = asyncio.ensure_future(self._run(callback))

    def stop(self) -> None:
        self._stopped = True
        if self._task is None or self._task.done():
            return
        if not self._in_callback:
            self._task.cancel()

    async def _run(self, callback: TickCallback) -> None:
        try:
            while not self._stopped:
                await asyncio.sleep(self._interval)
                if self._stopped:
                    break
                self._in_callback = True
                try:
                    result = callback()
                    if inspect.isawaitable(result):
                        await result
                finally:
                    self._in_callback = False
        except asyncio.CancelledError:
            logger.debug("Ticker cancelled")
            raise
