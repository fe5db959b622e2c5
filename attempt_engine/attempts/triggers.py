"""
Exit-Trigger Multiplexer

Routes the page signals that end an attempt into the controller's single
submission entrypoint:

- ``visibility_hidden``: abandon, immediately
- ``back_navigation``: abandon, immediately
- ``before_unload``: warning prompt only; submission cannot be guaranteed
  before the page goes away, so by default nothing is sent. With
  ``flush_on_unload`` an abandon submission is started without waiting.
- ``exit_requested``: abandon after the user confirms; the only trigger the
  user can cancel

The countdown reaching zero is handled inside the controller.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from attempt_engine.attempts.events import (
    BACK_NAVIGATION,
    BEFORE_UNLOAD,
    EXIT_REQUESTED,
    VISIBILITY_HIDDEN,
    PageSignal,
)
from attempt_engine.attempts.reconciler import SubmitTrigger
from attempt_engine.common.error_handling import log_error
from attempt_engine.common.events import EventDispatcher
from attempt_engine.common.logger import app_logger

logger = app_logger.getChild("attempts.triggers")

ConfirmCallable = Callable[[str], Union[bool, Awaitable[bool]]]

DEFAULT_UNLOAD_WARNING = "Your attempt is still in progress. Leaving now may lose your answers."
DEFAULT_EXIT_QUESTION = "Exit now? Your attempt will be submitted with a score of zero."


class ExitTriggerMultiplexer:
    """
    Subscribes to page signals on behalf of one controller.

    The controller attaches the multiplexer when its attempt becomes active
    and detaches it when the attempt ends or the controller is closed.
    """

    def __init__(
        self,
        page_events: Optional[EventDispatcher] = None,
        confirm: Optional[ConfirmCallable] = None,
        flush_on_unload: bool = False,
        unload_warning: str = DEFAULT_UNLOAD_WARNING,
        exit_question: str = DEFAULT_EXIT_QUESTION
    ):
        """
        Initialize the multiplexer.

        Args:
            page_events: Dispatcher carrying page signals (a private one is
                created when omitted)
            confirm: Blocking confirmation prompt, sync or async, returning
                True to proceed with the exit
            flush_on_unload: Start an abandon submission on unload
            unload_warning: Text of the unload warning prompt
            exit_question: Text passed to ``confirm``
        """
        self.page_events = page_events if page_events is not None else EventDispatcher()
        self.confirm = confirm
        self.flush_on_unload = flush_on_unload
        self.unload_warning = unload_warning
        self.exit_question = exit_question
        self._controller = None
        self._handlers = {
            VISIBILITY_HIDDEN: self._on_visibility_hidden,
            BACK_NAVIGATION: self._on_back_navigation,
            BEFORE_UNLOAD: self._on_before_unload,
            EXIT_REQUESTED: self._on_exit_requested,
        }

    @property
    def attached(self) -> bool:
        return self._controller is not None

    def attach(self, controller) -> None:
        """Start routing page signals to ``controller``."""
        if self._controller is controller:
            return
        if self._controller is not None:
            self.detach()
        self._controller = controller
        for name, handler in self._handlers.items():
            self.page_events.subscribe(name, handler)
        logger.debug(f"Exit triggers attached to {controller.session_key}")

    def detach(self) -> None:
        """Stop routing page signals."""
        if self._controller is None:
            return
        for name, handler in self._handlers.items():
            self.page_events.unsubscribe(name, handler)
        logger.debug(f"Exit triggers detached from {self._controller.session_key}")
        self._controller = None

    def _active_controller(self):
        controller = self._controller
        if controller is None or not controller.is_active:
            return None
        return controller

    def _on_visibility_hidden(self, signal: PageSignal) -> None:
        self._abandon("tab hidden")

    def _on_back_navigation(self, signal: PageSignal) -> None:
        self._abandon("back navigation")

    def _abandon(self, reason: str):
        controller = self._active_controller()
        if controller is None:
            return None
        logger.info(f"Abandoning {controller.session_key}: {reason}")
        return controller.request_submit(SubmitTrigger.ABANDON)

    def _on_before_unload(self, signal: PageSignal) -> None:
        signal.prompt = self.before_unload()

    def before_unload(self) -> Optional[str]:
        """
        Handle the page being unloaded.

        Returns:
            The warning prompt to show, or None when no attempt is active
        """
        controller = self._active_controller()
        if controller is None:
            return None
        if self.flush_on_unload:
            # Best effort; the page may be gone before the request completes
            self._abandon("page unload")
        return self.unload_warning

    async def _on_exit_requested(self, signal: PageSignal) -> None:
        await self.request_exit()

    async def request_exit(self) -> bool:
        """
        Ask the user to confirm leaving; abandon the attempt if they do.

        Returns:
            True if an abandon submission was started
        """
        controller = self._active_controller()
        if controller is None:
            return False

        if self.confirm is None:
            logger.warning("Exit requested but no confirmation prompt is configured; ignoring")
            return False

        try:
            answer: Any = self.confirm(self.exit_question)
            if inspect.isawaitable(answer):
                answer = await answer
        except Exception as e:
            # A broken prompt counts as a cancelled exit
            log_error(e, level=logging.WARNING, log=logger, context={"session_key": controller.session_key})
            return False

        if not answer:
            logger.info(f"Exit cancelled for {controller.session_key}")
            return False

        # The attempt may have ended while the prompt was open
        if self._active_controller() is None:
            return False

        submission = self._abandon("exit confirmed")
        if submission is not None:
            await submission
        return submission is not None
