"""
Observer lists with per-listener error isolation.

A failing listener is logged and skipped; it never stops the remaining
listeners from running and never propagates to the code that emitted the
event. Listeners may be plain callables or coroutine functions; coroutine
results are scheduled as tasks and their failures are logged the same way.
"""

import asyncio
import inspect
import logging
import traceback
from typing import Any, Callable, List, Optional, Set

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]


def _log_task_failure(task: asyncio.Task, log: logging.Logger, context: str) -> None:
    if task.cancelled():
        log.debug(f"Async listener cancelled ({context})")
        return
    exc = task.exception()
    if exc is not None:
        log.error(
            f"Async listener failed ({context}): {type(exc).__name__}: {exc}\n"
            f"{''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))}"
        )


def invoke_isolated(
    callback: Listener,
    payload: Any,
    log: Optional[logging.Logger] = None,
    context: str = "",
    pending: Optional[Set[asyncio.Task]] = None,
) -> bool:
    """
    Invoke a single listener inside its own error boundary.

    Args:
        callback: Listener to call with ``payload``
        payload: Event payload
        log: Logger for failures (defaults to this module's logger)
        context: Text identifying the listener in log messages
        pending: Optional set that tracks scheduled async listeners

    Returns:
        True if the synchronous part of the call succeeded
    """
    log = log or logger
    try:
        result = callback(payload)
    except Exception as e:
        log.error(f"Error in listener ({context}): {e}")
        return False

    if inspect.isawaitable(result):
        try:
            task = asyncio.ensure_future(result)
        except RuntimeError as e:
            # No running loop to schedule on
            if inspect.iscoroutine(result):
                result.close()
            log.error(f"Cannot schedule async listener ({context}): {e}")
            return False
        task.add_done_callback(lambda t: _log_task_failure(t, log, context))
        if pending is not None:
            pending.add(task)
            task.add_done_callback(pending.discard)
    return True


class ListenerRegistry:
    """Ordered, de-duplicated list of listeners for one event."""

    def __init__(self, name: str, log: Optional[logging.Logger] = None):
        self.name = name
        self._log = log or logger
        self._listeners: List[Listener] = []
        self._pending: Set[asyncio.Task] = set()

    def add(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove(self, listener: Listener) -> bool:
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, listener: Listener) -> bool:
        return listener in self._listeners

    def notify(self, payload: Any) -> int:
        """Call every listener with ``payload``. Returns the failure count."""
        failures = 0
        # Copy so listeners may unsubscribe themselves
        for listener in list(self._listeners):
            ok = invoke_isolated(
                listener,
                payload,
                self._log,
                context=f"{self.name}:{getattr(listener, '__name__', repr(listener))}",
                pending=self._pending,
            )
            if not ok:
                failures += 1
        return failures

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for scheduled async listeners to finish."""
        if not self._pending:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*list(self._pending), return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self._log.warning(
                f"[{self.name}] {len(self._pending)} async listeners still running after {timeout}s"
            )
