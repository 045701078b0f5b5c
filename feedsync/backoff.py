"""
Backoff Scheduler

Runs a callback after `min(max_delay, base * 2^attempt)` seconds on the
running asyncio loop. Every scheduled callback is an asyncio task tracked by
id so it can be cancelled individually until it fires; close() also
cancels callbacks that are still running.
"""

import asyncio
import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

logger = logging.getLogger(__name__)

ScheduledCallback = Callable[[], Union[None, Awaitable[None]]]


class CancelToken:
    """Handle for one scheduled callback."""

    def __init__(self, scheduler: 'BackoffScheduler', token_id: str, delay: float):
        self._scheduler = scheduler
        self.token_id = token_id
        self.delay = delay

    def cancel(self) -> bool:
        """Cancel the callback. Returns False if it already ran or was cancelled."""
        return self._scheduler.cancel(self.token_id)

    @property
    def pending(self) -> bool:
        return self._scheduler.is_pending(self.token_id)

    def __repr__(self) -> str:
        return f"CancelToken({self.token_id!r}, delay={self.delay})"


class BackoffScheduler:
    """
    Schedules delayed callbacks with exponential backoff.

    Callbacks may be plain functions or coroutine functions. Exceptions they
    raise are logged and swallowed so one failing retry can't take down the
    loop. After close() nothing new is scheduled.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0, name: str = "scheduler"):
        if base_delay <= 0:
            raise ValueError(f"base_delay must be positive, got {base_delay}")
        if max_delay < base_delay:
            raise ValueError(f"max_delay ({max_delay}) must be >= base_delay ({base_delay})")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.name = name
        self._tasks: Dict[str, asyncio.Task] = {}
        # Callbacks past their delay; no longer cancellable by token
        self._running: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)
        self._closed = False

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds for the given zero-based attempt."""
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        # Cap the exponent first so huge attempts don't overflow the float
        exponent = min(attempt, 62)
        return min(self.max_delay, self.base_delay * (2 ** exponent))

    def schedule(self, fn: ScheduledCallback, attempt: int, label: Optional[str] = None) -> CancelToken:
        """Run fn after the backoff delay for attempt."""
        return self.schedule_after(fn, self.delay_for(attempt), label=label)

    def schedule_after(self, fn: ScheduledCallback, delay: float, label: Optional[str] = None) -> CancelToken:
        """Run fn after a fixed delay in seconds."""
        token_id = f"{self.name}_{label or 'task'}_{next(self._ids)}"
        token = CancelToken(self, token_id, delay)
        if self._closed:
            logger.warning(f"Scheduler '{self.name}' is closed, not scheduling '{token_id}'")
            return token

        task = asyncio.get_running_loop().create_task(self._run(token_id, fn, delay))
        self._tasks[token_id] = task
        task.add_done_callback(lambda t: self._tasks.pop(token_id, None))
        logger.debug(f"Scheduled '{token_id}' in {delay:.3f}s")
        return token

    async def _run(self, token_id: str, fn: ScheduledCallback, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug(f"Scheduled callback '{token_id}' cancelled")
            raise
        # Detach before running so the callback can reschedule under its own token
        self._tasks.pop(token_id, None)
        task = asyncio.current_task()
        self._running.add(task)
        try:
            result: Any = fn()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            logger.debug(f"Running callback '{token_id}' cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in scheduled callback '{token_id}': {e}", exc_info=True)
        finally:
            self._running.discard(task)

    def cancel(self, token_id: str) -> bool:
        task = self._tasks.pop(token_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def is_pending(self, token_id: str) -> bool:
        task = self._tasks.get(token_id)
        return task is not None and not task.done()

    @property
    def pending_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    @property
    def running_count(self) -> int:
        """Callbacks whose delay elapsed and that are still executing."""
        return sum(1 for task in self._running if not task.done())

    def cancel_all(self) -> int:
        """Cancel every pending callback. Returns how many were cancelled."""
        cancelled = 0
        for token_id in list(self._tasks.keys()):
            if self.cancel(token_id):
                cancelled += 1
        if cancelled:
            logger.info(f"Scheduler '{self.name}' cancelled {cancelled} pending callbacks")
        return cancelled

    def close(self) -> None:
        """
        Cancel pending and running callbacks and refuse further scheduling.

        A callback that closes its own scheduler is left to finish. Await
        wait_closed() to let cancelled callbacks unwind.
        """
        self._closed = True
        self.cancel_all()
        current = self._current_task()
        running = [t for t in self._running if t is not current and not t.done()]
        for task in running:
            task.cancel()
        if running:
            logger.info(f"Scheduler '{self.name}' cancelled {len(running)} running callbacks")

    async def wait_closed(self) -> None:
        """Wait until callbacks cancelled by close() have finished."""
        current = asyncio.current_task()
        tasks = [t for t in self._running if t is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @staticmethod
    def _current_task() -> Optional[asyncio.Task]:
        try:
            return asyncio.current_task()
        except RuntimeError:
            # close() called outside a running loop
            return None

    @property
    def closed(self) -> bool:
        return self._closed
