"""Owned, cancellable periodic task on the running asyncio loop."""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Call *callback* every *interval* seconds until cancelled.

    ``cancel()`` is synchronous and idempotent: once it returns the callback
    is never invoked again.  Must be started and cancelled from the loop the
    task runs on.
    """

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._interval = interval
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._active = False

    @property
    def running(self) -> bool:
        return self._active

    @property
    def interval(self) -> float:
        return self._interval

    def start(self) -> None:
        if self._active:
            raise RuntimeError("Periodic task already running")
        self._active = True
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> bool:
        """Stop the task.  Returns False if it was not running."""
        if not self._active:
            return False
        self._active = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if not self._active:
                return
            self._callback()
