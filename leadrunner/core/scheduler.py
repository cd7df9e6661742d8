"""
Periodic timer primitive used to wake the poller and the token check.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[object]],
        initial_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.interval = interval
        self.callback = callback
        self.initial_delay = initial_delay
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run_loop(), name=f"timer:{self.name}")
        logger.info(f"Timer {self.name} started (first tick in {self.initial_delay:.0f}s, every {self.interval:.0f}s)")

    async def stop(self):
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info(f"Timer {self.name} stopped")

    async def tick(self):
        """Run the callback once; errors are logged and never end the timer."""
        self.ticks += 1
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Timer {self.name} callback failed: {e}")

    async def run_loop(self):
        delay = self.initial_delay
        while not self._stop_event.is_set():
            try:
                await self._sleep(delay)
                if self._stop_event.is_set():
                    break
                await self.tick()
            except asyncio.CancelledError:
                break
            delay = self.interval
