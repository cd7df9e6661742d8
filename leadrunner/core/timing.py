"""
Humanized pacing.

Every delay the orchestrator takes goes through a Pacer so the random source
and the sleep primitive can be swapped for deterministic ones in tests.
"""

import asyncio
import random
from typing import Awaitable, Callable, Optional, Sequence

Sleep = Callable[[float], Awaitable[None]]


class Pacer:
    def __init__(self, rng: Optional[random.Random] = None, sleep: Optional[Sleep] = None):
        self.rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep

    def draw(self, low: float, high: float) -> float:
        """Uniform draw in [low, high]; a fresh draw on every call."""
        if high < low:
            low, high = high, low
        return self.rng.uniform(low, high)

    def draw_range(self, bounds: Sequence[float]) -> float:
        return self.draw(bounds[0], bounds[1])

    async def pause(self, low: float, high: float) -> float:
        delay = self.draw(low, high)
        await self._sleep(delay)
        return delay

    async def pause_range(self, bounds: Sequence[float]) -> float:
        return await self.pause(bounds[0], bounds[1])

    async def wait(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)
