"""
Time source for fixed delays and deferred stops.

Every wait in the pipeline (settle delay, recording duration, inter-track gap,
tab load polling) goes through a Clock so tests can substitute virtual time.
"""

import asyncio
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock:
    """Clock backed by the running asyncio event loop."""

    def time(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def call_later(self, seconds: float, callback: Callable[[], None]) -> TimerHandle:
        """Schedule callback after seconds; the returned handle can cancel it."""
        return asyncio.get_running_loop().call_later(seconds, callback)
