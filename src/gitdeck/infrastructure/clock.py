import asyncio
from collections.abc import Callable
from datetime import datetime, timezone

from gitdeck.domain.ports import Clock, TimerHandle


class AsyncioClock(Clock):
    """Wall clock whose timers run on the current asyncio event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)
