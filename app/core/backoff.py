"""Retry backoff policy and clock abstraction for the relationship queue."""

import asyncio
import time
from dataclasses import dataclass
from typing import Protocol

DEFAULT_BACKOFF_SECONDS = (1.0, 5.0, 30.0)


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class MonotonicClock:
    """Real clock: time.monotonic plus asyncio.sleep."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


@dataclass
class BackoffPolicy:
    """
    Maps a failed attempt number to the delay before the next try.

    Attempts are 1-based. Past the end of the schedule the last delay repeats.
    """

    delays: tuple[float, ...] = DEFAULT_BACKOFF_SECONDS
    max_attempts: int = 3

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.delays:
            self.delays = (0.0,)
        self.delays = tuple(max(0.0, float(d)) for d in self.delays)

    def delay_for(self, attempt: int) -> float:
        """Delay after `attempt` failed."""
        if attempt < 1:
            return 0.0
        index = min(attempt, len(self.delays)) - 1
        return self.delays[index]

    def should_retry(self, attempt: int) -> bool:
        """True if another attempt is allowed after `attempt` failed."""
        return attempt < self.max_attempts

