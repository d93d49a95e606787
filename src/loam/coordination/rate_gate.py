"""Process-wide minimum-interval gate for throttled upstream APIs."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from loam.main.logging import get_logger

logger = get_logger(__name__)


class RateLimitedGate:
    """Serializes callers and spaces their start times by ``min_interval_seconds``.

    The gate is a FIFO mutex with a minimum hold time: each caller waits for
    every earlier caller, then sleeps until ``min_interval_seconds`` have passed
    since the previous permitted call started. ``asyncio.Lock`` wakes waiters in
    arrival order, which gives the FIFO guarantee.

    Example:
        gate = RateLimitedGate(min_interval_seconds=1.1, name="nominatim")

        await gate.acquire_slot()
        response = await session.get(url)
    """

    def __init__(
        self,
        min_interval_seconds: float,
        name: str = "upstream",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds cannot be negative")
        self._min_interval = min_interval_seconds
        self._name = name
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_permitted_at: float | None = None

    @property
    def min_interval_seconds(self) -> float:
        return self._min_interval

    @property
    def last_permitted_at(self) -> float | None:
        return self._last_permitted_at

    async def acquire_slot(self) -> None:
        """Suspend until this caller may start its upstream call."""
        async with self._lock:
            if self._last_permitted_at is not None:
                remaining = self._min_interval - (self._clock() - self._last_permitted_at)
                if remaining > 0:
                    logger.debug(
                        f"Rate gate {self._name} waiting {remaining:.3f}s",
                        extra={"gate": self._name, "wait_seconds": remaining},
                    )
                    await self._sleep(remaining)
            self._last_permitted_at = self._clock()

    async def __aenter__(self) -> "RateLimitedGate":
        await self.acquire_slot()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None
