"""In-process single-flight registry for expensive or unsafe-to-duplicate work.

Concurrent callers asking for the same key share one execution and its result
(or exception). Used to keep N requests that all see an expired OAuth token
from firing N refreshes at the provider, which would invalidate each other's
refresh tokens.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, TypeVar

from loam.main.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class _InFlight(Generic[T]):
    started_at: float
    task: "asyncio.Task[T] | None" = None


class SingleFlightRegistry(Generic[T]):
    """Deduplicates concurrent async operations by key.

    Entries are removed as soon as their work settles, so a later caller always
    starts fresh work instead of reusing a stale result. Entries older than
    ``max_age_seconds`` are treated as leaked and replaced; the background
    sweeper bounds memory for keys nobody asks about again.

    Args:
        max_age_seconds: Age after which an in-flight entry is considered abandoned.
        sweep_interval_seconds: How often the background sweeper runs.
        name: Label used in log lines.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        max_age_seconds: float = 30.0,
        sweep_interval_seconds: float = 60.0,
        name: str = "single_flight",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_age = max_age_seconds
        self._sweep_interval = sweep_interval_seconds
        self._name = name
        self._clock = clock
        self._entries: Dict[str, _InFlight[T]] = {}
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _is_stale(self, entry: _InFlight[T], now: float) -> bool:
        return now - entry.started_at > self._max_age

    async def run_exclusive(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``factory`` unless work for ``key`` is already in flight.

        Every concurrent caller receives the same value or the same exception.
        A cancelled caller does not cancel the shared work.
        """
        now = self._clock()
        entry = self._entries.get(key)

        if entry is not None and entry.task is not None:
            if not self._is_stale(entry, now):
                logger.debug(
                    "Attaching to in-flight operation",
                    extra={"registry": self._name, "key": key},
                )
                return await asyncio.shield(entry.task)

            logger.warning(
                "Evicting stale in-flight operation",
                extra={
                    "registry": self._name,
                    "key": key,
                    "age_seconds": round(now - entry.started_at, 3),
                },
            )
            self._entries.pop(key, None)

        # No await between the lookup above and registering the new entry,
        # so racing callers on this loop cannot both get here for one key
        new_entry: _InFlight[T] = _InFlight(started_at=now)

        async def _run() -> T:
            try:
                return await factory()
            finally:
                if self._entries.get(key) is new_entry:
                    del self._entries[key]

        new_entry.task = asyncio.ensure_future(_run())
        new_entry.task.add_done_callback(_consume_exception)
        self._entries[key] = new_entry

        return await asyncio.shield(new_entry.task)

    def sweep(self) -> int:
        """Remove entries older than ``max_age_seconds``.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if self._is_stale(entry, now)]
        for key in stale:
            logger.warning(
                "Cleaning up stale in-flight entry",
                extra={"registry": self._name, "key": key},
            )
            self._entries.pop(key, None)
        return len(stale)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def start_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever())

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass  # Expected on cancellation
        self._sweeper = None


def _consume_exception(task: asyncio.Task) -> None:
    # Marks the exception retrieved when every waiting caller was cancelled
    if not task.cancelled():
        task.exception()
