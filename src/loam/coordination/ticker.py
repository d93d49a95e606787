"""Scheduling seam for periodic coordinators."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Protocol

from loam.main.logging import get_logger

logger = get_logger(__name__)

TickCallback = Callable[[], Awaitable[object]]


class Ticker(Protocol):
    """Runs a callback now and then every ``interval_seconds`` until cancelled."""

    def start(self, interval_seconds: float, callback: TickCallback) -> None: ...

    def cancel(self) -> None: ...

    @property
    def running(self) -> bool: ...


class AsyncioTicker:
    """Ticker on the running event loop.

    Ticks never wait for the previous callback; overlap protection is the
    caller's job (the coordinator's ``is_processing`` guard). Cancelling stops
    future ticks only, callbacks already started run to completion.
    """

    def __init__(self, name: str = "ticker") -> None:
        self._name = name
        self._loop_task: asyncio.Task | None = None
        self._callbacks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self, interval_seconds: float, callback: TickCallback) -> None:
        if self.running:
            logger.warning(f"Ticker {self._name} already running")
            return
        self._loop_task = asyncio.create_task(self._run(interval_seconds, callback))

    async def _run(self, interval_seconds: float, callback: TickCallback) -> None:
        while True:
            task = asyncio.create_task(self._invoke(callback))
            self._callbacks.add(task)
            task.add_done_callback(self._callbacks.discard)
            await asyncio.sleep(interval_seconds)

    async def _invoke(self, callback: TickCallback) -> None:
        try:
            await callback()
        except Exception as exc:
            logger.error(
                f"Ticker {self._name} callback raised: {exc}",
                exc_info=True,
            )

    def cancel(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
