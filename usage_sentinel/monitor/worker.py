"""
Periodic tick loop shared by the monitoring workers.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """Runs :meth:`tick` immediately on start and then every ``interval`` seconds.

    Ticks never overlap: a tick that overruns the interval delays the next
    one. Stopping prevents new ticks from being scheduled and lets the
    in-flight tick finish.
    """

    name = "worker"

    def __init__(self, interval: float):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.interval = interval
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> None:
        raise NotImplementedError

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> Callable[[], None]:
        """Begin the periodic loop on the running event loop.

        Returns:
            A function that halts scheduling of further ticks
        """
        if self.is_running:
            return self.stop
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        logger.info("%s started (interval %.0fs)", self.name, self.interval)
        return self.stop

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def join(self) -> None:
        """Wait for the loop to exit after :meth:`stop`."""
        if self._task is not None:
            await self._task

    async def run_once(self) -> None:
        """Run a single tick outside the loop."""
        await self.tick()

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("%s tick failed", self.name)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("%s stopped", self.name)
