"""
Background task manager.

Runs periodic coroutines (heartbeat, job poll, retention sweep) until a
shared stop signal, with graceful shutdown.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

import structlog


logger = structlog.get_logger(__name__)


class BackgroundTask:
    """
    A coroutine function executed at a fixed interval.

    A failing tick is logged and the next tick still fires on schedule;
    nothing raised by the function stops the loop.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[None]],
        interval_seconds: float,
        initial_delay_seconds: float = 0,
        stop_timeout: float = 30.0,
    ):
        """
        Args:
            name: Task name used in logs
            func: Async function run on every tick
            interval_seconds: Time between ticks
            initial_delay_seconds: Delay before the first tick
            stop_timeout: How long stop() waits for the current tick before cancelling
        """
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.stop_timeout = stop_timeout
        self.tick_count = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False

    async def start(self) -> None:
        """Start the loop; no-op if it is already running."""
        if self._running:
            logger.warning("Background task already running", task=self.name)
            return

        self._stop_event.clear()
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"background:{self.name}")
        logger.info("Started background task", task=self.name, interval=self.interval_seconds)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the current tick to finish."""
        if not self._running:
            return

        self._stop_event.set()
        self._running = False

        try:
            await asyncio.wait_for(self._task, timeout=self.stop_timeout)
            logger.info("Stopped background task", task=self.name)
        except asyncio.TimeoutError:
            logger.warning("Background task did not stop gracefully, cancelled", task=self.name)

    async def _run(self) -> None:
        try:
            if self.initial_delay_seconds > 0 and await self._wait_stop(self.initial_delay_seconds):
                return

            while not self._stop_event.is_set():
                loop = asyncio.get_running_loop()
                started = loop.time()
                try:
                    await self.func()
                except Exception as e:
                    logger.error(
                        "Error in background task",
                        task=self.name,
                        error=str(e),
                        exc_info=True,
                    )
                self.tick_count += 1

                # Keep a fixed cadence: a slow tick shortens the next wait.
                remaining = max(self.interval_seconds - (loop.time() - started), 0)
                if await self._wait_stop(remaining):
                    break

        except asyncio.CancelledError:
            logger.info("Background task was cancelled", task=self.name)

    async def _wait_stop(self, timeout: float) -> bool:
        """Wait up to timeout; True if the stop signal arrived."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()


class BackgroundTaskManager:
    """Owns a set of background tasks and starts/stops them together."""

    def __init__(self):
        self._tasks: List[BackgroundTask] = []
        self._running = False

    def register_task(
        self,
        name: str,
        func: Callable[[], Awaitable[None]],
        interval_seconds: float,
        initial_delay_seconds: float = 0,
    ) -> BackgroundTask:
        """Register a periodic task; it starts with start_all()."""
        task = BackgroundTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            initial_delay_seconds=initial_delay_seconds,
        )
        self._tasks.append(task)
        logger.debug(
            "Registered background task",
            task=name,
            interval=interval_seconds,
            initial_delay=initial_delay_seconds,
        )
        return task

    async def start_all(self) -> None:
        if self._running:
            logger.warning("Background tasks already running")
            return

        self._running = True
        for task in self._tasks:
            await task.start()

    async def stop_all(self) -> None:
        if not self._running:
            return

        self._running = False
        await asyncio.gather(*(task.stop() for task in self._tasks), return_exceptions=True)
        logger.info("Stopped all background tasks", count=len(self._tasks))
