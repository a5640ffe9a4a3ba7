"""Cancellable repeating background tasks.

Health probes and classifier housekeeping run on ``RepeatingTask`` instances
instead of bare interval timers so that tests and shutdown paths can stop
them deterministically.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from faultline.logging import get_logger

logger = get_logger(__name__, component="scheduler")

TaskFunc = Callable[[], Union[Awaitable[Any], Any]]


async def call_maybe_async(func: TaskFunc) -> Any:
    """Call a zero-argument sync or async callable and return its result."""
    result = func()
    if inspect.isawaitable(result):
        result = await result
    return result


class RepeatingTask:
    """Runs a callable every ``interval_seconds`` on its own asyncio task.

    Failures of a single run are logged and the loop keeps going; only
    ``stop()`` (or cancelling the owning task) ends it.

    Example:
        >>> task = RepeatingTask("prune", 3600, analyzer.prune)
        >>> task.start()
        >>> ...
        >>> await task.stop()
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: TaskFunc,
        run_immediately: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize repeating task.

        Args:
            name: Name used in log events.
            interval_seconds: Pause between runs.
            func: Sync or async zero-argument callable.
            run_immediately: Run once right after ``start()`` instead of
                waiting a full interval first.
            sleep: Sleep function, injectable for tests.
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._run_immediately = run_immediately
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.run_count = 0
        self.error_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop on the running event loop."""
        if self.is_running:
            logger.warning("repeating_task_already_started", name=self.name)
            return
        self._task = asyncio.get_running_loop().create_task(
            self._loop(), name=f"faultline:{self.name}"
        )
        logger.info(
            "repeating_task_started",
            name=self.name,
            interval_seconds=self.interval_seconds,
        )

    async def stop(self) -> None:
        """Cancel the loop and wait until it has exited."""
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("repeating_task_stopped", name=self.name, runs=self.run_count)

    async def run_once(self) -> Any:
        """Run the callable once on the current task."""
        result = await call_maybe_async(self._func)
        self.run_count += 1
        return result

    async def _loop(self) -> None:
        if not self._run_immediately:
            await self._sleep(self.interval_seconds)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.error_count += 1
                logger.error(
                    "repeating_task_error",
                    name=self.name,
                    error=str(e),
                    exc_info=True,
                )
            await self._sleep(self.interval_seconds)
