"""Background task helpers.

`TaskSet` keeps references to fire-and-forget tasks and logs their failures.
`IntervalTimer` spawns a coroutine on a fixed period without waiting for
the previous run to finish.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Coroutine, Optional

logger = logging.getLogger(__name__)


class TaskSet:
    """Owns fire-and-forget tasks so they are not garbage collected mid-flight."""

    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Schedule a coroutine and track it until it finishes."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"{self.name} task {task.get_name()} failed: {exc!r}")

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait(self) -> None:
        """Wait until every tracked task, including ones spawned meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class IntervalTimer:
    """Periodic trigger.

    Each tick is spawned on the task set; a slow tick never delays the next
    one. Stopping the timer does not cancel ticks already in flight.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable],
        tasks: TaskSet,
        name: str = "timer",
        run_immediately: bool = False,
    ):
        self.interval = interval
        self.callback = callback
        self.name = name
        self.run_immediately = run_immediately
        self._tasks = tasks
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._loop_task = asyncio.create_task(self._run(), name=f"{self.name}-timer")
        logger.debug(f"Timer {self.name} armed (interval: {self.interval}s)")

    async def _run(self) -> None:
        if self.run_immediately:
            self._fire()
        while True:
            await asyncio.sleep(self.interval)
            self._fire()

    def _fire(self) -> None:
        self._tasks.spawn(self.callback(), name=f"{self.name}-tick")

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        await asyncio.gather(self._loop_task, return_exceptions=True)
        self._loop_task = None
