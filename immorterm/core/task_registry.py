"""Task registry for named, individually cancelable background tasks.

Periodic sweeps and one-shot delayed actions (such as close grace periods) are
all owned here, so teardown is a single `shutdown()` call.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Coroutine, TypeVar

from immorterm.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class TaskRegistry:
    """Registry for tracking background asyncio tasks by name.

    Example:
        registry = TaskRegistry()

        # Periodic sweep
        registry.schedule_periodic("stale-sweep", 3600, janitor.sweep_stale)

        # Delayed one-shot, cancelable by name
        registry.schedule_once("cleanup:123-abc", 60, lambda: janitor.expire("123-abc"))
        registry.cancel("cleanup:123-abc")

        # Graceful shutdown
        await registry.shutdown(timeout=5.0)
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[object]] = {}
        self._counter = 0
        logger.debug("TaskRegistry initialized")

    def _on_task_done(self, name: str, task: asyncio.Task[object]) -> None:
        """Drop the finished task and log any exception it raised."""
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Background task %s failed: %s", name, exc, exc_info=exc)

    def spawn(self, coro: Coroutine[object, object, T], name: str | None = None) -> asyncio.Task[T]:
        """Spawn a tracked background task.

        A task spawned under a name that is still running replaces (cancels) it.
        """
        if name is None:
            self._counter += 1
            name = f"task-{self._counter}"
        self.cancel(name)

        task = asyncio.create_task(coro, name=name)
        self._tasks[name] = task  # type: ignore[assignment]
        task.add_done_callback(lambda t, n=name: self._on_task_done(n, t))  # type: ignore[misc]

        logger.debug("Spawned tracked task: %s (total: %d)", name, len(self._tasks))
        return task

    def schedule_once(
        self, name: str, delay: float, action: Callable[[], Awaitable[object]]
    ) -> asyncio.Task[object]:
        """Run `action` once after `delay` seconds unless cancelled first."""

        async def _delayed() -> object:
            await asyncio.sleep(delay)
            return await action()

        return self.spawn(_delayed(), name=name)

    def schedule_periodic(
        self,
        name: str,
        interval: float,
        action: Callable[[], Awaitable[object]],
        initial_delay: float | None = None,
    ) -> asyncio.Task[None]:
        """Run `action` every `interval` seconds until cancelled.

        Failures are logged and the loop continues.
        """

        async def _loop() -> None:
            await asyncio.sleep(interval if initial_delay is None else initial_delay)
            while True:
                try:
                    await action()
                except asyncio.CancelledError:
                    raise
                except Exception as e:  # pylint: disable=broad-exception-caught
                    logger.error("Error in periodic task %s: %s", name, e, exc_info=True)
                await asyncio.sleep(interval)

        return self.spawn(_loop(), name=name)

    def cancel(self, name: str) -> bool:
        """Cancel a task by name.

        Returns:
            True if a running task was cancelled.
        """
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("Cancelled task %s", name)
        return True

    def is_pending(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def names(self, prefix: str = "") -> list[str]:
        return [name for name, task in self._tasks.items() if name.startswith(prefix) and not task.done()]

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel all tracked tasks and wait up to `timeout` seconds for them."""
        if not self._tasks:
            logger.debug("No tasks to shutdown")
            return

        tasks = list(self._tasks.values())
        self._tasks.clear()
        task_count = len(tasks)
        logger.info("Shutting down %d tracked tasks (timeout=%.1fs)", task_count, timeout)

        for task in tasks:
            if not task.done():
                task.cancel()

        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning(
                "Shutdown timeout: %d/%d tasks still pending after %.1fs",
                len(pending),
                task_count,
                timeout,
            )
            for task in pending:
                logger.warning("Pending task: %s", task.get_name())
        else:
            logger.info("All %d tasks completed within timeout", task_count)

    def task_count(self) -> int:
        """Number of tracked tasks that have not finished yet."""
        return sum(1 for task in self._tasks.values() if not task.done())
