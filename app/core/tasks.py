"""Background task tracking for deferred exclusion work.

Deferred recomputes (queued after an unhide) run as asyncio tasks owned by the
TaskManager, so failures are logged instead of vanishing with a bare
asyncio.create_task(), and shutdown can cancel what is still running.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable
from weakref import WeakSet

logger = logging.getLogger(__name__)


class TaskManager:
    """
    Track named background tasks with error handling.

    Usage:
        task_manager = TaskManager.get_instance()

        task_manager.create_task(
            service.run_deferred_recompute(user_id),
            name=f"deferred_recompute:{user_id}",
        )

        # On shutdown
        await task_manager.cancel_all()
    """

    _instance: "TaskManager | None" = None

    def __init__(self):
        self._tasks: WeakSet[asyncio.Task] = WeakSet()
        self._named_tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def get_instance(cls) -> "TaskManager":
        """Get the process-wide TaskManager."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the shared instance (for testing)."""
        cls._instance = None

    def create_task(
        self,
        coro: Awaitable[Any],
        name: str | None = None,
        on_error: Callable[[Exception], Awaitable[None]] | None = None,
    ) -> asyncio.Task:
        """
        Start a tracked background task.

        The latest task created under a name replaces the previous one in the
        name index; earlier tasks keep running and stay tracked.
        """
        task_name = name or "unnamed"

        async def wrapped_coro():
            try:
                logger.debug(f"Starting background task: {task_name}")
                result = await coro
                logger.debug(f"Background task completed: {task_name}")
                return result
            except asyncio.CancelledError:
                logger.info(f"Background task cancelled: {task_name}")
                raise
            except Exception as e:
                logger.error(f"Background task failed: {task_name} - {type(e).__name__}: {e}")
                if on_error:
                    try:
                        await on_error(e)
                    except Exception as handler_error:
                        logger.error(f"Error handler failed for {task_name}: {handler_error}")
                raise

        task = asyncio.create_task(wrapped_coro(), name=name)
        # Retrieve the exception so asyncio does not warn about it at GC time;
        # it has already been logged above.
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
        self._tasks.add(task)
        if name:
            self._named_tasks[name] = task
        return task

    def get_task(self, name: str) -> asyncio.Task | None:
        """Get a still-running task by name."""
        task = self._named_tasks.get(name)
        if task and task.done():
            del self._named_tasks[name]
            return None
        return task

    def get_running_tasks(self) -> list[asyncio.Task]:
        """Get all currently running (non-done) tasks."""
        return [t for t in self._tasks if not t.done()]

    def get_task_stats(self) -> dict:
        """Counts of tracked tasks by state, for the diagnostics endpoint."""
        all_tasks = list(self._tasks)
        done = [t for t in all_tasks if t.done()]
        cancelled = [t for t in done if t.cancelled()]
        failed = [t for t in done if not t.cancelled() and t.exception() is not None]

        return {
            "total_tracked": len(all_tasks),
            "running": len(all_tasks) - len(done),
            "completed": len(done) - len(failed) - len(cancelled),
            "failed": len(failed),
            "cancelled": len(cancelled),
            "named_tasks": [n for n, t in self._named_tasks.items() if not t.done()],
        }

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until every tracked task has finished (successfully or not)."""
        while True:
            running = self.get_running_tasks()
            if not running:
                return
            await asyncio.wait(running, timeout=timeout)
            if timeout is not None:
                return

    async def cancel_all(self, timeout: float = 5.0) -> dict:
        """Cancel all tracked tasks and wait for them to finish."""
        running = self.get_running_tasks()
        if not running:
            return {"cancelled": 0, "timed_out": 0}

        logger.info(f"Cancelling {len(running)} background tasks...")
        for task in running:
            task.cancel()

        done, pending = await asyncio.wait(running, timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} tasks did not finish within {timeout}s timeout")

        return {"cancelled": len(done), "timed_out": len(pending)}
