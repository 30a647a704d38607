"""Utilities for safe background task execution.

Background loops and per-node fan-out run as asyncio tasks; these helpers
make sure a failing task is logged with its traceback instead of vanishing.
"""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def safe_create_task(
    coro: Awaitable[T],
    *,
    name: str | None = None,
    log: logging.Logger | None = None,
) -> asyncio.Task[T]:
    """Create an asyncio task whose failure is logged with a full traceback."""
    task_logger = log or logger
    task = asyncio.create_task(coro, name=name)

    def handle_exception(task: asyncio.Task) -> None:
        if task.cancelled():
            task_logger.debug(f"Task '{name or task.get_name()}' was cancelled")
            return

        exc = task.exception()
        if exc is not None:
            task_name = name or task.get_name()
            tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            task_logger.error(
                f"Background task '{task_name}' failed with exception:\n"
                f"Exception type: {type(exc).__name__}\n"
                f"Exception message: {exc}\n"
                f"Full traceback:\n{tb_str}"
            )

    task.add_done_callback(handle_exception)
    return task


class TaskRegistry:
    """Registry for tracking long-running background tasks.

    Used for graceful shutdown of the controller loops.
    """

    def __init__(self, log: logging.Logger | None = None):
        self._tasks: dict[str, asyncio.Task] = {}
        self._log = log or logger

    def register(self, task: asyncio.Task, name: str) -> None:
        """Register a task for tracking; it is dropped once done."""
        self._tasks[name] = task

        def cleanup(t: asyncio.Task) -> None:
            if self._tasks.get(name) is t:
                self._tasks.pop(name, None)

        task.add_done_callback(cleanup)

    async def cancel_all(self, timeout: float = 5.0) -> None:
        """Cancel all registered tasks and wait for them to complete."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()

        if tasks:
            done, pending = await asyncio.wait(
                tasks,
                timeout=timeout,
                return_when=asyncio.ALL_COMPLETED,
            )
            if pending:
                self._log.warning(
                    f"{len(pending)} tasks did not complete within {timeout}s timeout"
                )
        self._tasks.clear()

    def get_running_tasks(self) -> list[str]:
        """Get names of currently running tasks."""
        return [name for name, task in self._tasks.items() if not task.done()]
