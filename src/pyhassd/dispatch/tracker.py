"""Bookkeeping for in-flight asyncio tasks.

Tasks drop out of the tracker through a done-callback as soon as they
finish, so the set only ever holds work that may still be running.
:meth:`TaskTracker.prune` covers the short window between a task finishing
and its done-callbacks being run by the loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


class TaskTracker:
    """A wait-group over asyncio tasks."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def track(self, task: asyncio.Task[T]) -> asyncio.Task[T]:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def create_task(self, coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
        return self.track(asyncio.create_task(coro, name=name))

    def prune(self) -> int:
        """Drop finished tasks. Returns how many were removed."""
        done = {task for task in self._tasks if task.done()}
        self._tasks -= done
        return len(done)

    @property
    def pending(self) -> list[asyncio.Task[Any]]:
        return [task for task in self._tasks if not task.done()]

    def __len__(self) -> int:
        return len(self._tasks)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until every tracked task has finished.

        Task outcomes are not inspected; failures stay with the task. The
        calling task is never waited on, so a tracked task may call this.
        Returns ``False`` when *timeout* elapsed with work still running.
        """
        current = asyncio.current_task()
        pending = [task for task in self.pending if task is not current]
        if not pending:
            return True
        _done, still_pending = await asyncio.wait(pending, timeout=timeout)
        return not still_pending
