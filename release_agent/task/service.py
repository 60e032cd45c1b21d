"""Task tracking service for the release agent.

Reconciliations and the command worker run as tasks owned by this service so
that callers can wait for in-flight reconciliations and shut down cleanly.
"""

import asyncio
from abc import ABC, abstractmethod
from functools import partial
import logging
from typing import Any, Coroutine

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a task, such as a single reconciliation."""

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a long running task, such as a queue consumer.

        Background tasks are not awaited by `block_till_done`.
        """

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait until no non-background tasks are active.

        Tasks created while waiting, such as requeued reconciliations, are
        waited for as well.
        """

    @abstractmethod
    async def shutdown(self) -> None:
        """Cancel every tracked task and wait for them to finish."""

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active non-background tasks."""


class TaskServiceImpl(TaskService):
    """Asyncio implementation of the TaskService."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: set[asyncio.Task[Any]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._background_tasks))
        return task

    def _task_done(
        self, task_set: set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        try:
            # Retrieve the result so a failure is logged once here
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _LOGGER.error("Task %s failed: %s", task.get_name(), e)
        finally:
            task_set.discard(task)

    async def block_till_done(self) -> None:
        while active_tasks := list(self._active_tasks):
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)
        await asyncio.sleep(0)

    async def shutdown(self) -> None:
        tasks = [*self._active_tasks, *self._background_tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            _LOGGER.debug("Cancelled %d tasks", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_num_active_tasks(self) -> int:
        return len(self._active_tasks)
