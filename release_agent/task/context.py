"""Context management for TaskService."""

import contextvars
import contextlib
import logging
from collections.abc import Generator

from .service import TaskService, TaskServiceImpl

__all__: list[str] = []

_LOGGER = logging.getLogger(__name__)

_task_service_ctx: contextvars.ContextVar[TaskService | None] = contextvars.ContextVar(
    "_task_service_ctx", default=None
)


def get_task_service() -> TaskService:
    """Get the current task service instance, creating one if none is set."""
    instance = _task_service_ctx.get()
    if instance is None:
        instance = TaskServiceImpl()
        _task_service_ctx.set(instance)
    return instance


@contextlib.contextmanager
def task_service_context(
    service: TaskService | None = None,
) -> Generator[TaskService, None, None]:
    """Make a TaskService the current one for the duration of the block.

    Args:
        service: Optional existing TaskService instance to use. If None,
                 a new instance will be created.
    """
    service = service or TaskServiceImpl()
    token = _task_service_ctx.set(service)
    try:
        yield service
    finally:
        _task_service_ctx.reset(token)
