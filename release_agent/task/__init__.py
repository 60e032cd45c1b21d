"""Task tracking for reconciliations and queue consumers."""

from .context import task_service_context, get_task_service
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
