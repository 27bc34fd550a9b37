"""Access to the TaskService of the current controller run."""

import contextvars
import contextlib
from collections.abc import Generator

from .service import TaskService, TaskServiceImpl

__all__: list[str] = []

_current_service: contextvars.ContextVar[TaskService | None] = contextvars.ContextVar(
    "gitops_local_task_service", default=None
)


def get_task_service() -> TaskService:
    """Return the TaskService of the current context.

    A service is created on first use when no `task_service_context` is active.
    """
    if (service := _current_service.get()) is None:
        service = TaskServiceImpl()
        _current_service.set(service)
    return service


@contextlib.contextmanager
def task_service_context(
    service: TaskService | None = None,
) -> Generator[TaskService, None, None]:
    """Scope a TaskService to a controller run or a command line session.

    Jobs and controllers started inside the block track their tasks with the
    yielded service. The previously active service is restored on exit.
    """
    token = _current_service.set(service or TaskServiceImpl())
    try:
        yield _current_service.get()  # type: ignore[misc]
    finally:
        _current_service.reset(token)
