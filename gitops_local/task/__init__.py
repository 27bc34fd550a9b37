"""Task tracking and scheduling for gitops-local.

This module provides a task tracking service that allows controllers to
track and wait for asynchronous tasks, and the scheduled job that drives
the reconciliation of each Application.
"""

from .context import task_service_context, get_task_service
from .service import TaskService
from .job import ScheduledJob

__all__ = ["get_task_service", "task_service_context", "TaskService", "ScheduledJob"]
