"""Exception hierarchy.

The engine raises these; the CLI and hook layers catch ``FlowtaskError`` and
report it.
"""

from __future__ import annotations


class FlowtaskError(Exception):
    """Base exception for all flowtask errors."""


class NotFoundError(FlowtaskError):
    """An operation referenced an entity that does not exist."""


class TaskNotFoundError(NotFoundError):
    """Task with given ID doesn't exist."""

    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class ResourceNotFoundError(NotFoundError):
    """Resource (GPU) with given ID doesn't exist."""

    def __init__(self, resource_id: int):
        self.resource_id = resource_id
        super().__init__(f"GPU {resource_id} not found")


class ProjectNotFoundError(NotFoundError):
    """Project with given ID doesn't exist."""

    def __init__(self, project_id: int):
        self.project_id = project_id
        super().__init__(f"Project {project_id} not found")


class TimerNotFoundError(NotFoundError):
    """Task has no countdown timer to act on."""

    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id} has no running countdown")


class InvariantViolationError(FlowtaskError):
    """The requested change would break a data invariant; nothing was written."""


class InvalidInputError(FlowtaskError):
    """Input validation failed."""


class StoreError(FlowtaskError):
    """The underlying database failed; the unit of work was rolled back."""
