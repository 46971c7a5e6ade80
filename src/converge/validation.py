"""Change validation helpers.

A delta against an existing resource may never touch the fields the task
declares immutable. Plugins add resource-specific checks on top through
``Task.check_changes``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .config import ConfigurationError

if TYPE_CHECKING:
    from .diff import ChangeSet
    from .task import Task

logger = logging.getLogger(__name__)


class CannotChangeFieldError(Exception):
    """Raised when a change-set touches a field that cannot change."""

    def __init__(self, field_name: str, task: Task | None = None) -> None:
        self.field_name = field_name
        self.task = task
        where = f" on {task}" if task is not None else ""
        super().__init__(f"field {field_name!r} cannot be changed{where}")


class MissingFieldError(ConfigurationError):
    """Raised when a task lacks a value it cannot work without."""

    pass


def cannot_change_field(field_name: str, task: Task | None = None) -> CannotChangeFieldError:
    """Build the error a plugin raises from check_changes."""
    return CannotChangeFieldError(field_name, task)


def require(value: Any, field_name: str, task: Task) -> Any:
    """Return ``value``, or raise if it is missing.

    Raises:
        MissingFieldError: If value is None or empty.
    """
    if value is None or value == "":
        raise MissingFieldError(f"{task} requires field {field_name!r}")
    return value


def validate_changes(actual: Task | None, desired: Task, changes: ChangeSet) -> None:
    """Reject illegal deltas before anything is rendered.

    When the resource exists, none of the task's immutable fields may appear
    in the change-set. Anything is allowed on create. The plugin's own
    ``check_changes`` runs in both cases.

    Raises:
        CannotChangeFieldError: Naming the first offending field.
    """
    if actual is not None:
        for field_name in sorted(desired.immutable_fields):
            if field_name in changes:
                logger.error(
                    "Immutable field change rejected",
                    extra={"task": str(desired), "field": field_name},
                )
                raise cannot_change_field(field_name, desired)

    desired.check_changes(actual, changes)
