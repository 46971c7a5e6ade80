"""Behaviour common to the EC2 resource tasks.

Owned resources are found by their ``Name`` tag plus the cluster ownership
tag the engine stamps on everything it creates. Shared resources are found
by their declared id or, failing that, by the tags in ``Shared(tags=...)``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from ..cloud import AWSCloud, ResourceNotFoundError, filter_for, filters_for_tags
from ..diff import ChangeSet
from ..task import Shared, Task
from ..validation import cannot_change_field

logger = logging.getLogger(__name__)


def owned_tags(task: Task, cloud: AWSCloud | None, extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Tags stamped on a resource the engine creates."""
    tags = {"Name": task.name}
    if cloud is not None:
        tags.update(cloud.cluster_tags())
    tags.update(extra or {})
    return tags


def lookup(
    task: Task,
    cloud: AWSCloud,
    operation: str,
    result_key: str,
    id_param: str,
    extra_filters: list[dict[str, Any]] | None = None,
) -> dict[str, Any] | None:
    """Find the single resource a task describes.

    Returns None when nothing matches, including when a declared id is
    unknown to the backend.

    Raises:
        AmbiguousMatchError: If a tag lookup matches several resources.
        UnknownFilterError: If the backend rejects a filter.
    """
    what = task.task_type
    if task.declared_id is not None:
        try:
            return cloud.find_one(operation, result_key, what, **{id_param: [task.declared_id]})
        except ResourceNotFoundError:
            return None

    if isinstance(task.ownership, Shared):
        tags = dict(task.ownership.tags)
    else:
        tags = owned_tags(task, cloud)

    filters = filters_for_tags(tags) + list(extra_filters or [])
    return cloud.find_one(operation, result_key, what, Filters=filters)


def vpc_filter(vpc_id: str) -> dict[str, Any]:
    return filter_for("vpc-id", vpc_id)


def check_shared_changes(
    task: Task,
    actual: Task | None,
    changes: ChangeSet,
    mutable: frozenset[str] = frozenset(),
) -> None:
    """Reject any change to an existing shared resource outside ``mutable``.

    Raises:
        CannotChangeFieldError: Naming the first offending field.
    """
    if actual is None or not task.is_shared:
        return
    for field_name in sorted(changes):
        if field_name not in mutable:
            raise cannot_change_field(field_name, task)


def require_existing(task: Task, actual: Task | None) -> Task:
    """A shared resource must already exist before it can be used directly.

    Raises:
        ResourceNotFoundError: If ``actual`` is None.
    """
    if actual is None:
        where = f" with id {task.declared_id}" if task.declared_id else ""
        raise ResourceNotFoundError(f"shared {task}{where} does not exist")
    return actual


def warn_undiscovered(task: Task, actual: Task | None) -> str | None:
    """Best-effort identifier for a shared resource on a declarative target."""
    if actual is not None:
        return actual.id
    if task.declared_id is None:
        logger.warning(
            "Cannot find shared resource",
            extra={"task": str(task), "tags": dict(getattr(task.ownership, "tags", {}))},
        )
    return task.declared_id
