"""Rendering backends.

A target consumes a validated change-set. The set of target kinds is closed:
each kind has one ``dispatch`` implementation that calls the matching
``render_*`` method on the task, so adding a kind means adding a render
method to the Task contract and to every plugin.

- DirectTarget: calls the cloud API and mutates live state
- TerraformTarget: accumulates one resource per task, written as
  ``kubernetes.tf.json``
- CloudFormationTarget: accumulates one resource per task, written as
  ``kubernetes.json``
- DryRunTarget: records what would change without calling the plugin
"""

from __future__ import annotations

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from .config import TargetKind
from .task import ResourceRef

if TYPE_CHECKING:
    from .cloud import AWSCloud
    from .context import ReconciliationContext
    from .diff import ChangeSet
    from .task import Task

logger = logging.getLogger(__name__)

TERRAFORM_FILENAME = "kubernetes.tf.json"
CLOUDFORMATION_FILENAME = "kubernetes.json"
CLOUDFORMATION_TEMPLATE_VERSION = "2010-09-09"


class ReferenceNotFoundError(Exception):
    """Raised when a task needs the identifier of a resource that was not found."""

    pass


class DuplicateFragmentError(Exception):
    """Raised when a declarative target gets a second fragment for one task."""

    pass


class Target(ABC):
    """Base class for rendering backends.

    A target is bound to exactly one reconciliation context, through which
    plugins read the identifiers resolved for the tasks they reference.
    """

    kind: ClassVar[TargetKind]
    # Whether the engine reads actual state for owned tasks before rendering
    check_existing: ClassVar[bool] = True

    def __init__(self, cloud: AWSCloud | None = None) -> None:
        self.cloud = cloud
        self._context: ReconciliationContext | None = None

    def bind(self, context: ReconciliationContext) -> None:
        """Attach this target to the context that will drive it."""
        if self._context is not None and self._context is not context:
            raise RuntimeError(f"{type(self).__name__} is already bound to another run")
        self._context = context

    @property
    def context(self) -> ReconciliationContext:
        if self._context is None:
            raise RuntimeError(f"{type(self).__name__} is not bound to a run")
        return self._context

    def resolved_id(self, task: Task | ResourceRef, required: bool = False) -> str | None:
        """Identifier resolved for ``task`` earlier in this run.

        A ResourceRef resolves to its literal id.

        Raises:
            ReferenceNotFoundError: If required and nothing was resolved.
        """
        if isinstance(task, ResourceRef):
            return task.id
        return self.context.resolved_id(task, required=required)

    @abstractmethod
    def dispatch(self, task: Task, actual: Task | None, changes: ChangeSet) -> str | None:
        """Apply a change-set through this target. Returns the resource id."""

    def finish(self) -> Path | None:
        """Complete the run. Declarative targets write their document here."""
        return None


class DirectTarget(Target):
    """Applies changes by calling the cloud API."""

    kind = TargetKind.DIRECT

    def __init__(self, cloud: AWSCloud) -> None:
        super().__init__(cloud)

    def dispatch(self, task: Task, actual: Task | None, changes: ChangeSet) -> str | None:
        return task.render_direct(self, actual, changes)


@dataclass(frozen=True)
class PlannedChange:
    """A change the dry-run target would have applied."""

    task_name: str
    task_type: str
    exists: bool
    fields: tuple[str, ...] = field(default_factory=tuple)


class DryRunTarget(Target):
    """Records planned changes; never calls a plugin's render methods."""

    kind = TargetKind.DRYRUN

    def __init__(self, cloud: AWSCloud | None = None) -> None:
        super().__init__(cloud)
        self._lock = threading.Lock()
        self._changes: list[PlannedChange] = []

    @property
    def changes(self) -> list[PlannedChange]:
        with self._lock:
            return sorted(self._changes, key=lambda c: c.task_name)

    def dispatch(self, task: Task, actual: Task | None, changes: ChangeSet) -> str | None:
        planned = PlannedChange(
            task_name=task.name,
            task_type=task.task_type,
            exists=actual is not None,
            fields=tuple(sorted(changes)),
        )
        with self._lock:
            self._changes.append(planned)

        if actual is not None:
            return actual.id
        return task.declared_id

    def report(self) -> str:
        """Human-readable summary of the planned changes."""
        changes = self.changes
        if not changes:
            return "No changes need to be applied"

        lines = ["Will create resources:"]
        lines += [
            f"  {c.task_type}\t{c.task_name}" for c in changes if not c.exists
        ]
        lines.append("Will modify resources:")
        lines += [
            f"  {c.task_type}\t{c.task_name}\t{', '.join(c.fields)}"
            for c in changes
            if c.exists
        ]
        return "\n".join(lines)

    def finish(self) -> Path | None:
        logger.info(
            "Dry run complete",
            extra={"planned_changes": len(self._changes)},
        )
        return None


def _sanitize_terraform_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "-", name)


def _sanitize_cloudformation_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "", name)


class _DeclarativeTarget(Target):
    """Shared bookkeeping for targets that emit a document."""

    check_existing = False

    def __init__(self, cloud: AWSCloud | None, out_dir: Path) -> None:
        super().__init__(cloud)
        self.out_dir = out_dir
        self._lock = threading.Lock()
        # (task name, resource type) -> (resource name, body)
        self._fragments: dict[tuple[str, str], tuple[str, dict[str, Any]]] = {}
        # (resource type, resource name) -> owning task name
        self._owners: dict[tuple[str, str], str] = {}

    def dispatch(self, task: Task, actual: Task | None, changes: ChangeSet) -> str | None:
        return self._render(task, actual, changes)

    @abstractmethod
    def _render(self, task: Task, actual: Task | None, changes: ChangeSet) -> str | None:
        """Call the render method for this target kind."""

    def _store(self, task: Task, resource_type: str, name: str, body: dict[str, Any]) -> None:
        key = (task.name, resource_type)
        with self._lock:
            if key in self._fragments:
                raise DuplicateFragmentError(f"{task} already rendered a {resource_type} fragment")
            owner = self._owners.get((resource_type, name))
            if owner is not None:
                raise DuplicateFragmentError(
                    f"{task} renders {resource_type} {name!r}, already used by task {owner!r}"
                )
            self._owners[(resource_type, name)] = task.name
            self._fragments[key] = (name, body)

    def fragments(self, task_name: str) -> dict[str, dict[str, Any]]:
        """Fragments rendered for a task, keyed by resource type."""
        with self._lock:
            return {
                resource_type: body
                for (owner, resource_type), (_, body) in self._fragments.items()
                if owner == task_name
            }

    @abstractmethod
    def document(self) -> dict[str, Any]:
        """Merge all fragments into one document."""

    def _write(self, filename: str) -> Path:
        self.out_dir.mkdir(parents=True, exist_ok=True)
        path = self.out_dir / filename
        path.write_text(json.dumps(self.document(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        logger.info(
            "Wrote declarative configuration",
            extra={"path": str(path), "resources": len(self._fragments)},
        )
        return path


class TerraformTarget(_DeclarativeTarget):
    """Emits Terraform JSON configuration."""

    kind = TargetKind.TERRAFORM

    def __init__(
        self,
        cloud: AWSCloud | None,
        out_dir: Path,
        region: str | None = None,
    ) -> None:
        super().__init__(cloud, out_dir)
        self.region = region or (cloud.region if cloud is not None else None)
        self._outputs: dict[str, Any] = {}

    def _render(self, task: Task, actual: Task | None, changes: ChangeSet) -> str | None:
        return task.render_terraform(self, actual, changes)

    def add_resource(
        self, task: Task, body: dict[str, Any], resource_type: str | None = None
    ) -> None:
        """Record the resource fragment for ``task``."""
        self._store(
            task,
            resource_type or task.terraform_type,
            _sanitize_terraform_name(task.name),
            body,
        )

    def add_output(self, name: str, value: Any) -> None:
        """Expose ``value`` as a Terraform output. The name is sanitized."""
        with self._lock:
            self._outputs[_sanitize_terraform_name(name)] = {"value": value}

    def link(self, resource_type: str, name: str, attribute: str = "id") -> str:
        """Interpolation expression pointing at another resource's attribute."""
        return f"${{{resource_type}.{_sanitize_terraform_name(name)}.{attribute}}}"

    def document(self) -> dict[str, Any]:
        resources: dict[str, dict[str, Any]] = {}
        with self._lock:
            for (_, resource_type), (name, body) in self._fragments.items():
                resources.setdefault(resource_type, {})[name] = body
            outputs = dict(self._outputs)

        doc: dict[str, Any] = {"resource": resources}
        if self.region:
            doc["provider"] = {"aws": {"region": self.region}}
        if outputs:
            doc["output"] = outputs
        return doc

    def finish(self) -> Path | None:
        return self._write(TERRAFORM_FILENAME)


class CloudFormationTarget(_DeclarativeTarget):
    """Emits a CloudFormation template."""

    kind = TargetKind.CLOUDFORMATION

    def _render(self, task: Task, actual: Task | None, changes: ChangeSet) -> str | None:
        return task.render_cloudformation(self, actual, changes)

    @staticmethod
    def logical_id(resource_type: str, name: str) -> str:
        """CloudFormation logical id for a resource of a type and name."""
        return _sanitize_cloudformation_name(resource_type) + _sanitize_cloudformation_name(name)

    def add_resource(
        self,
        task: Task,
        properties: dict[str, Any],
        resource_type: str | None = None,
    ) -> None:
        """Record the resource fragment for ``task``."""
        resource_type = resource_type or task.cloudformation_type
        self._store(
            task,
            resource_type,
            self.logical_id(resource_type, task.name),
            {"Type": resource_type, "Properties": properties},
        )

    def ref(self, resource_type: str, name: str) -> dict[str, str]:
        return {"Ref": self.logical_id(resource_type, name)}

    def document(self) -> dict[str, Any]:
        with self._lock:
            resources = {name: body for name, body in self._fragments.values()}
        return {
            "AWSTemplateFormatVersion": CLOUDFORMATION_TEMPLATE_VERSION,
            "Resources": resources,
        }

    def finish(self) -> Path | None:
        return self._write(CLOUDFORMATION_FILENAME)
