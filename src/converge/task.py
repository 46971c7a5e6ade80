"""The contract every resource task implements.

A task is a named descriptor of one cloud resource. The same class describes
the desired state (built by the caller) and the actual state (returned by
``find``). The engine only ever talks to tasks through this interface:

- ``dependencies()`` lists the tasks this one references
- ``find()`` reads the actual resource, or returns None
- ``check_changes()`` rejects illegal deltas
- one ``render_*`` method per target kind applies the delta

Ownership is explicit. ``Owned()`` resources are created and managed by the
engine; ``Shared(...)`` resources already exist, are never created or renamed,
and are located by id or, best-effort, by tags.
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Union

from .config import Lifecycle

if TYPE_CHECKING:
    from .context import ReconciliationContext
    from .diff import ChangeSet, EqualityPolicy
    from .targets import CloudFormationTarget, DirectTarget, TerraformTarget

# Fields every task carries that are bookkeeping rather than resource state
BASE_FIELDS = frozenset({"name", "lifecycle", "ownership", "id"})


@dataclass(frozen=True)
class Owned:
    """The engine creates, updates and owns the resource."""


@dataclass(frozen=True)
class Shared:
    """A pre-existing resource the engine must never create or rename.

    Attributes:
        id: Cloud identifier, when known up front.
        tags: Tags used to discover the resource when no id is given.
    """

    id: str | None = None
    tags: Mapping[str, str] = field(default_factory=dict)


Ownership = Union[Owned, Shared]


@dataclass(frozen=True)
class ResourceRef:
    """A reference to a resource by literal id.

    ``find`` reports references this way. A desired task may also use one
    to point at a resource that has no task in the graph.
    """

    id: str

    def terraform_link(self, t: TerraformTarget) -> str:
        return self.id

    def cloudformation_link(self, t: CloudFormationTarget) -> str:
        return self.id


@dataclass(eq=False, kw_only=True)
class Task(ABC):
    """Base class for resource tasks.

    Subclasses are keyword-only dataclasses. Every field they add beyond the
    base fields takes part in diffing; a field holding another Task is a
    reference and must also be returned from ``dependencies()``.
    """

    name: str
    lifecycle: Lifecycle = Lifecycle.SYNC
    ownership: Ownership = field(default_factory=Owned)
    # Only set on actual-state instances returned by find()
    id: str | None = None

    # Fields that may never change once the resource exists
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"id"})
    # Fields that must be set before the run starts
    required_fields: ClassVar[frozenset[str]] = frozenset()
    # Per-field equality policy, EXACT when absent
    equality: ClassVar[dict[str, EqualityPolicy]] = {}
    terraform_type: ClassVar[str] = ""
    cloudformation_type: ClassVar[str] = ""

    def __str__(self) -> str:
        return f"{self.task_type}/{self.name}"

    @property
    def task_type(self) -> str:
        return type(self).__name__

    @property
    def is_shared(self) -> bool:
        return isinstance(self.ownership, Shared)

    @property
    def declared_id(self) -> str | None:
        """Identifier supplied by the caller for shared resources."""
        if isinstance(self.ownership, Shared):
            return self.ownership.id
        return None

    @classmethod
    def diff_fields(cls) -> list[str]:
        """Names of the resource-state fields compared by the differ."""
        return [f.name for f in dataclasses.fields(cls) if f.name not in BASE_FIELDS]

    def dependencies(self) -> list[Task]:
        """Return the tasks this task references."""
        return []

    def observed(self, id: str | None, **fields: Any) -> Task:
        """Build an actual-state instance of this task.

        Name, lifecycle and ownership are copied from the desired task so
        they never show up as spurious differences.
        """
        return type(self)(
            name=self.name,
            lifecycle=self.lifecycle,
            ownership=self.ownership,
            id=id,
            **fields,
        )

    @abstractmethod
    def find(self, ctx: ReconciliationContext) -> Task | None:
        """Read the actual resource. Must not mutate cloud state."""

    def check_changes(self, actual: Task | None, changes: ChangeSet) -> None:
        """Reject deltas the resource cannot accept.

        Immutable fields are enforced by the engine before this is called.

        Raises:
            CannotChangeFieldError: If a delta is not allowed.
        """

    @abstractmethod
    def render_direct(
        self, t: DirectTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        """Apply the delta through the cloud API. Returns the resource id."""

    @abstractmethod
    def render_terraform(
        self, t: TerraformTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        """Emit the Terraform fragment for this task."""

    @abstractmethod
    def render_cloudformation(
        self, t: CloudFormationTarget, actual: Task | None, changes: ChangeSet
    ) -> str | None:
        """Emit the CloudFormation fragment for this task."""

    def terraform_link(self, t: TerraformTarget) -> str:
        """Expression other Terraform resources use to refer to this one."""
        if self.is_shared:
            return t.resolved_id(self, required=True)
        return t.link(self.terraform_type, self.name)

    def cloudformation_link(self, t: CloudFormationTarget) -> Any:
        """Expression other CloudFormation resources use to refer to this one."""
        if self.is_shared:
            return t.resolved_id(self, required=True)
        return t.ref(self.cloudformation_type, self.name)
