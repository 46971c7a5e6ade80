"""Reconciliation context: one convergence pass over a task set.

The context owns the task set, the target and the cloud handle for a run
and drives the pass from start to finish:

1. plan(): validate task configuration, build the dependency graph, reject
   cycles, resolve lifecycle overrides and fix the execution order
2. run(): hand the graph to the scheduler, converging each task with
   find -> diff -> validate -> lifecycle policy -> target dispatch
3. finish the target (declarative targets write their document) and log
   the run's provenance record

STATE MACHINE:
    BUILT -> PLANNED -> RUNNING -> CONVERGED | FAILED

A context runs at most once. A new pass needs a new context built from a
fresh task set. Identifiers discovered during the run are kept in the
resolved-state map, never written back onto the caller's task objects.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType

from .cloud import AWSCloud
from .config import (
    DEFAULT_MAX_CONCURRENCY,
    MAX_TASKS_PER_RUN,
    Config,
    ConfigurationError,
    Lifecycle,
)
from .dependency import DependencyGraph
from .diff import ChangeSet, diff
from .lifecycle import LifecycleResolver
from .provenance import ChangeSummary, get_provenance_logger
from .scheduler import ChangeAction, RunFailedError, Scheduler, TaskResult, TaskStatus
from .targets import DryRunTarget, ReferenceNotFoundError, Target
from .task import Shared, Task
from .validation import require, validate_changes

logger = logging.getLogger(__name__)


class ContextState(str, Enum):
    """Lifecycle of a reconciliation context."""

    BUILT = "built"
    PLANNED = "planned"
    RUNNING = "running"
    CONVERGED = "converged"
    FAILED = "failed"


class IllegalStateError(Exception):
    """Raised when a context is asked to do something its state forbids."""

    pass


class LifecycleViolationError(Exception):
    """Raised when actual state breaks a task's lifecycle policy."""

    pass


@dataclass(frozen=True)
class ResolvedState:
    """What a run learned about one task."""

    name: str
    id: str | None
    action: ChangeAction


@dataclass
class RunResult:
    """Result of a convergence pass."""

    results: dict[str, TaskResult]
    resolved: dict[str, ResolvedState]
    start_time: datetime
    end_time: datetime
    error: RunFailedError | None = None
    output_path: Path | None = None
    changed: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    def resolved_id(self, name: str) -> str | None:
        state = self.resolved.get(name)
        return state.id if state is not None else None


class ReconciliationContext:
    """Drives one convergence pass over a task set.

    Thread Safety:
        Workers converge disjoint tasks concurrently; the result and
        resolved-state maps are guarded by a lock. A single context must not
        be run concurrently with itself, which the state machine enforces.
    """

    def __init__(
        self,
        tasks: Mapping[str, Task],
        target: Target,
        cloud: AWSCloud | None = None,
        config: Config | None = None,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        lifecycle_resolver: LifecycleResolver | None = None,
        cluster_name: str = "",
    ) -> None:
        """Initialize the context.

        Args:
            tasks: Desired tasks keyed by task name.
            target: Backend the run renders through. Bound to this context.
            cloud: Cloud handle for find(); defaults to the target's.
            config: Run configuration; supplies the pool size and cluster
                name when given.
            max_concurrency: Worker pool size.
            lifecycle_resolver: Lifecycle overrides applied at plan time.
            cluster_name: For logging and provenance.

        Raises:
            ConfigurationError: If the task set is too large.
        """
        if len(tasks) > MAX_TASKS_PER_RUN:
            raise ConfigurationError(
                f"Run has {len(tasks)} tasks, exceeding limit of {MAX_TASKS_PER_RUN}"
            )

        if config is not None:
            max_concurrency = config.max_concurrency
            cluster_name = cluster_name or config.cluster_name

        self._tasks = dict(tasks)
        self.target = target
        self.cloud = cloud if cloud is not None else target.cloud
        self.cluster_name = cluster_name or (self.cloud.cluster_name if self.cloud else "")
        self._max_concurrency = max_concurrency
        self._lifecycle_resolver = lifecycle_resolver or LifecycleResolver()

        self._state = ContextState.BUILT
        self._state_lock = threading.Lock()
        self._lock = threading.Lock()
        self._graph: DependencyGraph | None = None
        self._order: list[str] = []
        self._lifecycles: dict[str, Lifecycle] = {}
        self._resolved: dict[str, ResolvedState] = {}

        target.bind(self)

    @property
    def state(self) -> ContextState:
        return self._state

    @property
    def tasks(self) -> Mapping[str, Task]:
        return MappingProxyType(self._tasks)

    @property
    def order(self) -> list[str]:
        """Deterministic dependency order fixed by plan()."""
        return list(self._order)

    def require_cloud(self) -> AWSCloud:
        """The cloud handle, for plugins that must read actual state.

        Raises:
            ConfigurationError: If the run was built without one.
        """
        if self.cloud is None:
            raise ConfigurationError("This run has no cloud handle to read actual state from")
        return self.cloud

    def lifecycle_of(self, task: Task) -> Lifecycle:
        return self._lifecycles.get(task.name, task.lifecycle)

    def _transition(self, expected: ContextState, new: ContextState) -> None:
        with self._state_lock:
            if self._state is not expected:
                raise IllegalStateError(
                    f"Cannot move to {new.value}: context is {self._state.value}, "
                    f"expected {expected.value}"
                )
            self._state = new

    def plan(self) -> list[str]:
        """Validate the task set and fix the execution order.

        Nothing here touches the cloud.

        Returns:
            Task names in dependency order.

        Raises:
            ConfigurationError: For cycles, dangling references or tasks
                missing required values.
            IllegalStateError: If the context was already planned.
        """
        if self._state is not ContextState.BUILT:
            raise IllegalStateError(f"Cannot plan: context is {self._state.value}")

        for task in self._tasks.values():
            self._validate_task_config(task)

        graph = DependencyGraph.from_tasks(self._tasks)
        order = graph.topological_sort()

        lifecycles: dict[str, Lifecycle] = {}
        for name, task in self._tasks.items():
            resolution = self._lifecycle_resolver.resolve(task)
            lifecycles[name] = resolution.lifecycle
            if resolution.rule_matched is not None:
                logger.info(
                    "Lifecycle override applied",
                    extra={
                        "task": str(task),
                        "lifecycle": resolution.lifecycle.value,
                        "reason": resolution.reason,
                    },
                )

        self._transition(ContextState.BUILT, ContextState.PLANNED)
        self._graph = graph
        self._order = order
        self._lifecycles = lifecycles

        logger.info(
            "Planned convergence pass",
            extra={
                "cluster": self.cluster_name,
                "target": self.target.kind.value,
                "task_count": len(order),
            },
        )
        return order

    @staticmethod
    def _validate_task_config(task: Task) -> None:
        if isinstance(task.ownership, Shared) and not task.ownership.id and not task.ownership.tags:
            raise ConfigurationError(f"Shared task {task} needs an id or tags to locate it")
        for field_name in sorted(task.required_fields):
            require(getattr(task, field_name), field_name, task)

    def run(self) -> RunResult:
        """Run the convergence pass.

        Per-task failures do not raise; they are collected into
        ``RunResult.error``.

        Raises:
            ConfigurationError: If planning fails.
            IllegalStateError: If the context already ran.
        """
        if self._state is ContextState.BUILT:
            self.plan()
        if self._state is ContextState.PLANNED and self._graph is None:
            raise IllegalStateError("context has no dependency graph")
        self._transition(ContextState.PLANNED, ContextState.RUNNING)

        start_time = datetime.now(UTC)
        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            cluster_name=self.cluster_name,
            target=self.target.kind.value,
            task_count=len(self._tasks),
        )

        results = Scheduler(max_workers=self._max_concurrency).run(
            self._graph, self.converge_task
        )
        error = RunFailedError.from_results(results)

        output_path: Path | None = None
        if error is None:
            try:
                output_path = self.target.finish()
            except OSError as e:
                logger.error("Failed to write target output", extra={"error": str(e)})
                error = RunFailedError({"<finish>": e})

        with self._lock:
            resolved = dict(self._resolved)

        self._transition(
            ContextState.RUNNING,
            ContextState.CONVERGED if error is None else ContextState.FAILED,
        )

        result = RunResult(
            results=results,
            resolved=resolved,
            start_time=start_time,
            end_time=datetime.now(UTC),
            error=error,
            output_path=output_path,
            changed=sorted(
                name
                for name, r in results.items()
                if r.action in (ChangeAction.CREATE, ChangeAction.UPDATE)
            ),
        )

        provenance.summary = ChangeSummary.from_results(results)
        provenance.duration_seconds = result.duration_seconds
        if error is not None:
            provenance.error = str(error)
            provenance.error_type = type(error).__name__
            provenance.failed_tasks = sorted(error.failures)
        provenance_logger.log_provenance(provenance)

        return result

    def resolved_id(self, task: Task, required: bool = False) -> str | None:
        """Identifier resolved for ``task`` so far in this run.

        Falls back to the id a shared task declares.

        Raises:
            ReferenceNotFoundError: If required and no identifier is known.
        """
        with self._lock:
            state = self._resolved.get(task.name)
        resource_id = state.id if state is not None else None
        if resource_id is None:
            resource_id = task.declared_id
        if resource_id is None and required:
            raise ReferenceNotFoundError(f"referenced resource {task} not found")
        return resource_id

    def _resolve_for_diff(self, task: Task) -> str | None:
        return self.resolved_id(task)

    def _complete(
        self,
        task: Task,
        action: ChangeAction,
        resource_id: str | None,
        changes: ChangeSet | None = None,
    ) -> TaskResult:
        with self._lock:
            self._resolved[task.name] = ResolvedState(name=task.name, id=resource_id, action=action)

        return TaskResult(
            name=task.name,
            status=TaskStatus.COMPLETED,
            action=action,
            resource_id=resource_id,
            changed_fields=sorted(changes) if changes else [],
        )

    def converge_task(self, name: str) -> TaskResult:
        """Converge a single task. Called by the scheduler's workers.

        Raises:
            Exception: Any find, validation, lifecycle or render failure.
        """
        task = self._tasks[name]
        lifecycle = self.lifecycle_of(task)

        if lifecycle is Lifecycle.IGNORE:
            logger.debug("Task ignored by lifecycle", extra={"task": str(task)})
            return self._complete(task, ChangeAction.IGNORE, task.declared_id)

        actual: Task | None = None
        if self.target.check_existing or task.is_shared or lifecycle is not Lifecycle.SYNC:
            actual = task.find(self)

        changes = diff(actual, task, self._resolve_for_diff)
        if changes is None:
            if actual is not None:
                logger.debug("Task already converged", extra={"task": str(task)})
                return self._complete(task, ChangeAction.NONE, actual.id)
            changes = ChangeSet({})

        validate_changes(actual, task, changes)

        match lifecycle:
            case Lifecycle.EXISTS_AND_VALIDATES:
                if actual is None:
                    raise LifecycleViolationError(
                        f"{task} has lifecycle {lifecycle.value} but was not found"
                    )
                raise LifecycleViolationError(
                    f"{task} has lifecycle {lifecycle.value} but differs in {sorted(changes)}"
                )

            case Lifecycle.EXISTS_AND_WARN_IF_CHANGES:
                if actual is None:
                    raise LifecycleViolationError(
                        f"{task} has lifecycle {lifecycle.value} but was not found"
                    )
                logger.warning(
                    "Changes detected but not applied",
                    extra={
                        "task": str(task),
                        "lifecycle": lifecycle.value,
                        "fields": sorted(changes),
                    },
                )
                return self._complete(task, ChangeAction.WARN, actual.id, changes)

        if isinstance(self.target, DryRunTarget):
            resource_id = self.target.dispatch(task, actual, changes)
            return self._complete(task, ChangeAction.PLAN, resource_id, changes)

        resource_id = self.target.dispatch(task, actual, changes)
        if resource_id is None:
            resource_id = actual.id if actual is not None else task.declared_id

        action = ChangeAction.CREATE if actual is None else ChangeAction.UPDATE
        logger.info(
            "Task converged",
            extra={
                "task": str(task),
                "action": action.value,
                "resource_id": resource_id,
                "fields": sorted(changes),
            },
        )
        return self._complete(task, action, resource_id, changes)
