"""Concurrent, dependency-ordered execution of tasks.

The scheduler keeps a ready set of tasks whose dependencies have all
completed and hands them to a bounded worker pool. When a task completes,
its dependents' pending counters drop and any that reach zero become ready.

FAILURE HANDLING:
- A task that raises is FAILED
- Every task depending on it, directly or transitively, is SKIPPED and
  never executed
- Tasks independent of the failure keep running to completion
- Running tasks are never preempted and there is no timeout; a hung
  backend call blocks its worker
- All independent failures are collected into one RunFailedError
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum

from .config import DEFAULT_MAX_CONCURRENCY
from .dependency import DependencyGraph

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Terminal status of a task in a run."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # A dependency failed


class ChangeAction(str, Enum):
    """What the engine did with a completed task."""

    CREATE = "create"
    UPDATE = "update"
    NONE = "none"  # Already converged
    WARN = "warn"  # Drift logged, not applied
    PLAN = "plan"  # Recorded by the dry-run target
    IGNORE = "ignore"


@dataclass
class TaskResult:
    """Outcome of a single task."""

    name: str
    status: TaskStatus
    action: ChangeAction | None = None
    resource_id: str | None = None
    changed_fields: list[str] = field(default_factory=list)
    error: Exception | None = None
    blocked_by: str | None = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status is TaskStatus.COMPLETED


class RunFailedError(Exception):
    """Aggregate of every task that failed on its own in a run.

    Tasks skipped because a dependency failed are listed separately and are
    not counted as failures.
    """

    def __init__(self, failures: Mapping[str, Exception], skipped: list[str] | None = None) -> None:
        self.failures = dict(failures)
        self.skipped = sorted(skipped or [])
        lines = [f"  - {name}: {error}" for name, error in sorted(self.failures.items())]
        message = f"{len(self.failures)} task(s) failed:\n" + "\n".join(lines)
        if self.skipped:
            message += f"\nskipped due to dependency failure: {self.skipped}"
        super().__init__(message)

    @classmethod
    def from_results(cls, results: Mapping[str, TaskResult]) -> RunFailedError | None:
        """Build the aggregate error for a run, or None if nothing failed."""
        failures = {
            name: result.error
            for name, result in results.items()
            if result.status is TaskStatus.FAILED and result.error is not None
        }
        if not failures:
            return None
        skipped = [name for name, result in results.items() if result.status is TaskStatus.SKIPPED]
        return cls(failures, skipped)


class Scheduler:
    """Runs a task graph over a bounded pool of worker threads."""

    def __init__(self, max_workers: int = DEFAULT_MAX_CONCURRENCY) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._max_workers = max_workers

    def run(
        self,
        graph: DependencyGraph,
        execute: Callable[[str], TaskResult],
    ) -> dict[str, TaskResult]:
        """Execute every task in the graph in dependency order.

        Args:
            graph: Validated dependency graph.
            execute: Converges one task by name. Returns its result on
                success and raises on failure.

        Returns:
            Result for every node: COMPLETED, FAILED or SKIPPED.
        """
        graph.validate()

        dependents = graph.dependents_map()
        pending = {name: len(node.depends_on) for name, node in graph.nodes.items()}
        results: dict[str, TaskResult] = {}
        ready = sorted(name for name, count in pending.items() if count == 0)

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="converge"
        ) as pool:
            running: dict[Future[TaskResult], str] = {}

            while ready or running:
                while ready:
                    name = ready.pop(0)
                    running[pool.submit(self._execute_one, execute, name)] = name

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    name = running.pop(future)
                    result = future.result()
                    results[name] = result

                    if result.status is TaskStatus.COMPLETED:
                        for dependent in dependents[name]:
                            pending[dependent] -= 1
                            if pending[dependent] == 0 and dependent not in results:
                                ready.append(dependent)
                        continue

                    for skipped in sorted(graph.transitive_dependents(name)):
                        if skipped in results:
                            continue
                        results[skipped] = TaskResult(
                            name=skipped,
                            status=TaskStatus.SKIPPED,
                            blocked_by=name,
                        )
                        logger.warning(
                            "Task skipped due to dependency failure",
                            extra={"task": skipped, "blocked_by": name},
                        )

                ready.sort()

        return results

    @staticmethod
    def _execute_one(execute: Callable[[str], TaskResult], name: str) -> TaskResult:
        """Run one task, turning any exception into a FAILED result."""
        start = time.monotonic()
        try:
            result = execute(name)
        except Exception as e:
            logger.error(
                "Task failed",
                extra={"task": name, "error": str(e), "error_type": type(e).__name__},
            )
            return TaskResult(
                name=name,
                status=TaskStatus.FAILED,
                error=e,
                duration_seconds=time.monotonic() - start,
            )

        result.duration_seconds = time.monotonic() - start
        logger.debug(
            "Task completed",
            extra={"task": name, "action": result.action.value if result.action else None},
        )
        return result
