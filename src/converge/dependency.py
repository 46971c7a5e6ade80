"""Task dependency graph construction and validation.

This module turns a set of tasks into the graph the scheduler walks:
1. Graph construction from each task's declared dependencies
2. Cycle detection, reporting the full cycle path
3. Topological sorting for a deterministic execution order
4. Ready-set computation for concurrent scheduling

DESIGN:
- Each task lists the tasks it references through ``dependencies()``
- Edges point from a task to the tasks it depends on, never back
- A dependency on a task outside the run is a configuration error
- All of this is checked before any cloud call is made
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .config import ConfigurationError

if TYPE_CHECKING:
    from .task import Task

logger = logging.getLogger(__name__)


class DependencyError(ConfigurationError):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class MissingDependencyError(DependencyError):
    """Raised when a task references a task that is not part of the run."""

    pass


class _Colour(Enum):
    WHITE = 0  # not visited
    GREY = 1  # on the current DFS path
    BLACK = 2  # fully explored


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)
    task_type: str = ""


@dataclass
class DependencyGraph:
    """Directed graph of task dependencies, keyed by task name."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_tasks(cls, tasks: Mapping[str, Task]) -> DependencyGraph:
        """Build the graph from a task set.

        Raises:
            DependencyError: If a task is registered under another name.
            MissingDependencyError: If a task references a task outside the set.
        """
        graph = cls()
        for key, task in tasks.items():
            if key != task.name:
                raise DependencyError(f"Task {task} is registered under the key {key!r}")

            depends_on: list[str] = []
            for dep in task.dependencies():
                registered = tasks.get(dep.name)
                if registered is None:
                    raise MissingDependencyError(
                        f"Task {task} references {dep}, which is not part of the run"
                    )
                if registered is not dep:
                    raise MissingDependencyError(
                        f"Task {task} references a different {dep} object than the "
                        f"one registered under {dep.name!r}"
                    )
                if dep.name not in depends_on:
                    depends_on.append(dep.name)

            graph.add_node(key, depends_on, task_type=task.task_type)

        return graph

    def add_node(
        self, name: str, depends_on: list[str] | None = None, task_type: str = ""
    ) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Task name.
            depends_on: Names of the tasks this task depends on.
            task_type: Task type, for diagnostics.
        """
        if name in self.nodes:
            if depends_on:
                self.nodes[name].depends_on = list(depends_on)
            if task_type:
                self.nodes[name].task_type = task_type
        else:
            self.nodes[name] = DependencyNode(
                name=name,
                depends_on=list(depends_on or []),
                task_type=task_type,
            )

        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(name=dep)

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Uses depth-first search with three colours; meeting a grey node means
        the current path loops back on itself.

        Raises:
            CyclicDependencyError: With the full cycle path, first == last.
        """
        colour = {name: _Colour.WHITE for name in self.nodes}

        for start in sorted(self.nodes):
            if colour[start] is not _Colour.WHITE:
                continue

            path: list[str] = [start]
            colour[start] = _Colour.GREY
            stack = [iter(sorted(self.nodes[start].depends_on))]

            while stack:
                dep = next(stack[-1], None)
                if dep is None:
                    colour[path.pop()] = _Colour.BLACK
                    stack.pop()
                    continue

                if colour[dep] is _Colour.GREY:
                    cycle = path[path.index(dep):] + [dep]
                    logger.error("Dependency cycle detected", extra={"cycle": cycle})
                    raise CyclicDependencyError(cycle)

                if colour[dep] is _Colour.WHITE:
                    colour[dep] = _Colour.GREY
                    path.append(dep)
                    stack.append(iter(sorted(self.nodes[dep].depends_on)))

    def topological_sort(self) -> list[str]:
        """Return task names in dependency order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents = self.dependents_map()
        in_degree = {name: len(node.depends_on) for name, node in self.nodes.items()}

        # Kahn's algorithm
        result: list[str] = []
        queue = [name for name, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def dependents_map(self) -> dict[str, list[str]]:
        """Reverse edges: for each task, the tasks that depend on it."""
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.name)
        return dependents

    def transitive_dependents(self, name: str) -> set[str]:
        """Every task that depends on ``name``, directly or indirectly."""
        dependents = self.dependents_map()
        seen: set[str] = set()
        pending = list(dependents.get(name, []))
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(dependents[current])
        return seen

    def get_ready(self, completed: set[str]) -> list[str]:
        """Get tasks that are ready to run (all dependencies completed).

        Args:
            completed: Names of tasks already completed.

        Returns:
            Sorted names of runnable tasks not yet completed.
        """
        ready = []
        for node in self.nodes.values():
            if node.name in completed:
                continue
            if all(dep in completed for dep in node.depends_on):
                ready.append(node.name)

        return sorted(ready)
