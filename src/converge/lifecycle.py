"""Per-task-type and per-task-name lifecycle overrides.

A task declares its own lifecycle, but operators often need to change it
for a whole class of resources without editing the topology: adopt every
existing subnet read-only, or stop reconciling a gateway while someone
fixes it by hand.

RESOLUTION:
- The task's own lifecycle is the default
- Overrides are evaluated in order; the first matching rule wins
- A rule matches on task type globs, task name globs, or both
- Rules with no match criteria never match

Example (LIFECYCLE_OVERRIDES or ``lifecycleOverrides`` in the topology):
    - taskTypes: ["Subnet"]
      lifecycle: ExistsAndWarnIfChanges
      reason: "subnets are managed by the network team"
    - taskNames: ["legacy-*"]
      lifecycle: Ignore
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import ConfigurationError, Lifecycle

if TYPE_CHECKING:
    from .task import Task

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LifecycleResolution:
    """Result of resolving a task's lifecycle.

    Attributes:
        lifecycle: The lifecycle to use for this task.
        rule_matched: Which rule matched (None if the task's own is used).
        reason: Human-readable explanation of the choice.
    """

    lifecycle: Lifecycle
    rule_matched: str | None
    reason: str


def _glob_to_regex(pattern: str) -> str:
    """Convert a glob pattern (``*`` and ``?``) to an anchored regex."""
    escaped = ""
    for char in pattern:
        if char == "*":
            escaped += ".*"
        elif char == "?":
            escaped += "."
        else:
            escaped += re.escape(char)
    return f"^{escaped}$"


class LifecycleOverride(BaseModel):
    """A single lifecycle override rule."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    task_types: list[str] = Field(default_factory=list, alias="taskTypes")
    task_names: list[str] = Field(default_factory=list, alias="taskNames")
    lifecycle: Lifecycle
    reason: str = ""

    @field_validator("task_types", "task_names")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Drop blank patterns."""
        return [pattern.strip() for pattern in v if pattern and pattern.strip()]

    def matches(self, task_type: str, task_name: str) -> bool:
        """Check if this rule applies to a task.

        Task types match case-insensitively; task names match exactly.
        """
        if not self.task_types and not self.task_names:
            return False

        if self.task_types and not any(
            re.match(_glob_to_regex(p.lower()), task_type.lower()) for p in self.task_types
        ):
            return False

        if self.task_names and not any(
            re.match(_glob_to_regex(p), task_name) for p in self.task_names
        ):
            return False

        return True

    def describe(self) -> str:
        parts = []
        if self.task_types:
            parts.append(f"types={self.task_types}")
        if self.task_names:
            parts.append(f"names={self.task_names}")
        return " ".join(parts)


@dataclass
class LifecycleResolver:
    """Resolves the effective lifecycle of a task.

    Thread Safety:
        This class is stateless after construction and thread-safe.
    """

    overrides: list[LifecycleOverride] = field(default_factory=list)

    def resolve(self, task: Task) -> LifecycleResolution:
        for override in self.overrides:
            if override.matches(task.task_type, task.name):
                return LifecycleResolution(
                    lifecycle=override.lifecycle,
                    rule_matched=override.describe(),
                    reason=override.reason or f"Override: {override.lifecycle.value}",
                )

        return LifecycleResolution(
            lifecycle=task.lifecycle,
            rule_matched=None,
            reason=f"Task lifecycle: {task.lifecycle.value}",
        )

    def extend(self, overrides: list[LifecycleOverride]) -> LifecycleResolver:
        """New resolver evaluating ``overrides`` after this resolver's rules."""
        return LifecycleResolver(overrides=[*self.overrides, *overrides])


def parse_lifecycle_overrides(raw: str) -> list[LifecycleOverride]:
    """Parse a JSON list of override rules.

    Raises:
        ConfigurationError: If the JSON or any rule is invalid.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Lifecycle overrides are not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise ConfigurationError("Lifecycle overrides must be a JSON list")

    try:
        return [LifecycleOverride.model_validate(item) for item in data]
    except ValidationError as e:
        raise ConfigurationError(f"Invalid lifecycle override: {e}") from e


def create_lifecycle_resolver_from_env() -> LifecycleResolver:
    """Create a LifecycleResolver from the environment.

    Environment Variables:
        LIFECYCLE_OVERRIDES: JSON list of override rules (optional)

    Raises:
        ConfigurationError: If LIFECYCLE_OVERRIDES is set but invalid.
    """
    raw = os.environ.get("LIFECYCLE_OVERRIDES", "")
    if not raw.strip():
        return LifecycleResolver()

    overrides = parse_lifecycle_overrides(raw)
    logger.info("Loaded lifecycle overrides", extra={"count": len(overrides)})
    return LifecycleResolver(overrides=overrides)
