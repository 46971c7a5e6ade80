"""Field-by-field comparison of actual and desired task state.

The differ produces a ChangeSet holding only the fields whose desired value
differs from the actual one. Comparison goes through a per-field equality
policy so that values which are syntactically different but semantically
equal do not register as drift.

COMMON FALSE POSITIVES HANDLED:
1. Tags the cloud (or another tool) added that the desired state never named
2. Empty map vs empty list vs missing value
3. Case differences in enum-like strings (e.g. "Default" vs "default")
4. The same resource referenced through different Task objects across runs
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from enum import Enum
from typing import Any

from .task import ResourceRef, Task

logger = logging.getLogger(__name__)

# Resolves a referenced desired task to its cloud identifier
Resolver = Callable[[Task], "str | None"]


class EqualityPolicy(str, Enum):
    """How a field's actual and desired values are compared."""

    # Plain equality
    EXACT = "exact"

    # Desired map must be contained in the actual map (tag-style matching)
    SUBSET = "subset"

    # [], {}, "", None are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Case-insensitive string comparison
    CASE_INSENSITIVE = "case_insensitive"


class ChangeSet(Mapping[str, Any]):
    """Read-only mapping of field name to desired value for changed fields."""

    def __init__(self, changes: Mapping[str, Any]) -> None:
        self._changes = dict(changes)

    def __getitem__(self, key: str) -> Any:
        return self._changes[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._changes)

    def __len__(self) -> int:
        return len(self._changes)

    def __repr__(self) -> str:
        return f"ChangeSet({sorted(self._changes)})"


def _normalize_empty(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str | list | dict | tuple) and len(value) == 0:
        return None
    return value


def _normalize_case(value: Any) -> Any:
    if isinstance(value, str):
        return value.lower()
    return value


def values_equal(actual: Any, desired: Any, policy: EqualityPolicy) -> bool:
    """Compare two plain values under an equality policy."""
    match policy:
        case EqualityPolicy.SUBSET:
            if desired is None:
                return True
            if not isinstance(desired, Mapping):
                return actual == desired
            actual_map = actual or {}
            return all(
                key in actual_map and actual_map[key] == value
                for key, value in desired.items()
            )
        case EqualityPolicy.EMPTY_EQUIVALENCE:
            return _normalize_empty(actual) == _normalize_empty(desired)
        case EqualityPolicy.CASE_INSENSITIVE:
            return _normalize_case(actual) == _normalize_case(desired)
        case _:
            return actual == desired


def reference_id(value: Any, resolve: Resolver) -> str | None:
    """Identifier a reference points at, regardless of which side it came from."""
    if isinstance(value, ResourceRef):
        return value.id
    if isinstance(value, Task):
        return resolve(value)
    return None


def _is_reference(value: Any) -> bool:
    return isinstance(value, Task | ResourceRef)


def diff(actual: Task | None, desired: Task, resolve: Resolver) -> ChangeSet | None:
    """Compute the fields of ``desired`` that differ from ``actual``.

    A desired value of None means "no opinion" and is never reported.
    References are compared by the identifier they resolve to, never by
    object identity.

    Args:
        actual: Actual state from find(), or None if the resource is missing.
        desired: Desired state.
        resolve: Maps a referenced desired task to its resolved identifier.

    Returns:
        ChangeSet of differing fields, or None if nothing differs.
    """
    changes: dict[str, Any] = {}

    declared_id = desired.declared_id
    if declared_id is not None and (actual is None or actual.id != declared_id):
        changes["id"] = declared_id

    for name in desired.diff_fields():
        desired_value = getattr(desired, name)
        if desired_value is None:
            continue

        if actual is None:
            changes[name] = desired_value
            continue

        actual_value = getattr(actual, name)

        if _is_reference(desired_value):
            desired_ref = reference_id(desired_value, resolve)
            actual_ref = reference_id(actual_value, resolve)
            if desired_ref is None or desired_ref != actual_ref:
                changes[name] = desired_value
            continue

        policy = desired.equality.get(name, EqualityPolicy.EXACT)
        if not values_equal(actual_value, desired_value, policy):
            changes[name] = desired_value

    if not changes:
        return None

    logger.debug(
        "Task differs from actual state",
        extra={"task": str(desired), "fields": sorted(changes), "exists": actual is not None},
    )
    return ChangeSet(changes)
