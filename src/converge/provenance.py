"""Run provenance tracking for audit.

Every convergence pass is stamped with a provenance record answering:
- "What did this run change, and on which cluster?"
- "Which engine version and topology commit produced it?"
- "Which tasks failed?"

The record is emitted once, at the end of the run, as a single structured
log line so it can be queried alongside the rest of the JSON logs.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .scheduler import TaskResult

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ENGINE_VERSION = os.environ.get("CONVERGE_VERSION", "dev")


@dataclass
class ChangeSummary:
    """Per-action counts for a run."""

    create_count: int = 0
    update_count: int = 0
    unchanged_count: int = 0
    warned_count: int = 0
    planned_count: int = 0
    ignored_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0

    @property
    def total_changed(self) -> int:
        """Resources created or updated."""
        return self.create_count + self.update_count

    @classmethod
    def from_results(cls, results: Mapping[str, TaskResult]) -> ChangeSummary:
        from .scheduler import ChangeAction, TaskStatus

        summary = cls()
        for result in results.values():
            match result.status:
                case TaskStatus.FAILED:
                    summary.failed_count += 1
                    continue
                case TaskStatus.SKIPPED:
                    summary.skipped_count += 1
                    continue

            match result.action:
                case ChangeAction.CREATE:
                    summary.create_count += 1
                case ChangeAction.UPDATE:
                    summary.update_count += 1
                case ChangeAction.WARN:
                    summary.warned_count += 1
                case ChangeAction.PLAN:
                    summary.planned_count += 1
                case ChangeAction.IGNORE:
                    summary.ignored_count += 1
                case _:
                    summary.unchanged_count += 1
        return summary


@dataclass
class RunProvenance:
    """Provenance record for one convergence pass."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    cluster_name: str = ""
    target: str = ""
    engine_version: str = ENGINE_VERSION

    # Source of truth
    git_commit_sha: str = ""
    topology_hash: str = ""  # SHA256 of the topology file content

    # Outcome
    task_count: int = 0
    summary: ChangeSummary = field(default_factory=ChangeSummary)
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None
    failed_tasks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records through the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._topology_hash = ""

    def set_topology_hash(self, digest: str) -> None:
        """Record the hash of the topology file runs are built from."""
        self._topology_hash = digest

    def create_provenance(
        self,
        cluster_name: str,
        target: str,
        task_count: int,
    ) -> RunProvenance:
        """Create a new provenance record for a run."""
        return RunProvenance(
            cluster_name=cluster_name,
            target=target,
            engine_version=ENGINE_VERSION,
            git_commit_sha=self._git_commit_sha,
            topology_hash=self._topology_hash,
            task_count=task_count,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        Failed runs log at ERROR, runs that left drift unapplied at WARNING.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.summary.warned_count > 0:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                "cluster": provenance.cluster_name,
                "target": provenance.target,
                "changes_applied": provenance.summary.total_changed,
                "git_commit": provenance.git_commit_sha,
                "engine_version": provenance.engine_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
