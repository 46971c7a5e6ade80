"""Configuration management with validation.

Run settings are validated at load time so that a bad environment fails
before any task is planned or any cloud call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class Lifecycle(str, Enum):
    """How strictly a task's actual state must match its desired state."""

    # Create and update freely
    SYNC = "Sync"
    # Resource must exist; differences are logged but not applied
    EXISTS_AND_WARN_IF_CHANGES = "ExistsAndWarnIfChanges"
    # Resource must exist and match exactly; any difference is fatal
    EXISTS_AND_VALIDATES = "ExistsAndValidates"
    # Not reconciled at all
    IGNORE = "Ignore"


class TargetKind(str, Enum):
    """Supported rendering backends."""

    DIRECT = "direct"
    TERRAFORM = "terraform"
    CLOUDFORMATION = "cloudformation"
    DRYRUN = "dryrun"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 10
MIN_MAX_CONCURRENCY = 1
MAX_MAX_CONCURRENCY = 64

DEFAULT_OUT_DIR = "out"

# Limits on loaded input
MAX_CLUSTER_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max topology file
MAX_TASKS_PER_RUN = 1000

# Input validation patterns
VALID_CLUSTER_NAME_PATTERN = r"^[a-z0-9]([a-z0-9.-]{0,61}[a-z0-9])?$"
VALID_REGION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"


@dataclass(frozen=True)
class Config:
    """Run configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    cluster_name: str
    region: str

    target: TargetKind = TargetKind.DRYRUN
    out_dir: Path = field(default_factory=lambda: Path(DEFAULT_OUT_DIR))
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.cluster_name:
            errors.append("CLUSTER_NAME is required")
        elif not re.match(VALID_CLUSTER_NAME_PATTERN, self.cluster_name):
            errors.append(
                f"CLUSTER_NAME must match pattern {VALID_CLUSTER_NAME_PATTERN}: "
                f"{self.cluster_name}"
            )

        if not self.region:
            errors.append("AWS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if not (MIN_MAX_CONCURRENCY <= self.max_concurrency <= MAX_MAX_CONCURRENCY):
            errors.append(
                f"CONVERGE_MAX_CONCURRENCY must be between {MIN_MAX_CONCURRENCY} "
                f"and {MAX_MAX_CONCURRENCY}"
            )

        if self.out_dir.exists() and not self.out_dir.is_dir():
            errors.append(f"CONVERGE_OUT_DIR is not a directory: {self.out_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CLUSTER_NAME: Name of the cluster, used for ownership tags
            AWS_REGION: Region the cloud handle talks to
            CONVERGE_TARGET: One of direct, terraform, cloudformation, dryrun
                (default: dryrun)
            CONVERGE_OUT_DIR: Where declarative targets write (default: out)
            CONVERGE_MAX_CONCURRENCY: Worker pool size (default: 10)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_target(value: str | None) -> TargetKind:
            if not value:
                return TargetKind.DRYRUN
            try:
                return TargetKind(value.lower())
            except ValueError as e:
                valid = [t.value for t in TargetKind]
                raise ConfigurationError(f"CONVERGE_TARGET must be one of {valid}: {value}") from e

        return cls(
            cluster_name=os.environ.get("CLUSTER_NAME", ""),
            region=os.environ.get("AWS_REGION", ""),
            target=get_target(os.environ.get("CONVERGE_TARGET")),
            out_dir=Path(os.environ.get("CONVERGE_OUT_DIR", DEFAULT_OUT_DIR)),
            max_concurrency=get_int("CONVERGE_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
        )
