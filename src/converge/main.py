"""Main entry point for a convergence run.

The run is configured from the environment (see ``Config.from_env``) and
reads the cluster topology from the file named by ``CLUSTER_FILE``. The
click CLI in ``converge.cli`` builds on the same helpers.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from .cloud import AWSCloud, CloudError
from .config import Config, ConfigurationError, TargetKind
from .context import ReconciliationContext, RunResult
from .lifecycle import LifecycleResolver, create_lifecycle_resolver_from_env
from .models import ClusterSpec
from .provenance import get_provenance_logger
from .spec_loader import SpecLoadError, load_cluster_spec, topology_digest
from .targets import CloudFormationTarget, DirectTarget, DryRunTarget, Target, TerraformTarget

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    """Configure structured logging with JSON output, on stdout by default.

    Calling it again replaces the handler installed by the previous call.
    """
    handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_target(kind: TargetKind, cloud: AWSCloud, out_dir: Path) -> Target:
    """Instantiate the target for a run."""
    match kind:
        case TargetKind.DIRECT:
            return DirectTarget(cloud)
        case TargetKind.TERRAFORM:
            return TerraformTarget(cloud, out_dir)
        case TargetKind.CLOUDFORMATION:
            return CloudFormationTarget(cloud, out_dir)
        case TargetKind.DRYRUN:
            return DryRunTarget(cloud)
    raise ConfigurationError(f"Unsupported target: {kind}")


def converge(
    spec: ClusterSpec,
    config: Config,
    cloud: AWSCloud | None = None,
    lifecycle_resolver: LifecycleResolver | None = None,
) -> tuple[RunResult, Target]:
    """Run one convergence pass of a topology.

    Lifecycle overrides from the environment are evaluated before the ones
    the topology declares.

    Raises:
        ConfigurationError: If the task set is invalid.
    """
    if cloud is None:
        cloud = AWSCloud(config.region, config.cluster_name)
    if lifecycle_resolver is None:
        lifecycle_resolver = create_lifecycle_resolver_from_env()
    lifecycle_resolver = lifecycle_resolver.extend(spec.lifecycle_overrides)

    target = build_target(config.target, cloud, config.out_dir)
    context = ReconciliationContext(
        spec.to_tasks(),
        target,
        cloud,
        config=config,
        lifecycle_resolver=lifecycle_resolver,
    )
    return context.run(), target


def main() -> int:
    """Run a convergence pass configured from the environment.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    cluster_file = os.environ.get("CLUSTER_FILE", "")
    if not cluster_file:
        logger.error("Configuration error", extra={"error": "CLUSTER_FILE is required"})
        return 1

    try:
        spec = load_cluster_spec(Path(cluster_file))
        get_provenance_logger().set_topology_hash(topology_digest(Path(cluster_file)))
    except SpecLoadError as e:
        logger.error("Topology loading failed", extra={"error": str(e), "path": cluster_file})
        return 1

    if spec.cluster_name != config.cluster_name:
        logger.error(
            "Topology belongs to another cluster",
            extra={"topology_cluster": spec.cluster_name, "cluster": config.cluster_name},
        )
        return 1

    logger.info(
        "Starting convergence",
        extra={
            "cluster": config.cluster_name,
            "region": config.region,
            "target": config.target.value,
        },
    )

    try:
        result, target = converge(spec, config)
    except ConfigurationError as e:
        logger.error("Invalid task configuration", extra={"error": str(e)})
        return 1
    except CloudError as e:
        logger.error("Cloud error", extra={"error": str(e), "code": e.code})
        return 1

    if isinstance(target, DryRunTarget):
        print(target.report())

    if not result.success:
        logger.error("Convergence failed", extra={"error": str(result.error)})
        return 1

    logger.info(
        "Convergence complete",
        extra={
            "changed": result.changed,
            "output_path": str(result.output_path) if result.output_path else None,
            "duration_seconds": result.duration_seconds,
        },
    )
    return 0


def run() -> None:
    """Entry point for running from the environment."""
    sys.exit(main())


if __name__ == "__main__":
    run()
