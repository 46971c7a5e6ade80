"""Cluster convergence CLI (converge).

Usage:
    converge plan cluster.yaml                     # Validate and print task order
    converge update cluster.yaml                   # Preview changes (dry run)
    converge update cluster.yaml --yes             # Apply changes to AWS
    converge update cluster.yaml --target terraform --out out/
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from .config import DEFAULT_MAX_CONCURRENCY, DEFAULT_OUT_DIR, Config, ConfigurationError, TargetKind
from .context import ReconciliationContext
from .dependency import CyclicDependencyError
from .lifecycle import create_lifecycle_resolver_from_env
from .main import converge, setup_logging
from .models import ClusterSpec
from .provenance import get_provenance_logger
from .scheduler import TaskStatus
from .spec_loader import SpecLoadError, load_cluster_spec, topology_digest
from .targets import DryRunTarget

TARGET_CHOICES = [kind.value for kind in TargetKind if kind is not TargetKind.DRYRUN]


def _load(path: Path) -> ClusterSpec:
    try:
        return load_cluster_spec(path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Cluster convergence CLI (converge).

    Converges the cloud network of a Kubernetes cluster toward the
    topology declared in a YAML file, or emits it as Terraform or
    CloudFormation.
    """
    setup_logging(logging.DEBUG if verbose else logging.WARNING, stream=sys.stderr)


@cli.command()
@click.argument("cluster_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def plan(cluster_file: Path) -> None:
    """Validate a topology and print the task execution order."""
    spec = _load(cluster_file)
    tasks = spec.to_tasks()

    context = ReconciliationContext(
        tasks,
        DryRunTarget(),
        lifecycle_resolver=create_lifecycle_resolver_from_env().extend(spec.lifecycle_overrides),
        cluster_name=spec.cluster_name,
    )
    try:
        order = context.plan()
    except CyclicDependencyError as e:
        raise click.ClickException(f"Dependency cycle: {' -> '.join(e.cycle)}") from e
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Cluster {spec.cluster_name} ({spec.region}): {len(order)} tasks")
    for index, name in enumerate(order, start=1):
        task = tasks[name]
        click.echo(f"  {index}. {task}\t{context.lifecycle_of(task).value}")


@cli.command()
@click.argument("cluster_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--target",
    "target_name",
    type=click.Choice(TARGET_CHOICES),
    default=TargetKind.DIRECT.value,
    show_default=True,
    help="Where to apply changes",
)
@click.option(
    "--out",
    "out_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_OUT_DIR,
    show_default=True,
    help="Output directory for terraform/cloudformation",
)
@click.option("--yes", "-y", is_flag=True, help="Apply changes; without it only a preview is shown")
@click.option(
    "--max-concurrency",
    type=int,
    default=DEFAULT_MAX_CONCURRENCY,
    show_default=True,
    help="Number of tasks converged in parallel",
)
def update(
    cluster_file: Path,
    target_name: str,
    out_dir: Path,
    yes: bool,
    max_concurrency: int,
) -> None:
    """Converge the cluster toward CLUSTER_FILE."""
    spec = _load(cluster_file)
    get_provenance_logger().set_topology_hash(topology_digest(cluster_file))

    target = TargetKind(target_name) if yes else TargetKind.DRYRUN
    try:
        config = Config(
            cluster_name=spec.cluster_name,
            region=spec.region,
            target=target,
            out_dir=out_dir,
            max_concurrency=max_concurrency,
        )
        result, run_target = converge(spec, config)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    if isinstance(run_target, DryRunTarget):
        click.echo(run_target.report())
        if result.success:
            click.echo("\nMust specify --yes to apply changes")

    for name, task_result in sorted(result.results.items()):
        if task_result.status is TaskStatus.FAILED:
            click.secho(f"FAILED  {name}: {task_result.error}", fg="red", err=True)
        elif task_result.status is TaskStatus.SKIPPED:
            click.secho(f"SKIPPED {name} (blocked by {task_result.blocked_by})", fg="yellow", err=True)

    if not result.success:
        raise click.ClickException(f"{len(result.error.failures)} task(s) failed")

    if result.output_path is not None:
        click.echo(f"Wrote {result.output_path}")
    elif not isinstance(run_target, DryRunTarget):
        click.secho(f"Converged: {len(result.changed)} resource(s) changed", fg="green")
