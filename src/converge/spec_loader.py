"""Cluster topology file loading with validation.

All file operations enforce a size limit, and input is validated at the
boundary so that nothing malformed reaches the engine.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_CLUSTER_FILE_SIZE_BYTES
from .models import ClusterSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when topology loading or validation fails."""

    pass


def _read_limited(path: Path) -> str:
    if not path.exists():
        raise SpecLoadError(f"Topology file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat topology file {path}: {e}") from e

    if file_size > MAX_CLUSTER_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Topology file exceeds maximum size of {MAX_CLUSTER_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read topology file {path}: {e}") from e


def topology_digest(path: Path) -> str:
    """SHA256 of a topology file, recorded in run provenance."""
    return hashlib.sha256(_read_limited(path).encode("utf-8")).hexdigest()


def load_cluster_spec(path: Path) -> ClusterSpec:
    """Load and validate a cluster topology from YAML.

    Both a flat document and a Kubernetes-style ``apiVersion``/``kind``/
    ``spec`` wrapper are accepted.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    content = _read_limited(path)

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Topology file must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
    else:
        spec_data = raw_data

    try:
        spec = ClusterSpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded cluster topology from %s", path, extra=spec.summary())
    return spec
