"""Pytest configuration and fixtures."""

import logging
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cloud_mock import MockEC2, build_mock_cloud  # noqa: E402
from converge.cloud import AWSCloud  # noqa: E402


@pytest.fixture
def ec2() -> MockEC2:
    return MockEC2()


@pytest.fixture
def cloud(ec2: MockEC2) -> AWSCloud:
    aws_cloud, _ = build_mock_cloud(ec2=ec2)
    return aws_cloud


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep run settings in the developer's environment out of tests."""
    for key in (
        "CLUSTER_NAME",
        "AWS_REGION",
        "CONVERGE_TARGET",
        "CONVERGE_OUT_DIR",
        "CONVERGE_MAX_CONCURRENCY",
        "LIFECYCLE_OVERRIDES",
        "CLUSTER_FILE",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """Undo handlers installed by setup_logging during a test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def mock_ec2(monkeypatch: pytest.MonkeyPatch) -> MockEC2:
    """Route every cloud handle the entry points build to one EC2 mock."""
    ec2 = MockEC2()

    def fake_cloud(region: str, cluster_name: str = "") -> AWSCloud:
        aws_cloud, _ = build_mock_cloud(region=region, cluster_name=cluster_name, ec2=ec2)
        return aws_cloud

    monkeypatch.setattr("converge.main.AWSCloud", fake_cloud)
    return ec2
