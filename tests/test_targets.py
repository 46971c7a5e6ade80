"""Tests for the rendering targets."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from converge.context import ReconciliationContext
from converge.diff import ChangeSet
from converge.targets import (
    CLOUDFORMATION_FILENAME,
    TERRAFORM_FILENAME,
    CloudFormationTarget,
    DryRunTarget,
    DuplicateFragmentError,
    TerraformTarget,
)
from fake_tasks import FakeBackend, FakeTask, chain


class TestDryRunTarget:
    """Tests for DryRunTarget."""

    def test_report_lists_creates_and_modifications(self) -> None:
        backend = FakeBackend()
        existing_id = backend.seed("existing", value="old")
        tasks = {
            "existing": FakeTask(name="existing", backend=backend, value="new"),
            "fresh": FakeTask(name="fresh", backend=backend, value="v"),
        }
        target = DryRunTarget()

        result = ReconciliationContext(tasks, target).run()

        assert result.success
        report = target.report()
        assert "Will create resources:\n  FakeTask\tfresh" in report
        assert "Will modify resources:\n  FakeTask\texisting\tvalue" in report
        assert result.resolved_id("existing") == existing_id
        assert backend.renders == []

    def test_report_with_nothing_to_do(self) -> None:
        assert DryRunTarget().report() == "No changes need to be applied"

    def test_bound_to_one_context(self) -> None:
        target = DryRunTarget()
        ReconciliationContext({}, target)

        with pytest.raises(RuntimeError, match="already bound"):
            ReconciliationContext({}, target)

    def test_unbound_target_has_no_context(self) -> None:
        with pytest.raises(RuntimeError, match="not bound"):
            DryRunTarget().context


class TestTerraformTarget:
    """Tests for TerraformTarget."""

    def test_link(self, tmp_path: Path) -> None:
        target = TerraformTarget(None, tmp_path)

        assert target.link("aws_vpc", "main.example.com") == "${aws_vpc.main-example-com.id}"
        assert target.link("aws_vpc", "main", "cidr_block") == "${aws_vpc.main.cidr_block}"

    def test_writes_document_with_links(self, tmp_path: Path) -> None:
        tasks = chain(FakeBackend(), "parent", "child")
        target = TerraformTarget(None, tmp_path, region="eu-west-1")

        result = ReconciliationContext(tasks, target).run()

        assert result.success
        assert result.output_path == tmp_path / TERRAFORM_FILENAME
        document = json.loads(result.output_path.read_text())
        assert document["provider"] == {"aws": {"region": "eu-west-1"}}
        resources = document["resource"]["fake_resource"]
        assert resources["child"]["parent_id"] == "${fake_resource.parent.id}"
        assert resources["parent"]["value"] == "parent-value"

    def test_owned_tasks_are_not_looked_up(self, tmp_path: Path) -> None:
        backend = FakeBackend()
        tasks = chain(backend, "a", "b")

        ReconciliationContext(tasks, TerraformTarget(None, tmp_path)).run()

        assert backend.events == []

    def test_outputs(self, tmp_path: Path) -> None:
        target = TerraformTarget(None, tmp_path)
        target.add_output("vpc_id", "${aws_vpc.main.id}")

        assert target.document()["output"] == {"vpc_id": {"value": "${aws_vpc.main.id}"}}

    def test_duplicate_fragment(self, tmp_path: Path) -> None:
        target = TerraformTarget(None, tmp_path)
        task = FakeTask(name="a", backend=FakeBackend())
        target.add_resource(task, {"value": 1})

        with pytest.raises(DuplicateFragmentError):
            target.add_resource(task, {"value": 2})

    def test_sanitized_name_clash_is_rejected(self, tmp_path: Path) -> None:
        target = TerraformTarget(None, tmp_path)
        backend = FakeBackend()
        target.add_resource(FakeTask(name="a.b", backend=backend), {"value": 1})

        with pytest.raises(DuplicateFragmentError, match="already used by task 'a.b'"):
            target.add_resource(FakeTask(name="a-b", backend=backend), {"value": 2})

    def test_one_task_may_render_several_resource_types(self, tmp_path: Path) -> None:
        target = TerraformTarget(None, tmp_path)
        task = FakeTask(name="a", backend=FakeBackend())
        target.add_resource(task, {"value": 1})
        target.add_resource(task, {"attached": True}, resource_type="fake_attachment")

        assert target.fragments("a") == {
            "fake_resource": {"value": 1},
            "fake_attachment": {"attached": True},
        }


class TestCloudFormationTarget:
    """Tests for CloudFormationTarget."""

    def test_logical_id(self) -> None:
        assert CloudFormationTarget.logical_id("AWS::EC2::VPC", "main.example-com") == (
            "AWSEC2VPCmainexamplecom"
        )

    def test_ref(self, tmp_path: Path) -> None:
        target = CloudFormationTarget(None, tmp_path)

        assert target.ref("AWS::EC2::VPC", "main") == {"Ref": "AWSEC2VPCmain"}

    def test_logical_id_clash_is_rejected(self, tmp_path: Path) -> None:
        target = CloudFormationTarget(None, tmp_path)
        backend = FakeBackend()
        target.add_resource(FakeTask(name="a-1", backend=backend), {"value": 1})

        with pytest.raises(DuplicateFragmentError, match="already used by task 'a-1'"):
            target.add_resource(FakeTask(name="a1", backend=backend), {"value": 2})

    def test_writes_template(self, tmp_path: Path) -> None:
        tasks = chain(FakeBackend(), "parent", "child")
        target = CloudFormationTarget(None, tmp_path)

        result = ReconciliationContext(tasks, target).run()

        assert result.output_path == tmp_path / CLOUDFORMATION_FILENAME
        document = json.loads(result.output_path.read_text())
        assert document["AWSTemplateFormatVersion"] == "2010-09-09"
        child = document["Resources"]["FakeResourcechild"]
        assert child["Type"] == "Fake::Resource"
        assert child["Properties"]["ParentId"] == {"Ref": "FakeResourceparent"}

    def test_failed_run_writes_nothing(self, tmp_path: Path) -> None:
        task = FakeTask(name="a", backend=FakeBackend(), value="x")
        tasks = {"a": task}
        target = CloudFormationTarget(None, tmp_path)

        def broken(t, actual, changes):
            raise RuntimeError("render broke")

        task.render_cloudformation = broken  # type: ignore[method-assign]
        result = ReconciliationContext(tasks, target).run()

        assert not result.success
        assert not (tmp_path / CLOUDFORMATION_FILENAME).exists()

    def test_dispatch_returns_no_id(self, tmp_path: Path) -> None:
        target = CloudFormationTarget(None, tmp_path)
        task = FakeTask(name="a", backend=FakeBackend(), value="v")
        ReconciliationContext({"a": task}, target)

        assert target.dispatch(task, None, ChangeSet({"value": "v"})) is None
        assert target.fragments("a") == {
            "Fake::Resource": {"Type": "Fake::Resource", "Properties": {"Value": "v"}}
        }
