"""Tests for field-by-field state comparison."""

from __future__ import annotations

import pytest

from converge.diff import ChangeSet, EqualityPolicy, diff, reference_id, values_equal
from converge.task import ResourceRef, Shared
from fake_tasks import FakeBackend, FakeTask


def no_resolution(task):
    return None


class TestValuesEqual:
    """Tests for equality policies."""

    def test_exact(self) -> None:
        assert values_equal("a", "a", EqualityPolicy.EXACT)
        assert not values_equal("a", "A", EqualityPolicy.EXACT)
        assert not values_equal({}, None, EqualityPolicy.EXACT)

    def test_subset_ignores_extra_actual_tags(self) -> None:
        actual = {"Name": "vpc", "aws:cloudformation:stack-id": "x"}
        assert values_equal(actual, {"Name": "vpc"}, EqualityPolicy.SUBSET)

    def test_subset_detects_missing_or_different_tag(self) -> None:
        actual = {"Name": "vpc"}
        assert not values_equal(actual, {"Name": "other"}, EqualityPolicy.SUBSET)
        assert not values_equal(actual, {"Env": "prod"}, EqualityPolicy.SUBSET)
        assert not values_equal(None, {"Env": "prod"}, EqualityPolicy.SUBSET)

    def test_subset_of_empty_desired(self) -> None:
        assert values_equal({"Name": "x"}, {}, EqualityPolicy.SUBSET)
        assert values_equal(None, {}, EqualityPolicy.SUBSET)

    @pytest.mark.parametrize("actual,desired", [(None, {}), ([], None), ("", []), ({}, ())])
    def test_empty_equivalence(self, actual, desired) -> None:
        assert values_equal(actual, desired, EqualityPolicy.EMPTY_EQUIVALENCE)

    def test_case_insensitive(self) -> None:
        assert values_equal("Default", "default", EqualityPolicy.CASE_INSENSITIVE)
        assert not values_equal("default", "dedicated", EqualityPolicy.CASE_INSENSITIVE)


class TestReferenceId:
    """Tests for reference resolution."""

    def test_resource_ref(self) -> None:
        assert reference_id(ResourceRef("vpc-1"), no_resolution) == "vpc-1"

    def test_task_goes_through_resolver(self) -> None:
        task = FakeTask(name="vpc", backend=FakeBackend())
        assert reference_id(task, lambda t: f"id-of-{t.name}") == "id-of-vpc"

    def test_other_values(self) -> None:
        assert reference_id(None, no_resolution) is None


class TestDiff:
    """Tests for diff()."""

    def test_missing_actual_marks_every_set_field(self) -> None:
        desired = FakeTask(name="a", backend=FakeBackend(), value="v", tags={"k": "v"})

        changes = diff(None, desired, no_resolution)

        assert isinstance(changes, ChangeSet)
        assert set(changes) == {"value", "tags"}

    def test_none_desired_means_no_opinion(self) -> None:
        backend = FakeBackend()
        desired = FakeTask(name="a", backend=backend, value="v")
        actual = desired.observed("fake-1", backend=backend, value="v", size="large")

        assert diff(actual, desired, no_resolution) is None

    def test_changed_field(self) -> None:
        backend = FakeBackend()
        desired = FakeTask(name="a", backend=backend, value="new", size="small")
        actual = desired.observed("fake-1", backend=backend, value="old", size="small")

        changes = diff(actual, desired, no_resolution)

        assert dict(changes) == {"value": "new"}

    def test_tags_use_subset_policy(self) -> None:
        backend = FakeBackend()
        desired = FakeTask(name="a", backend=backend, tags={"Name": "a"})
        actual = desired.observed("fake-1", backend=backend, tags={"Name": "a", "extra": "1"})

        assert diff(actual, desired, no_resolution) is None

    def test_references_compared_by_resolved_id(self) -> None:
        backend = FakeBackend()
        parent = FakeTask(name="parent", backend=backend)
        desired = FakeTask(name="child", backend=backend, parent=parent)
        actual = desired.observed("fake-2", backend=backend, parent=ResourceRef("fake-1"))

        assert diff(actual, desired, lambda t: "fake-1") is None
        assert dict(diff(actual, desired, lambda t: "fake-9")) == {"parent": parent}

    def test_unresolved_reference_is_a_change(self) -> None:
        backend = FakeBackend()
        parent = FakeTask(name="parent", backend=backend)
        desired = FakeTask(name="child", backend=backend, parent=parent)
        actual = desired.observed("fake-2", backend=backend, parent=None)

        assert "parent" in diff(actual, desired, no_resolution)

    def test_declared_id_compared_as_field(self) -> None:
        backend = FakeBackend()
        desired = FakeTask(name="a", backend=backend, ownership=Shared(id="fake-1"))

        assert diff(desired.observed("fake-1", backend=backend), desired, no_resolution) is None
        assert dict(diff(desired.observed("fake-2", backend=backend), desired, no_resolution)) == {
            "id": "fake-1"
        }
        assert "id" in diff(None, desired, no_resolution)

    def test_base_fields_never_diffed(self) -> None:
        assert "name" not in FakeTask.diff_fields()
        assert "lifecycle" not in FakeTask.diff_fields()
        assert "ownership" not in FakeTask.diff_fields()

    def test_changeset_is_read_only(self) -> None:
        changes = ChangeSet({"value": "x"})

        with pytest.raises(TypeError):
            changes["value"] = "y"  # type: ignore[index]
        assert len(changes) == 1
        assert repr(changes) == "ChangeSet(['value'])"
