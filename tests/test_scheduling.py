"""Tests for dependency ordering and satisfaction."""

from __future__ import annotations

from dataclasses import dataclass

from phased_plan_runner.models import DependencyMode, TaskStatus
from phased_plan_runner.scheduling import dependencies_met, order_by_dependencies, unknown_dependencies


@dataclass
class Item:
    id: str
    depends_on: tuple[str, ...] = ()


def _ids(items: list[Item]) -> list[str]:
    return [item.id for item in items]


class TestOrderByDependencies:
    """Test execution ordering."""

    def test_keeps_given_order_without_dependencies(self):
        ordered, cyclic = order_by_dependencies([Item("a"), Item("b"), Item("c")])

        assert _ids(ordered) == ["a", "b", "c"]
        assert cyclic == set()

    def test_dependency_moves_task_after_its_prerequisite(self):
        ordered, _ = order_by_dependencies([Item("a", ("c",)), Item("b"), Item("c")])

        assert _ids(ordered) == ["b", "c", "a"]

    def test_outside_dependencies_do_not_hold_back(self):
        ordered, cyclic = order_by_dependencies([Item("a", ("done-earlier",)), Item("b")])

        assert _ids(ordered) == ["a", "b"]
        assert cyclic == set()

    def test_cycle_is_appended_and_reported(self):
        ordered, cyclic = order_by_dependencies([Item("x", ("y",)), Item("y", ("x",)), Item("z")])

        assert _ids(ordered) == ["z", "x", "y"]
        assert cyclic == {"x", "y"}


class TestDependenciesMet:
    """Test `all` and `any` satisfaction."""

    def test_no_dependencies_is_always_met(self):
        assert dependencies_met([], DependencyMode.ALL, {}) is True

    def test_all_mode_needs_every_dependency(self):
        statuses = {"a": TaskStatus.COMPLETED, "b": TaskStatus.FAILED}

        assert dependencies_met(["a", "b"], DependencyMode.ALL, statuses) is False
        assert dependencies_met(["a"], DependencyMode.ALL, statuses) is True

    def test_any_mode_needs_one_dependency(self):
        statuses = {"a": TaskStatus.SKIPPED, "b": TaskStatus.COMPLETED}

        assert dependencies_met(["a", "b"], DependencyMode.ANY, statuses) is True
        assert dependencies_met(["a"], DependencyMode.ANY, statuses) is False

    def test_unknown_ids_count_as_incomplete(self):
        assert dependencies_met(["ghost"], DependencyMode.ANY, {}) is False
        assert unknown_dependencies(["a", "ghost"], ["a", "b"]) == ["ghost"]
