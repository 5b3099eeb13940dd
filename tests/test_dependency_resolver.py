"""
Tests for delivery stage ordering (Kahn's topological sort).
"""

import pytest

from utils.dependency_resolver import resolve_dependencies


def _task(task_id: str, depends_on: list[str] | None = None) -> dict:
    return {"task_id": task_id, "depends_on": depends_on or []}


class TestResolveDependencies:
    def test_empty_plan(self):
        assert resolve_dependencies([]) == []

    def test_independent_destinations_share_one_stage(self):
        tasks = [_task("sheets"), _task("calendar"), _task("drive"), _task("email")]
        stages = resolve_dependencies(tasks)
        assert len(stages) == 1
        assert {t["task_id"] for t in stages[0]} == {"sheets", "calendar", "drive", "email"}

    def test_email_waits_for_drive(self):
        tasks = [_task("sheets"), _task("drive"), _task("email", ["drive"])]
        stages = resolve_dependencies(tasks)
        assert len(stages) == 2
        assert {t["task_id"] for t in stages[0]} == {"sheets", "drive"}
        assert [t["task_id"] for t in stages[1]] == ["email"]

    def test_dependency_outside_plan_is_ignored(self):
        tasks = [_task("sheets"), _task("email", ["drive"])]
        stages = resolve_dependencies(tasks)
        assert len(stages) == 1
        assert {t["task_id"] for t in stages[0]} == {"sheets", "email"}

    def test_diamond_dependency(self):
        tasks = [
            _task("a"),
            _task("b", ["a"]),
            _task("c", ["a"]),
            _task("d", ["b", "c"]),
        ]
        stages = resolve_dependencies(tasks)
        assert [{t["task_id"] for t in s} for s in stages] == [{"a"}, {"b", "c"}, {"d"}]

    def test_circular_dependency_raises(self):
        tasks = [_task("a", ["b"]), _task("b", ["a"])]
        with pytest.raises(ValueError, match="[Cc]ircular"):
            resolve_dependencies(tasks)
