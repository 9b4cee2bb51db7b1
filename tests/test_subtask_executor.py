"""Tests for the persisted subtask plan executor."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from phased_plan_runner.config import RunnerConfig
from phased_plan_runner.errors import (
    NoRetryableSubtasksError,
    PlanNotFoundError,
    PlanRunnerError,
    SubtaskNotFoundError,
)
from phased_plan_runner.models import PlanStatus, TaskStatus
from phased_plan_runner.subtask_executor import PRIORITY_HIGH, PRIORITY_LOW, SubtaskExecutor


@pytest.fixture
def runner() -> MagicMock:
    """Subtask runner that succeeds and echoes the description."""
    runner = MagicMock()
    runner.run.side_effect = lambda subtask, plan, prior: {"status": "success", "output": subtask.description}
    return runner


@pytest.fixture
def executor(tmp_path: Path, runner: MagicMock) -> SubtaskExecutor:
    return SubtaskExecutor(tmp_path, runner, config=RunnerConfig())


class TestCreatePlan:
    """Test plan creation and persistence."""

    def test_default_plan_has_one_subtask(self, executor, tmp_path):
        plan = executor.create_plan("Write release notes", session_id="s1")

        assert plan.id.startswith("plan_")
        assert plan.status is PlanStatus.PENDING
        assert [s.description for s in plan.subtasks] == ["Write release notes"]
        assert plan.subtasks[0].id.startswith("st_1_")
        assert plan.subtasks[0].retry.max_attempts == 3
        stored = json.loads((tmp_path / ".planning" / "subtask_plans" / f"{plan.id}.json").read_text())
        assert stored["session_id"] == "s1"
        assert stored["subtasks"][0]["status"] == "pending"

    def test_extra_subtasks_are_folded_into_last(self, executor):
        plan = executor.create_plan("Big job", subtasks=["one", "two", "three", "four", "five"])

        assert len(plan.subtasks) == 3
        assert plan.subtasks[-1].description == "three; four; five"

    def test_numeric_dependencies_map_to_ids(self, executor):
        plan = executor.create_plan(
            "Ship",
            subtasks=[{"description": "build"}, {"description": "deploy", "dependencies": [1]}],
        )

        assert plan.subtasks[1].dependencies == [plan.subtasks[0].id]

    def test_plan_reloads_from_disk(self, executor, tmp_path, runner):
        plan = executor.create_plan("Persist me", subtasks=["a", "b"])

        fresh = SubtaskExecutor(tmp_path, runner, config=RunnerConfig())

        assert fresh.get_status(plan.id)["progress"]["total"] == 2


class TestExecute:
    """Test running plans."""

    def test_runs_by_priority_then_dependency(self, executor, runner):
        plan = executor.create_plan(
            "Ship",
            subtasks=[
                {"description": "low", "priority": PRIORITY_LOW},
                {"description": "needs low", "priority": PRIORITY_HIGH, "dependencies": [1]},
                {"description": "high", "priority": PRIORITY_HIGH},
            ],
        )

        result = executor.execute(plan.id)

        order = [call.args[0].description for call in runner.run.call_args_list]
        assert order == ["high", "low", "needs low"]
        assert result["status"] == "completed"
        assert result["summary"] == {"completed": 3, "failed": 0, "blocked": 0, "total": 3}

    def test_dependent_receives_prior_results(self, executor, runner):
        plan = executor.create_plan("Ship", subtasks=["build", {"description": "deploy", "dependencies": [1]}])

        executor.execute(plan.id)

        _subtask, _plan, prior = runner.run.call_args_list[1].args
        assert prior == {plan.subtasks[0].id: {"status": "success", "output": "build"}}

    def test_failure_blocks_dependents(self, executor, runner):
        runner.run.side_effect = lambda subtask, plan, prior: (
            {"status": "failed", "error": "no network"} if subtask.sequence == 1 else {"status": "success"}
        )
        plan = executor.create_plan(
            "Ship", subtasks=["fetch", {"description": "use", "dependencies": [1]}, "independent"]
        )

        result = executor.execute(plan.id)

        assert result["status"] == "partial"
        assert result["summary"] == {"completed": 1, "failed": 1, "blocked": 1, "total": 3}

    def test_runner_exception_is_recorded(self, executor, runner):
        runner.run.side_effect = RuntimeError("boom")
        plan = executor.create_plan("Ship")

        result = executor.execute(plan.id)

        assert result["status"] == "failed"
        recorded = executor.get_subtask_result(plan.id, plan.subtasks[0].id)
        assert recorded["status"] == "failed"
        assert recorded["result"]["error"] == "RuntimeError: boom"
        assert recorded["result"]["retryable"] is True
        assert recorded["attempts"] == 1

    def test_completed_plan_is_not_rerun(self, executor, runner):
        plan = executor.create_plan("Ship")
        executor.execute(plan.id)

        assert executor.execute(plan.id) == {"status": "already_completed", "plan_id": plan.id}
        assert runner.run.call_count == 1

    def test_running_plan_cannot_start_again(self, executor):
        plan = executor.create_plan("Ship")
        plan.status = PlanStatus.RUNNING

        with pytest.raises(PlanRunnerError):
            executor.execute(plan.id)

    def test_unknown_plan(self, executor):
        with pytest.raises(PlanNotFoundError):
            executor.execute("plan_missing")
        with pytest.raises(PlanNotFoundError):
            executor.get_status("plan_missing")


class TestRetryAndCancel:
    """Test retries and cancellation."""

    def test_retry_reruns_failed_subtasks(self, executor, runner):
        attempts = {"count": 0}

        def _flaky(subtask, plan, prior):
            attempts["count"] += 1
            return {"status": "success"} if attempts["count"] > 1 else {"status": "error"}

        runner.run.side_effect = _flaky
        plan = executor.create_plan("Ship")
        assert executor.execute(plan.id)["status"] == "failed"

        result = executor.retry(plan.id)

        assert result["status"] == "completed"
        assert executor.get_status(plan.id)["subtasks"][0]["attempts"] == 2

    def test_retry_without_candidates(self, executor):
        plan = executor.create_plan("Ship")
        executor.execute(plan.id)

        with pytest.raises(NoRetryableSubtasksError):
            executor.retry(plan.id)

    def test_retry_stops_when_attempts_exhausted(self, tmp_path, runner):
        runner.run.side_effect = lambda subtask, plan, prior: {"status": "error"}
        executor = SubtaskExecutor(tmp_path, runner, config=RunnerConfig(max_attempts=1))
        plan = executor.create_plan("Ship")
        executor.execute(plan.id)

        with pytest.raises(NoRetryableSubtasksError):
            executor.retry(plan.id)

    def test_cancel_mid_run_skips_rest(self, tmp_path):
        runner = MagicMock()
        executor = SubtaskExecutor(tmp_path, runner, config=RunnerConfig())

        def _run(subtask, plan, prior):
            if subtask.sequence == 1:
                assert executor.cancel(plan.id, "stop")["success"] is True
            return {"status": "success"}

        runner.run.side_effect = _run
        plan = executor.create_plan("Ship", subtasks=["a", "b", "c"])

        result = executor.execute(plan.id)

        assert result["status"] == "cancelled"
        assert runner.run.call_count == 1
        status = executor.get_status(plan.id)
        assert status["progress"]["skipped"] == 2
        assert status["progress"]["completed"] == 1

    def test_cancel_idle_plan_fails(self, executor):
        plan = executor.create_plan("Ship")

        result = executor.cancel(plan.id)

        assert result["success"] is False
        assert result["status"] == "pending"


class TestInspection:
    """Test status, listing and cleanup."""

    def test_get_subtask_result_unknown_subtask(self, executor):
        plan = executor.create_plan("Ship")

        with pytest.raises(SubtaskNotFoundError):
            executor.get_subtask_result(plan.id, "st_9_zzzzzz")

    def test_list_plans_filters(self, executor):
        first = executor.create_plan("First", session_id="a")
        second = executor.create_plan("Second", session_id="b")
        executor.execute(first.id)

        assert [p["id"] for p in executor.list_plans(status="completed")] == [first.id]
        assert [p["id"] for p in executor.list_plans(session_id="b")] == [second.id]
        assert {p["id"] for p in executor.list_plans()} == {first.id, second.id}

    def test_cleanup_removes_old_completed_plans(self, executor, tmp_path):
        old = executor.create_plan("Old")
        executor.execute(old.id)
        pending = executor.create_plan("Pending")
        old.created_at = (datetime.now(timezone.utc) - timedelta(days=10)).isoformat()
        pending.created_at = old.created_at

        removed = executor.cleanup(older_than_days=7)

        assert removed == 1
        assert not (tmp_path / ".planning" / "subtask_plans" / f"{old.id}.json").exists()
        assert executor.get_status(pending.id)["status"] == "pending"
