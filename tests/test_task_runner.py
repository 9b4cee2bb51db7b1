"""Tests for task runner results and the verify-command runner."""

from __future__ import annotations

from pathlib import Path

from phased_plan_runner.deviations import DeviationRule, classify_deviation
from phased_plan_runner.models import AutoTask, TaskStatus
from phased_plan_runner.task_runner import TaskContext, TaskRunResult, VerifyCommandRunner


def _context(project_dir: Path) -> TaskContext:
    return TaskContext(
        project_dir=project_dir,
        plan_path=project_dir / "01-01-PLAN.md",
        phase="01",
        plan="01",
        scope="01-01",
        task_index=0,
        total_tasks=1,
    )


class TestTaskRunResult:
    """Test coercion of loose runner results."""

    def test_camel_case_mapping(self):
        result = TaskRunResult.coerce(
            {"status": "success", "filesModified": ["a.py"], "verificationPassed": True, "deviations": ["bug"]}
        )

        assert result.succeeded is True
        assert result.files_modified == ["a.py"]
        assert result.verification_passed is True
        assert result.deviations == [{"description": "bug"}]

    def test_unknown_status_is_failure(self):
        assert TaskRunResult.coerce({"status": "maybe"}).status is TaskStatus.FAILED

    def test_none_is_failure(self):
        result = TaskRunResult.coerce(None)

        assert result.succeeded is False
        assert result.error == "Task runner returned no result"


class TestVerifyCommandRunner:
    """Test running `<verify>` commands."""

    def test_task_without_verify_passes(self, tmp_path: Path):
        task = AutoTask(id="t", name="No check", files=("a.py",))

        result = VerifyCommandRunner().run(task, _context(tmp_path))

        assert result.status is TaskStatus.COMPLETED
        assert result.verification_passed is False
        assert result.files_modified == ["a.py"]

    def test_passing_command(self, tmp_path: Path):
        task = AutoTask(id="t", name="Check", verify="echo ok")

        result = VerifyCommandRunner().run(task, _context(tmp_path))

        assert result.status is TaskStatus.COMPLETED
        assert result.verification_passed is True
        assert Path(result.log_path).read_text().strip() == "ok"
        assert Path(result.log_path).parent == tmp_path / ".planning" / "logs"

    def test_failing_command_reports_bug_deviation(self, tmp_path: Path):
        task = AutoTask(id="t", name="Check", verify="exit 3")

        result = VerifyCommandRunner().run(task, _context(tmp_path))

        assert result.status is TaskStatus.FAILED
        assert result.error == "Verification command exited with status 3"
        assert classify_deviation(result.deviations[0]).rule is DeviationRule.BUG_FOUND

    def test_timeout(self, tmp_path: Path):
        task = AutoTask(id="t", name="Slow", verify="sleep 5")

        result = VerifyCommandRunner(timeout_seconds=1).run(task, _context(tmp_path))

        assert result.status is TaskStatus.FAILED
        assert result.error == "Verification command timed out after 1s"
