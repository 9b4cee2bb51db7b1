"""Tests for resuming after checkpoints and cancelling executions."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from phased_plan_runner.constants import NEXT_STEP_DONE, NEXT_STEP_FAILED, PLAN_CANCELLED, SKIPPED_CANCELLED
from phased_plan_runner.errors import CheckpointNotFoundError
from phased_plan_runner.executor import PlanExecutor
from phased_plan_runner.models import PlanStatus, TaskStatus

THREE_TASK_PLAN = """---
phase: 01-foundation
plan: 08
---
<tasks>
<task type="auto" id="task-1"><name>Create user model</name><files>src/models.py</files></task>
<task type="auto" id="task-2"><name>Add login endpoint</name><files>src/login.py</files></task>
<task type="auto" id="task-3"><name>Add logout endpoint</name><files>src/login.py</files></task>
</tasks>
"""


@pytest.fixture
def executor(project_dir: Path, fake_runner: MagicMock, fake_git: MagicMock, config) -> PlanExecutor:
    return PlanExecutor(project_dir, task_runner=fake_runner, git=fake_git, config=config)


class TestResumeCheckpoint:
    """Test continuing a plan after a human answers a checkpoint."""

    def test_resume_runs_only_tasks_after_checkpoint(self, executor, write_plan, fake_runner, fake_git):
        """The pre-checkpoint task is neither re-run nor re-committed."""
        path = write_plan()
        executor.execute_plan(path)
        fake_runner.run.reset_mock()

        record = executor.resume_checkpoint(path, "task-2", result="looks good")

        assert [call.args[0].id for call in fake_runner.run.call_args_list] == ["task-3"]
        assert record.status is PlanStatus.COMPLETED
        assert record.success is True
        assert record.resumed_from == "task-2"
        assert record.checkpoint_result == {"checkpoint_id": "task-2", "approved": True, "result": "looks good"}
        assert [(task.id, task.status) for task in record.tasks] == [
            ("task-2", TaskStatus.COMPLETED),
            ("task-3", TaskStatus.COMPLETED),
        ]
        assert [commit.task_id for commit in record.commits] == ["task-3"]
        assert record.next_step == NEXT_STEP_DONE
        # one commit before the checkpoint, one after it, one for the summary
        assert fake_git.commit.call_count == 3

        summary = Path(record.summary_path).read_text()
        assert "Checkpoint task-2 approved" in summary

    def test_resume_context_lists_earlier_tasks_as_completed(self, executor, write_plan, fake_runner):
        path = write_plan()

        executor.resume_checkpoint(path, "task-2")

        _task, context = fake_runner.run.call_args.args
        assert context.completed_task_ids == ["task-1", "task-2"]

    def test_rejected_checkpoint_runs_nothing(self, executor, write_plan, fake_runner, fake_git):
        path = write_plan()

        record = executor.resume_checkpoint(path, "task-2", approved=False)

        fake_runner.run.assert_not_called()
        fake_git.commit.assert_not_called()
        assert record.status is PlanStatus.FAILED
        assert record.success is False
        assert record.error == "Checkpoint not approved"
        assert record.error_code == "CHECKPOINT_NOT_APPROVED"
        assert record.tasks[0].id == "task-2"
        assert record.tasks[0].status is TaskStatus.FAILED
        assert record.tasks_remaining == 1
        assert record.next_step == NEXT_STEP_FAILED

    def test_unknown_checkpoint_raises(self, executor, write_plan):
        path = write_plan()

        with pytest.raises(CheckpointNotFoundError) as exc_info:
            executor.resume_checkpoint(path, "task-9")

        assert exc_info.value.code == "CHECKPOINT_NOT_FOUND"

    def test_resume_from_auto_task_id(self, executor, write_plan, fake_runner):
        """Any task id can anchor a resume; later tasks run."""
        path = write_plan(THREE_TASK_PLAN, "01-08-PLAN.md")

        record = executor.resume_checkpoint(path, "task-1")

        assert [call.args[0].id for call in fake_runner.run.call_args_list] == ["task-2", "task-3"]
        assert [task.id for task in record.tasks] == ["task-2", "task-3"]

    def test_resume_to_next_checkpoint(self, executor, write_plan, fake_runner):
        text = """---
phase: 01-foundation
plan: 09
---
<tasks>
<task type="checkpoint:human-action" id="setup"><what-built>Create API key</what-built></task>
<task type="auto" id="task-1"><name>Create user model</name><files>src/models.py</files></task>
<task type="checkpoint:human-verify" id="check"><what-built>Model works</what-built></task>
<task type="auto" id="task-2"><name>Add login endpoint</name><files>src/login.py</files></task>
</tasks>
"""
        path = write_plan(text, "01-09-PLAN.md")

        first = executor.execute_plan(path)
        second = executor.resume_checkpoint(path, "setup")

        assert first.checkpoint.id == "setup"
        assert first.tasks == []
        assert second.status is PlanStatus.AWAITING_CHECKPOINT
        assert second.checkpoint.id == "check"
        assert second.checkpoint.type == "checkpoint:human-verify"
        assert [call.args[0].id for call in fake_runner.run.call_args_list] == ["task-1"]


class TestCancel:
    """Test cancelling executions."""

    def test_cancel_awaiting_plan_keeps_commits(self, executor, write_plan, fake_runner):
        path = write_plan()
        executor.execute_plan(path)

        result = executor.cancel(path, "Out of time")

        assert result == {
            "success": True,
            "plan_id": "01-02",
            "status": "cancelled",
            "reason": "Out of time",
            "commits_kept": ["c000001"],
        }
        assert executor.get_record(path).status is PlanStatus.CANCELLED

        fake_runner.run.reset_mock()
        resumed = executor.resume_checkpoint(path, "task-2")
        assert resumed.status is PlanStatus.CANCELLED
        assert resumed.success is False
        assert resumed.error == PLAN_CANCELLED
        assert resumed.cancel_reason == "Out of time"
        fake_runner.run.assert_not_called()

    def test_cancel_running_plan_skips_remaining_tasks(self, project_dir, write_plan, fake_git, config):
        path = write_plan(THREE_TASK_PLAN, "01-08-PLAN.md")
        runner = MagicMock()
        executor = PlanExecutor(project_dir, task_runner=runner, git=fake_git, config=config)

        def _run(task, context):
            if task.id == "task-1":
                assert executor.cancel(path)["success"] is True
            return {"status": "completed"}

        runner.run.side_effect = _run

        record = executor.execute_plan(path)

        assert runner.run.call_count == 1
        assert record.status is PlanStatus.CANCELLED
        assert record.success is False
        assert [(task.id, task.status) for task in record.tasks] == [
            ("task-1", TaskStatus.COMPLETED),
            ("task-2", TaskStatus.SKIPPED),
            ("task-3", TaskStatus.SKIPPED),
        ]
        assert record.tasks[1].reason == SKIPPED_CANCELLED
        assert [commit.task_id for commit in record.commits] == ["task-1"]
        assert record.summary_path is None

    def test_cancel_finished_plan_fails(self, executor, write_plan):
        path = write_plan(THREE_TASK_PLAN, "01-08-PLAN.md")
        executor.execute_plan(path)

        result = executor.cancel(path)

        assert result["success"] is False
        assert result["status"] == "completed"

    def test_cancel_unknown_plan_fails(self, executor, write_plan):
        path = write_plan()

        result = executor.cancel(path)

        assert result["success"] is False
        assert "No execution found" in result["error"]

    def test_execute_after_cancel_starts_fresh(self, executor, write_plan, fake_runner):
        path = write_plan()
        executor.execute_plan(path)
        executor.cancel(path)

        record = executor.execute_plan(path)

        assert record.status is PlanStatus.AWAITING_CHECKPOINT
        assert fake_runner.run.call_count == 2
