"""Perform the per-task COMMIT step: stage the task's files and commit once."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from ..errors import GitOperationError
from ..git_adapter import GitAdapter
from ..models import AutoTask, CommitResult, CommitType

# Checked in order; the first keyword found in the task name or action wins.
_COMMIT_TYPE_KEYWORDS: tuple[tuple[CommitType, str, str], ...] = (
    (CommitType.TEST, "test", "test"),
    (CommitType.FIX, "fix", "fix"),
    (CommitType.REFACTOR, "refactor", "refactor"),
    (CommitType.PERF, "perf", "performance"),
    (CommitType.DOCS, "doc", "document"),
)


def infer_commit_type(task: AutoTask) -> CommitType:
    name = (task.name or "").lower()
    action = (task.action or "").lower()
    for commit_type, name_keyword, action_keyword in _COMMIT_TYPE_KEYWORDS:
        if name_keyword in name or action_keyword in action:
            return commit_type
    return CommitType.FEAT


def format_commit_message(commit_type: CommitType, scope: str, subject: str) -> str:
    return f"{commit_type.value}({scope}): {subject}"


def _existing_files(project_dir: Path, files: Iterable[str]) -> list[str]:
    existing: list[str] = []
    for path in files:
        path = str(path).strip()
        if not path or path in existing:
            continue
        if (project_dir / path).exists():
            existing.append(path)
        else:
            logger.debug("Skipping missing file {}", path)
    return existing


def run_commit_action(
    *,
    git: GitAdapter,
    project_dir: Path,
    task: AutoTask,
    scope: str,
    extra_files: Optional[Iterable[str]] = None,
) -> CommitResult:
    """Stage a task's files and create exactly one commit for it.

    Args:
        git: Adapter used to stage and commit.
        project_dir: Repository root the task's file paths are relative to.
        task: The completed task.
        scope: Commit scope, e.g. `"01-02"`.
        extra_files: Files the task runner reported as modified.

    Returns:
        A `CommitResult`; git failures are reported in `error`, not raised.
    """
    commit_type = infer_commit_type(task)
    message = format_commit_message(commit_type, scope, task.name)
    files = _existing_files(project_dir, [*task.files, *(extra_files or [])])

    if not files:
        return CommitResult(
            success=False,
            task_id=task.id,
            commit_message=message,
            type=commit_type.value,
            error="No existing files to stage for this task",
        )

    try:
        staged = git.stage(files)
        if not staged:
            return CommitResult(
                success=False,
                task_id=task.id,
                commit_message=message,
                type=commit_type.value,
                error="Nothing staged for commit",
            )
        commit_hash = git.commit(message)
    except GitOperationError as exc:
        return CommitResult(
            success=False,
            task_id=task.id,
            commit_message=message,
            type=commit_type.value,
            files_staged=files,
            error=exc.message,
        )
    except Exception as exc:  # adapter failures are reported, not raised
        logger.error("Git adapter raised while committing {}: {}", task.id, exc)
        return CommitResult(
            success=False,
            task_id=task.id,
            commit_message=message,
            type=commit_type.value,
            files_staged=files,
            error=f"{exc.__class__.__name__}: {exc}",
        )

    logger.info("Committed {}: {} ({})", task.id, message, commit_hash)
    return CommitResult(
        success=True,
        task_id=task.id,
        commit_hash=commit_hash,
        commit_message=message,
        type=commit_type.value,
        files_staged=list(staged),
    )
