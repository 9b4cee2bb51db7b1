"""Provide small git helpers used by the runner."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger


def _run_git(project_dir: Path, *args: str, check: bool = False) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    logger.debug("Running {} in {}", " ".join(command), project_dir)
    return subprocess.run(
        command,
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=check,
    )


def _git_is_repo(project_dir: Path) -> bool:
    try:
        result = _run_git(project_dir, "rev-parse", "--is-inside-work-tree")
    except OSError:
        return False
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def _git_head_sha(project_dir: Path, short: bool = False) -> Optional[str]:
    args = ["rev-parse", "--short", "HEAD"] if short else ["rev-parse", "HEAD"]
    result = _run_git(project_dir, *args)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_add(project_dir: Path, paths: Iterable[str]) -> None:
    paths = [str(path) for path in paths]
    if not paths:
        return
    _run_git(project_dir, "add", "--", *paths, check=True)


def _git_staged_files(project_dir: Path) -> list[str]:
    result = _run_git(project_dir, "diff", "--name-only", "--cached")
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _git_commit(project_dir: Path, message: str) -> None:
    _run_git(project_dir, "commit", "-m", message, check=True)
