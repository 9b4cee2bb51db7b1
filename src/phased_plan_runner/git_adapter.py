"""Git Adapter used by the executor to stage and commit one task at a time."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Iterable, Protocol

from loguru import logger

from .errors import GitOperationError
from .git_utils import _git_add, _git_commit, _git_head_sha, _git_is_repo, _git_staged_files


class GitAdapter(Protocol):
    """Narrow view of version control the executor depends on."""

    def stage(self, files: Iterable[str]) -> list[str]:
        """Stage `files` and return everything now staged."""
        ...

    def commit(self, message: str) -> str:
        """Commit the index and return the short commit hash."""
        ...


def _describe(exc: subprocess.CalledProcessError) -> str:
    detail = (exc.stderr or exc.stdout or "").strip()
    return detail.splitlines()[-1] if detail else f"git exited with status {exc.returncode}"


class SubprocessGitAdapter:
    """GitAdapter backed by the `git` executable in `project_dir`."""

    def __init__(self, project_dir: Path):
        self.project_dir = Path(project_dir)

    def is_repo(self) -> bool:
        return _git_is_repo(self.project_dir)

    def stage(self, files: Iterable[str]) -> list[str]:
        files = list(files)
        try:
            _git_add(self.project_dir, files)
        except (subprocess.CalledProcessError, OSError) as exc:
            message = _describe(exc) if isinstance(exc, subprocess.CalledProcessError) else str(exc)
            raise GitOperationError("git-stage", f"git add failed: {message}") from exc
        staged = _git_staged_files(self.project_dir)
        logger.debug("Staged {} file(s): {}", len(staged), ", ".join(staged))
        return staged

    def commit(self, message: str) -> str:
        try:
            _git_commit(self.project_dir, message)
        except (subprocess.CalledProcessError, OSError) as exc:
            detail = _describe(exc) if isinstance(exc, subprocess.CalledProcessError) else str(exc)
            raise GitOperationError("git-commit", f"git commit failed: {detail}") from exc
        sha = _git_head_sha(self.project_dir, short=True)
        if not sha:
            raise GitOperationError("git-commit", "git commit succeeded but HEAD could not be resolved")
        return sha
