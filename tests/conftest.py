"""Shared fixtures: plan documents on disk and fake collaborators."""

from __future__ import annotations

from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock

import pytest

from phased_plan_runner.config import RunnerConfig

CHECKPOINT_PLAN = """---
phase: 01-foundation
plan: 02
type: execute
depends_on: [01-01]
files_modified: [src/models.py, src/login.py]
---

<objective>
Add a user model and a login endpoint.
</objective>

<tasks>

<task type="auto" id="task-1">
  <name>Create user model</name>
  <files>src/models.py</files>
  <action>Define the User dataclass with id, email and password hash fields plus a constructor helper.</action>
  <verify>true</verify>
  <done>User can be constructed from a mapping</done>
</task>

<task type="checkpoint:human-verify" id="task-2" gate="blocking">
  <what-built>User model</what-built>
  <how-to-verify>Open a shell and construct a User.</how-to-verify>
  <resume-signal>Type "approved" to continue</resume-signal>
</task>

<task type="auto" id="task-3">
  <name>Add login endpoint</name>
  <files>src/login.py</files>
  <action>Expose POST /login that checks the password hash and returns a session token on success.</action>
  <verify>true</verify>
  <done>Valid credentials return a token</done>
</task>

</tasks>

<verification>
Before declaring complete:
- [ ] Task 1 verification passed
- [ ] Task 3 verification passed
</verification>

<success_criteria>
- All tasks completed
</success_criteria>
"""


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a project with the source files the sample plan touches."""
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "models.py").write_text("class User: ...\n")
    (tmp_path / "src" / "login.py").write_text("def login(): ...\n")
    (tmp_path / ".planning" / "phases" / "01-foundation").mkdir(parents=True)
    return tmp_path


@pytest.fixture
def write_plan(project_dir: Path) -> Callable[..., Path]:
    """Write plan text into phase 01 and return its path."""

    def _write(text: str = CHECKPOINT_PLAN, name: str = "01-02-PLAN.md") -> Path:
        path = project_dir / ".planning" / "phases" / "01-foundation" / name
        path.write_text(text)
        return path

    return _write


@pytest.fixture
def fake_git() -> MagicMock:
    """Git adapter that stages what it is given and hands out sequential hashes."""
    git = MagicMock()
    git.stage.side_effect = lambda files: list(files)
    git.commit.side_effect = [f"c{n:06d}" for n in range(1, 50)]
    return git


@pytest.fixture
def fake_runner() -> MagicMock:
    """Task runner that completes every task."""
    runner = MagicMock()
    runner.run.return_value = {"status": "completed"}
    return runner


@pytest.fixture
def config() -> RunnerConfig:
    return RunnerConfig()
