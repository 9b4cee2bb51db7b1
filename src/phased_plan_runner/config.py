"""Load optional runner configuration from `.planning/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import (
    CONFIG_FILE,
    DEFAULT_BACKOFF_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_SUBTASKS,
    DEFAULT_STRATEGY,
    DEFAULT_VERIFY_TIMEOUT_SECONDS,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error


class RunnerConfig(BaseModel):
    """Settings read from the project's config file."""

    default_strategy: Literal["auto", "autonomous", "segmented", "decision"] = DEFAULT_STRATEGY
    commit_enabled: bool = True
    metadata_commit: bool = True
    update_state: bool = True
    defer_issues: bool = True
    verify_timeout_seconds: int = Field(default=DEFAULT_VERIFY_TIMEOUT_SECONDS, ge=1)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_ms: int = Field(default=DEFAULT_BACKOFF_MS, ge=0)
    max_subtasks: int = Field(default=DEFAULT_MAX_SUBTASKS, ge=1)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value


def config_path(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME / CONFIG_FILE


def load_runner_config(project_dir: Path) -> tuple[RunnerConfig, str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. A missing file yields defaults
        and no error; an unreadable or invalid file yields defaults and the
        reason.
    """
    path = config_path(project_dir.resolve())
    data, err = _load_data_with_error(path, {})
    if err:
        return RunnerConfig(), err
    try:
        return RunnerConfig.model_validate(data), None
    except ValidationError as exc:
        return RunnerConfig(), f"{path.name}: {exc.error_count()} invalid setting(s): {exc.errors()[0]['msg']}"
