"""Test the `phased-plan-runner` CLI subcommands."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from loguru import logger

from phased_plan_runner import runner


@pytest.fixture(autouse=True)
def _drop_cli_sinks():
    """The CLI binds a sink to the captured stderr; remove it after each test."""
    yield
    logger.remove()


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        runner.main(argv)
    return exc_info.value.code


def _json_out(capsys: pytest.CaptureFixture[str]):
    return json.loads(capsys.readouterr().out)


def test_phase_lifecycle_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Ensure phases can be created, planned and inspected from the CLI."""
    common = ["--project-dir", str(tmp_path), "--json"]

    assert _run(["init", *common]) == 0
    assert _json_out(capsys)["success"] is True

    assert _run(["phase-create", "Foundation", "--goal", "Base layer", *common]) == 0
    assert _json_out(capsys)["phase_name"] == "01-foundation"

    tasks_file = tmp_path / "tasks.yaml"
    tasks_file.write_text(
        "objective: Build the model\n"
        "tasks:\n"
        "  - name: Create model\n"
        "    files: [src/models.py]\n"
        "    action: Define the model\n"
        "  - type: checkpoint:human-verify\n"
        "    what_built: Model\n"
    )
    assert _run(["plan-create", "1", "--tasks-file", str(tasks_file), *common]) == 0
    created = _json_out(capsys)
    assert created["plan_number"] == 1
    assert created["task_count"] == 2

    assert _run(["phases", *common]) == 0
    phases = _json_out(capsys)
    assert phases[0]["plans"][0]["scope"] == "01-01"

    assert _run(["phase-status", "foundation", *common]) == 0
    status = _json_out(capsys)
    assert status["next_step"] == "Execute plan 01-01"
    assert status["progress"] == 0


def test_execute_dry_run_json(tmp_path: Path, write_plan, capsys: pytest.CaptureFixture[str]) -> None:
    path = write_plan()

    code = _run(["execute", str(path), "--dry-run", "--project-dir", str(tmp_path), "--json"])

    record = _json_out(capsys)
    assert code == 0
    assert record["dry_run"] is True
    assert record["task_count"] == 3
    assert record["strategy"] == "segmented"


def test_resume_rejected_exits_one(tmp_path: Path, write_plan, capsys: pytest.CaptureFixture[str]) -> None:
    """Ensure a rejected checkpoint reports failure without running tasks."""
    path = write_plan()

    code = _run(["resume", str(path), "task-2", "--reject", "--project-dir", str(tmp_path), "--json"])

    record = _json_out(capsys)
    assert code == 1
    assert record["error_code"] == "CHECKPOINT_NOT_APPROVED"


def test_missing_plan_exits_two(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = _run(["execute", "nope/01-01-PLAN.md", "--project-dir", str(tmp_path)])

    payload = _json_out(capsys)
    assert code == 2
    assert payload["success"] is False
    assert payload["error"]["code"] == "PLAN_FILE_NOT_FOUND"


def test_missing_phase_exits_two(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = _run(["phase-status", "7", "--project-dir", str(tmp_path), "--json"])

    assert code == 2
    assert _json_out(capsys)["error"]["code"] == "PHASE_NOT_FOUND"


def test_classify_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = _run(["classify", "We need to redesign the cache", "--project-dir", str(tmp_path), "--json"])

    handling = _json_out(capsys)
    assert code == 0
    assert handling["classification"]["rule"] == 4
    assert handling["user_prompt"]["title"] == "Architectural Decision Required"


def test_rules_human_output(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Ensure the human-readable rules table goes to stderr."""
    code = _run(["rules", "--project-dir", str(tmp_path)])

    captured = capsys.readouterr()
    assert code == 0
    assert captured.out == ""
    assert "Deviation Rules" in captured.err


def test_unknown_command(capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(["launch"]) == 2
    assert "Unknown command: launch" in capsys.readouterr().err


def test_bad_config_log_level_still_runs(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_file = tmp_path / ".planning" / "config.yaml"
    config_file.parent.mkdir(parents=True)
    config_file.write_text("log_level: verbose\n")

    code = _run(["rules", "--project-dir", str(tmp_path), "--json"])

    assert code == 0
    assert len(_json_out(capsys)["rules"]) == 5
