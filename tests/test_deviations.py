"""Tests for deviation classification and handling."""

from __future__ import annotations

from pathlib import Path

import pytest

from phased_plan_runner.deviations import (
    Deviation,
    DeviationAction,
    DeviationRule,
    classify_deviation,
    get_deviation_rules,
    handle_deviation,
)
from phased_plan_runner.issues import IssueLog


class TestClassifyDeviation:
    """Test the first-match-wins rule table."""

    @pytest.mark.parametrize(
        ("description", "rule"),
        [
            ("Found a bug in date parsing", DeviationRule.BUG_FOUND),
            ("The export script is broken on empty input", DeviationRule.BUG_FOUND),
            ("SQL injection possible in the search query", DeviationRule.CRITICAL_MISSING),
            ("Input is never sanitized before rendering", DeviationRule.CRITICAL_MISSING),
            ("Missing critical validation of tokens", DeviationRule.CRITICAL_MISSING),
            ("Cannot proceed until the schema migration exists", DeviationRule.BLOCKER),
            ("We should restructure the storage layer", DeviationRule.ARCHITECTURAL),
            ("Needs a redesign of the session model", DeviationRule.ARCHITECTURAL),
            ("Could cache lookups for speed", DeviationRule.ENHANCEMENT),
        ],
    )
    def test_keywords_select_rule(self, description: str, rule: DeviationRule):
        assert classify_deviation(description).rule is rule

    def test_type_hint_selects_rule(self):
        assert classify_deviation({"description": "Odd output", "type": "bug"}).rule is DeviationRule.BUG_FOUND
        assert classify_deviation({"description": "Rethink it", "type": "Design"}).rule is DeviationRule.ARCHITECTURAL
        assert classify_deviation({"description": "Tokens", "type": "security"}).rule is DeviationRule.CRITICAL_MISSING

    def test_blocks_progress_flag_is_a_blocker(self):
        classification = classify_deviation({"description": "Need a config file", "blocksProgress": True})

        assert classification.rule is DeviationRule.BLOCKER
        assert classification.action is DeviationAction.AUTO_FIX

    def test_earlier_rule_wins(self):
        """A bug that is also a security issue is handled as a bug."""
        assert classify_deviation("Security bug in login").rule is DeviationRule.BUG_FOUND

    def test_only_architectural_requires_input(self):
        for text in ("bug here", "security gap", "blocker", "redesign it", "nice to have"):
            classification = classify_deviation(text)
            assert classification.requires_user_input is (classification.rule is DeviationRule.ARCHITECTURAL)

    def test_classification_to_dict(self):
        data = classify_deviation("redesign it").to_dict()

        assert data["rule"] == 4
        assert data["category"] == "architectural"
        assert data["action"] == "stop_ask_user"
        assert data["requires_user_input"] is True


class TestHandleDeviation:
    """Test the response each rule prescribes."""

    def test_auto_fix_produces_summary_entry(self):
        handling = handle_deviation(
            {"description": "Off-by-one bug in pagination", "proposedFix": "Use < instead of <="},
            task_id="task-1",
        )

        assert handling.handled is True
        assert handling.halts_plan is False
        assert handling.summary_entry["type"] == "auto-fix"
        assert handling.summary_entry["rule"] == 1
        assert handling.summary_entry["task"] == "task-1"
        assert handling.summary_entry["fix"] == "Use < instead of <="
        assert handling.summary_entry["commit_hash"] is None
        assert handling.user_prompt is None

    def test_architectural_produces_decision_prompt(self):
        handling = handle_deviation("Redesign auth around OAuth", task_id="task-2", phase="01", plan="01-02")

        assert handling.handled is False
        assert handling.halts_plan is True
        assert handling.requires_user_input is True
        prompt = handling.user_prompt
        assert prompt["title"] == "Architectural Decision Required"
        assert prompt["plan"] == "01-02"
        assert [option["id"] for option in prompt["options"]] == ["proceed", "modify", "abort"]

    def test_enhancement_produces_issue_entry(self):
        handling = handle_deviation(
            Deviation(description="Cache rendered pages", title="Page cache", effort="S"),
            task_id="task-3",
            phase="02",
        )

        assert handling.action is DeviationAction.DEFER
        assert handling.issue_entry["title"] == "Page cache"
        assert handling.issue_entry["effort"] == "S"
        assert handling.issue_entry["priority"] == "low"
        assert handling.summary_entry is None

    def test_to_dict_is_serializable_shape(self):
        data = handle_deviation("bug in parser").to_dict()

        assert data["classification"]["rule"] == 1
        assert data["deviation"]["description"] == "bug in parser"
        assert data["action"] == "auto_fix"


class TestDeviationRules:
    def test_lists_all_five_rules(self):
        rules = get_deviation_rules()

        assert [rule["number"] for rule in rules["rules"]] == [1, 2, 3, 4, 5]
        assert [rule["requires_user_input"] for rule in rules["rules"]] == [False, False, False, True, False]
        assert "Rule 4 requires user input" in rules["summary"]


class TestIssueLog:
    """Test ISSUES.md deferral."""

    def test_defer_creates_file_and_numbers_entries(self, tmp_path: Path):
        log = IssueLog(tmp_path / ".planning" / "ISSUES.md")

        first = log.defer({"title": "Page cache", "description": "Cache pages", "task": "task-1"})
        second = log.defer({"title": "Dark mode", "description": "Theme"})

        content = log.path.read_text()
        assert (first, second) == ("ISS-001", "ISS-002")
        assert content.startswith("# Deferred Issues\n\n## Open Issues\n")
        assert "### ISS-001: Page cache" in content
        assert "### ISS-002: Dark mode" in content
        assert log.count() == 2

    def test_defer_appends_heading_when_missing(self, tmp_path: Path):
        path = tmp_path / "ISSUES.md"
        path.write_text("# Issues\n\nSome notes")

        issue_id = IssueLog(path).defer({"title": "Retry logic"})

        content = path.read_text()
        assert issue_id == "ISS-001"
        assert content.startswith("# Issues\n\nSome notes\n")
        assert "## Open Issues\n\n### ISS-001: Retry logic" in content
