"""Classify unplanned deviations against the five fixed deviation rules.

Rules are held in one ordered table and evaluated first-match-wins; the
enhancement rule is the unconditional fallback, so every deviation maps to
exactly one rule.

| Rule | Name             | Action          | Human input |
|------|------------------|-----------------|-------------|
| 1    | Bug Found        | `auto_fix`      | no          |
| 2    | Critical Missing | `auto_add`      | no          |
| 3    | Blocker          | `auto_fix`      | no          |
| 4    | Architectural    | `stop_ask_user` | yes         |
| 5    | Enhancement      | `defer`         | no          |
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import Any, Optional, Union


class DeviationRule(IntEnum):
    BUG_FOUND = 1
    CRITICAL_MISSING = 2
    BLOCKER = 3
    ARCHITECTURAL = 4
    ENHANCEMENT = 5


class DeviationAction(str, Enum):
    AUTO_FIX = "auto_fix"
    AUTO_ADD = "auto_add"
    STOP_ASK_USER = "stop_ask_user"
    DEFER = "defer"


@dataclass(frozen=True)
class Deviation:
    """An unplanned observation reported while a task ran."""

    description: str
    type: str = ""
    blocks_progress: bool = False
    file: Optional[str] = None
    title: Optional[str] = None
    issue: Optional[str] = None
    proposed_fix: Optional[str] = None
    verification: Optional[str] = None
    effort: Optional[str] = None

    @classmethod
    def coerce(cls, value: Union["Deviation", dict[str, Any], str]) -> "Deviation":
        if isinstance(value, Deviation):
            return value
        if isinstance(value, str):
            return cls(description=value)
        return cls(
            description=str(value.get("description") or ""),
            type=str(value.get("type") or ""),
            blocks_progress=bool(value.get("blocks_progress", value.get("blocksProgress", False))),
            file=value.get("file"),
            title=value.get("title"),
            issue=value.get("issue"),
            proposed_fix=value.get("proposed_fix") or value.get("proposedFix"),
            verification=value.get("verification"),
            effort=value.get("effort"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DeviationClassification:
    rule: DeviationRule
    category: str
    action: DeviationAction
    description: str
    requires_user_input: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": int(self.rule),
            "category": self.category,
            "action": self.action.value,
            "description": self.description,
            "requires_user_input": self.requires_user_input,
        }


@dataclass(frozen=True)
class _RuleSpec:
    classification: DeviationClassification
    name: str
    trigger: str
    types: frozenset[str] = frozenset()
    keywords: tuple[str, ...] = ()
    on_blocks_progress: bool = False

    def matches(self, deviation: Deviation) -> bool:
        if self.on_blocks_progress and deviation.blocks_progress:
            return True
        if deviation.type.strip().lower() in self.types:
            return True
        description = deviation.description.lower()
        return any(keyword in description for keyword in self.keywords)


_RULES: tuple[_RuleSpec, ...] = (
    _RuleSpec(
        classification=DeviationClassification(
            rule=DeviationRule.BUG_FOUND,
            category="bug_found",
            action=DeviationAction.AUTO_FIX,
            description="Auto-fix the bug and document in summary",
            requires_user_input=False,
        ),
        name="Bug Found",
        trigger="Existing bug discovered during implementation",
        types=frozenset({"bug"}),
        keywords=("bug", "broken"),
    ),
    _RuleSpec(
        classification=DeviationClassification(
            rule=DeviationRule.CRITICAL_MISSING,
            category="missing_critical",
            action=DeviationAction.AUTO_ADD,
            description="Auto-add the missing security/correctness feature",
            requires_user_input=False,
        ),
        name="Critical Missing",
        trigger="Security or correctness gap identified",
        types=frozenset({"security", "critical"}),
        keywords=("security", "vulnerability", "injection", "sanitiz", "validat", "missing critical"),
    ),
    _RuleSpec(
        classification=DeviationClassification(
            rule=DeviationRule.BLOCKER,
            category="blocker",
            action=DeviationAction.AUTO_FIX,
            description="Auto-fix the blocker to allow progress",
            requires_user_input=False,
        ),
        name="Blocker",
        trigger="Cannot proceed without fix",
        keywords=("blocker", "cannot proceed"),
        on_blocks_progress=True,
    ),
    _RuleSpec(
        classification=DeviationClassification(
            rule=DeviationRule.ARCHITECTURAL,
            category="architectural",
            action=DeviationAction.STOP_ASK_USER,
            description="STOP and ask user for decision on architectural change",
            requires_user_input=True,
        ),
        name="Architectural",
        trigger="Design change needed",
        types=frozenset({"architectural", "design"}),
        keywords=("architect", "redesign", "restructure", "major change"),
    ),
)

_FALLBACK = _RuleSpec(
    classification=DeviationClassification(
        rule=DeviationRule.ENHANCEMENT,
        category="enhancement",
        action=DeviationAction.DEFER,
        description="Log to ISSUES.md and continue with original task",
        requires_user_input=False,
    ),
    name="Enhancement",
    trigger="Nice-to-have improvement",
)


def classify_deviation(deviation: Union[Deviation, dict[str, Any], str]) -> DeviationClassification:
    """Map a deviation to the first matching rule, falling back to rule 5."""
    deviation = Deviation.coerce(deviation)
    for spec in _RULES:
        if spec.matches(deviation):
            return spec.classification
    return _FALLBACK.classification


@dataclass
class DeviationHandling:
    """How the engine should respond to one classified deviation."""

    deviation: Deviation
    classification: DeviationClassification
    handled: bool
    action: DeviationAction
    requires_user_input: bool
    instructions: list[str] = field(default_factory=list)
    summary_entry: Optional[dict[str, Any]] = None
    user_prompt: Optional[dict[str, Any]] = None
    issue_entry: Optional[dict[str, Any]] = None

    @property
    def halts_plan(self) -> bool:
        return self.action is DeviationAction.STOP_ASK_USER

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviation": self.deviation.to_dict(),
            "classification": self.classification.to_dict(),
            "handled": self.handled,
            "action": self.action.value,
            "requires_user_input": self.requires_user_input,
            "instructions": list(self.instructions),
            "summary_entry": self.summary_entry,
            "user_prompt": self.user_prompt,
            "issue_entry": self.issue_entry,
        }


DECISION_OPTIONS: tuple[dict[str, str], ...] = (
    {
        "id": "proceed",
        "label": "Proceed with suggested change",
        "description": "Apply the architectural modification",
    },
    {
        "id": "modify",
        "label": "Modify approach",
        "description": "Discuss alternative approaches",
    },
    {
        "id": "abort",
        "label": "Abort plan",
        "description": "Stop execution and return to planning",
    },
)


def handle_deviation(
    deviation: Union[Deviation, dict[str, Any], str],
    *,
    task_id: Optional[str] = None,
    phase: Optional[str] = None,
    plan: Optional[str] = None,
) -> DeviationHandling:
    """Classify a deviation and describe the response its rule prescribes.

    Rules 1-3 fold the fix into the current task's commit and produce a
    summary entry. Rule 4 produces a decision prompt and is left unhandled
    until a human answers it. Rule 5 produces an issue entry and lets the
    task continue.
    """
    deviation = Deviation.coerce(deviation)
    classification = classify_deviation(deviation)
    rule = classification.rule

    if rule in (DeviationRule.BUG_FOUND, DeviationRule.CRITICAL_MISSING, DeviationRule.BLOCKER):
        return DeviationHandling(
            deviation=deviation,
            classification=classification,
            handled=True,
            action=classification.action,
            requires_user_input=False,
            instructions=[
                f"Fix the issue: {deviation.description}",
                "Include the fix in the current task commit",
                "Document the deviation in the summary",
            ],
            summary_entry={
                "type": "auto-fix",
                "rule": int(rule),
                "category": classification.category,
                "description": deviation.description,
                "task": task_id,
                "issue": deviation.issue or "N/A",
                "fix": deviation.proposed_fix or "Applied fix during task execution",
                "verification": deviation.verification or "Verified by task completion",
                "commit_hash": None,
            },
        )

    if rule is DeviationRule.ARCHITECTURAL:
        return DeviationHandling(
            deviation=deviation,
            classification=classification,
            handled=False,
            action=classification.action,
            requires_user_input=True,
            user_prompt={
                "title": "Architectural Decision Required",
                "description": deviation.description,
                "task": task_id,
                "phase": phase,
                "plan": plan,
                "options": [dict(option) for option in DECISION_OPTIONS],
            },
        )

    return DeviationHandling(
        deviation=deviation,
        classification=classification,
        handled=True,
        action=classification.action,
        requires_user_input=False,
        instructions=["Continue with the original task", "Log enhancement to ISSUES.md"],
        issue_entry={
            "title": deviation.title or f"Enhancement: {deviation.description[:50]}",
            "phase": phase,
            "task": task_id,
            "type": "enhancement",
            "effort": deviation.effort or "M",
            "priority": "low",
            "description": deviation.description,
            "proposed_fix": deviation.proposed_fix,
        },
    )


def get_deviation_rules() -> dict[str, Any]:
    """Describe the rule table for display."""
    rules = []
    for spec in (*_RULES, _FALLBACK):
        rules.append(
            {
                "number": int(spec.classification.rule),
                "name": spec.name,
                "trigger": spec.trigger,
                "action": spec.classification.description,
                "requires_user_input": spec.classification.requires_user_input,
            }
        )
    return {
        "rules": rules,
        "summary": "Rules 1-3 are auto-handled, Rule 4 requires user input, Rule 5 defers work",
    }
