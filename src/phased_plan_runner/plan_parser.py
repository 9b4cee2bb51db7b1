"""Parse plan documents into `ParsedPlan` values and render them back.

A plan document is a leading ``key: value`` block between ``---`` fences,
followed by tagged sections::

    <objective>...</objective>
    <tasks>
      <task type="auto" id="task-1">
        <name>...</name><files>...</files><action>...</action>
        <verify>...</verify><done>...</done>
      </task>
      <task type="checkpoint:human-verify" id="task-2" gate="blocking">
        <what-built>...</what-built><how-to-verify>...</how-to-verify>
        <resume-signal>...</resume-signal>
      </task>
    </tasks>
    <verification>- [ ] item</verification>
    <success_criteria>- item</success_criteria>

Task fields are always read from inside the task's own span, so a field that
is missing from one task never picks up the value of its neighbour.
"""

from __future__ import annotations

import html
import re
from typing import Any, Iterable, Optional, Union

from .constants import CHECKPOINT_TYPE_PREFIX, DEFAULT_RESUME_SIGNAL, MIN_ACTION_LENGTH
from .errors import MalformedPlanError
from .models import (
    AutoTask,
    CheckpointKind,
    CheckpointTask,
    DependencyMode,
    Gate,
    ParsedPlan,
    Task,
    _coerce_enum,
    task_from_dict,
)
from .utils import _pad

_FRONTMATTER_RE = re.compile(r"\A\s*---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)", re.S)
_TASKS_SECTION_RE = re.compile(r"<tasks(?:\s[^>]*)?>(.*?)</tasks\s*>", re.S | re.I)
_TASK_RE = re.compile(r"<task\b([^>]*)>(.*?)</task\s*>", re.S | re.I)
_ATTR_RE = re.compile(r"([\w:-]+)\s*=\s*(?:\"([^\"]*)\"|'([^']*)')")
_FILE_ELEMENT_RE = re.compile(r"<file(?:\s[^>]*)?>(.*?)</file\s*>", re.S | re.I)
_CHECKBOX_RE = re.compile(r"^\s*-\s*\[[ xX]\]\s*(.+?)\s*$", re.M)
_BULLET_RE = re.compile(r"^\s*-\s+(.+?)\s*$", re.M)
_CHECKBOX_PREFIX_RE = re.compile(r"^\[[ xX]\]\s*")
_LIST_SPLIT_RE = re.compile(r"[,\n]")


def _extract_element(content: str, tag: str) -> Optional[str]:
    pattern = re.compile(rf"<{re.escape(tag)}(?:\s[^>]*)?>(.*?)</{re.escape(tag)}\s*>", re.S | re.I)
    match = pattern.search(content)
    if not match:
        return None
    return html.unescape(match.group(1).strip())


def _parse_attributes(raw: str) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for match in _ATTR_RE.finditer(raw or ""):
        value = match.group(2) if match.group(2) is not None else match.group(3)
        attrs[match.group(1).lower()] = html.unescape(value or "").strip()
    return attrs


def _split_list(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return ()
    elements = _FILE_ELEMENT_RE.findall(raw)
    parts = elements if elements else _LIST_SPLIT_RE.split(raw)
    return tuple(html.unescape(part).strip() for part in parts if part and part.strip())


def parse_frontmatter(text: str) -> tuple[dict[str, str], str]:
    """Split the leading metadata block from the document body.

    Values are kept as flat strings; ``depends_on: [01-01]`` stays the
    literal ``"[01-01]"``.
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}, text
    metadata: dict[str, str] = {}
    for line in match.group(1).splitlines():
        if not line.strip() or line.lstrip().startswith("#") or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        if key:
            metadata[key] = value.strip()
    return metadata, text[match.end():]


def _parse_task(attr_text: str, body: str, index: int) -> Task:
    attrs = _parse_attributes(attr_text)
    task_id = attrs.get("id") or f"task-{index + 1}"
    type_attr = attrs.get("type") or "auto"
    depends_raw = attrs.get("depends-on") or attrs.get("depends_on") or _extract_element(body, "depends-on")
    depends_on = _split_list(depends_raw)
    mode = _coerce_enum(
        DependencyMode,
        attrs.get("dependency-mode") or attrs.get("dependency_mode") or "all",
        DependencyMode.ALL,
    )

    if type_attr.lower().startswith(CHECKPOINT_TYPE_PREFIX):
        # An unrecognised checkpoint kind still gates on a human.
        kind = _coerce_enum(CheckpointKind, type_attr[len(CHECKPOINT_TYPE_PREFIX):], CheckpointKind.HUMAN_VERIFY)
        return CheckpointTask(
            id=task_id,
            checkpoint_kind=kind,
            gate=_coerce_enum(Gate, attrs.get("gate") or "blocking", Gate.BLOCKING),
            what_built=_extract_element(body, "what-built"),
            how_to_verify=_extract_element(body, "how-to-verify"),
            resume_signal=_extract_element(body, "resume-signal"),
            depends_on=depends_on,
            dependency_mode=mode,
        )

    return AutoTask(
        id=task_id,
        name=_extract_element(body, "name") or f"Task {index + 1}",
        files=_split_list(_extract_element(body, "files")),
        action=_extract_element(body, "action") or "",
        verify=_extract_element(body, "verify") or None,
        done=_extract_element(body, "done") or None,
        type_attr=type_attr,
        depends_on=depends_on,
        dependency_mode=mode,
    )


def parse_plan(text: str) -> ParsedPlan:
    """Parse plan document text.

    Args:
        text: Raw document text.

    Returns:
        The parsed plan. Parsing is pure; the same text always yields an
        equal value.

    Raises:
        MalformedPlanError: If the document has no task section or repeats a
            task id.
    """
    if not isinstance(text, str) or not text.strip():
        raise MalformedPlanError("Plan document is empty")
    text = text.replace("\r\n", "\n")
    metadata, body = parse_frontmatter(text)

    section = _TASKS_SECTION_RE.search(body)
    if section:
        tasks_text = section.group(1)
    elif _TASK_RE.search(body):
        tasks_text = body
    else:
        raise MalformedPlanError("No <tasks> section found in plan document")

    tasks: list[Task] = []
    seen: set[str] = set()
    for index, match in enumerate(_TASK_RE.finditer(tasks_text)):
        task = _parse_task(match.group(1), match.group(2), index)
        if task.id in seen:
            raise MalformedPlanError(f"Duplicate task id: {task.id}", context={"task_id": task.id})
        seen.add(task.id)
        tasks.append(task)

    objective = _extract_element(body, "objective")

    verification: list[str] = []
    verification_text = _extract_element(body, "verification")
    if verification_text:
        verification = _CHECKBOX_RE.findall(verification_text)

    success_criteria: list[str] = []
    criteria_text = _extract_element(body, "success_criteria")
    if criteria_text:
        success_criteria = [_CHECKBOX_PREFIX_RE.sub("", item) for item in _BULLET_RE.findall(criteria_text)]

    return ParsedPlan(
        metadata=metadata,
        objective=objective or None,
        tasks=tasks,
        verification=verification,
        success_criteria=success_criteria,
    )


def validate_plan(parsed: ParsedPlan) -> list[str]:
    """Lint a parsed plan and return human-readable warnings."""
    warnings: list[str] = []
    if not parsed.phase:
        warnings.append("Missing 'phase' in plan metadata")
    if parsed.plan_number is None:
        warnings.append("Missing 'plan' in plan metadata")
    if not parsed.tasks:
        warnings.append("Plan has no tasks")

    known_ids = {task.id for task in parsed.tasks}
    for task in parsed.tasks:
        for dep in task.depends_on:
            if dep not in known_ids:
                warnings.append(f"Task {task.id}: depends on unknown task '{dep}'")
        if isinstance(task, CheckpointTask):
            if not task.how_to_verify:
                warnings.append(f"Task {task.id}: checkpoint has no <how-to-verify> guidance")
            continue
        if len(task.action) < MIN_ACTION_LENGTH:
            warnings.append(f"Task {task.id}: action description is very short - consider adding more detail")
        if not task.verify:
            warnings.append(f"Task {task.id}: no verification defined - consider adding <verify>")
        if not task.files:
            warnings.append(f"Task {task.id}: no files specified - add <files> for scoped commits")
    return warnings


def _text(value: Any) -> str:
    return html.escape(str(value), quote=False)


def _attr(value: Any) -> str:
    return html.escape(str(value), quote=True)


def _render_dependency_attrs(task: Task) -> str:
    out = ""
    if task.depends_on:
        out += f' depends-on="{_attr(",".join(task.depends_on))}"'
    if task.dependency_mode is DependencyMode.ANY:
        out += ' dependency-mode="any"'
    return out


def _render_task(task: Task) -> str:
    deps = _render_dependency_attrs(task)
    if isinstance(task, CheckpointTask):
        return "\n".join(
            [
                f'<task type="{_attr(task.type_attr)}" id="{_attr(task.id)}" gate="{task.gate.value}"{deps}>',
                f"  <what-built>{_text(task.what_built or '[What was just built]')}</what-built>",
                "  <how-to-verify>",
                f"    {_text(task.how_to_verify or '1. [Verification steps]')}",
                "  </how-to-verify>",
                f"  <resume-signal>{_text(task.resume_signal or DEFAULT_RESUME_SIGNAL)}</resume-signal>",
                "</task>",
            ]
        )
    return "\n".join(
        [
            f'<task type="{_attr(task.type_attr)}" id="{_attr(task.id)}"{deps}>',
            f"  <name>{_text(task.name)}</name>",
            f"  <files>{_text(', '.join(task.files))}</files>",
            "  <action>",
            f"    {_text(task.action or '[Implementation instructions]')}",
            "  </action>",
            f"  <verify>{_text(task.verify or '')}</verify>",
            f"  <done>{_text(task.done or '[Acceptance criteria]')}</done>",
            "</task>",
        ]
    )


def _render_objective(objective: Union[str, dict[str, Any], None]) -> str:
    if isinstance(objective, dict):
        lines = [str(objective.get("description") or "[What this plan accomplishes]")]
        if objective.get("purpose"):
            lines.append(f"\nPurpose: {objective['purpose']}")
        if objective.get("output"):
            lines.append(f"Output: {objective['output']}")
        return _text("\n".join(lines))
    return _text(objective or "[What this plan accomplishes]")


def render_plan(
    *,
    phase_number: int,
    phase_name: str,
    plan_number: int,
    tasks: Iterable[Union[Task, dict[str, Any]]],
    objective: Union[str, dict[str, Any], None] = None,
    depends_on: Optional[list[str]] = None,
    files_modified: Optional[list[str]] = None,
    verification: Optional[list[str]] = None,
    success_criteria: Optional[list[str]] = None,
) -> str:
    """Render a plan document that `parse_plan` reads back to the same tasks."""
    built: list[Task] = [
        task if isinstance(task, (AutoTask, CheckpointTask)) else task_from_dict(task, index)
        for index, task in enumerate(tasks)
    ]
    if verification is None:
        verification = [
            f"Task {index} verification passed"
            for index, task in enumerate(built, 1)
            if not task.is_checkpoint
        ]
    if success_criteria is None:
        success_criteria = ["All tasks completed", "All verification checks pass"]

    deps = ", ".join(depends_on or [])
    files = ", ".join(files_modified or [])
    task_blocks = "\n\n".join(_render_task(task) for task in built)
    verification_lines = "\n".join(f"- [ ] {_text(item)}" for item in verification)
    criteria_lines = "\n".join(f"- {_text(item)}" for item in success_criteria)

    return (
        "---\n"
        f"phase: {_pad(phase_number)}-{phase_name}\n"
        f"plan: {_pad(plan_number)}\n"
        "type: execute\n"
        f"depends_on: [{deps}]\n"
        f"files_modified: [{files}]\n"
        "---\n\n"
        f"<objective>\n{_render_objective(objective)}\n</objective>\n\n"
        f"<tasks>\n\n{task_blocks}\n\n</tasks>\n\n"
        f"<verification>\nBefore declaring complete:\n{verification_lines}\n</verification>\n\n"
        f"<success_criteria>\n{criteria_lines}\n</success_criteria>\n"
    )
