"""Plan definition parser.

A plan file (``<phase>-<plan>-PLAN.md``) is markdown with tag-delimited
sections:

    <objective>
    Add handler tests for the auth package
    Purpose: lock in current behaviour before the refactor
    </objective>

    <task type="auto">
      <name>Write login handler tests</name>
      <files>internal/auth/login_test.go, internal/auth/login.go</files>
      <action>
      Cover success, bad password and locked account.
      </action>
      <verify>go test ./internal/auth/...</verify>
      <done>All auth tests pass</done>
    </task>

    <verification>
    - [ ] go test ./... passes
    </verification>

The file is parsed once into a PlanDocument; nothing downstream reads the
raw text again. Missing tags yield empty values rather than errors.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

PLAN_SUFFIX = "-PLAN.md"
SUMMARY_SUFFIX = "-SUMMARY.md"

_TASK_BLOCK = re.compile(r"<task(?:\s[^>]*)?>(.*?)</task>", re.DOTALL)
_CHECKLIST_ITEM = re.compile(r"^\s*-\s*\[")


def _section(text: str, tag: str) -> Optional[str]:
    """Body of the first ``<tag>...</tag>`` block, or None."""
    match = re.search(rf"<{tag}(?:\s[^>]*)?>(.*?)</{tag}>", text, re.DOTALL)
    return match.group(1) if match else None


def _inline(text: str, tag: str) -> str:
    body = _section(text, tag)
    return body.strip() if body else ""


def _split_files(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def summary_path_for(plan_path: Path) -> Path:
    """Completion artifact path for a plan definition."""
    name = plan_path.name
    if name.endswith(PLAN_SUFFIX):
        name = name[: -len(PLAN_SUFFIX)] + SUMMARY_SUFFIX
    else:
        name = plan_path.stem + SUMMARY_SUFFIX
    return plan_path.with_name(name)


def plan_id_from_path(plan_path: Path) -> str:
    """Plan number from a definition filename ("14-01-PLAN.md" -> "01")."""
    stem = plan_path.name[: -len(PLAN_SUFFIX)] if plan_path.name.endswith(PLAN_SUFFIX) else plan_path.stem
    parts = stem.split("-")
    return parts[1] if len(parts) > 1 else parts[0]


@dataclass
class TaskSpec:
    """One task block of a plan."""
    number: int
    name: str
    files: List[str] = field(default_factory=list)
    action: str = ""
    verify: str = ""
    done: str = ""

    @property
    def label(self) -> str:
        return self.name or f"Task {self.number}"


@dataclass
class PlanDocument:
    """Typed view of a plan definition file."""
    path: Path
    phase_id: str
    plan_id: str
    objective: str = ""
    purpose: str = ""
    tasks: List[TaskSpec] = field(default_factory=list)
    verification: List[str] = field(default_factory=list)

    @property
    def summary_path(self) -> Path:
        return summary_path_for(self.path)

    @property
    def is_complete(self) -> bool:
        return self.summary_path.exists()

    @property
    def files(self) -> List[str]:
        """Sorted union of every file declared by the plan's tasks."""
        return sorted({f for task in self.tasks for f in task.files})

    @property
    def unit_id(self) -> str:
        """Qualified identifier, e.g. ``11-02``."""
        return f"{self.phase_id}-{self.plan_id}"


def parse_task(number: int, block: str) -> TaskSpec:
    action = _section(block, "action") or ""
    action_lines = [line for line in action.split("\n")]
    # Drop the blank first/last lines left by tags on their own lines
    while action_lines and not action_lines[0].strip():
        action_lines.pop(0)
    while action_lines and not action_lines[-1].strip():
        action_lines.pop()
    return TaskSpec(
        number=number,
        name=_inline(block, "name"),
        files=_split_files(_inline(block, "files")),
        action="\n".join(action_lines),
        verify=_inline(block, "verify"),
        done=_inline(block, "done"),
    )


def parse_plan_text(text: str, path: Path, phase_id: str, plan_id: Optional[str] = None) -> PlanDocument:
    """Parse plan definition text.

    Args:
        text: Raw file content.
        path: Location of the definition (used for the artifact path).
        phase_id: Owning phase number.
        plan_id: Plan number; derived from the filename when omitted.

    Returns:
        PlanDocument with empty fields for any missing sections.
    """
    objective = ""
    purpose = ""
    objective_block = _section(text, "objective")
    if objective_block:
        lines = [line.strip() for line in objective_block.splitlines() if line.strip()]
        if lines:
            objective = lines[0]
        for line in lines:
            if line.startswith("Purpose:"):
                purpose = line[len("Purpose:"):].strip()
                break

    tasks = [parse_task(i, m.group(1)) for i, m in enumerate(_TASK_BLOCK.finditer(text), start=1)]

    verification: List[str] = []
    verification_block = _section(text, "verification")
    if verification_block:
        verification = [
            line.strip() for line in verification_block.splitlines() if _CHECKLIST_ITEM.match(line)
        ]

    return PlanDocument(
        path=path,
        phase_id=phase_id,
        plan_id=plan_id or plan_id_from_path(path),
        objective=objective,
        purpose=purpose,
        tasks=tasks,
        verification=verification,
    )


def parse_plan(path: Path, phase_id: str) -> PlanDocument:
    """Read and parse a plan definition file."""
    return parse_plan_text(path.read_text(encoding="utf-8"), path, phase_id)
