"""Hierarchy walker: decides which plans of a phase run, and in what order.

The order is the sorted order of plan definition files and is identical on
every invocation. Each plan is yielded as a PlanStep whose action says
whether it runs or why it is skipped.

Resume is count-based: with ``continue_mode`` the walker counts the
completion artifacts already present in the phase and skips that many
leading plans. Deleting an artifact from the middle of a phase therefore
resumes at the wrong plan; plans that still have an artifact are skipped
regardless, so no completed work is ever re-run. An explicit plan filter
replaces resume: only the targeted plan is considered.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, List, Optional

from ..errors import ResolutionError
from .document import PLAN_SUFFIX, SUMMARY_SUFFIX, plan_id_from_path, summary_path_for

if TYPE_CHECKING:
    from .resolver import Phase


class StepAction(str, Enum):
    RUN = "run"
    SKIP_RESUMED = "skip_resumed"
    SKIP_FILTERED = "skip_filtered"
    SKIP_COMPLETE = "skip_complete"


@dataclass
class PlanStep:
    """One plan position in a phase walk."""
    index: int
    plan_id: str
    path: Path
    action: StepAction

    @property
    def runs(self) -> bool:
        return self.action == StepAction.RUN


def _sort_key(path: Path):
    numbers = tuple(int(n) for n in re.findall(r"\d+", path.name)[:2])
    return numbers, path.name


def list_plans(phase_dir: Path) -> List[Path]:
    """Plan definition files of a phase in execution order."""
    return sorted((p for p in phase_dir.glob(f"*{PLAN_SUFFIX}") if p.is_file()), key=_sort_key)


def count_summaries(phase_dir: Path) -> int:
    return sum(1 for p in phase_dir.glob(f"*{SUMMARY_SUFFIX}") if p.is_file())


def normalize_id(identifier: str) -> str:
    """Strip leading zeros so "07" and "7" compare equal."""
    identifier = str(identifier).strip()
    if not identifier.isdigit():
        return identifier
    return identifier.lstrip("0") or "0"


def require_plan(phase: "Phase", only_plan: str) -> str:
    """Return the normalised plan number, or raise if the phase lacks it.

    Raises:
        ResolutionError: If no plan definition of the phase has that number.
    """
    wanted = normalize_id(only_plan)
    if not any(normalize_id(plan_id_from_path(p)) == wanted for p in phase.plan_paths):
        raise ResolutionError(
            only_plan, f"Plan {only_plan} not found in phase {phase.phase_id}"
        )
    return wanted


def walk_plans(
    phase: "Phase",
    continue_mode: bool = False,
    only_plan: Optional[str] = None,
) -> Iterator[PlanStep]:
    """Yield every plan of a phase with the action to take for it.

    An explicit ``only_plan`` overrides resume: the targeted plan runs
    unless it has its own artifact, and every other plan is filtered.

    Args:
        phase: Resolved phase.
        continue_mode: Skip as many leading plans as there are artifacts.
        only_plan: Restrict the run to this plan number.

    Raises:
        ResolutionError: If ``only_plan`` matches no plan of the phase.
    """
    wanted = require_plan(phase, only_plan) if only_plan else None
    start_index = count_summaries(phase.directory) + 1 if continue_mode and wanted is None else 1

    for index, path in enumerate(phase.plan_paths, start=1):
        plan_id = plan_id_from_path(path)
        if wanted is not None and normalize_id(plan_id) != wanted:
            action = StepAction.SKIP_FILTERED
        elif index < start_index:
            action = StepAction.SKIP_RESUMED
        elif summary_path_for(path).exists():
            action = StepAction.SKIP_COMPLETE
        else:
            action = StepAction.RUN
        yield PlanStep(index=index, plan_id=plan_id, path=path, action=action)
