"""Work item resolver: maps phase identifiers to directories on disk.

A phase identifier is either a path to a phase directory or a phase number.
Numbers are matched against ``<phases_dir>/<n>-*`` and, failing that,
``<phases_dir>/0<n>-*``, so ``7``, ``07`` and the directory ``07-auth``
all name the same phase.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from ..errors import NeedsPlanning, ResolutionError
from .document import PlanDocument, parse_plan, summary_path_for
from .walker import count_summaries, list_plans, normalize_id


class CompletionState(str, Enum):
    """Derived completion of a phase."""
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    NEEDS_PLANNING = "needs_planning"


@dataclass
class Phase:
    """A resolved phase directory and its ordered plan definitions."""
    phase_id: str
    directory: Path
    plan_paths: List[Path] = field(default_factory=list)

    @property
    def plan_count(self) -> int:
        return len(self.plan_paths)

    @property
    def completed_count(self) -> int:
        return count_summaries(self.directory)

    @property
    def state(self) -> CompletionState:
        return completion_state(self.directory)

    def load_plans(self) -> List[PlanDocument]:
        return [parse_plan(path, self.phase_id) for path in self.plan_paths]


def phase_number(phase_dir: Path) -> str:
    """Numeric prefix of a phase directory name, without leading zeros."""
    match = re.match(r"(\d+)", phase_dir.name)
    if not match:
        raise ResolutionError(str(phase_dir), f"Phase directory has no numeric prefix: {phase_dir}")
    return normalize_id(match.group(1))


def _first_match(phases_dir: Path, prefix: str) -> Optional[Path]:
    if not phases_dir.is_dir():
        return None
    matches = sorted(p for p in phases_dir.glob(f"{prefix}-*") if p.is_dir())
    return matches[0] if matches else None


def resolve_phase_dir(identifier: Union[str, int, Path], phases_dir: Path) -> Path:
    """Resolve a phase identifier to its directory.

    Args:
        identifier: Phase number ("7", "07") or a directory path.
        phases_dir: Directory holding the phase directories.

    Returns:
        Path of the phase directory.

    Raises:
        ResolutionError: If nothing matches.
    """
    text = str(identifier).strip()
    if not text:
        raise ResolutionError(text, "Empty phase identifier")

    as_path = Path(text)
    if as_path.is_dir():
        return as_path

    candidates = [text]
    normalized = normalize_id(text)
    if normalized != text:
        candidates.append(normalized)
    candidates.append(f"0{normalized}")

    for prefix in candidates:
        found = _first_match(phases_dir, prefix)
        if found is not None:
            return found

    raise ResolutionError(text, f"Phase directory not found for phase {text} in {phases_dir}")


def completion_state(phase_dir: Path) -> CompletionState:
    """Compare the number of plan definitions with completion artifacts."""
    plan_count = len(list_plans(phase_dir))
    if plan_count == 0:
        return CompletionState.NEEDS_PLANNING
    if count_summaries(phase_dir) >= plan_count:
        return CompletionState.COMPLETE
    return CompletionState.INCOMPLETE


def plan_is_complete(plan_path: Path) -> bool:
    return summary_path_for(plan_path).exists()


def load_phase(identifier: Union[str, int, Path], phases_dir: Path) -> Phase:
    """Resolve a phase and list its plans in execution order."""
    directory = resolve_phase_dir(identifier, phases_dir)
    return Phase(
        phase_id=phase_number(directory),
        directory=directory,
        plan_paths=list_plans(directory),
    )


def require_planned(phase: Phase) -> Phase:
    """Raise NeedsPlanning for a phase without plan definitions."""
    if not phase.plan_paths:
        raise NeedsPlanning(phase.phase_id)
    return phase
