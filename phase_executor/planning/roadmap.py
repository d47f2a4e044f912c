"""Milestone phase lookup in ROADMAP.md.

A milestone section starts at a ``<summary>`` line or a ``###`` heading that
mentions the version and ends at the next ``###``/``##`` heading or a
``</details>`` tag. Phases inside it are declared as checklist entries
(``- [ ] **Phase 12: ...``) or ``#### Phase 12:`` headings; references to
phases elsewhere in the text are ignored.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List

from ..errors import ResolutionError

_SECTION_END = re.compile(r"^### |^## |</details>")
_PHASE_LINE = re.compile(r"^- \[.\] \*\*Phase (\d+):|^#### Phase (\d+):")


def _section_start(version: str) -> "re.Pattern[str]":
    escaped = re.escape(version)
    return re.compile(rf"<summary>.*{escaped}|^### .* {escaped}")


def parse_milestone_phases(text: str, version: str) -> List[int]:
    """Phase numbers declared in a milestone section, sorted and unique."""
    start = _section_start(version)
    in_milestone = False
    phases = set()

    for line in text.splitlines():
        if not in_milestone:
            if start.search(line):
                in_milestone = True
            continue
        if _SECTION_END.search(line):
            break
        match = _PHASE_LINE.match(line)
        if match:
            phases.add(int(match.group(1) or match.group(2)))

    return sorted(phases)


def find_milestone_phases(roadmap_path: Path, version: str) -> List[int]:
    """Ordered phase numbers belonging to a milestone.

    Raises:
        ResolutionError: If the roadmap is missing or the milestone declares
            no phases.
    """
    if not roadmap_path.is_file():
        raise ResolutionError(str(roadmap_path), f"ROADMAP.md not found: {roadmap_path}")

    phases = parse_milestone_phases(roadmap_path.read_text(encoding="utf-8"), version)
    if not phases:
        raise ResolutionError(version, f"No phases found for milestone {version}")
    return phases
