"""Branch strategy manager.

Strategies:
- independent: every phase is based on trunk
- chain: every phase is based on the last branch of the previous phase
- single: one milestone branch receives every commit; one PR at the end

Within a phase, each plan is based on the previous plan's branch, so the
plans of one phase always form a stack. A plan whose PR was merged hands
trunk to the next plan instead, since its work is already there.
"""

from __future__ import annotations

import re
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from .planning.document import PlanDocument

BRANCH_SLUG_LENGTH = 30


class BranchStrategy(str, Enum):
    INDEPENDENT = "independent"
    CHAIN = "chain"
    SINGLE = "single"


def slugify(text: str, max_length: int = BRANCH_SLUG_LENGTH) -> str:
    """Branch-safe slug of free text.

    Lower-cases, collapses every run of characters outside ``[a-z0-9]`` into
    one hyphen, trims hyphens and truncates. Always returns a string, which
    may be empty.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return slug[:max_length].rstrip("-")


def plan_branch_name(phase_id: str, plan_id: str, objective: str = "") -> str:
    """``phase-<phase>/plan-<plan>-<slug>``, or without the slug when empty."""
    base = f"phase-{phase_id}/plan-{plan_id}"
    slug = slugify(objective)
    return f"{base}-{slug}" if slug else base


def milestone_branch_name(version: str, now: Optional[datetime] = None) -> str:
    """``milestone/<version>-YYYYmmdd-HHMMSS``."""
    now = now or datetime.now()
    return f"milestone/{version}-{now.strftime('%Y%m%d-%H%M%S')}"


class BranchPlanner:
    """Computes the base and working branch of every unit in a run.

    Args:
        strategy: Strategy selected for the run.
        trunk: Trunk branch name.
        milestone_branch: Branch shared by all units under ``single``.
    """

    def __init__(self, strategy: BranchStrategy, trunk: str = "main", milestone_branch: Optional[str] = None):
        self.strategy = BranchStrategy(strategy)
        self.trunk = trunk
        self.milestone_branch = milestone_branch
        self._previous_phase_branch: Optional[str] = None

    @property
    def is_single(self) -> bool:
        return self.strategy == BranchStrategy.SINGLE

    def phase_base(self) -> str:
        """Base branch for the next phase."""
        if self.is_single:
            if not self.milestone_branch:
                raise ValueError("single strategy requires a milestone branch")
            return self.milestone_branch
        if self.strategy == BranchStrategy.CHAIN and self._previous_phase_branch:
            return self._previous_phase_branch
        return self.trunk

    def plan_branch(self, plan: PlanDocument) -> str:
        """Working branch for a plan."""
        if self.is_single:
            return self.phase_base()
        return plan_branch_name(plan.phase_id, plan.plan_id, plan.objective)

    def next_plan_base(self, branch: str, merged: bool = False) -> str:
        """Base for the plan after one that finished on ``branch``."""
        if merged and not self.is_single:
            return self.trunk
        return branch

    def record_phase_result(self, last_branch: Optional[str], merged: bool = False) -> None:
        """Remember the last branch of a finished phase for chaining."""
        if self.strategy != BranchStrategy.CHAIN or not last_branch:
            return
        self._previous_phase_branch = self.trunk if merged else last_branch


def detect_shared_files(plans: Iterable[PlanDocument]) -> List[str]:
    """Files declared by plans of more than one phase, sorted.

    Plans of the same phase are stacked on each other, so a file shared
    only within one phase is not a conflict risk.
    """
    owners: Dict[str, Set[str]] = defaultdict(set)
    for plan in plans:
        for path in plan.files:
            owners[path].add(plan.phase_id)
    return sorted(path for path, phases in owners.items() if len(phases) > 1)


def shared_file_risk(strategy: BranchStrategy, auto_merge: bool, shared: List[str]) -> bool:
    """Whether shared files make the strategy likely to conflict post-hoc."""
    return bool(shared) and BranchStrategy(strategy) == BranchStrategy.INDEPENDENT and not auto_merge
