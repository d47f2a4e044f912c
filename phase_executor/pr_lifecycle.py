"""PR lifecycle controller: open a pull request, then wait for it and merge.

The wait is a bounded polling loop over GitHub's view of the PR:

    mergeability   readiness        action
    ------------   ---------        ------
    ready          blocked          wait (checks or review pending)
    ready          clean/degraded   merge
    ready          other            wait
    conflicting    -                resolve conflicts, then keep polling
    indeterminate  -                wait (GitHub still computing)

A failed merge command is re-checked once after a short delay, since the
merge may have gone through anyway. Remote state is eventually consistent,
so the command's exit code alone is not trusted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .clock import SYSTEM_CLOCK, Clock
from .config import MergeConfig
from .conflicts import ConflictResolver
from .console import get_logger
from .errors import ConflictUnresolvable, MergeTimeout
from .planning.document import PlanDocument
from .services.git_service import GitError, GitService
from .services.pr_service import PRInfo, PRService, PRStatus
from .timeline import EventType, TimelineLogger

logger = get_logger(__name__)

PR_TITLE_OBJECTIVE_LENGTH = 50

__all__ = [
    "Mergeability",
    "MergeReadiness",
    "MergeOutcome",
    "PRLifecycle",
    "build_milestone_pr_body",
    "build_pr_body",
    "milestone_pr_title",
    "pr_title",
    "readiness_of",
    "mergeability_of",
]


class Mergeability(str, Enum):
    READY = "ready"
    CONFLICTING = "conflicting"
    INDETERMINATE = "indeterminate"


class MergeReadiness(str, Enum):
    BLOCKED = "blocked"
    CLEAN = "clean"
    DEGRADED = "degraded"
    OTHER = "other"


_MERGEABILITY = {
    "MERGEABLE": Mergeability.READY,
    "CONFLICTING": Mergeability.CONFLICTING,
}

_READINESS = {
    "BLOCKED": MergeReadiness.BLOCKED,
    "CLEAN": MergeReadiness.CLEAN,
    # Non-required checks failed
    "UNSTABLE": MergeReadiness.DEGRADED,
}


def mergeability_of(status: PRStatus) -> Mergeability:
    return _MERGEABILITY.get((status.mergeable or "").upper(), Mergeability.INDETERMINATE)


def readiness_of(status: PRStatus) -> MergeReadiness:
    return _READINESS.get((status.merge_state_status or "").upper(), MergeReadiness.OTHER)


@dataclass
class MergeOutcome:
    """Result of waiting for and merging a PR."""
    pr_number: int
    attempts: int
    race_detected: bool = False
    conflicts_resolved: int = 0


def pr_title(plan: PlanDocument) -> str:
    """``Phase P Plan N: <objective truncated to 50 chars>``."""
    return f"Phase {plan.phase_id} Plan {plan.plan_id}: {plan.objective[:PR_TITLE_OBJECTIVE_LENGTH]}"


def build_pr_body(plan: PlanDocument, base_branch: str, trunk: str = "main") -> str:
    """Markdown PR description assembled from the plan document."""
    sections = ["## Summary", "", plan.objective, ""]

    if base_branch and base_branch != trunk:
        sections += [
            f"> **Note:** This branch is based on `{base_branch}` (stacked changes).",
            f"> Merge previous PRs first, then rebase this PR on {trunk}.",
            "",
        ]

    if plan.purpose:
        sections += [f"**Purpose:** {plan.purpose}", ""]

    if plan.tasks:
        sections += ["## Tasks", ""]
        sections += [f"- [x] {task.label}" for task in plan.tasks]
        sections.append("")

    if plan.files:
        sections += ["## Files Modified", ""]
        sections += [f"- `{path}`" for path in plan.files]
        sections.append("")

    if plan.verification:
        sections += ["## Verification", ""]
        sections += [item.replace("[ ]", "[x]", 1) for item in plan.verification]
        sections.append("")

    sections += ["---", f"Plan: `{plan.path}`"]
    return "\n".join(sections) + "\n"


def milestone_pr_title(version: str, phases_completed: int) -> str:
    return f"Milestone {version}: {phases_completed} phases completed"


def build_milestone_pr_body(version: str, phases_completed: int, phase_ids: List[str]) -> str:
    """PR description for the single branch carrying a whole milestone."""
    lines = [
        f"## Milestone {version}",
        "",
        f"Completed {phases_completed} phases in a single PR.",
        "",
        "### Phases Included",
    ]
    lines += [f"- Phase {phase_id}" for phase_id in phase_ids]
    return "\n".join(lines) + "\n"


class PRLifecycle:
    """Opens PRs and drives them to a merge.

    Args:
        prs: Pull request service.
        git: Git service (local trunk refresh after merge).
        resolver: Conflict resolver for conflicting PRs.
        config: Polling budget and delays.
        trunk: Trunk branch name.
        clock: Time source for polling.
        timeline: Timeline logger.
    """

    def __init__(
        self,
        prs: PRService,
        git: GitService,
        resolver: ConflictResolver,
        config: Optional[MergeConfig] = None,
        trunk: str = "main",
        clock: Clock = SYSTEM_CLOCK,
        timeline: Optional[TimelineLogger] = None,
    ):
        self.prs = prs
        self.git = git
        self.resolver = resolver
        self.config = config or MergeConfig()
        self.trunk = trunk
        self.clock = clock
        self.timeline = timeline

    def open_change_request(self, branch: str, base: str, title: str, body: str) -> Optional[PRInfo]:
        """Create the PR for a branch; failures are logged, not raised."""
        logger.info("Creating PR...")
        try:
            pr = self.prs.create_pr(branch, base, title, body)
        except GitError as e:
            logger.warning("PR creation failed: %s", e)
            return None

        if pr.already_existed:
            logger.warning("PR already exists for %s", branch)
        else:
            logger.success("PR created: %s", pr.url or f"#{pr.number}")
        if self.timeline:
            self.timeline.log(EventType.PR_CREATED, branch=branch, details=pr.to_dict())
        return pr

    def _refresh_trunk(self) -> None:
        logger.info("Updating local %s branch...", self.trunk)
        self.git.sync_trunk(self.trunk)

    def _merged(self, pr_number: int, branch: str, attempt: int, race: bool, resolved: int) -> MergeOutcome:
        if race:
            logger.success("PR #%d was actually merged (race condition detected)", pr_number)
        else:
            logger.success("PR #%d merged successfully", pr_number)
        if self.timeline:
            self.timeline.log(
                EventType.MERGED, branch=branch, details={"pr": pr_number, "attempts": attempt, "race": race}
            )
        self._refresh_trunk()
        return MergeOutcome(pr_number=pr_number, attempts=attempt, race_detected=race, conflicts_resolved=resolved)

    def wait_and_merge(self, branch: str) -> MergeOutcome:
        """Poll the branch's PR until it merges or the budget runs out.

        Raises:
            MergeTimeout: If no PR exists, the merge is confirmed failed,
                conflicts cannot be resolved, or attempts are exhausted.
        """
        interval = self.config.poll_interval
        max_attempts = self.config.max_attempts

        logger.info("Waiting for PR on '%s' to become mergeable...", branch)
        pr_number = self.prs.find_pr_number(branch)
        if not pr_number:
            raise MergeTimeout(branch, f"No PR found for branch: {branch}")
        logger.info("PR #%d found, monitoring status...", pr_number)

        resolved = 0
        for attempt in range(1, max_attempts + 1):
            status = self.prs.get_status(pr_number)
            mergeability = mergeability_of(status)
            readiness = readiness_of(status)
            logger.debug("PR #%d mergeability: %s/%s", pr_number, status.mergeable, status.merge_state_status)

            if mergeability == Mergeability.READY:
                if readiness == MergeReadiness.BLOCKED:
                    logger.info("PR is blocked (CI running or review required), waiting...")
                elif readiness in (MergeReadiness.CLEAN, MergeReadiness.DEGRADED):
                    logger.info("Merging PR #%d...", pr_number)
                    if self.timeline:
                        self.timeline.log(EventType.MERGE_ATTEMPT, branch=branch, details={"pr": pr_number})
                    if self.prs.merge(pr_number):
                        return self._merged(pr_number, branch, attempt, race=False, resolved=resolved)

                    logger.warning("Merge command returned error, verifying PR state...")
                    self.clock.sleep(self.config.race_recheck_delay)
                    state = self.prs.get_state(pr_number)
                    if state == "MERGED":
                        return self._merged(pr_number, branch, attempt, race=True, resolved=resolved)
                    raise MergeTimeout(
                        branch,
                        f"Failed to merge PR #{pr_number} (state: {state or 'unknown'})",
                        pr_number,
                    )
                else:
                    logger.info("PR status: %s, waiting...", status.merge_state_status or "unknown")

            elif mergeability == Mergeability.CONFLICTING:
                logger.warning("PR #%d has merge conflicts - attempting auto-fix...", pr_number)
                try:
                    self.resolver.resolve(branch)
                except (ConflictUnresolvable, GitError) as e:
                    logger.error("Failed to auto-fix merge conflicts: %s", e)
                    logger.info("Please resolve conflicts manually and re-run")
                    raise MergeTimeout(branch, f"Unresolvable conflicts on {branch}: {e}", pr_number) from e
                resolved += 1
                logger.success("Conflicts resolved, waiting for GitHub to update status...")
                self.clock.sleep(self.config.post_resolve_delay)

            else:
                logger.info("PR status unknown (GitHub computing), waiting...")

            if attempt % self.config.progress_every == 0:
                elapsed = attempt * interval // 60
                logger.info("Still waiting... (%d/%d minutes)", elapsed, self.config.timeout_minutes)

            self.clock.sleep(interval)

        logger.info("You can manually merge and continue with --continue")
        raise MergeTimeout(
            branch, f"Timeout waiting for PR #{pr_number} to become mergeable", pr_number
        )
