"""Completion signal interpretation for agent sessions.

Agents report how a session ended by printing a sentinel token on its own
line, for example:

    TASK_COMPLETE
    TASK_FAILED: go build fails in internal/handlers

Each dispatch kind has its own sentinel pair. ``interpret`` turns raw
session output into one of three outcomes:

- SUCCESS: the success sentinel is present (it wins over a failure token)
- FAILURE: only the failure sentinel is present
- AMBIGUOUS: neither is present; the caller must ``corroborate`` the result
  against repository evidence before trusting it
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import AgentFailure


class Outcome(str, Enum):
    """How an agent session ended."""
    SUCCESS = "success"
    FAILURE = "failure"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class SentinelPair:
    """Success and failure tokens for one kind of dispatch."""
    success: str
    failure: str


TASK = SentinelPair("TASK_COMPLETE", "TASK_FAILED")
PLAN = SentinelPair("PLAN_COMPLETE", "PLAN_FAILED")
SUMMARY = SentinelPair("SUMMARY_COMPLETE", "SUMMARY_FAILED")
CONFLICTS = SentinelPair("CONFLICTS_FIXED", "CONFLICTS_FAILED")
FIXES = SentinelPair("FIXES_COMPLETE", "FIXES_FAILED")


@dataclass
class AgentOutcome:
    """Interpreted result of an agent session."""
    outcome: Outcome
    reason: Optional[str] = None
    raw_line: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @property
    def failed(self) -> bool:
        return self.outcome == Outcome.FAILURE

    @property
    def ambiguous(self) -> bool:
        return self.outcome == Outcome.AMBIGUOUS


@dataclass
class Evidence:
    """Repository state observed after an ambiguous session.

    Attributes:
        new_commits: Commits added on the branch during the session.
        artifact_created: The unit's completion artifact now exists.
        staged_files: Files staged in the index (conflict repair sessions).
    """
    new_commits: int = 0
    artifact_created: bool = False
    staged_files: int = 0

    @property
    def shows_progress(self) -> bool:
        return self.new_commits > 0 or self.artifact_created or self.staged_files > 0


def _token_pattern(token: str) -> "re.Pattern[str]":
    # Word boundaries keep TASK_COMPLETE from matching SUBTASK_COMPLETED
    return re.compile(rf"(?<![A-Za-z0-9_]){re.escape(token)}(?![A-Za-z0-9_])")


def interpret(output: str, pair: SentinelPair) -> AgentOutcome:
    """Classify agent output against a sentinel pair.

    Args:
        output: Full text output of the session.
        pair: Sentinel pair for the dispatch kind.

    Returns:
        AgentOutcome. The failure reason is the text after ``<FAILED>:`` on
        the first line carrying the failure token.
    """
    output = output or ""
    success = _token_pattern(pair.success).search(output)
    if success:
        line = output[output.rfind("\n", 0, success.start()) + 1:].split("\n", 1)[0]
        return AgentOutcome(Outcome.SUCCESS, raw_line=line.strip())

    failure_pattern = _token_pattern(pair.failure)
    for line in output.splitlines():
        match = failure_pattern.search(line)
        if match:
            reason = line[match.end():].lstrip(" :").strip() or None
            return AgentOutcome(Outcome.FAILURE, reason=reason, raw_line=line.strip())

    return AgentOutcome(Outcome.AMBIGUOUS)


def corroborate(outcome: AgentOutcome, evidence: Evidence, what: str = "agent session") -> AgentOutcome:
    """Resolve an ambiguous outcome against repository evidence.

    Definite outcomes pass through unchanged. An ambiguous outcome becomes
    SUCCESS only when the evidence shows progress (a new commit, a new
    completion artifact or staged files).

    Raises:
        AgentFailure: If the outcome is ambiguous and nothing corroborates it.
    """
    if not outcome.ambiguous:
        return outcome
    if evidence.shows_progress:
        return AgentOutcome(Outcome.SUCCESS, reason="corroborated by repository state")
    raise AgentFailure(
        f"{what} ended without a completion signal and made no observable progress",
        reason="no completion signal",
    )
