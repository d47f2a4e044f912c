"""Error taxonomy for the phase executor.

Every failure a run can end in maps to one of these exceptions:
- ResolutionError: an identifier does not resolve to a phase or plan
- NeedsPlanning: a phase has no plan definitions yet (hard stop)
- AgentFailure: an agent session failed or produced no corroborating evidence
- ConflictUnresolvable: conflict markers remain after auto and agent repair
- MergeTimeout: a pull request could not be merged within its budget
- InfraUnavailable: auxiliary test infrastructure could not be provisioned
- PrePushFailure: pre-push checks still fail after all fix attempts
"""

from __future__ import annotations

from typing import Optional


class ExecutorError(Exception):
    """Base class for all phase executor errors."""


class ResolutionError(ExecutorError):
    """Raised when an identifier does not match any unit on disk."""

    def __init__(self, identifier: str, message: Optional[str] = None):
        self.identifier = identifier
        super().__init__(message or f"Could not resolve: {identifier}")


class NeedsPlanning(ExecutorError):
    """Raised when a phase has zero plan definitions.

    This signals an external prerequisite rather than a bug, so milestone
    runs stop instead of skipping ahead.
    """

    def __init__(self, phase_id: str):
        self.phase_id = phase_id
        super().__init__(f"Phase {phase_id} has no plans and needs planning")


class AgentFailure(ExecutorError):
    """Raised when an agent dispatch does not end in a trustworthy success."""

    def __init__(self, message: str, reason: Optional[str] = None, log_path: Optional[str] = None):
        self.reason = reason
        self.log_path = log_path
        super().__init__(message)


class ConflictUnresolvable(ExecutorError):
    """Raised when a branch still has conflicts after every repair pass."""

    def __init__(self, branch: str, message: str, remaining: Optional[list] = None):
        self.branch = branch
        self.remaining = list(remaining or [])
        super().__init__(message)


class MergeTimeout(ExecutorError):
    """Raised when a pull request cannot be merged.

    Fatal to the unit being merged; the run stops because later units may
    use the unmerged branch as their base.
    """

    def __init__(self, branch: str, message: str, pr_number: Optional[int] = None):
        self.branch = branch
        self.pr_number = pr_number
        super().__init__(message)


class InfraUnavailable(ExecutorError):
    """Raised inside the infra gate when provisioning is impossible.

    The gate logs it and lets the dependent task proceed.
    """


class PrePushFailure(ExecutorError):
    """Raised when pre-push checks keep failing after auto-fix and agent fix."""
