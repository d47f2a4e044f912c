"""Conflict resolver for branches whose PR reports merge conflicts.

Trunk is merged into the branch. Conflicting files are classified by an
ordered rule table (first match wins, unmatched files are related):

    unrelated  - take trunk's version and stage it
    related    - hand to an agent repair session

The merge is committed and pushed only when no unmerged path remains and
no tracked file changed by the merge (conflicting or not) holds a conflict
marker. Every failure aborts the merge and restores the branch that was
checked out before.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Iterator, List, Optional, Sequence

from .agents.claude import ClaudeRunner
from .agents.prompts import build_conflict_prompt
from .config import ConflictRuleConfig, ConflictsConfig
from .console import get_logger
from .errors import AgentFailure, ConflictUnresolvable
from .services.git_service import GitError, GitService
from .signals import CONFLICTS, Evidence, corroborate, interpret
from .timeline import EventType, TimelineLogger

logger = get_logger(__name__)

RELATED = "related"
UNRELATED = "unrelated"


@dataclass(frozen=True)
class ConflictRule:
    """One row of the classification table.

    Attributes:
        patterns: Shell-style globs matched against the whole path.
        classification: ``related`` or ``unrelated``.
        topic_tokens: If any token occurs in the branch name, the file is
            related to the branch's work and the opposite classification
            applies.
    """
    patterns: Sequence[str]
    classification: str
    topic_tokens: Sequence[str] = ()

    def matches(self, path: str) -> bool:
        return any(fnmatchcase(path, pattern) for pattern in self.patterns)

    def classify(self, branch: str) -> str:
        if self.topic_tokens and any(token in branch for token in self.topic_tokens):
            return RELATED if self.classification == UNRELATED else UNRELATED
        return self.classification


DEFAULT_RULES: List[ConflictRule] = [
    ConflictRule(
        patterns=("*.test.ts", "*.test.tsx", "*_test.go", "*.spec.ts", "*.spec.tsx"),
        classification=UNRELATED,
    ),
    ConflictRule(
        patterns=("mobile/ios/*", "*.swift"),
        classification=UNRELATED,
        topic_tokens=("ios", "mobile"),
    ),
    ConflictRule(
        patterns=("scripts/pre-push-checks.sh", ".swiftlint.yml", "*.md"),
        classification=UNRELATED,
    ),
]


def rules_from_config(rules: List[ConflictRuleConfig]) -> List[ConflictRule]:
    if not rules:
        return list(DEFAULT_RULES)
    return [
        ConflictRule(
            patterns=tuple(rule.patterns),
            classification=rule.classification,
            topic_tokens=tuple(rule.topic_tokens),
        )
        for rule in rules
    ]


@dataclass
class ConflictSet:
    """Conflicting paths split by classification, in input order."""
    unrelated: List[str] = field(default_factory=list)
    related: List[str] = field(default_factory=list)

    @property
    def all(self) -> List[str]:
        return self.unrelated + self.related


def classify(paths: Sequence[str], branch: str, rules: Optional[Sequence[ConflictRule]] = None) -> ConflictSet:
    """Split conflicting paths into unrelated and related files."""
    rules = DEFAULT_RULES if rules is None else rules
    result = ConflictSet()
    for path in paths:
        label = RELATED
        for rule in rules:
            if rule.matches(path):
                label = rule.classify(branch)
                break
        (result.unrelated if label == UNRELATED else result.related).append(path)
    return result


@dataclass
class ConflictResolution:
    """What the resolver did for a branch."""
    branch: str
    clean_merge: bool
    conflicts: ConflictSet = field(default_factory=ConflictSet)


class ConflictResolver:
    """Merges trunk into a branch and repairs the resulting conflicts.

    Args:
        git: Git service for the repository.
        runner: Claude runner for the repair session.
        config: Conflict settings (rule table, build command, hints).
        trunk: Trunk branch name.
        timeline: Timeline logger.
    """

    def __init__(
        self,
        git: GitService,
        runner: ClaudeRunner,
        config: Optional[ConflictsConfig] = None,
        trunk: str = "main",
        timeline: Optional[TimelineLogger] = None,
    ):
        self.git = git
        self.runner = runner
        self.config = config or ConflictsConfig()
        self.rules = rules_from_config(self.config.rules)
        self.trunk = trunk
        self.timeline = timeline

    @contextlib.contextmanager
    def _on_branch(self, branch: str) -> Iterator[None]:
        """Check out ``branch``; abort any merge and restore on the way out."""
        original = self.git.current_branch()
        try:
            self.git.checkout(branch)
        except GitError as e:
            raise ConflictUnresolvable(branch, f"Failed to checkout branch: {branch}") from e
        try:
            yield
        except BaseException:
            self.git.abort_merge()
            raise
        finally:
            try:
                self.git.checkout(original)
            except GitError as e:
                logger.warning("Could not restore branch %s: %s", original, e)

    def resolve(self, branch: str) -> ConflictResolution:
        """Merge trunk into ``branch``, repair conflicts, commit and push.

        Raises:
            ConflictUnresolvable: If conflicts remain after every repair.
        """
        logger.info("Attempting to fix merge conflicts on '%s'...", branch)
        try:
            with self._on_branch(branch):
                resolution = self._resolve_checked_out(branch)
        except ConflictUnresolvable as e:
            if self.timeline:
                self.timeline.log(EventType.CONFLICT_FAILED, branch=branch, error=str(e))
            raise
        if self.timeline:
            self.timeline.log(
                EventType.CONFLICT_RESOLVED,
                branch=branch,
                details={
                    "clean_merge": resolution.clean_merge,
                    "unrelated": resolution.conflicts.unrelated,
                    "related": resolution.conflicts.related,
                },
            )
        return resolution

    def _resolve_checked_out(self, branch: str) -> ConflictResolution:
        try:
            self.git.fetch(self.trunk)
        except GitError as e:
            logger.warning("Could not fetch %s: %s", self.trunk, e)

        attempt = self.git.merge(f"{self.git.remote}/{self.trunk}")
        if attempt.clean:
            logger.info("No conflicts detected during merge")
            self._push(branch)
            return ConflictResolution(branch=branch, clean_merge=True)

        if not attempt.conflicted:
            raise ConflictUnresolvable(branch, "Merge failed but no conflicting files found")

        logger.info("Conflicting files:")
        for path in attempt.conflicted:
            logger.info("  - %s", path)

        conflicts = classify(attempt.conflicted, branch, self.rules)

        if conflicts.unrelated:
            logger.info("Accepting %s's version for unrelated files...", self.trunk)
            for path in conflicts.unrelated:
                self.git.take_theirs(path)
                logger.info("  %s", path)

        if conflicts.related:
            self._repair(branch, conflicts.related)

        remaining = self.git.conflicted_paths()
        if remaining:
            raise ConflictUnresolvable(
                branch, f"Still have {len(remaining)} unresolved conflicts", remaining
            )
        touched = sorted(set(conflicts.all) | set(self.git.changed_paths()))
        marked = self.git.files_with_conflict_markers(touched)
        if marked:
            raise ConflictUnresolvable(
                branch, f"Conflict markers remain in: {', '.join(marked)}", marked
            )

        logger.info("Committing merge resolution...")
        try:
            self.git.commit_no_edit()
        except GitError as e:
            raise ConflictUnresolvable(branch, f"Failed to commit merge: {e}") from e

        self._push(branch)
        logger.success("Merge conflicts resolved and pushed")
        return ConflictResolution(branch=branch, clean_merge=False, conflicts=conflicts)

    def _push(self, branch: str) -> None:
        logger.info("Pushing resolved merge...")
        try:
            self.git.push(branch)
        except GitError as e:
            raise ConflictUnresolvable(branch, f"Failed to push merge resolution: {e}") from e

    def _repair(self, branch: str, files: List[str]) -> None:
        logger.info("Using agent to fix related files...")
        prompt = build_conflict_prompt(
            branch,
            files,
            trunk=self.trunk,
            build_command=self.config.build_command,
            extra_instructions=self.config.extra_instructions,
        )
        result = self.runner.invoke(prompt, name=f"fix-conflicts-{branch}")
        if not result.success:
            raise ConflictUnresolvable(branch, "Agent execution failed during conflict repair", files)

        outcome = interpret(result.output, CONFLICTS)
        if outcome.failed:
            raise ConflictUnresolvable(
                branch, f"Agent could not fix conflicts: {outcome.reason or 'no reason given'}", files
            )
        if outcome.ambiguous:
            logger.warning("Agent finished without explicit signal, checking state...")
            unmerged = set(self.git.conflicted_paths())
            repaired = [p for p in self.git.staged_paths() if p in files and p not in unmerged]
            try:
                corroborate(outcome, Evidence(staged_files=len(repaired)), what="Conflict repair")
            except AgentFailure as e:
                raise ConflictUnresolvable(branch, str(e), files) from e
        else:
            logger.success("Agent fixed the conflicts")
