"""Pre-push checks with escalating repair.

Before a branch is pushed, the repository's check script (build, type check,
lint) runs. A failing check is repaired in stages, re-running the script
after each one:

1. configured auto-fix commands, then ``git add -A``
2. an agent session asked to fix the failures (FIXES sentinels)

A repository without an executable check script is pushed unchecked.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Optional

from .agents.claude import ClaudeRunner
from .agents.prompts import build_prepush_fix_prompt
from .config import PrePushConfig
from .console import get_logger
from .errors import PrePushFailure
from .exec import ExecResult, run_command
from .services.git_service import GitError, GitService
from .signals import FIXES, interpret

logger = get_logger(__name__)

AUTOFIX_COMMIT_MESSAGE = "fix: auto-fix pre-push check issues"


class PrePushRunner:
    """Runs the pre-push check script and repairs failures.

    Args:
        config: Check command, auto-fix commands and timeout.
        repo_root: Repository root the script runs in.
        git: Git service used to stage and commit auto-fixes.
        runner: Claude runner for the agent fix pass. None disables it.
        commit_trailer: Trailer for the agent's fix commit.
        command_runner: Command runner (``exec.run_command`` signature).
        dry_run: Log intended actions without running anything.
    """

    def __init__(
        self,
        config: PrePushConfig,
        repo_root: Path,
        git: GitService,
        runner: Optional[ClaudeRunner] = None,
        commit_trailer: str = "",
        command_runner: Callable[..., ExecResult] = run_command,
        dry_run: bool = False,
    ):
        self.config = config
        self.repo_root = Path(repo_root)
        self.git = git
        self.runner = runner
        self.commit_trailer = commit_trailer
        self.command_runner = command_runner
        self.dry_run = dry_run

    @property
    def script(self) -> Optional[Path]:
        """The check script, if configured and executable."""
        if not self.config.command:
            return None
        path = Path(self.config.command)
        if not path.is_absolute():
            path = self.repo_root / path
        if path.is_file() and os.access(path, os.X_OK):
            return path
        return None

    def _check(self, script: Path) -> ExecResult:
        result = self.command_runner([str(script)], cwd=self.repo_root, timeout=self.config.timeout)
        if not result.success:
            logger.debug("Pre-push check output:\n%s", result.tail())
        return result

    def _autofix(self) -> None:
        for command in self.config.autofix:
            logger.info("Running auto-fix: %s", command)
            result = self.command_runner(command, cwd=self.repo_root, timeout=self.config.timeout, shell=True)
            if not result.success:
                logger.warning("Auto-fix command failed (exit %d): %s", result.exit_code, command)
        try:
            self.git.add_all()
        except GitError as e:
            logger.warning("Could not stage auto-fix changes: %s", e)

    def _agent_fix(self, failure: ExecResult, label: str) -> None:
        prompt = build_prepush_fix_prompt(
            self.config.command,
            failure_output=failure.tail(40),
            commit_trailer=self.commit_trailer,
        )
        result = self.runner.invoke(prompt, name=f"fix-prepush-{label}")
        outcome = interpret(result.output, FIXES)
        if outcome.succeeded:
            logger.success("Agent fixed the issues")
        elif outcome.failed:
            logger.error("Agent could not fix all issues - manual intervention required")
            raise PrePushFailure(f"Agent could not fix pre-push failures: {outcome.reason or 'no reason given'}")

    def run(self, label: str = "branch", commit_autofix: bool = False, agent_fix: bool = True) -> bool:
        """Run the checks, repairing failures until they pass.

        Args:
            label: Name used for the agent session log.
            commit_autofix: Commit staged auto-fix changes before re-checking.
            agent_fix: Escalate to an agent session if auto-fix is not enough.

        Returns:
            True if checks ran and passed, False if there is no check script.

        Raises:
            PrePushFailure: If the checks still fail after every repair stage.
        """
        script = self.script
        if script is None:
            logger.debug("No executable pre-push check script, skipping")
            return False

        if self.dry_run:
            logger.info("[DRY RUN] Would run pre-push checks: %s", self.config.command)
            return True

        logger.info("Running pre-push checks...")
        failure = self._check(script)
        if failure.success:
            return True

        logger.warning("Pre-push checks failed - attempting auto-fix...")
        self._autofix()
        if commit_autofix:
            try:
                self.git.commit(AUTOFIX_COMMIT_MESSAGE)
            except GitError as e:
                logger.warning("Could not commit auto-fix changes: %s", e)

        failure = self._check(script)
        if failure.success:
            logger.success("Auto-fix resolved issues")
            return True

        if not agent_fix or self.runner is None:
            logger.error("Pre-push checks still failing after auto-fix")
            raise PrePushFailure("Pre-push checks still failing after auto-fix")

        logger.warning("Auto-fix didn't resolve all issues - asking the agent to fix...")
        self._agent_fix(failure, label)

        if not self._check(script).success:
            logger.error("Pre-push checks still failing after fixes - stopping")
            raise PrePushFailure("Pre-push checks still failing after fixes")

        logger.success("All issues fixed")
        return True
