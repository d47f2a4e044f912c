"""Git operations service.

Wraps the git CLI for the operations the executor needs:
- Branch inspection, checkout and creation
- Trunk synchronisation (fetch, checkout, pull)
- Push with a ``--force-with-lease`` fallback
- Merges with conflict enumeration, per-file resolution and abort
- Commit counting and conflict-marker scanning for verification

Failures raise GitError unless the call is made with ``check=False``.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from ..console import get_logger

logger = get_logger(__name__)

# Only the opening and closing lines count; a lone "=======" is also a
# Markdown setext underline.
_CONFLICT_MARKER = re.compile(r"^(<{7}|>{7})( |$)", re.MULTILINE)


class GitError(Exception):
    """Raised when a git operation fails."""

    def __init__(self, message: str, exit_code: int = 1, output: str = ""):
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)


@dataclass
class MergeAttempt:
    """Result of merging a ref into the current branch."""
    clean: bool
    output: str = ""
    conflicted: List[str] = field(default_factory=list)


class GitService:
    """Service for git operations on one repository.

    Usage:
        git = GitService(Path("/path/to/repo"))
        git.sync_trunk("main")
        git.checkout_or_create("phase-3/plan-01-auth", base="main")
        git.push("phase-3/plan-01-auth")
    """

    def __init__(self, repo_root: Path, remote: str = "origin", timeout: int = 120):
        """Initialize the git service.

        Args:
            repo_root: Repository working directory.
            remote: Remote used for fetch/pull/push.
            timeout: Default timeout for git operations in seconds.
        """
        self.repo_root = Path(repo_root)
        self.remote = remote
        self.timeout = timeout

    def _run_git(
        self,
        args: List[str],
        timeout: Optional[int] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a git command.

        Args:
            args: Git command arguments.
            timeout: Timeout in seconds.
            check: If True, raise on non-zero exit.

        Returns:
            CompletedProcess instance.

        Raises:
            GitError: If check is True and command fails.
        """
        cmd = ["git"] + args
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                cwd=self.repo_root,
            )
        except subprocess.TimeoutExpired as e:
            raise GitError(f"Git command timed out: {' '.join(args)}") from e

        if check and result.returncode != 0:
            error_msg = result.stderr.strip() or result.stdout.strip()
            raise GitError(
                f"Git command failed ({' '.join(args[:2])}): {error_msg}",
                exit_code=result.returncode,
                output=result.stdout,
            )
        return result

    def _lines(self, args: List[str]) -> List[str]:
        result = self._run_git(args, check=False)
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # =========================================================================
    # Branches
    # =========================================================================

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def branch_exists(self, branch_name: str) -> bool:
        """Check whether a local branch exists."""
        result = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"],
            check=False,
        )
        return result.returncode == 0

    def checkout(self, branch_name: str) -> None:
        self._run_git(["checkout", branch_name])

    def create_branch(self, branch_name: str, base_branch: Optional[str] = None) -> None:
        """Create a branch and switch to it.

        Raises:
            GitError: If the branch already exists or creation fails.
        """
        if self.branch_exists(branch_name):
            raise GitError(f"Branch already exists: {branch_name}")
        args = ["checkout", "-b", branch_name]
        if base_branch:
            args.append(base_branch)
        self._run_git(args)

    def checkout_or_create(self, branch_name: str, base_branch: Optional[str] = None) -> bool:
        """Check out a branch, creating it from ``base_branch`` if missing.

        Returns:
            True if the branch was created.
        """
        if self.branch_exists(branch_name):
            logger.info("Branch exists, checking out...")
            self.checkout(branch_name)
            return False
        logger.info("Creating new branch from %s...", base_branch or self.current_branch())
        self.create_branch(branch_name, base_branch)
        return True

    # =========================================================================
    # Remote operations
    # =========================================================================

    def fetch(self, branch: Optional[str] = None) -> None:
        args = ["fetch", self.remote]
        if branch:
            args.append(branch)
        self._run_git(args)

    def pull(self, branch: str) -> None:
        self._run_git(["pull", self.remote, branch])

    def push(self, branch: str) -> None:
        """Push a branch, setting upstream; retry with --force-with-lease.

        The retry covers branches rewritten by a previous run of the same
        plan.
        """
        result = self._run_git(["push", "-u", self.remote, branch], check=False)
        if result.returncode == 0:
            return
        logger.debug("Plain push rejected, retrying with --force-with-lease")
        self._run_git(["push", "--force-with-lease", self.remote, branch])

    def sync_trunk(self, trunk: str = "main") -> None:
        """Fetch, check out and fast-forward the trunk branch.

        Network failures are logged and tolerated so offline runs can still
        proceed from the local trunk.
        """
        for args in (["fetch", self.remote, trunk], ["checkout", trunk], ["pull", self.remote, trunk]):
            result = self._run_git(args, check=False)
            if result.returncode != 0:
                logger.warning(
                    "git %s failed: %s", " ".join(args[:1]), (result.stderr or result.stdout).strip()
                )

    # =========================================================================
    # Merging
    # =========================================================================

    def merge(self, ref: str) -> MergeAttempt:
        """Merge ``ref`` into the current branch without opening an editor."""
        result = self._run_git(["merge", ref, "--no-edit"], check=False)
        output = (result.stdout + result.stderr).strip()
        if result.returncode == 0:
            return MergeAttempt(clean=True, output=output)
        return MergeAttempt(clean=False, output=output, conflicted=self.conflicted_paths())

    def conflicted_paths(self) -> List[str]:
        """Paths with unresolved (unmerged) conflicts."""
        return self._lines(["diff", "--name-only", "--diff-filter=U"])

    def take_theirs(self, path: str) -> None:
        """Resolve a conflicted path with the incoming side and stage it."""
        self._run_git(["checkout", "--theirs", "--", path])
        self._run_git(["add", "--", path])

    def abort_merge(self) -> None:
        result = self._run_git(["merge", "--abort"], check=False)
        if result.returncode != 0:
            logger.debug("git merge --abort: %s", result.stderr.strip())

    def commit_no_edit(self) -> None:
        self._run_git(["commit", "--no-edit"])

    def add_all(self) -> None:
        self._run_git(["add", "-A"])

    def commit(self, message: str) -> bool:
        """Commit whatever is staged.

        Returns:
            False if there was nothing to commit.
        """
        if not self.staged_paths():
            return False
        self._run_git(["commit", "-m", message])
        return True

    def staged_paths(self) -> List[str]:
        return self._lines(["diff", "--cached", "--name-only"])

    def changed_paths(self) -> List[str]:
        """Tracked paths that differ from HEAD, staged or not."""
        return self._lines(["diff", "--name-only", "HEAD"])

    def commit_count(self, ref: str = "HEAD") -> int:
        """Number of commits reachable from ``ref`` (0 for an empty repo)."""
        result = self._run_git(["rev-list", "--count", ref], check=False)
        if result.returncode != 0:
            return 0
        return int(result.stdout.strip() or 0)

    def files_with_conflict_markers(self, paths: Iterable[str]) -> List[str]:
        """Subset of ``paths`` that still contain conflict marker lines."""
        marked = []
        for path in paths:
            full = self.repo_root / path
            if not full.is_file():
                continue
            try:
                text = full.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            if _CONFLICT_MARKER.search(text):
                marked.append(path)
        return marked

    def is_git_repo(self) -> bool:
        result = self._run_git(["rev-parse", "--git-dir"], check=False)
        return result.returncode == 0
