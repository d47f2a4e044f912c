"""Pull request operations through the GitHub CLI (gh).

Exposes the review platform calls the executor uses: create a PR, find
the PR of a head branch, read its mergeability and merge state, merge it,
and read its terminal state.

``gh`` is run with ``GITHUB_TOKEN`` removed from its environment when
``clear_token_env`` is set, so it uses the operator's stored login rather
than a token exported for other tooling.
"""

from __future__ import annotations

import json
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..console import get_logger
from .git_service import GitError

logger = get_logger(__name__)


@dataclass
class PRInfo:
    """Information about a pull request."""
    number: int
    url: str
    title: str
    base_branch: str
    head_branch: str
    state: str = "open"
    already_existed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "url": self.url,
            "title": self.title,
            "base_branch": self.base_branch,
            "head_branch": self.head_branch,
            "state": self.state,
        }


@dataclass
class PRStatus:
    """Raw mergeability fields reported by GitHub."""
    mergeable: str = ""
    merge_state_status: str = ""


class PRService:
    """Service for GitHub pull request operations.

    Usage:
        prs = PRService(Path("/path/to/repo"))
        pr = prs.create_pr("phase-3/plan-01-auth", "main", "Phase 3 Plan 01: ...", body)
        status = prs.get_status(pr.number)
    """

    def __init__(
        self,
        repo_root: Path,
        cli: str = "gh",
        clear_token_env: bool = True,
        timeout: int = 60,
    ):
        self.repo_root = Path(repo_root)
        self.cli = cli
        self.clear_token_env = clear_token_env
        self.timeout = timeout

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        if self.clear_token_env:
            env.pop("GITHUB_TOKEN", None)
        return env

    def _run_cli(
        self,
        args: List[str],
        timeout: Optional[int] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a gh command.

        Raises:
            GitError: If the CLI is missing, times out, or (with check) fails.
        """
        cmd = [self.cli] + args
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                cwd=self.repo_root,
                env=self._env(),
            )
        except FileNotFoundError:
            raise GitError(f"{self.cli} CLI not found. Please install it first.")
        except subprocess.TimeoutExpired as e:
            raise GitError(f"{self.cli} command timed out: {' '.join(args[:2])}") from e

        if check and result.returncode != 0:
            error_msg = result.stderr.strip() or result.stdout.strip()
            raise GitError(
                f"{self.cli} command failed: {error_msg}",
                exit_code=result.returncode,
                output=result.stdout,
            )
        return result

    def _json(self, args: List[str]) -> Any:
        result = self._run_cli(args)
        try:
            return json.loads(result.stdout or "null")
        except json.JSONDecodeError as e:
            raise GitError(f"Unexpected {self.cli} output: {result.stdout[:200]}") from e

    def create_pr(self, head_branch: str, base_branch: str, title: str, body: str) -> PRInfo:
        """Create a pull request from ``head_branch`` into ``base_branch``.

        An existing open PR for the branch is returned instead of failing.

        Raises:
            GitError: If creation fails for any other reason.
        """
        args = [
            "pr", "create",
            "--head", head_branch,
            "--base", base_branch,
            "--title", title,
            "--body", body,
        ]
        result = self._run_cli(args, check=False)
        output = (result.stdout + result.stderr).strip()

        if result.returncode != 0:
            if "already exists" not in output:
                raise GitError(f"{self.cli} pr create failed: {output}", exit_code=result.returncode)
            number = self.find_pr_number(head_branch)
            url = _last_url(output)
            return PRInfo(
                number=number or _pr_number_from_url(url),
                url=url,
                title=title,
                base_branch=base_branch,
                head_branch=head_branch,
                already_existed=True,
            )

        url = _last_url(result.stdout)
        return PRInfo(
            number=_pr_number_from_url(url),
            url=url,
            title=title,
            base_branch=base_branch,
            head_branch=head_branch,
        )

    def find_pr_number(self, head_branch: str) -> Optional[int]:
        """Number of the open PR whose head is ``head_branch``, if any."""
        try:
            data = self._json(["pr", "list", "--head", head_branch, "--json", "number"])
        except GitError as e:
            logger.debug("PR lookup failed for %s: %s", head_branch, e)
            return None
        if isinstance(data, list) and data:
            return int(data[0]["number"])
        return None

    def get_status(self, pr_number: int) -> PRStatus:
        """Mergeability and merge state; empty fields when unavailable."""
        try:
            data = self._json(["pr", "view", str(pr_number), "--json", "mergeable,mergeStateStatus"])
        except GitError as e:
            logger.debug("PR status query failed for #%d: %s", pr_number, e)
            return PRStatus()
        return PRStatus(
            mergeable=(data or {}).get("mergeable", "") or "",
            merge_state_status=(data or {}).get("mergeStateStatus", "") or "",
        )

    def merge(self, pr_number: int) -> bool:
        """Squash-merge a PR and delete its branch. Returns True on success.

        A timed-out or unlaunchable merge returns False so the caller can
        check the remote state, which may already be MERGED.
        """
        try:
            result = self._run_cli(
                ["pr", "merge", str(pr_number), "--squash", "--delete-branch"],
                check=False,
            )
        except GitError as e:
            logger.debug("gh pr merge #%d: %s", pr_number, e)
            return False
        if result.returncode != 0:
            logger.debug("gh pr merge #%d: %s", pr_number, (result.stderr or result.stdout).strip())
        return result.returncode == 0

    def get_state(self, pr_number: int) -> str:
        """Terminal state of a PR (OPEN, CLOSED, MERGED) or "" if unknown."""
        try:
            data = self._json(["pr", "view", str(pr_number), "--json", "state"])
        except GitError:
            return ""
        return ((data or {}).get("state") or "").upper()


def _last_url(output: str) -> str:
    urls = re.findall(r"https?://\S+", output or "")
    return urls[-1] if urls else ""


def _pr_number_from_url(url: str) -> int:
    match = re.search(r"/pull/(\d+)", url or "")
    return int(match.group(1)) if match else 0
