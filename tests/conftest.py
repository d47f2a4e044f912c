"""
Shared test fixtures for phase executor tests.

This module provides pytest fixtures for unit and integration tests,
including:
- Mock Claude CLI configuration
- Temporary git repositories (with a bare remote)
- Planning tree builders (phases, plans, summaries, roadmap)
- A fake clock for polling loops
"""

import os
import subprocess
import sys
import textwrap
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure mock Claude is used by default in tests
MOCK_CLAUDE_PATH = Path(__file__).parent / "mock_claude" / "mock_claude.py"
os.environ.setdefault("PHASE_EXECUTOR_CLAUDE_CMD", f"{sys.executable} {MOCK_CLAUDE_PATH}")

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


def git(repo: Path, *args: str) -> subprocess.CompletedProcess:
    """Run a git command in ``repo`` and fail the test on error."""
    result = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True)
    assert result.returncode == 0, f"git {' '.join(args)} failed: {result.stderr}"
    return result


# =============================================================================
# Session-scoped fixtures (created once per test session)
# =============================================================================

@pytest.fixture(scope="session")
def mock_claude_path() -> Path:
    """Return path to mock Claude executable."""
    return MOCK_CLAUDE_PATH


@pytest.fixture(scope="session")
def mock_claude_cmd() -> str:
    """Command line that runs the mock Claude CLI."""
    return f"{sys.executable} {MOCK_CLAUDE_PATH}"


# =============================================================================
# Git repository fixtures
# =============================================================================

@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a git repository on ``main`` with one commit."""
    repo_path = tmp_path / "repo"
    repo_path.mkdir()

    git(repo_path, "init", "-q")
    git(repo_path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo_path, "config", "user.email", "test@example.com")
    git(repo_path, "config", "user.name", "Test User")
    git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "README.md").write_text("# Test Project\n")
    git(repo_path, "add", "README.md")
    git(repo_path, "commit", "-q", "-m", "Initial commit")
    return repo_path


@pytest.fixture
def git_repo_with_remote(git_repo: Path, tmp_path: Path) -> Path:
    """Git repository whose ``origin`` is a local bare repository."""
    remote_path = tmp_path / "remote.git"
    subprocess.run(["git", "init", "-q", "--bare", str(remote_path)], capture_output=True, check=True)
    git(git_repo, "remote", "add", "origin", str(remote_path))
    git(git_repo, "push", "-q", "-u", "origin", "main")
    return git_repo


# =============================================================================
# Planning tree fixtures
# =============================================================================

def plan_text(
    objective: str,
    tasks: Optional[List[Dict[str, str]]] = None,
    purpose: str = "",
    verification: Optional[List[str]] = None,
) -> str:
    """Render a plan definition in the on-disk tag format."""
    parts = ["# Plan", "", "<objective>", objective]
    if purpose:
        parts.append(f"Purpose: {purpose}")
    parts += ["</objective>", ""]
    for task in tasks or []:
        parts += [
            '<task type="auto">',
            f"  <name>{task.get('name', '')}</name>",
            f"  <files>{task.get('files', '')}</files>",
            "  <action>",
            f"  {task.get('action', 'Do the work')}",
            "  </action>",
            f"  <verify>{task.get('verify', 'true')}</verify>",
            f"  <done>{task.get('done', 'Done')}</done>",
            "</task>",
            "",
        ]
    if verification:
        parts += ["<verification>"] + [f"- [ ] {item}" for item in verification] + ["</verification>"]
    return "\n".join(parts) + "\n"


class PlanningTree:
    """Builds a ``.planning`` directory under a repository root."""

    def __init__(self, root: Path):
        self.root = root
        self.planning = root / ".planning"
        self.phases_dir = self.planning / "phases"
        self.phases_dir.mkdir(parents=True, exist_ok=True)

    def phase(self, dirname: str) -> Path:
        path = self.phases_dir / dirname
        path.mkdir(parents=True, exist_ok=True)
        return path

    def plan(
        self,
        phase_dir: Path,
        name: str,
        objective: str = "Do something useful",
        tasks: Optional[List[Dict[str, str]]] = None,
        purpose: str = "",
        verification: Optional[List[str]] = None,
    ) -> Path:
        """Write ``<name>-PLAN.md`` (``name`` like ``"11-01"``)."""
        path = phase_dir / f"{name}-PLAN.md"
        path.write_text(plan_text(objective, tasks, purpose, verification), encoding="utf-8")
        return path

    def summary(self, phase_dir: Path, name: str) -> Path:
        path = phase_dir / f"{name}-SUMMARY.md"
        path.write_text(f"# Summary {name}\n", encoding="utf-8")
        return path

    def roadmap(self, text: str) -> Path:
        path = self.planning / "ROADMAP.md"
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return path


@pytest.fixture
def planning_tree(tmp_path: Path) -> PlanningTree:
    """Empty planning tree rooted at a temporary directory."""
    return PlanningTree(tmp_path)


@pytest.fixture
def repo_planning_tree(git_repo_with_remote: Path) -> PlanningTree:
    """Planning tree inside a git repository with a remote."""
    return PlanningTree(git_repo_with_remote)


# =============================================================================
# Fake clock
# =============================================================================

class FakeClock:
    """Clock that records sleeps and advances instantly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Mock scenario fixtures
# =============================================================================

@pytest.fixture
def mock_scenario(monkeypatch):
    """Return a setter for the mock Claude scenario."""
    def _set(name: str) -> None:
        monkeypatch.setenv("MOCK_SCENARIO", name)
    _set("default")
    return _set


# =============================================================================
# Test markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (mock Claude + temporary git repos)"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take longer than 10 seconds"
    )
