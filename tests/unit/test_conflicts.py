"""Tests for conflict classification and resolution."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import git
from phase_executor.agents.claude import ClaudeResult, ClaudeRunner
from phase_executor.config import ConflictRuleConfig, ConflictsConfig
from phase_executor.conflicts import ConflictResolver, ConflictRule, classify, rules_from_config
from phase_executor.errors import ConflictUnresolvable
from phase_executor.services.git_service import GitService, MergeAttempt


@pytest.mark.unit
class TestClassify:
    """Tests for the ordered classification table."""

    @pytest.mark.parametrize(
        "path,branch,expected",
        [
            ("web/src/app.test.ts", "phase-3/plan-01-auth", "unrelated"),
            ("internal/handlers/user_test.go", "phase-3/plan-01-auth", "unrelated"),
            ("mobile/ios/App.swift", "phase-3/plan-01-auth", "unrelated"),
            ("mobile/ios/App.swift", "phase-4/plan-01-ios-push", "related"),
            ("Sources/View.swift", "phase-5/plan-02-mobile-shell", "related"),
            ("README.md", "phase-3/plan-01-auth", "unrelated"),
            ("scripts/pre-push-checks.sh", "phase-3/plan-01-auth", "unrelated"),
            ("internal/core/engine.go", "phase-3/plan-01-auth", "related"),
            ("b.core", "phase-3/plan-01-auth", "related"),
        ],
    )
    def test_default_rules(self, path, branch, expected):
        result = classify([path], branch)

        assert (path in result.unrelated) == (expected == "unrelated")
        assert (path in result.related) == (expected == "related")

    def test_order_preserved(self):
        result = classify(["b.go", "a.test.ts", "c.go", "d.md"], "phase-1/plan-01")

        assert result.unrelated == ["a.test.ts", "d.md"]
        assert result.related == ["b.go", "c.go"]
        assert result.all == ["a.test.ts", "d.md", "b.go", "c.go"]

    def test_first_match_wins(self):
        rules = [
            ConflictRule(patterns=("docs/*",), classification="related"),
            ConflictRule(patterns=("*.md",), classification="unrelated"),
        ]

        result = classify(["docs/api.md", "CHANGELOG.md"], "b", rules)

        assert result.related == ["docs/api.md"]
        assert result.unrelated == ["CHANGELOG.md"]

    def test_rules_from_config(self):
        rules = rules_from_config([ConflictRuleConfig(patterns=["*.lock"], classification="unrelated")])

        assert classify(["go.sum.lock"], "b", rules).unrelated == ["go.sum.lock"]
        assert rules_from_config([]) != []


def _fake_git(conflicted, remaining_markers=()):
    git_mock = MagicMock(spec=GitService)
    git_mock.remote = "origin"
    git_mock.current_branch.return_value = "main"
    git_mock.merge.return_value = MergeAttempt(clean=False, conflicted=list(conflicted))
    git_mock.conflicted_paths.return_value = []
    git_mock.files_with_conflict_markers.return_value = list(remaining_markers)
    git_mock.staged_paths.return_value = []
    git_mock.changed_paths.return_value = []
    return git_mock


def _runner(output: str, success: bool = True) -> MagicMock:
    runner = MagicMock()
    runner.invoke.return_value = ClaudeResult(success=success, output=output, exit_code=0, duration_ms=1)
    return runner


@pytest.mark.unit
class TestResolverWithFakes:
    """Tests for the resolver's decision flow."""

    def test_markers_left_by_agent_fail_and_abort(self):
        git_mock = _fake_git(["a.test.ts", "b.core"], remaining_markers=["b.core"])
        runner = _runner("CONFLICTS_FIXED")

        with pytest.raises(ConflictUnresolvable) as exc_info:
            ConflictResolver(git_mock, runner).resolve("phase-3/plan-01-auth")

        git_mock.take_theirs.assert_called_once_with("a.test.ts")
        prompt = runner.invoke.call_args.args[0]
        assert "b.core" in prompt
        assert "a.test.ts" not in prompt
        assert exc_info.value.remaining == ["b.core"]
        git_mock.commit_no_edit.assert_not_called()
        git_mock.push.assert_not_called()
        git_mock.abort_merge.assert_called_once()
        assert git_mock.checkout.call_args_list[-1].args == ("main",)

    def test_markers_in_other_changed_files_fail(self):
        git_mock = _fake_git(["a.test.ts"], remaining_markers=["docs/setup.go"])
        git_mock.changed_paths.return_value = ["docs/setup.go", "a.test.ts"]

        with pytest.raises(ConflictUnresolvable) as exc_info:
            ConflictResolver(git_mock, _runner("")).resolve("phase-3/plan-01-auth")

        git_mock.files_with_conflict_markers.assert_called_once_with(["a.test.ts", "docs/setup.go"])
        assert exc_info.value.remaining == ["docs/setup.go"]
        git_mock.push.assert_not_called()
        git_mock.abort_merge.assert_called_once()

    def test_unrelated_only_needs_no_agent(self):
        git_mock = _fake_git(["a.test.ts", "README.md"])
        runner = _runner("")

        resolution = ConflictResolver(git_mock, runner).resolve("phase-3/plan-01-auth")

        runner.invoke.assert_not_called()
        assert resolution.clean_merge is False
        git_mock.commit_no_edit.assert_called_once()
        git_mock.push.assert_called_once_with("phase-3/plan-01-auth")

    def test_clean_merge_is_pushed(self):
        git_mock = _fake_git([])
        git_mock.merge.return_value = MergeAttempt(clean=True)

        resolution = ConflictResolver(git_mock, _runner("")).resolve("feature")

        assert resolution.clean_merge is True
        git_mock.merge.assert_called_once_with("origin/main")
        git_mock.push.assert_called_once_with("feature")

    def test_agent_failure_signal(self):
        git_mock = _fake_git(["core.go"])

        with pytest.raises(ConflictUnresolvable, match="semantic clash"):
            ConflictResolver(git_mock, _runner("CONFLICTS_FAILED: semantic clash")).resolve("feature")

    def test_ambiguous_agent_without_staged_files_fails(self):
        git_mock = _fake_git(["core.go"])

        with pytest.raises(ConflictUnresolvable):
            ConflictResolver(git_mock, _runner("I tried.")).resolve("feature")

    def test_ambiguous_agent_with_staged_files_succeeds(self):
        git_mock = _fake_git(["core.go"])
        git_mock.staged_paths.return_value = ["core.go"]

        resolution = ConflictResolver(git_mock, _runner("I tried.")).resolve("feature")

        assert resolution.conflicts.related == ["core.go"]

    def test_build_command_in_prompt(self):
        git_mock = _fake_git(["core.go"])
        runner = _runner("CONFLICTS_FIXED")
        config = ConflictsConfig(build_command="go build ./...", extra_instructions=["Regenerate mocks"])

        ConflictResolver(git_mock, runner, config=config).resolve("feature")

        prompt = runner.invoke.call_args.args[0]
        assert "Run 'go build ./...'" in prompt
        assert "Regenerate mocks" in prompt


@pytest.mark.integration
class TestResolverWithRepository:
    """Resolution against a real repository and the mock agent."""

    def _commit(self, repo: Path, files: dict, message: str) -> None:
        for name, content in files.items():
            (repo / name).write_text(content)
            git(repo, "add", name)
        git(repo, "commit", "-q", "-m", message)

    def test_resolves_pushes_and_restores_branch(self, git_repo_with_remote: Path, mock_claude_cmd, mock_scenario):
        repo = git_repo_with_remote
        self._commit(repo, {"shared.go": "base\n", "notes.md": "base\n"}, "base")
        git(repo, "push", "-q", "origin", "main")
        git(repo, "checkout", "-q", "-b", "feature")
        self._commit(repo, {"shared.go": "feature line\n", "notes.md": "feature notes\n"}, "feature")
        git(repo, "push", "-q", "-u", "origin", "feature")
        git(repo, "checkout", "-q", "main")
        self._commit(repo, {"shared.go": "main line\n", "notes.md": "main notes\n"}, "main")
        git(repo, "push", "-q", "origin", "main")

        runner = ClaudeRunner(claude_cmd=mock_claude_cmd, repo_root=repo, echo=False)
        resolution = ConflictResolver(GitService(repo), runner).resolve("feature")

        assert resolution.conflicts.unrelated == ["notes.md"]
        assert resolution.conflicts.related == ["shared.go"]
        assert GitService(repo).current_branch() == "main"
        shared = git(repo, "show", "origin/feature:shared.go").stdout
        assert "feature line" in shared
        assert "main line" in shared
        assert "<<<<<<<" not in shared
        assert git(repo, "show", "origin/feature:notes.md").stdout == "main notes\n"
