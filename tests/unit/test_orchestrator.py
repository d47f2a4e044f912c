"""Tests for plan, phase and milestone execution with faked services."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from phase_executor.branching import BranchStrategy
from phase_executor.config import ExecutorConfig
from phase_executor.errors import AgentFailure, MergeTimeout, NeedsPlanning, PrePushFailure, ResolutionError
from phase_executor.infra import InfraGate
from phase_executor.orchestrator import (
    ExitCode,
    MilestoneOrchestrator,
    PhaseExecutor,
    PhaseResult,
    PlanExecutor,
    PlanResult,
    RunOptions,
    build_context,
    run_milestone,
    run_phase,
)
from phase_executor.planning import parse_plan
from phase_executor.services.git_service import GitError
from phase_executor.services.pr_service import PRInfo
from phase_executor.timeline import TimelineLogger

ROADMAP = """# Roadmap

### v1.2 Test Coverage

- [ ] **Phase 1: Handlers**
- [ ] **Phase 2: Store**
- [ ] **Phase 3: E2E**
"""


def _context(planning_tree, timeline=None, **option_values):
    config = ExecutorConfig(repo_root=planning_tree.root)
    options = RunOptions(**option_values)
    ctx = build_context(
        config,
        options,
        timeline=timeline,
        runner=MagicMock(),
        git=MagicMock(),
        prs=MagicMock(),
    )
    ctx.dispatcher = MagicMock()
    ctx.prepush = MagicMock()
    return ctx


class RecordingPlanExecutor:
    """Stands in for PlanExecutor; records (plan id, base) per call."""

    def __init__(self, fail_on=None, merged=False):
        self.calls = []
        self.fail_on = fail_on
        self.merged = merged

    def execute(self, plan, base):
        self.calls.append((plan.plan_id, base))
        if plan.plan_id == self.fail_on:
            raise AgentFailure(f"Task 1 failed in plan {plan.plan_id}", reason="boom")
        return PlanResult(plan=plan, branch=f"phase-{plan.phase_id}/plan-{plan.plan_id}", merged=self.merged)


def _phase(planning_tree, dirname="11-tests", plans=("11-01", "11-02", "11-03"), summaries=()):
    phase_dir = planning_tree.phase(dirname)
    for name in plans:
        planning_tree.plan(phase_dir, name, objective=f"Objective {name}")
    for name in summaries:
        planning_tree.summary(phase_dir, name)
    return phase_dir


@pytest.mark.unit
class TestPhaseExecutor:
    """Tests for plan ordering, resume and failure within a phase."""

    def test_continue_dispatches_only_remaining_plan(self, planning_tree):
        _phase(planning_tree, summaries=("11-01", "11-02"))
        ctx = _context(planning_tree, continue_mode=True)
        plans = RecordingPlanExecutor()

        result = PhaseExecutor(ctx, plans).execute("11")

        assert plans.calls == [("03", "main")]
        assert result.completed == 1
        assert result.skipped == 2

    def test_plans_stack_on_previous_branch(self, planning_tree):
        _phase(planning_tree, plans=("11-01", "11-02"))
        plans = RecordingPlanExecutor()

        result = PhaseExecutor(_context(planning_tree), plans).execute("11")

        assert plans.calls == [("01", "main"), ("02", "phase-11/plan-01")]
        assert result.last_branch == "phase-11/plan-02"

    def test_merged_plan_hands_trunk_to_next(self, planning_tree):
        _phase(planning_tree, plans=("11-01", "11-02"))
        plans = RecordingPlanExecutor(merged=True)

        PhaseExecutor(_context(planning_tree, auto_merge=True), plans).execute("11")

        assert plans.calls == [("01", "main"), ("02", "main")]

    def test_only_plan_filter(self, planning_tree):
        _phase(planning_tree)
        plans = RecordingPlanExecutor()

        PhaseExecutor(_context(planning_tree, only_plan="2"), plans).execute("11")

        assert [c[0] for c in plans.calls] == ["02"]

    def test_only_plan_overrides_continue(self, planning_tree):
        _phase(planning_tree, summaries=("11-03",))
        plans = RecordingPlanExecutor()

        PhaseExecutor(_context(planning_tree, continue_mode=True, only_plan="1"), plans).execute("11")

        assert plans.calls == [("01", "main")]

    def test_unknown_plan_filter_raises(self, planning_tree):
        _phase(planning_tree)
        plans = RecordingPlanExecutor()

        with pytest.raises(ResolutionError) as exc_info:
            PhaseExecutor(_context(planning_tree, only_plan="9"), plans).execute("11")

        assert exc_info.value.identifier == "9"
        assert plans.calls == []

    def test_first_failure_stops_phase(self, planning_tree, tmp_path):
        _phase(planning_tree)
        timeline_path = tmp_path / "timeline.jsonl"
        ctx = _context(planning_tree, timeline=TimelineLogger(timeline_path))
        plans = RecordingPlanExecutor(fail_on="02")

        with pytest.raises(AgentFailure):
            PhaseExecutor(ctx, plans).execute("11")

        assert [c[0] for c in plans.calls] == ["01", "02"]
        events = [json.loads(line) for line in timeline_path.read_text().splitlines()]
        assert [e["event"] for e in events][-2:] == ["plan_failed", "phase_end"]
        assert events[-1]["status"] == "failed"

    def test_unplanned_phase_raises(self, planning_tree):
        planning_tree.phase("11-tests")

        with pytest.raises(NeedsPlanning):
            PhaseExecutor(_context(planning_tree), RecordingPlanExecutor()).execute("11")


@pytest.mark.unit
class TestPlanExecutor:
    """Tests for the per-plan pipeline."""

    @pytest.fixture
    def plan(self, planning_tree):
        phase_dir = _phase(planning_tree, plans=("11-01",))
        return parse_plan(phase_dir / "11-01-PLAN.md", "11")

    def test_trunk_based_plan(self, planning_tree, plan):
        ctx = _context(planning_tree)
        ctx.lifecycle = MagicMock()
        ctx.lifecycle.open_change_request.return_value = PRInfo(4, "u", "t", "main", "b")

        result = PlanExecutor(ctx).execute(plan, "main")

        branch = "phase-11/plan-01-objective-11-01"
        assert result.branch == branch
        ctx.git.sync_trunk.assert_called_once_with("main")
        ctx.git.checkout_or_create.assert_called_once_with(branch, "main")
        ctx.dispatcher.execute_plan_work.assert_called_once_with(plan)
        ctx.prepush.run.assert_called_once_with(label="11-01")
        ctx.git.push.assert_called_once_with(branch)
        args = ctx.lifecycle.open_change_request.call_args.args
        assert args[:3] == (branch, "main", "Phase 11 Plan 01: Objective 11-01")
        ctx.lifecycle.wait_and_merge.assert_not_called()
        assert result.pr.number == 4

    def test_stacked_plan_checks_out_base(self, planning_tree, plan):
        ctx = _context(planning_tree)
        ctx.lifecycle = MagicMock()

        PlanExecutor(ctx).execute(plan, "phase-11/plan-00-prev")

        ctx.git.checkout.assert_called_once_with("phase-11/plan-00-prev")
        ctx.git.sync_trunk.assert_not_called()
        body = ctx.lifecycle.open_change_request.call_args.args[3]
        assert "stacked changes" in body

    def test_auto_merge(self, planning_tree, plan):
        ctx = _context(planning_tree, auto_merge=True)
        ctx.lifecycle = MagicMock()

        result = PlanExecutor(ctx).execute(plan, "main")

        ctx.lifecycle.wait_and_merge.assert_called_once_with(result.branch)
        assert result.merged is True

    def test_merge_timeout_propagates(self, planning_tree, plan):
        ctx = _context(planning_tree, auto_merge=True)
        ctx.lifecycle = MagicMock()
        ctx.lifecycle.wait_and_merge.side_effect = MergeTimeout("b", "Timeout")

        with pytest.raises(MergeTimeout):
            PlanExecutor(ctx).execute(plan, "main")

    def test_missing_base_branch(self, planning_tree, plan):
        ctx = _context(planning_tree)
        ctx.git.checkout.side_effect = GitError("pathspec did not match")

        with pytest.raises(GitError):
            PlanExecutor(ctx).execute(plan, "phase-11/plan-00-gone")
        ctx.dispatcher.execute_plan_work.assert_not_called()

    def test_single_strategy_commits_to_milestone_branch(self, planning_tree, plan):
        ctx = _context(planning_tree, strategy=BranchStrategy.SINGLE)
        ctx.planner.milestone_branch = "milestone/v1.2-20260101-000000"
        ctx.lifecycle = MagicMock()

        result = PlanExecutor(ctx).execute(plan, ctx.planner.phase_base())

        assert result.branch == "milestone/v1.2-20260101-000000"
        ctx.git.checkout.assert_called_once_with("milestone/v1.2-20260101-000000")
        ctx.git.checkout_or_create.assert_not_called()
        ctx.git.push.assert_not_called()
        ctx.lifecycle.open_change_request.assert_not_called()

    def test_dry_run_touches_no_branches(self, planning_tree, plan):
        ctx = _context(planning_tree, dry_run=True)

        PlanExecutor(ctx).execute(plan, "main")

        ctx.dispatcher.execute_plan_work.assert_called_once_with(plan)
        assert ctx.git.method_calls == []
        ctx.prepush.run.assert_not_called()


def _milestone_tree(planning_tree, shared=False):
    planning_tree.roadmap(ROADMAP)
    files = "internal/shared.go" if shared else None
    for number in ("1", "2", "3"):
        phase_dir = planning_tree.phase(f"0{number}-phase")
        tasks = [{"name": "work", "files": files or f"internal/p{number}.go"}]
        planning_tree.plan(phase_dir, f"0{number}-01", objective=f"Phase {number} work", tasks=tasks)


class FakePhaseExecutor:
    """Stands in for PhaseExecutor; records (phase id, base) per call."""

    def __init__(self, errors=None):
        self.calls = []
        self.errors = errors or {}

    def execute(self, phase_id, base=None):
        self.calls.append((phase_id, base))
        if phase_id in self.errors:
            raise self.errors[phase_id]
        return PhaseResult(phase_id=phase_id, last_branch=f"phase-{phase_id}/plan-01", completed=1)


@pytest.mark.unit
class TestMilestoneOrchestrator:
    """Tests for milestone sequencing and strategies."""

    def test_runs_phases_in_roadmap_order(self, planning_tree):
        _milestone_tree(planning_tree)
        phases = FakePhaseExecutor()

        result = MilestoneOrchestrator(_context(planning_tree), phases).execute("v1.2")

        assert phases.calls == [("1", "main"), ("2", "main"), ("3", "main")]
        assert result.completed == 3
        assert result.exit_code == ExitCode.SUCCESS

    def test_chain_bases_each_phase_on_previous(self, planning_tree):
        _milestone_tree(planning_tree)
        phases = FakePhaseExecutor()
        ctx = _context(planning_tree, strategy=BranchStrategy.CHAIN)

        MilestoneOrchestrator(ctx, phases).execute("v1.2")

        assert phases.calls == [("1", "main"), ("2", "phase-1/plan-01"), ("3", "phase-2/plan-01")]

    def test_complete_phase_is_skipped(self, planning_tree):
        _milestone_tree(planning_tree)
        planning_tree.summary(planning_tree.phases_dir / "01-phase", "01-01")
        phases = FakePhaseExecutor()

        result = MilestoneOrchestrator(_context(planning_tree), phases).execute("v1.2")

        assert [c[0] for c in phases.calls] == ["2", "3"]
        assert result.skipped == 1

    def test_needs_planning_stops_milestone(self, planning_tree):
        _milestone_tree(planning_tree)
        phases = FakePhaseExecutor(errors={"2": NeedsPlanning("2")})

        result = MilestoneOrchestrator(_context(planning_tree), phases).execute("v1.2")

        assert [c[0] for c in phases.calls] == ["1", "2"]
        assert result.needs_planning == "2"
        assert result.failed == 1
        assert result.exit_code == ExitCode.FAILURE

    def test_failed_phase_stops_milestone(self, planning_tree):
        _milestone_tree(planning_tree)
        phases = FakePhaseExecutor(errors={"1": MergeTimeout("b", "Timeout")})

        result = MilestoneOrchestrator(_context(planning_tree), phases).execute("v1.2")

        assert [c[0] for c in phases.calls] == ["1"]
        assert result.failed == 1

    @pytest.mark.parametrize("reply", ["n", "", "no"])
    def test_shared_files_declined(self, planning_tree, reply):
        _milestone_tree(planning_tree, shared=True)
        phases = FakePhaseExecutor()
        prompts = []

        def confirm(text):
            prompts.append(text)
            return reply

        result = MilestoneOrchestrator(_context(planning_tree), phases, confirm=confirm).execute("v1.2")

        assert result.aborted is True
        assert phases.calls == []
        assert prompts == ["Continue anyway? [y/N] "]
        assert result.exit_code == ExitCode.SUCCESS

    def test_shared_files_closed_stdin_declines(self, planning_tree):
        _milestone_tree(planning_tree, shared=True)

        def confirm(text):
            raise EOFError

        result = MilestoneOrchestrator(_context(planning_tree), FakePhaseExecutor(), confirm=confirm).execute("v1.2")

        assert result.aborted is True

    def test_shared_files_accepted(self, planning_tree):
        _milestone_tree(planning_tree, shared=True)
        phases = FakePhaseExecutor()

        MilestoneOrchestrator(_context(planning_tree), phases, confirm=lambda text: "y").execute("v1.2")

        assert len(phases.calls) == 3

    @pytest.mark.parametrize(
        "options",
        [
            {"auto_merge": True},
            {"strategy": BranchStrategy.CHAIN},
            {"assume_yes": True},
        ],
    )
    def test_shared_files_without_prompt(self, planning_tree, options):
        _milestone_tree(planning_tree, shared=True)

        def confirm(text):
            raise AssertionError("should not prompt")

        result = MilestoneOrchestrator(
            _context(planning_tree, **options), FakePhaseExecutor(), confirm=confirm
        ).execute("v1.2")

        assert result.completed == 3

    def test_dry_run_lists_phases(self, planning_tree):
        _milestone_tree(planning_tree)
        planning_tree.summary(planning_tree.phases_dir / "01-phase", "01-01")
        phases = FakePhaseExecutor()
        ctx = _context(planning_tree, dry_run=True)

        result = MilestoneOrchestrator(ctx, phases).execute("v1.2")

        assert phases.calls == []
        assert result.phases == ["1", "2", "3"]
        assert ctx.git.method_calls == []

    def test_single_strategy_opens_one_pr(self, planning_tree):
        _milestone_tree(planning_tree)
        phases = FakePhaseExecutor()
        ctx = _context(planning_tree, strategy=BranchStrategy.SINGLE)
        ctx.lifecycle = MagicMock()

        result = MilestoneOrchestrator(ctx, phases).execute("v1.2")

        branch = result.milestone_branch
        assert branch.startswith("milestone/v1.2-")
        ctx.git.create_branch.assert_called_once_with(branch)
        assert phases.calls == [("1", branch), ("2", branch), ("3", branch)]
        ctx.prepush.run.assert_called_once_with(label="milestone-v1.2", commit_autofix=True, agent_fix=False)
        ctx.git.push.assert_called_once_with(branch)
        args = ctx.lifecycle.open_change_request.call_args.args
        assert args[:3] == (branch, "main", "Milestone v1.2: 3 phases completed")
        assert "- Phase 1\n- Phase 2\n- Phase 3" in args[3]

    def test_single_strategy_prepush_failure_blocks_push(self, planning_tree):
        _milestone_tree(planning_tree)
        ctx = _context(planning_tree, strategy=BranchStrategy.SINGLE)
        ctx.lifecycle = MagicMock()
        ctx.prepush.run.side_effect = PrePushFailure("still failing")

        result = MilestoneOrchestrator(ctx, FakePhaseExecutor()).execute("v1.2")

        ctx.git.push.assert_not_called()
        ctx.lifecycle.open_change_request.assert_not_called()
        assert result.failed == 1

    def test_single_strategy_merge_timeout_is_a_warning(self, planning_tree):
        _milestone_tree(planning_tree)
        ctx = _context(planning_tree, strategy=BranchStrategy.SINGLE, auto_merge=True)
        ctx.lifecycle = MagicMock()
        ctx.lifecycle.wait_and_merge.side_effect = MergeTimeout("b", "Timeout")

        result = MilestoneOrchestrator(ctx, FakePhaseExecutor()).execute("v1.2")

        assert result.failed == 0


@pytest.mark.unit
class TestRunEntryPoints:
    """Tests for exit code mapping."""

    def _run_kwargs(self, config):
        return {
            "infra": InfraGate(config.infra, config.repo_root, dry_run=True),
            "runner": MagicMock(),
            "git": MagicMock(),
            "prs": MagicMock(),
        }

    def test_phase_needing_planning_exits_2(self, planning_tree):
        planning_tree.phase("11-tests")
        config = ExecutorConfig(repo_root=planning_tree.root)

        code = run_phase(config, RunOptions(), "11", **self._run_kwargs(config))

        assert code == ExitCode.NEEDS_PLANNING
        assert int(code) == 2

    def test_unknown_phase_exits_1(self, planning_tree):
        config = ExecutorConfig(repo_root=planning_tree.root)

        assert run_phase(config, RunOptions(), "42", **self._run_kwargs(config)) == ExitCode.FAILURE

    def test_unknown_plan_exits_1(self, planning_tree):
        _phase(planning_tree)
        config = ExecutorConfig(repo_root=planning_tree.root)

        code = run_phase(config, RunOptions(only_plan="9"), "11", **self._run_kwargs(config))

        assert code == ExitCode.FAILURE

    def test_complete_phase_exits_0(self, planning_tree):
        _phase(planning_tree, plans=("11-01",), summaries=("11-01",))
        config = ExecutorConfig(repo_root=planning_tree.root)

        assert run_phase(config, RunOptions(), "11", **self._run_kwargs(config)) == ExitCode.SUCCESS

    def test_timeline_records_run(self, planning_tree):
        _phase(planning_tree, plans=("11-01",), summaries=("11-01",))
        config = ExecutorConfig(repo_root=planning_tree.root)

        run_phase(config, RunOptions(), "11", **self._run_kwargs(config))

        lines = (config.state_dir / "timeline.jsonl").read_text().splitlines()
        events = [json.loads(line)["event"] for line in lines]
        assert events[0] == "run_start"
        assert events[-1] == "run_end"
        assert "plan_skipped" in events

    def test_unknown_milestone_exits_1(self, planning_tree):
        planning_tree.roadmap(ROADMAP)
        config = ExecutorConfig(repo_root=planning_tree.root)

        code = run_milestone(config, RunOptions(dry_run=True), "v9.9", **self._run_kwargs(config))

        assert code == ExitCode.FAILURE

    def test_milestone_dry_run_exits_0(self, planning_tree):
        _milestone_tree(planning_tree)
        config = ExecutorConfig(repo_root=planning_tree.root)

        code = run_milestone(config, RunOptions(dry_run=True), "v1.2", **self._run_kwargs(config))

        assert code == ExitCode.SUCCESS
        assert not (config.state_dir / "timeline.jsonl").exists()
