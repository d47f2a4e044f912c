"""Milestone orchestrator: drives phases and plans through the full pipeline.

Execution is strictly sequential:

    milestone -> phase -> plan -> task

Each plan runs on its own branch (or the shared milestone branch under the
``single`` strategy), its tasks go to fresh agent sessions, and the result
is pushed and opened as a pull request. With auto-merge, the PR is driven
to a merge before the next plan starts.

The first failed plan stops its phase, and the first failed phase stops the
milestone: later units may use the failed unit's branch as their base.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, List, Optional

from .agents.claude import ClaudeRunner, create_claude_runner
from .branching import (
    BranchPlanner,
    BranchStrategy,
    detect_shared_files,
    milestone_branch_name,
    shared_file_risk,
)
from .clock import SYSTEM_CLOCK, Clock
from .config import ExecutorConfig
from .conflicts import ConflictResolver
from .console import get_logger
from .dispatch import AgentDispatcher
from .errors import ExecutorError, MergeTimeout, NeedsPlanning, PrePushFailure, ResolutionError
from .infra import InfraGate
from .planning import (
    CompletionState,
    PlanDocument,
    StepAction,
    find_milestone_phases,
    load_phase,
    parse_plan,
    require_plan,
    require_planned,
    walk_plans,
)
from .pr_lifecycle import (
    PRLifecycle,
    build_milestone_pr_body,
    build_pr_body,
    milestone_pr_title,
    pr_title,
)
from .prepush import PrePushRunner
from .services.git_service import GitError, GitService
from .services.pr_service import PRInfo, PRService
from .timeline import EventType, NullTimeline, TimelineLogger

logger = get_logger(__name__)

# Failures that stop the enclosing loop
RUN_ERRORS = (ExecutorError, GitError)


class ExitCode(IntEnum):
    SUCCESS = 0
    FAILURE = 1
    NEEDS_PLANNING = 2


@dataclass
class RunOptions:
    """Flags selected on the command line."""
    dry_run: bool = False
    continue_mode: bool = False
    only_plan: Optional[str] = None
    strategy: BranchStrategy = BranchStrategy.INDEPENDENT
    auto_merge: bool = False
    assume_yes: bool = False


@dataclass
class PlanResult:
    """Outcome of one executed plan."""
    plan: PlanDocument
    branch: str
    merged: bool = False
    pr: Optional[PRInfo] = None


@dataclass
class PhaseResult:
    """Outcome of one executed phase."""
    phase_id: str
    last_branch: Optional[str] = None
    completed: int = 0
    skipped: int = 0
    merged: bool = False


@dataclass
class MilestoneResult:
    """Outcome of a milestone run."""
    version: str
    phases: List[str] = field(default_factory=list)
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    milestone_branch: Optional[str] = None
    needs_planning: Optional[str] = None
    aborted: bool = False

    @property
    def exit_code(self) -> ExitCode:
        if self.failed:
            return ExitCode.FAILURE
        return ExitCode.SUCCESS


@dataclass
class RunContext:
    """Services shared by every executor in one run."""
    config: ExecutorConfig
    options: RunOptions
    git: GitService
    planner: BranchPlanner
    dispatcher: AgentDispatcher
    lifecycle: PRLifecycle
    prepush: PrePushRunner
    timeline: TimelineLogger

    @property
    def trunk(self) -> str:
        return self.config.git.trunk


def build_context(
    config: ExecutorConfig,
    options: RunOptions,
    timeline: Optional[TimelineLogger] = None,
    infra: Optional[InfraGate] = None,
    runner: Optional[ClaudeRunner] = None,
    git: Optional[GitService] = None,
    prs: Optional[PRService] = None,
    clock: Clock = SYSTEM_CLOCK,
) -> RunContext:
    """Wire the services for a run from configuration.

    Every collaborator can be passed in, which is how tests substitute
    fakes for git, gh and the agent CLI.
    """
    timeline = timeline or NullTimeline()
    trunk = config.git.trunk
    git = git or GitService(config.repo_root, remote=config.git.remote)
    prs = prs or PRService(
        config.repo_root, cli=config.github.cli, clear_token_env=config.github.clear_token_env
    )
    runner = runner or create_claude_runner(config, timeline)
    resolver = ConflictResolver(git, runner, config.conflicts, trunk=trunk, timeline=timeline)
    return RunContext(
        config=config,
        options=options,
        git=git,
        planner=BranchPlanner(options.strategy, trunk=trunk),
        dispatcher=AgentDispatcher(
            runner,
            git,
            infra=infra,
            commit_trailer=config.agent.commit_trailer,
            dry_run=options.dry_run,
        ),
        lifecycle=PRLifecycle(prs, git, resolver, config.merge, trunk=trunk, clock=clock, timeline=timeline),
        prepush=PrePushRunner(
            config.prepush,
            config.repo_root,
            git,
            runner=runner,
            commit_trailer=config.agent.commit_trailer,
            dry_run=options.dry_run,
        ),
        timeline=timeline,
    )


class PlanExecutor:
    """Runs one plan: branch setup, agent work, push, PR and merge."""

    def __init__(self, ctx: RunContext):
        self.ctx = ctx

    def _setup_branch(self, branch: str, base: str) -> None:
        git = self.ctx.git
        if self.ctx.planner.is_single:
            try:
                git.checkout(base)
            except GitError:
                logger.error("Milestone branch %s not found", base)
                raise
            return

        if base == self.ctx.trunk:
            git.sync_trunk(self.ctx.trunk)
        else:
            try:
                git.checkout(base)
            except GitError:
                logger.error("Base branch %s not found", base)
                raise
        git.checkout_or_create(branch, base)

    def execute(self, plan: PlanDocument, base: str) -> PlanResult:
        """Execute a plan on top of ``base``.

        Args:
            plan: Parsed plan document.
            base: Branch the plan's branch starts from.

        Returns:
            PlanResult with the branch the work landed on.

        Raises:
            AgentFailure: If a session fails or the artifact is missing.
            PrePushFailure: If pre-push checks cannot be repaired.
            MergeTimeout: If auto-merge is on and the PR does not merge.
            GitError: If branch setup or push fails.
        """
        ctx = self.ctx
        options = ctx.options
        branch = ctx.planner.plan_branch(plan)

        logger.step("Plan %s: %s", plan.unit_id, plan.path.name)
        if ctx.planner.is_single:
            logger.info("Branch: %s (single strategy - using milestone branch)", branch)
        else:
            logger.info("Branch: %s", branch)
            logger.info("Base: %s", base)

        ctx.timeline.log(EventType.PLAN_START, phase=plan.phase_id, plan=plan.plan_id, branch=branch)

        if options.dry_run:
            ctx.dispatcher.execute_plan_work(plan)
            if not ctx.planner.is_single:
                logger.info("[DRY RUN] Would push %s and open a PR against %s", branch, ctx.trunk)
            return PlanResult(plan=plan, branch=branch)

        self._setup_branch(branch, base)
        ctx.dispatcher.execute_plan_work(plan)

        if ctx.planner.is_single:
            logger.info("Commits added to milestone branch (PR created at milestone end)")
            ctx.timeline.log(EventType.PLAN_COMPLETE, phase=plan.phase_id, plan=plan.plan_id, branch=branch)
            return PlanResult(plan=plan, branch=branch)

        ctx.prepush.run(label=plan.unit_id)

        logger.info("Pushing to remote...")
        ctx.git.push(branch)

        pr = ctx.lifecycle.open_change_request(
            branch, ctx.trunk, pr_title(plan), build_pr_body(plan, base, ctx.trunk)
        )

        merged = False
        if options.auto_merge:
            try:
                ctx.lifecycle.wait_and_merge(branch)
            except MergeTimeout:
                logger.error("Auto-merge failed for %s", branch)
                raise
            merged = True

        ctx.timeline.log(
            EventType.PLAN_COMPLETE,
            phase=plan.phase_id,
            plan=plan.plan_id,
            branch=branch,
            details={"merged": merged, "pr": pr.number if pr else None},
        )
        return PlanResult(plan=plan, branch=branch, merged=merged, pr=pr)


class PhaseExecutor:
    """Runs the plans of one phase in order, stacking each on the last."""

    def __init__(self, ctx: RunContext, plan_executor: Optional[PlanExecutor] = None):
        self.ctx = ctx
        self.plan_executor = plan_executor or PlanExecutor(ctx)

    def execute(self, phase_id: str, base: Optional[str] = None) -> PhaseResult:
        """Execute every pending plan of a phase.

        Args:
            phase_id: Phase number or directory path.
            base: Branch the first plan starts from (trunk by default).

        Raises:
            ResolutionError: If the phase or the requested plan cannot be found.
            NeedsPlanning: If the phase has no plan definitions.
            ExecutorError, GitError: On the first failed plan.
        """
        ctx = self.ctx
        options = ctx.options
        base = base or ctx.trunk

        phase = load_phase(phase_id, ctx.config.phases_dir)
        logger.info("Phase: %s", phase.phase_id)
        logger.info("Directory: %s", phase.directory)
        logger.info("Base branch: %s", base)
        logger.info("Total plans: %d", phase.plan_count)

        if not phase.plan_paths:
            logger.warning("No plan files found in phase %s - needs planning", phase.phase_id)
        require_planned(phase)
        if options.only_plan:
            require_plan(phase, options.only_plan)
        elif options.continue_mode and phase.completed_count > 0:
            logger.info("Continuing from plan %d", phase.completed_count + 1)

        ctx.timeline.log(EventType.PHASE_START, phase=phase.phase_id, branch=base)
        result = PhaseResult(phase_id=phase.phase_id)
        current_base = base

        for step in walk_plans(phase, continue_mode=options.continue_mode, only_plan=options.only_plan):
            if step.action == StepAction.SKIP_FILTERED:
                continue
            if step.action == StepAction.SKIP_RESUMED:
                logger.info("Skipping plan %s (already completed)", step.plan_id)
                result.skipped += 1
                continue
            if step.action == StepAction.SKIP_COMPLETE:
                logger.info("Skipping plan %s (has SUMMARY.md)", step.plan_id)
                ctx.timeline.log(EventType.PLAN_SKIPPED, phase=phase.phase_id, plan=step.plan_id)
                result.skipped += 1
                continue

            plan = parse_plan(step.path, phase.phase_id)
            try:
                plan_result = self.plan_executor.execute(plan, current_base)
            except RUN_ERRORS as e:
                logger.error("Plan %s failed: %s", plan.unit_id, e)
                logger.error("Plan failed. Stopping execution.")
                ctx.timeline.plan_failed(phase.phase_id, plan.plan_id, str(e))
                ctx.timeline.log(EventType.PHASE_END, phase=phase.phase_id, status="failed", error=str(e))
                raise

            result.completed += 1
            result.last_branch = plan_result.branch
            result.merged = plan_result.merged
            current_base = ctx.planner.next_plan_base(plan_result.branch, plan_result.merged)

        ctx.timeline.log(
            EventType.PHASE_END,
            phase=phase.phase_id,
            status="complete",
            details={"completed": result.completed, "skipped": result.skipped},
        )
        logger.success("Phase %s complete (%d plans executed)", phase.phase_id, result.completed)
        return result


def _phase_status(phase_id: str, phases_dir) -> str:
    try:
        phase = load_phase(phase_id, phases_dir)
    except ResolutionError:
        return "not found"
    state = phase.state
    if state == CompletionState.NEEDS_PLANNING:
        return "needs planning"
    if state == CompletionState.COMPLETE:
        return "complete"
    return f"{phase.completed_count}/{phase.plan_count} done"


class MilestoneOrchestrator:
    """Runs every phase of a milestone under one branch strategy.

    Args:
        ctx: Run context.
        phase_executor: Phase executor (defaults to one built on ``ctx``).
        confirm: Prompt function used for the shared-files question.
    """

    def __init__(
        self,
        ctx: RunContext,
        phase_executor: Optional[PhaseExecutor] = None,
        confirm: Callable[[str], str] = input,
    ):
        self.ctx = ctx
        self.phase_executor = phase_executor or PhaseExecutor(ctx)
        self.confirm = confirm

    def _load_plans(self, phase_ids: List[str]) -> List[PlanDocument]:
        plans: List[PlanDocument] = []
        for phase_id in phase_ids:
            try:
                plans.extend(load_phase(phase_id, self.ctx.config.phases_dir).load_plans())
            except ResolutionError:
                continue
        return plans

    def _confirm_shared_files(self, shared: List[str]) -> bool:
        logger.warning("SHARED FILES DETECTED across phases:")
        for path in shared:
            logger.warning("  - %s", path)
        logger.warning("Using 'independent' strategy will cause merge conflicts!")
        logger.warning("Recommended: --branch-strategy chain or --auto-merge")

        if self.ctx.options.dry_run or self.ctx.options.assume_yes:
            return True
        try:
            reply = self.confirm("Continue anyway? [y/N] ")
        except EOFError:
            reply = ""
        return reply.strip().lower() in ("y", "yes")

    def _create_milestone_branch(self, version: str) -> str:
        branch = milestone_branch_name(version)
        logger.info("Creating single branch for all phases: %s", branch)
        self.ctx.git.sync_trunk(self.ctx.trunk)
        self.ctx.git.create_branch(branch)
        return branch

    def _finish_single(self, result: MilestoneResult) -> None:
        """Push the milestone branch and open its single PR."""
        ctx = self.ctx
        branch = result.milestone_branch
        try:
            ctx.prepush.run(label=f"milestone-{result.version}", commit_autofix=True, agent_fix=False)
        except PrePushFailure as e:
            logger.error("%s", e)
            logger.info("Manual fixes required before pushing")
            result.failed += 1
            return

        logger.info("Creating single PR for milestone %s...", result.version)
        ctx.git.push(branch)
        ctx.lifecycle.open_change_request(
            branch,
            ctx.trunk,
            milestone_pr_title(result.version, result.completed),
            build_milestone_pr_body(result.version, result.completed, result.phases),
        )

        if ctx.options.auto_merge:
            try:
                ctx.lifecycle.wait_and_merge(branch)
            except MergeTimeout as e:
                logger.warning("Auto-merge failed for milestone PR - manual merge required: %s", e)

    def execute(self, version: str) -> MilestoneResult:
        """Execute all phases of a milestone.

        Raises:
            ResolutionError: If the roadmap has no phases for ``version``.
        """
        ctx = self.ctx
        options = ctx.options

        logger.step("MILESTONE: %s", version)
        phase_ids = [str(n) for n in find_milestone_phases(ctx.config.roadmap_path, version)]
        result = MilestoneResult(version=version, phases=phase_ids)
        logger.info("Found %d phases in milestone %s", len(phase_ids), version)
        logger.info("Phases: %s", " ".join(phase_ids))

        shared = detect_shared_files(self._load_plans(phase_ids))
        if shared_file_risk(options.strategy, options.auto_merge, shared):
            if not self._confirm_shared_files(shared):
                logger.info("Aborted. Re-run with: --branch-strategy chain or --auto-merge")
                result.aborted = True
                return result

        if options.dry_run:
            logger.info("[DRY RUN] Would execute these phases:")
            for phase_id in phase_ids:
                logger.info("  Phase %s: %s", phase_id, _phase_status(phase_id, ctx.config.phases_dir))
            return result

        logger.info("Branch strategy: %s", options.strategy.value)
        if ctx.planner.is_single:
            result.milestone_branch = self._create_milestone_branch(version)
            ctx.planner.milestone_branch = result.milestone_branch

        for phase_id in phase_ids:
            logger.step("PHASE %s", phase_id)

            if _phase_status(phase_id, ctx.config.phases_dir) == "complete":
                logger.info("Phase %s already complete, skipping...", phase_id)
                result.skipped += 1
                continue

            try:
                phase_result = self.phase_executor.execute(phase_id, ctx.planner.phase_base())
            except NeedsPlanning:
                logger.warning("Phase %s needs planning. Stopping milestone execution.", phase_id)
                logger.info("Run: /gsd:plan-phase %s", phase_id)
                result.failed += 1
                result.needs_planning = phase_id
                break
            except RUN_ERRORS as e:
                logger.error("Phase %s failed: %s", phase_id, e)
                logger.error("Phase %s failed. Stopping milestone execution.", phase_id)
                result.failed += 1
                break

            result.completed += 1
            ctx.planner.record_phase_result(phase_result.last_branch, phase_result.merged)
            if options.strategy == BranchStrategy.CHAIN:
                logger.info("Next phase will branch from: %s", ctx.planner.phase_base())

        if ctx.planner.is_single and result.completed > 0:
            self._finish_single(result)

        logger.step("MILESTONE EXECUTION SUMMARY")
        logger.info("Milestone: %s", version)
        logger.info("Phases completed: %d", result.completed)
        logger.info("Phases skipped: %d", result.skipped)
        if result.failed:
            logger.error("Phases failed/blocked: %d", result.failed)
        else:
            logger.success("Milestone %s execution complete!", version)
        return result


def _open_timeline(config: ExecutorConfig, options: RunOptions) -> TimelineLogger:
    if options.dry_run:
        return NullTimeline()
    return TimelineLogger(config.state_dir / "timeline.jsonl")


def run_phase(config: ExecutorConfig, options: RunOptions, phase_id: str, **overrides) -> ExitCode:
    """Execute one phase and map the outcome to an exit code.

    Infrastructure started during the run is torn down on every exit path.
    ``overrides`` are passed to ``build_context``.
    """
    timeline = overrides.pop("timeline", None) or _open_timeline(config, options)
    timeline.run_start(f"phase {phase_id}", options.strategy.value, options.dry_run)

    with overrides.pop("infra", None) or InfraGate(
        config.infra, config.repo_root, timeline=timeline, dry_run=options.dry_run
    ) as infra:
        ctx = build_context(config, options, timeline=timeline, infra=infra, **overrides)
        try:
            result = PhaseExecutor(ctx).execute(phase_id)
        except NeedsPlanning as e:
            logger.warning("%s", e)
            logger.info("Run: /gsd:plan-phase %s", e.phase_id)
            timeline.run_end("needs_planning", 0, 0, 1)
            return ExitCode.NEEDS_PLANNING
        except RUN_ERRORS as e:
            logger.error("%s", e)
            timeline.run_end("failed", 0, 0, 1)
            return ExitCode.FAILURE

    logger.step("PHASE EXECUTION SUMMARY")
    logger.info("Phase: %s", result.phase_id)
    logger.success("Phase execution complete!")
    timeline.run_end("complete", result.completed, result.skipped, 0)
    return ExitCode.SUCCESS


def run_milestone(
    config: ExecutorConfig,
    options: RunOptions,
    version: str,
    confirm: Callable[[str], str] = input,
    **overrides,
) -> ExitCode:
    """Execute a milestone and map the outcome to an exit code."""
    timeline = overrides.pop("timeline", None) or _open_timeline(config, options)
    timeline.run_start(f"milestone {version}", options.strategy.value, options.dry_run)

    with overrides.pop("infra", None) or InfraGate(
        config.infra, config.repo_root, timeline=timeline, dry_run=options.dry_run
    ) as infra:
        ctx = build_context(config, options, timeline=timeline, infra=infra, **overrides)
        try:
            result = MilestoneOrchestrator(ctx, confirm=confirm).execute(version)
        except ResolutionError as e:
            logger.error("%s", e)
            logger.info("Check that ROADMAP.md has a section for %s", version)
            timeline.run_end("failed", 0, 0, 1)
            return ExitCode.FAILURE
        except RUN_ERRORS as e:
            logger.error("%s", e)
            timeline.run_end("failed", 0, 0, 1)
            return ExitCode.FAILURE

    status = "aborted" if result.aborted else ("failed" if result.failed else "complete")
    timeline.run_end(status, result.completed, result.skipped, result.failed)
    return result.exit_code
