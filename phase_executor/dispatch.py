"""Agent dispatch gateway.

Every unit of work goes to a fresh agent session: one session per task,
then one session that writes the plan summary. A plan without task blocks
falls back to a single whole-plan session.

Session outcomes are read from sentinels (see ``signals``). A session that
ends without a sentinel is only trusted when the repository shows progress:
new commits for task sessions, the completion artifact for summary and
plan sessions. This fallback is best-effort and can mistake unrelated
commits for task progress.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .agents.claude import ClaudeRunner
from .agents.prompts import build_plan_prompt, build_summary_prompt, build_task_prompt
from .console import get_logger
from .errors import AgentFailure
from .infra import InfraGate
from .planning.document import PlanDocument, TaskSpec
from .services.git_service import GitService
from .signals import PLAN, SUMMARY, TASK, AgentOutcome, Evidence, Outcome, SentinelPair, corroborate, interpret

logger = get_logger(__name__)


@dataclass
class PlanWorkResult:
    """Outcome of executing all work of one plan."""
    tasks_completed: int
    used_plan_fallback: bool = False


class AgentDispatcher:
    """Runs plan work through the agent, one session at a time.

    Args:
        runner: Claude CLI runner.
        git: Git service used to gather evidence for ambiguous outcomes.
        infra: Infra gate consulted before infra-dependent tasks.
        commit_trailer: Trailer appended to commit messages in prompts.
        dry_run: Log intended dispatches without starting sessions.
    """

    def __init__(
        self,
        runner: ClaudeRunner,
        git: GitService,
        infra: Optional[InfraGate] = None,
        commit_trailer: str = "",
        dry_run: bool = False,
    ):
        self.runner = runner
        self.git = git
        self.infra = infra
        self.commit_trailer = commit_trailer
        self.dry_run = dry_run

    def _run_session(self, prompt: str, name: str, pair: SentinelPair, what: str) -> AgentOutcome:
        result = self.runner.invoke(prompt, name=name)
        if not result.success:
            raise AgentFailure(
                f"{what}: agent session failed ({result.error or f'exit code {result.exit_code}'})",
                reason=result.error,
                log_path=str(result.log_path) if result.log_path else None,
            )

        outcome = interpret(result.output, pair)
        if outcome.failed:
            raise AgentFailure(
                f"{what} failed: {outcome.reason or outcome.raw_line}",
                reason=outcome.reason,
                log_path=str(result.log_path) if result.log_path else None,
            )
        return outcome

    def dispatch_task(self, plan: PlanDocument, task: TaskSpec) -> AgentOutcome:
        """Execute one task in a fresh session.

        Raises:
            AgentFailure: If the task fails or ends without evidence of work.
        """
        logger.info("  Task %d: %s", task.number, task.label)
        if self.infra is not None:
            self.infra.ensure_for(task.verify)

        if self.dry_run:
            logger.info("  [DRY RUN] Would execute task with fresh agent session")
            return AgentOutcome(Outcome.SUCCESS, reason="dry run")

        logger.info("  Starting fresh agent session for task %d...", task.number)
        commits_before = self.git.commit_count()
        outcome = self._run_session(
            build_task_prompt(plan, task, self.commit_trailer),
            name=f"phase-{plan.phase_id}-plan-{plan.plan_id}-task-{task.number}",
            pair=TASK,
            what=f"Task {task.number}",
        )
        if outcome.ambiguous:
            logger.warning("  Task finished without explicit completion signal")
            logger.info("  Checking for commits as success indicator...")
            evidence = Evidence(new_commits=self.git.commit_count() - commits_before)
            outcome = corroborate(outcome, evidence, what=f"Task {task.number}")

        logger.success("  Task %d completed", task.number)
        return outcome

    def dispatch_summary(self, plan: PlanDocument, tasks_completed: int) -> AgentOutcome:
        """Write the plan's completion artifact in a fresh session."""
        logger.info("Creating plan summary...")
        if self.dry_run:
            logger.info("[DRY RUN] Would create %s", plan.summary_path.name)
            return AgentOutcome(Outcome.SUCCESS, reason="dry run")

        outcome = self._run_session(
            build_summary_prompt(plan, tasks_completed, self.commit_trailer),
            name=f"phase-{plan.phase_id}-plan-{plan.plan_id}-summary",
            pair=SUMMARY,
            what="Summary creation",
        )
        if outcome.ambiguous:
            outcome = corroborate(
                outcome, Evidence(artifact_created=plan.is_complete), what="Summary creation"
            )
        logger.success("%s created", plan.summary_path.name)
        return outcome

    def dispatch_plan(self, plan: PlanDocument) -> AgentOutcome:
        """Execute a whole plan in one session (plans without task blocks)."""
        logger.warning("No structured tasks found - using single-session plan execution")
        if self.dry_run:
            logger.info("[DRY RUN] Would execute the whole plan in one agent session")
            return AgentOutcome(Outcome.SUCCESS, reason="dry run")

        outcome = self._run_session(
            build_plan_prompt(plan, self.commit_trailer),
            name=f"phase-{plan.phase_id}-plan-{plan.plan_id}",
            pair=PLAN,
            what=f"Plan {plan.unit_id}",
        )
        if outcome.ambiguous:
            outcome = corroborate(
                outcome, Evidence(artifact_created=plan.is_complete), what=f"Plan {plan.unit_id}"
            )
        return outcome

    def execute_plan_work(self, plan: PlanDocument) -> PlanWorkResult:
        """Run every task of a plan, then its summary session.

        The plan counts as complete only if its completion artifact exists
        afterwards, whatever the sessions reported.

        Raises:
            AgentFailure: On the first failed session or a missing artifact.
        """
        logger.info("Tasks in plan: %d", len(plan.tasks))

        if not plan.tasks:
            self.dispatch_plan(plan)
            self._require_artifact(plan)
            return PlanWorkResult(tasks_completed=0, used_plan_fallback=True)

        completed = 0
        for task in plan.tasks:
            try:
                self.dispatch_task(plan, task)
            except AgentFailure as e:
                logger.error("Task %d failed - stopping plan execution: %s", task.number, e)
                raise
            completed += 1

        logger.success("All %d/%d tasks completed", completed, len(plan.tasks))
        self.dispatch_summary(plan, completed)
        self._require_artifact(plan)
        return PlanWorkResult(tasks_completed=completed)

    def _require_artifact(self, plan: PlanDocument) -> None:
        if self.dry_run or plan.is_complete:
            return
        raise AgentFailure(
            f"Plan {plan.unit_id} finished but {plan.summary_path.name} was not created",
            reason="missing completion artifact",
        )
