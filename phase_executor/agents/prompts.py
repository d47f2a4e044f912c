"""Prompt builders for agent sessions.

One builder per dispatch kind:
- Task: implement and commit a single task of a plan
- Summary: write the plan's completion artifact after all tasks
- Plan: execute a whole plan (fallback for plans without task blocks)
- Conflicts: remove merge conflict markers from related files
- Pre-push fix: make failing pre-push checks pass

Every prompt ends by telling the agent which sentinel pair to print.
"""

from __future__ import annotations

from typing import List, Optional

from ..planning.document import PlanDocument, TaskSpec
from ..signals import CONFLICTS, FIXES, PLAN, SUMMARY, TASK, SentinelPair


def _commit_command(subject: str, trailer: str = "") -> str:
    if trailer:
        return f'git commit -m "{subject}\n\n{trailer}"'
    return f'git commit -m "{subject}"'


def _signal_lines(pair: SentinelPair, start: int) -> str:
    return (
        f'{start}. Output "{pair.success}" when done\n'
        f'{start + 1}. Output "{pair.failure}: <reason>" if blocked'
    )


def build_task_prompt(plan: PlanDocument, task: TaskSpec, commit_trailer: str = "") -> str:
    """Build the prompt for one task, executed in a fresh session.

    Args:
        plan: Plan the task belongs to.
        task: Task to execute.
        commit_trailer: Optional trailer appended to the commit message.

    Returns:
        Prompt text.
    """
    unit = plan.unit_id
    files = "\n".join(task.files) if task.files else "(not specified)"
    commit = _commit_command(f"feat({unit}): {task.label}", commit_trailer)

    return f"""Execute Task {task.number} from Plan {unit}.

## Task: {task.label}

### Files to modify
{files}

### Action
{task.action}

### Verification
Run: {task.verify}
Success criteria: {task.done}

## Instructions

1. Read the target files to understand current patterns
2. Implement the changes described above
3. Run the verification command: {task.verify}
4. If verification passes, commit with:
   {commit}

{_signal_lines(TASK, 5)}

Do NOT:
- Create PRs (the runner handles that)
- Push to remote (the runner handles that)
- Work on other tasks (one task per session)
- Create the plan summary (handled after all tasks complete)
- Add unnecessary narration

Execute this single task now.
"""


def build_summary_prompt(plan: PlanDocument, tasks_completed: int, commit_trailer: str = "") -> str:
    """Build the prompt that writes a plan's completion artifact."""
    unit = plan.unit_id
    commit = _commit_command(f"docs({unit}): complete plan summary", commit_trailer)

    return f"""Create the summary for completed Plan {unit}.

## Context

- Plan file: {plan.path}
- Tasks completed: {tasks_completed}

## Instructions

1. Read the plan file to understand what was supposed to be done
2. Check git log to see what commits were made
3. Create the summary file in the same directory as the plan:
   - Filename: {plan.summary_path}
   - Include: completion date, objective, what was done, files modified, verification results
4. Commit with:
   {commit}

{_signal_lines(SUMMARY, 5)}

Do NOT add unnecessary narration. Just create the summary and commit.
"""


def build_plan_prompt(plan: PlanDocument, commit_trailer: str = "") -> str:
    """Build the whole-plan prompt used when a plan has no task blocks."""
    unit = plan.unit_id
    task_commit = _commit_command(f"feat({unit}): <task description>", commit_trailer)
    docs_commit = _commit_command(f"docs({unit}): complete plan", commit_trailer)

    return f"""Execute Plan {unit}.

## Instructions

1. Read the plan file: {plan.path}
2. Execute ALL tasks in the plan sequentially
3. For each task:
   - Read source files to understand patterns
   - Implement the changes
   - Run the verification command
   - Commit with: {task_commit}
4. After ALL tasks complete:
   - Create the summary file {plan.summary_path}
   - Commit it with: {docs_commit}

{_signal_lines(PLAN, 5)}

Do NOT:
- Create PRs (the runner handles that)
- Push to remote (the runner handles that)
- Add unnecessary narration

Execute now.
"""


def build_conflict_prompt(
    branch: str,
    files: List[str],
    trunk: str = "main",
    build_command: Optional[str] = None,
    extra_instructions: Optional[List[str]] = None,
) -> str:
    """Build the conflict repair prompt.

    Args:
        branch: Branch being merged with trunk.
        files: Conflicting files classified as related to the branch.
        trunk: Trunk branch name.
        build_command: Command that validates the repaired tree.
        extra_instructions: Repository specific repair hints.

    Returns:
        Prompt text.
    """
    steps = [
        "Read each conflicting file",
        f"Resolve the conflict markers (<<<<<<< HEAD, =======, >>>>>>> origin/{trunk})",
        "Keep BOTH sets of changes where they don't actually conflict",
    ]
    steps.extend(extra_instructions or [])
    if build_command:
        steps.append(f"Run '{build_command}' to verify the fix compiles")
    steps.append("Stage the fixed files with 'git add <file>'")
    steps.append(
        f"Output {CONFLICTS.success} when done, or {CONFLICTS.failure} if unable to fix"
    )
    numbered = "\n".join(f"{i}. {step}" for i, step in enumerate(steps, start=1))
    file_list = "\n".join(files)

    return f"""Fix merge conflicts in these files. The branch is '{branch}'.

Conflicting files:
{file_list}

Instructions:
{numbered}

Do NOT commit - just fix and stage the files.
"""


def build_prepush_fix_prompt(check_command: str, failure_output: str = "", commit_trailer: str = "") -> str:
    """Build the prompt for fixing failing pre-push checks."""
    commit = _commit_command("fix: resolve pre-push check failures", commit_trailer)
    output_section = ""
    if failure_output:
        output_section = f"""
## Last check output

{failure_output}
"""

    return f"""Pre-push checks are failing. Run the checks, identify the errors, and fix them.
{output_section}
## Instructions

1. Run: {check_command}
2. Fix every reported error (build, type check, lint)
3. Commit the fixes with: {commit}
4. Output {FIXES.success} when done, or {FIXES.failure} if unable to fix
"""
