"""Agent modules.

This package contains:
- prompts: Prompt builders for each dispatch kind
- claude: Claude CLI invocation wrapper
"""

from .claude import ClaudeResult, ClaudeRunner, create_claude_runner
from .prompts import (
    build_conflict_prompt,
    build_plan_prompt,
    build_prepush_fix_prompt,
    build_summary_prompt,
    build_task_prompt,
)

__all__ = [
    "ClaudeResult",
    "ClaudeRunner",
    "create_claude_runner",
    "build_conflict_prompt",
    "build_plan_prompt",
    "build_prepush_fix_prompt",
    "build_summary_prompt",
    "build_task_prompt",
]
