"""Claude CLI invocation wrapper.

Provides a consistent interface for calling the Claude CLI with:
- Configurable command (via PHASE_EXECUTOR_CLAUDE_CMD)
- Timeout handling
- Live output echoed to the console and kept in a per-session log file
"""

from __future__ import annotations

import os
import re
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..config import DEFAULT_ALLOWED_TOOLS, ExecutorConfig
from ..console import get_logger
from ..exec import run_command_with_streaming
from ..timeline import EventType, TimelineLogger

logger = get_logger(__name__)

DEFAULT_CLAUDE_CMD = "claude"
CLAUDE_CMD_ENV_VAR = "PHASE_EXECUTOR_CLAUDE_CMD"


@dataclass
class ClaudeResult:
    """Result of a Claude CLI invocation."""
    success: bool
    output: str
    exit_code: int
    duration_ms: int
    error: Optional[str] = None
    timed_out: bool = False
    log_path: Optional[Path] = None


class ClaudeRunner:
    """Runner for Claude CLI sessions.

    Every ``invoke`` starts a new process; nothing from a previous session
    is passed to the next one.
    """

    def __init__(
        self,
        claude_cmd: Optional[str] = None,
        default_timeout: int = 3600,
        logs_dir: Optional[Path] = None,
        timeline: Optional[TimelineLogger] = None,
        repo_root: Optional[Path] = None,
        model: Optional[str] = None,
        allowed_tools: Optional[List[str]] = None,
        max_turns: Optional[int] = None,
        echo: bool = True,
    ):
        """Initialize Claude runner.

        Args:
            claude_cmd: Claude CLI command. Defaults to PHASE_EXECUTOR_CLAUDE_CMD.
            default_timeout: Session timeout in seconds.
            logs_dir: Directory for session logs.
            timeline: Timeline logger for agent events.
            repo_root: Working directory for sessions.
            model: Model name passed with ``-m``.
            allowed_tools: Tools the session may use.
            max_turns: Maximum conversation turns.
            echo: Echo session output to the console.
        """
        self.claude_cmd = claude_cmd or os.environ.get(CLAUDE_CMD_ENV_VAR, DEFAULT_CLAUDE_CMD)
        self.default_timeout = default_timeout
        self.logs_dir = logs_dir
        self.timeline = timeline
        self.repo_root = repo_root or Path.cwd()
        self.model = model
        self.allowed_tools = list(allowed_tools) if allowed_tools is not None else list(DEFAULT_ALLOWED_TOOLS)
        self.max_turns = max_turns
        self.echo = echo

    def _get_claude_args(self, prompt: str) -> List[str]:
        args = shlex.split(self.claude_cmd)
        args.append("--print")
        if self.model:
            args.extend(["-m", self.model])
        if self.allowed_tools:
            args.extend(["--allowedTools", ",".join(self.allowed_tools)])
        if self.max_turns:
            args.extend(["--max-turns", str(self.max_turns)])
        args.extend(["-p", prompt])
        return args

    def _log_path(self, name: str) -> Optional[Path]:
        if not self.logs_dir:
            return None
        safe_name = re.sub(r"[^A-Za-z0-9_.-]+", "-", name).strip("-") or "session"
        return self.logs_dir / f"{safe_name}-{time.strftime('%Y%m%d-%H%M%S')}.log"

    def invoke(self, prompt: str, name: str, timeout: Optional[int] = None) -> ClaudeResult:
        """Run one agent session to completion.

        Args:
            prompt: Prompt text.
            name: Session label used for the log file and timeline.
            timeout: Timeout in seconds (defaults to default_timeout).

        Returns:
            ClaudeResult with the session output.
        """
        log_path = self._log_path(name)
        if self.timeline:
            self.timeline.log(EventType.AGENT_START, details={"session": name, "model": self.model})

        exec_result = run_command_with_streaming(
            self._get_claude_args(prompt),
            cwd=self.repo_root,
            timeout=timeout or self.default_timeout,
            log_path=log_path,
            echo=self.echo,
        )

        result = ClaudeResult(
            success=exec_result.success,
            output=exec_result.output,
            exit_code=exec_result.exit_code,
            duration_ms=exec_result.duration_ms,
            error=exec_result.error,
            timed_out=exec_result.timed_out,
            log_path=log_path,
        )

        if self.timeline:
            if result.success:
                self.timeline.log(
                    EventType.AGENT_COMPLETE,
                    duration_ms=result.duration_ms,
                    details={"session": name},
                )
            else:
                self.timeline.log(
                    EventType.AGENT_FAILED,
                    duration_ms=result.duration_ms,
                    error=result.error or f"Exit code {result.exit_code}",
                    details={"session": name},
                )
        if log_path:
            logger.debug("Session log: %s", log_path)
        return result


def create_claude_runner(
    config: ExecutorConfig,
    timeline: Optional[TimelineLogger] = None,
) -> ClaudeRunner:
    """Create a Claude runner from configuration."""
    return ClaudeRunner(
        claude_cmd=config.agent.command,
        default_timeout=config.agent.timeout,
        logs_dir=config.logs_dir,
        timeline=timeline,
        repo_root=config.repo_root,
        model=config.agent.model,
        allowed_tools=config.agent.allowed_tools,
        max_turns=config.agent.max_turns,
    )
