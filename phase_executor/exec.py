"""Subprocess execution for agent sessions, infra tooling and check scripts.

Provides:
- Captured and streamed execution with timeouts
- Per-invocation log files with a header and footer
- Truncation of very large outputs
"""

from __future__ import annotations

import os
import selectors
import shlex
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, List, Mapping, Optional, Union


DEFAULT_TIMEOUT = 1800

# Maximum output kept on an ExecResult (characters)
MAX_STORED_OUTPUT = 100000

Command = Union[str, List[str]]


def utc_now_iso() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ExecResult:
    """Result of a subprocess execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: Optional[str] = None
    log_path: Optional[Path] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def tail(self, lines: int = 20) -> str:
        """Last few lines of combined output, for error messages."""
        return "\n".join(self.output.splitlines()[-lines:])


def _truncate_output(output: str, max_chars: int = MAX_STORED_OUTPUT) -> str:
    if len(output) <= max_chars:
        return output
    head_size = max_chars // 2
    tail_size = max_chars - head_size - 100
    return (
        output[:head_size]
        + f"\n\n... [output truncated: {len(output)} total characters] ...\n\n"
        + output[-tail_size:]
    )


def _prepare(command: Command, shell: bool):
    """Return (argv-or-string, display string)."""
    if isinstance(command, str):
        return (command if shell else shlex.split(command)), command
    return command, " ".join(shlex.quote(arg) for arg in command)


def _merged_env(env: Optional[Mapping[str, str]]) -> dict:
    run_env = os.environ.copy()
    if env:
        run_env.update(env)
    return run_env


def _open_log(log_path: Optional[Path], cmd_str: str, cwd: Optional[Path], timeout: int) -> Optional[IO[str]]:
    if not log_path:
        return None
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_file = log_path.open("w", encoding="utf-8")
    log_file.write(f"# Command: {cmd_str}\n")
    log_file.write(f"# Started: {utc_now_iso()}\n")
    log_file.write(f"# CWD: {cwd or Path.cwd()}\n")
    log_file.write(f"# Timeout: {timeout}s\n")
    log_file.write("-" * 60 + "\n")
    return log_file


def _close_log(log_file: Optional[IO[str]], result: ExecResult) -> None:
    if not log_file:
        return
    log_file.write("-" * 60 + "\n")
    log_file.write(f"# Ended: {utc_now_iso()}\n")
    log_file.write(f"# Duration: {result.duration_ms}ms\n")
    log_file.write(f"# Exit code: {result.exit_code}\n")
    if result.timed_out:
        log_file.write("# TIMED OUT\n")
    if result.error:
        log_file.write(f"# Error: {result.error}\n")
    log_file.close()


def run_command(
    command: Command,
    cwd: Optional[Path] = None,
    timeout: Optional[int] = None,
    env: Optional[Mapping[str, str]] = None,
    input_text: Optional[str] = None,
    log_path: Optional[Path] = None,
    shell: bool = False,
) -> ExecResult:
    """Run a command and capture its output.

    Args:
        command: Command to run (string or list of args).
        cwd: Working directory.
        timeout: Timeout in seconds (default: DEFAULT_TIMEOUT).
        env: Environment variables merged over the current environment.
        input_text: Text passed on stdin.
        log_path: Path to write the captured output to.
        shell: Whether to run through the shell.

    Returns:
        ExecResult describing the run. Launch failures are reported through
        ``exit_code``/``error`` rather than raised.
    """
    timeout = timeout or DEFAULT_TIMEOUT
    argv, cmd_str = _prepare(command, shell)
    log_file = _open_log(log_path, cmd_str, cwd, timeout)

    start_time = time.time()
    stdout_data = ""
    stderr_data = ""
    timed_out = False
    error_msg = None
    exit_code = -1

    try:
        completed = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            env=_merged_env(env),
            capture_output=True,
            text=True,
            input=input_text,
            timeout=timeout,
            shell=shell,
        )
        exit_code = completed.returncode
        stdout_data = completed.stdout or ""
        stderr_data = completed.stderr or ""
    except subprocess.TimeoutExpired as e:
        timed_out = True
        error_msg = f"Command timed out after {timeout}s"
        if e.stdout:
            stdout_data = e.stdout if isinstance(e.stdout, str) else e.stdout.decode("utf-8", errors="replace")
        if e.stderr:
            stderr_data = e.stderr if isinstance(e.stderr, str) else e.stderr.decode("utf-8", errors="replace")
    except FileNotFoundError as e:
        error_msg = f"Command not found: {e}"
        exit_code = 127
    except PermissionError as e:
        error_msg = f"Permission denied: {e}"
        exit_code = 126

    result = ExecResult(
        command=cmd_str,
        exit_code=exit_code,
        stdout=_truncate_output(stdout_data),
        stderr=_truncate_output(stderr_data),
        duration_ms=int((time.time() - start_time) * 1000),
        timed_out=timed_out,
        error=error_msg,
        log_path=log_path,
    )

    if log_file:
        if stdout_data:
            log_file.write("# STDOUT:\n" + stdout_data.rstrip("\n") + "\n")
        if stderr_data:
            log_file.write("# STDERR:\n" + stderr_data.rstrip("\n") + "\n")
    _close_log(log_file, result)
    return result


def run_command_with_streaming(
    command: Command,
    cwd: Optional[Path] = None,
    timeout: Optional[int] = None,
    env: Optional[Mapping[str, str]] = None,
    log_path: Optional[Path] = None,
    prefix: str = "",
    shell: bool = False,
    echo: bool = True,
) -> ExecResult:
    """Run a command, echoing its output live while also capturing it.

    This is the ``cmd | tee log`` shape used for agent sessions: the
    operator watches the session and the log file keeps a full copy.

    Args:
        command: Command to run.
        cwd: Working directory.
        timeout: Timeout in seconds.
        env: Environment variables.
        log_path: Path to write output to.
        prefix: Prefix for each echoed line.
        shell: Whether to run through the shell.
        echo: Whether to print lines to the console.

    Returns:
        ExecResult with the captured output.
    """
    timeout = timeout or DEFAULT_TIMEOUT
    argv, cmd_str = _prepare(command, shell)
    log_file = _open_log(log_path, cmd_str, cwd, timeout)

    start_time = time.time()
    stdout_lines: List[str] = []
    stderr_lines: List[str] = []
    timed_out = False
    error_msg = None
    exit_code = -1

    try:
        process = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd else None,
            env=_merged_env(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            shell=shell,
        )

        sel = selectors.DefaultSelector()
        sel.register(process.stdout, selectors.EVENT_READ)
        sel.register(process.stderr, selectors.EVENT_READ)
        deadline = time.time() + timeout

        while sel.get_map():
            remaining = deadline - time.time()
            if remaining <= 0:
                process.kill()
                timed_out = True
                error_msg = f"Command timed out after {timeout}s"
                break

            for key, _ in sel.select(timeout=min(remaining, 0.1)):
                line = key.fileobj.readline()
                if not line:
                    sel.unregister(key.fileobj)
                    continue

                is_stderr = key.fileobj is process.stderr
                (stderr_lines if is_stderr else stdout_lines).append(line)
                if echo:
                    print(f"{prefix}{line.rstrip()}", file=sys.stderr if is_stderr else sys.stdout)
                if log_file:
                    log_file.write(line)
        sel.close()

        exit_code = -1 if timed_out else process.wait()
    except FileNotFoundError as e:
        error_msg = f"Command not found: {e}"
        exit_code = 127
    except PermissionError as e:
        error_msg = f"Permission denied: {e}"
        exit_code = 126

    result = ExecResult(
        command=cmd_str,
        exit_code=exit_code,
        stdout=_truncate_output("".join(stdout_lines)),
        stderr=_truncate_output("".join(stderr_lines)),
        duration_ms=int((time.time() - start_time) * 1000),
        timed_out=timed_out,
        error=error_msg,
        log_path=log_path,
    )
    _close_log(log_file, result)
    return result


def which(cmd: str) -> Optional[str]:
    """Find an executable in PATH."""
    return shutil.which(cmd)
