from __future__ import annotations

import argparse
import os
import shlex
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .agents.claude import CLAUDE_CMD_ENV_VAR, DEFAULT_CLAUDE_CMD
from .branching import BranchStrategy
from .config import ExecutorConfig, load_config
from .console import get_logger, setup_logging
from .exec import which
from .orchestrator import ExitCode, RunOptions, run_milestone, run_phase

logger = get_logger(__name__)


def eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


def _claude_argv0(config: ExecutorConfig) -> str:
    cmd = config.agent.command or os.environ.get(CLAUDE_CMD_ENV_VAR, DEFAULT_CLAUDE_CMD)
    parts = shlex.split(cmd)
    return parts[0] if parts else DEFAULT_CLAUDE_CMD


def missing_dependencies(config: ExecutorConfig, dry_run: bool) -> List[str]:
    """Required executables that are not on PATH.

    Dry runs only touch the local repository, so they need git alone.
    """
    required = ["git"]
    if not dry_run:
        required += [_claude_argv0(config), config.github.cli]
    return [name for name in required if not which(name)]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="phase-executor",
        description="Execute planned phases with fresh Claude sessions per task, one PR per plan.",
    )
    p.add_argument("-V", "--version", action="version", version=f"phase-executor {__version__}")
    p.add_argument("-c", "--config", default=None, help="Path to .planning/executor.yml")
    p.add_argument("phase", nargs="?", default=None, help="Phase number (7, 07) or phase directory path")
    p.add_argument("--milestone", default=None, metavar="VERSION", help="Execute all phases of a milestone")
    p.add_argument("--dry-run", action="store_true", help="Show what would be executed")
    p.add_argument("--plan", default=None, metavar="ID", help="Execute only this plan of the phase")
    p.add_argument(
        "--continue",
        dest="continue_mode",
        action="store_true",
        help="Resume from the first plan without a summary",
    )
    p.add_argument(
        "--branch-strategy",
        default=BranchStrategy.INDEPENDENT.value,
        choices=[s.value for s in BranchStrategy],
        help="independent: phases from trunk; chain: phases stacked; single: one milestone PR",
    )
    p.add_argument("--auto-merge", action="store_true", help="Wait for each PR to become mergeable and merge it")
    p.add_argument("-y", "--yes", action="store_true", help="Do not prompt on shared-file warnings")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    p.add_argument("--no-color", action="store_true", help="Disable coloured output")
    return p


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.milestone is None and args.phase is None:
        parser.error("a phase or --milestone VERSION is required")
    if args.milestone is not None and args.phase is not None:
        parser.error("a phase and --milestone are mutually exclusive")
    if args.branch_strategy == BranchStrategy.SINGLE.value and args.milestone is None:
        parser.error("--branch-strategy single requires --milestone")
    if args.plan is not None and args.milestone is not None:
        parser.error("--plan only applies to a single phase")

    setup_logging(verbose=args.verbose, color=False if args.no_color else None)

    try:
        config = load_config(Path(args.config) if args.config else None)
    except (FileNotFoundError, ValueError) as e:
        eprint(f"Error: {e}")
        raise SystemExit(int(ExitCode.FAILURE))

    missing = missing_dependencies(config, args.dry_run)
    if missing:
        for name in missing:
            logger.error("Required command not found: %s", name)
        raise SystemExit(int(ExitCode.FAILURE))

    options = RunOptions(
        dry_run=args.dry_run,
        continue_mode=args.continue_mode,
        only_plan=args.plan,
        strategy=BranchStrategy(args.branch_strategy),
        auto_merge=args.auto_merge,
        assume_yes=args.yes,
    )

    logger.step("Phase Executor")
    if args.milestone is not None:
        rc = run_milestone(config, options, args.milestone)
    else:
        rc = run_phase(config, options, args.phase)
    raise SystemExit(int(rc))
