"""Console logging for the phase executor.

Configures the stdlib logging tree with leveled, prefixed lines:

    [INFO] Phase: 11
    [OK] Task 2 completed
    [WARN] Shared files detected across phases
    [ERROR] Plan failed. Stopping execution.
    [STEP] Plan 11-02: 11-02-PLAN.md

Two extra levels exist: SUCCESS (between INFO and WARNING) and STEP
(just above INFO). Colors are applied only when the stream is a TTY.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

SUCCESS = 25
STEP = 22

logging.addLevelName(SUCCESS, "SUCCESS")
logging.addLevelName(STEP, "STEP")

LOGGER_NAME = "phase_executor"

_PREFIXES = {
    logging.DEBUG: ("[DEBUG]", "\033[0;37m"),
    logging.INFO: ("[INFO]", "\033[0;34m"),
    STEP: ("[STEP]", "\033[0;36m"),
    SUCCESS: ("[OK]", "\033[0;32m"),
    logging.WARNING: ("[WARN]", "\033[1;33m"),
    logging.ERROR: ("[ERROR]", "\033[0;31m"),
    logging.CRITICAL: ("[ERROR]", "\033[0;31m"),
}
_RESET = "\033[0m"


class PrefixFormatter(logging.Formatter):
    """Formats records as ``[LEVEL] message`` with optional ANSI colour."""

    def __init__(self, color: bool = False):
        super().__init__("%(message)s")
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        prefix, color = _PREFIXES.get(record.levelno, (f"[{record.levelname}]", ""))
        if self.color and color:
            prefix = f"{color}{prefix}{_RESET}"
        return f"{prefix} {message}"


class ExecutorLogger(logging.Logger):
    """Logger with ``success`` and ``step`` helpers."""

    def success(self, msg, *args, **kwargs) -> None:
        if self.isEnabledFor(SUCCESS):
            self._log(SUCCESS, msg, args, **kwargs)

    def step(self, msg, *args, **kwargs) -> None:
        if self.isEnabledFor(STEP):
            self._log(STEP, msg, args, **kwargs)


def get_logger(name: str) -> ExecutorLogger:
    """Return a module logger under the ``phase_executor`` namespace."""
    previous = logging.getLoggerClass()
    logging.setLoggerClass(ExecutorLogger)
    try:
        logger = logging.getLogger(name)
    finally:
        logging.setLoggerClass(previous)
    return logger  # type: ignore[return-value]


def setup_logging(
    verbose: bool = False,
    color: Optional[bool] = None,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """Attach the prefixed console handler to the package logger.

    Args:
        verbose: Emit DEBUG records as well.
        color: Force colour on/off. Defaults to auto-detect via ``isatty``.
        stream: Output stream (default: stdout).

    Returns:
        The configured package logger.
    """
    stream = stream or sys.stdout
    if color is None:
        color = hasattr(stream, "isatty") and stream.isatty()

    root = get_logger(LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(PrefixFormatter(color=color))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False
    return root
