"""Phase Executor - run planned milestones, phases and plans through Claude sessions."""

__all__ = [
    "__version__",
    "config",
    "timeline",
    "exec",
    "signals",
    "planning",
    "branching",
    "agents",
    "orchestrator",
]

__version__ = "0.1.0"

from phase_executor import config
from phase_executor import timeline
from phase_executor import exec
from phase_executor import signals
from phase_executor import planning
from phase_executor import branching
from phase_executor import agents
from phase_executor import orchestrator
