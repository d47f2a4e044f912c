"""Planning hierarchy: plan documents, phase resolution, roadmap and walk order."""

from .document import PlanDocument, TaskSpec, parse_plan, parse_plan_text, summary_path_for
from .resolver import (
    CompletionState,
    Phase,
    completion_state,
    load_phase,
    phase_number,
    plan_is_complete,
    require_planned,
    resolve_phase_dir,
)
from .roadmap import find_milestone_phases
from .walker import PlanStep, StepAction, list_plans, require_plan, walk_plans

__all__ = [
    "PlanDocument",
    "TaskSpec",
    "parse_plan",
    "parse_plan_text",
    "summary_path_for",
    "CompletionState",
    "Phase",
    "completion_state",
    "load_phase",
    "phase_number",
    "plan_is_complete",
    "require_planned",
    "resolve_phase_dir",
    "find_milestone_phases",
    "PlanStep",
    "StepAction",
    "list_plans",
    "require_plan",
    "walk_plans",
]
