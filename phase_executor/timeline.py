"""Run timeline logger.

Appends one JSON object per line to .planning/.executor/timeline.jsonl so a
run can be audited after the fact (which plans ran, which agents failed,
which pull requests merged, when infrastructure came and went).
"""

from __future__ import annotations

import json
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from .exec import utc_now_iso


class EventType(str, Enum):
    """Timeline event types."""
    RUN_START = "run_start"
    RUN_END = "run_end"

    PHASE_START = "phase_start"
    PHASE_END = "phase_end"

    PLAN_START = "plan_start"
    PLAN_COMPLETE = "plan_complete"
    PLAN_FAILED = "plan_failed"
    PLAN_SKIPPED = "plan_skipped"

    AGENT_START = "agent_start"
    AGENT_COMPLETE = "agent_complete"
    AGENT_FAILED = "agent_failed"

    PR_CREATED = "pr_created"
    MERGE_ATTEMPT = "merge_attempt"
    MERGED = "merged"

    CONFLICT_RESOLVED = "conflict_resolved"
    CONFLICT_FAILED = "conflict_failed"

    INFRA_START = "infra_start"
    INFRA_READY = "infra_ready"
    INFRA_STOP = "infra_stop"


class TimelineLogger:
    """Writer for timeline events in JSONL format.

    Every event carries ``ts``, ``event`` and ``run_id``; the remaining
    fields are only present when given.
    """

    def __init__(self, timeline_path: Path, run_id: Optional[str] = None):
        self.timeline_path = timeline_path
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.timeline_path.parent.mkdir(parents=True, exist_ok=True)

    def log(
        self,
        event: EventType,
        phase: Optional[str] = None,
        plan: Optional[str] = None,
        branch: Optional[str] = None,
        status: Optional[str] = None,
        duration_ms: Optional[int] = None,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Append an event to the timeline.

        Returns:
            The event dict that was written.
        """
        event_data: Dict[str, Any] = {
            "ts": utc_now_iso(),
            "event": event.value if isinstance(event, EventType) else event,
            "run_id": self.run_id,
        }
        optional = {
            "phase": phase,
            "plan": plan,
            "branch": branch,
            "status": status,
            "duration_ms": duration_ms,
            "error": error,
            "details": details,
        }
        event_data.update({k: v for k, v in optional.items() if v is not None})

        with self.timeline_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event_data, separators=(",", ":")) + "\n")
        return event_data

    def run_start(self, target: str, strategy: str, dry_run: bool) -> Dict[str, Any]:
        return self.log(
            EventType.RUN_START,
            details={"target": target, "strategy": strategy, "dry_run": dry_run},
        )

    def run_end(self, status: str, completed: int, skipped: int, failed: int) -> Dict[str, Any]:
        return self.log(
            EventType.RUN_END,
            status=status,
            details={"completed": completed, "skipped": skipped, "failed": failed},
        )

    def plan_failed(self, phase: str, plan: str, error: str) -> Dict[str, Any]:
        return self.log(EventType.PLAN_FAILED, phase=phase, plan=plan, error=error)


class NullTimeline(TimelineLogger):
    """Timeline that records nothing (dry runs and tests)."""

    def __init__(self):
        self.timeline_path = None
        self.run_id = "dry-run"

    def log(self, event: EventType, **kwargs: Any) -> Dict[str, Any]:
        return {"event": event.value if isinstance(event, EventType) else event, **kwargs}
