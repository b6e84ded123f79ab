"""
Stage Timeline Report.

Summarizes a patient's progress through the post-intake stages for the
patient detail view.  Each step reports whether it is completed or
current, when it was last reached, by whom, and how long it took since
the previous step.

``awaiting`` is the initial state and is not shown as a step.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from intakeflow.history import StatusHistoryLog
from intakeflow.models import STAGE_ORDER, Patient, Role, Stage


TIMELINE_STEPS: tuple[Stage, ...] = tuple(s for s in STAGE_ORDER if s != Stage.AWAITING)


def format_elapsed(start: datetime, end: datetime) -> str:
    """Render the gap between two timestamps as ``"<d> days <h> h"`` or ``"<h> h"``."""
    hours = int((end - start).total_seconds() // 3600)
    days = hours // 24
    if days > 0:
        return f"{days} days {hours % 24} h"
    return f"{hours} h"


class TimelineStep:
    """One stage in the timeline."""

    def __init__(
        self,
        stage: Stage,
        completed: bool,
        current: bool,
        reached_at: Optional[datetime] = None,
        changed_by: str = "",
        role: Optional[Role] = None,
        elapsed: Optional[str] = None,
    ) -> None:
        self.stage = stage
        self.completed = completed
        self.current = current
        self.reached_at = reached_at
        self.changed_by = changed_by
        self.role = role
        self.elapsed = elapsed

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "completed": self.completed,
            "current": self.current,
            "reached_at": self.reached_at.isoformat() if self.reached_at else None,
            "changed_by": self.changed_by,
            "role": self.role.value if self.role else None,
            "elapsed": self.elapsed,
        }


class StageTimeline:
    """Timeline of one patient's stages."""

    def __init__(self, hn: str, current_stage: Stage, steps: list[TimelineStep]) -> None:
        self.hn = hn
        self.current_stage = current_stage
        self.steps = steps

    @property
    def progress(self) -> float:
        """Fraction of steps completed, 0.0 to 1.0."""
        done = sum(1 for step in self.steps if step.completed)
        return done / len(self.steps) if self.steps else 0.0

    def step(self, stage: Stage) -> Optional[TimelineStep]:
        for step in self.steps:
            if step.stage == stage:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize the timeline to a dictionary."""
        return {
            "hn": self.hn,
            "current_stage": self.current_stage.value,
            "progress": self.progress,
            "steps": [step.to_dict() for step in self.steps],
        }

    def __repr__(self) -> str:
        return (
            f"StageTimeline(hn={self.hn}, stage={self.current_stage.value}, "
            f"progress={self.progress:.2f})"
        )


def build_stage_timeline(patient: Patient, history_log: StatusHistoryLog) -> StageTimeline:
    """Build the stage timeline for a patient from its status history.

    Args:
        patient: The patient, used for the current stage.
        history_log: The status history to read transitions from.

    Returns:
        A ``StageTimeline`` with one step per post-intake stage.
    """
    latest = history_log.timeline_for(patient.hn)
    active_index = (
        TIMELINE_STEPS.index(patient.stage) if patient.stage in TIMELINE_STEPS else -1
    )

    steps: list[TimelineStep] = []
    for index, stage in enumerate(TIMELINE_STEPS):
        entry = latest.get(stage)
        elapsed = None
        if entry is not None and index > 0:
            previous = latest.get(TIMELINE_STEPS[index - 1])
            if previous is not None:
                elapsed = format_elapsed(previous.timestamp, entry.timestamp)
        steps.append(TimelineStep(
            stage=stage,
            completed=index <= active_index,
            current=index == active_index,
            reached_at=entry.timestamp if entry is not None else None,
            changed_by=(entry.actor_display_name or entry.actor_account) if entry is not None else "",
            role=entry.actor_role if entry is not None else None,
            elapsed=elapsed,
        ))

    return StageTimeline(hn=patient.hn, current_stage=patient.stage, steps=steps)
