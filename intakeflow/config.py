"""
Workflow Settings -- Configurable Policy for the Intake Workflow.

The role-to-edge matrix and the notification templates are business rules
that differ between hospitals and change over time.  They are therefore
held in validated settings objects rather than hard-coded in the policy
functions, and can be loaded from YAML.

The defaults reproduce the production permission table:

    awaiting   -> scheduled   doctor, nurse
    scheduled  -> drawn       nurse
    drawn      -> in-transit  lab-tech
    in-transit -> in-lab      lab-tech
    in-lab     -> complete    doctor
    complete   -> awaiting    doctor (recheck)
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from intakeflow.models import NotificationKind, Role, Stage


# ---------------------------------------------------------------------------
# Transition rule model
# ---------------------------------------------------------------------------

class TransitionRule(BaseModel):
    """Roles authorized to move a patient across one stage edge.

    Admin is never listed here; admin authority is handled by the policy
    itself.
    """

    from_stage: Stage = Field(..., description="Stage the patient is leaving.")
    to_stage: Stage = Field(..., description="Stage the patient is entering.")
    allowed_roles: list[Role] = Field(
        ...,
        min_length=1,
        description="Non-admin roles that may perform this transition.",
    )
    description: str = Field(default="")

    @field_validator("to_stage")
    @classmethod
    def edge_must_exist(cls, v: Stage, info) -> Stage:
        from intakeflow.permissions import is_valid_transition

        from_stage = info.data.get("from_stage")
        if from_stage is not None and not is_valid_transition(from_stage, v):
            raise ValueError(
                f"{from_stage.value} -> {v.value} is not a transition in the stage sequence"
            )
        return v

    @field_validator("allowed_roles")
    @classmethod
    def no_placeholder_roles(cls, v: list[Role]) -> list[Role]:
        if Role.NONE in v:
            raise ValueError("Role 'none' cannot be authorized for a transition")
        return v


# ---------------------------------------------------------------------------
# Notification template model
# ---------------------------------------------------------------------------

class NotificationTemplate(BaseModel):
    """Message sent to responsible staff when a patient reaches a stage."""

    stage: Stage = Field(...)
    message: str = Field(..., min_length=1)
    subject: str = Field(
        default="Patient status update - {stage}",
        description="Subject line; ``{stage}`` is replaced with the stage value.",
    )
    include_results_link: bool = Field(
        default=False,
        description="Append a link to the patient's results page.",
    )
    results_link_prompt: str = Field(default="View results")
    kind: NotificationKind = Field(default=NotificationKind.INFO)


# ---------------------------------------------------------------------------
# Workflow settings
# ---------------------------------------------------------------------------

class WorkflowSettings(BaseModel):
    """Complete configuration for one deployment of the workflow engine."""

    transition_rules: list[TransitionRule] = Field(default_factory=list)
    notification_templates: list[NotificationTemplate] = Field(default_factory=list)
    admin_can_override_sequence: bool = Field(
        default=True,
        description=(
            "Admins may move a patient to any other stage, not only along "
            "the sequence.  When disabled admins are limited to valid edges."
        ),
    )
    allow_impersonation: bool = Field(
        default=False,
        description="Honour ImpersonationContext overrides in normalize_role.",
    )
    results_link_template: str = Field(default="/results/{hn}")
    system_sender: str = Field(default="system", min_length=1)
    lab_result_subject: str = Field(default="Lab results ready for review")
    broadcast_subject: str = Field(default="System notice")

    @field_validator("transition_rules")
    @classmethod
    def unique_edges(cls, v: list[TransitionRule]) -> list[TransitionRule]:
        seen: set[tuple[Stage, Stage]] = set()
        for rule in v:
            edge = (rule.from_stage, rule.to_stage)
            if edge in seen:
                raise ValueError(
                    f"Duplicate transition rule for {edge[0].value} -> {edge[1].value}"
                )
            seen.add(edge)
        return v

    @field_validator("notification_templates")
    @classmethod
    def unique_templates(cls, v: list[NotificationTemplate]) -> list[NotificationTemplate]:
        stages = [t.stage for t in v]
        if len(stages) != len(set(stages)):
            raise ValueError("At most one notification template per stage")
        return v

    def rule_for(self, from_stage: Stage, to_stage: Stage) -> TransitionRule | None:
        for rule in self.transition_rules:
            if rule.from_stage == from_stage and rule.to_stage == to_stage:
                return rule
        return None

    def template_for(self, stage: Stage) -> NotificationTemplate | None:
        for template in self.notification_templates:
            if template.stage == stage:
                return template
        return None


# ---------------------------------------------------------------------------
# Default settings
# ---------------------------------------------------------------------------

DEFAULT_SETTINGS = WorkflowSettings(
    transition_rules=[
        TransitionRule(
            from_stage=Stage.AWAITING,
            to_stage=Stage.SCHEDULED,
            allowed_roles=[Role.DOCTOR, Role.NURSE],
            description="Doctor or nurse books the blood draw.",
        ),
        TransitionRule(
            from_stage=Stage.SCHEDULED,
            to_stage=Stage.DRAWN,
            allowed_roles=[Role.NURSE],
            description="Nurse draws the sample.",
        ),
        TransitionRule(
            from_stage=Stage.DRAWN,
            to_stage=Stage.IN_TRANSIT,
            allowed_roles=[Role.LAB_TECH],
            description="Lab receives the sample for transport.",
        ),
        TransitionRule(
            from_stage=Stage.IN_TRANSIT,
            to_stage=Stage.IN_LAB,
            allowed_roles=[Role.LAB_TECH],
            description="Lab starts the analysis.",
        ),
        TransitionRule(
            from_stage=Stage.IN_LAB,
            to_stage=Stage.COMPLETE,
            allowed_roles=[Role.DOCTOR],
            description="Doctor reviews and confirms the results.",
        ),
        TransitionRule(
            from_stage=Stage.COMPLETE,
            to_stage=Stage.AWAITING,
            allowed_roles=[Role.DOCTOR],
            description="Doctor orders a recheck.",
        ),
    ],
    notification_templates=[
        NotificationTemplate(
            stage=Stage.AWAITING,
            message="Status: awaiting examination",
        ),
        NotificationTemplate(
            stage=Stage.SCHEDULED,
            message="Blood draw appointment booked",
            kind=NotificationKind.TIME,
        ),
        NotificationTemplate(
            stage=Stage.DRAWN,
            message="Blood drawn, waiting to be sent for testing",
            kind=NotificationKind.TIME,
        ),
        NotificationTemplate(
            stage=Stage.IN_TRANSIT,
            message="Sample in transit to the laboratory",
            kind=NotificationKind.SENT_SUCCESS,
        ),
        NotificationTemplate(
            stage=Stage.IN_LAB,
            message="Blood sample under laboratory analysis",
            include_results_link=True,
            results_link_prompt="Please review and record the results",
            kind=NotificationKind.TIME,
        ),
        NotificationTemplate(
            stage=Stage.COMPLETE,
            message="Blood results are out and ready for reporting",
            include_results_link=True,
            kind=NotificationKind.RESULT_READY,
        ),
    ],
)
"""Built-in settings matching the production permission table."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_settings_from_yaml(path: str | Path) -> WorkflowSettings:
    """Load workflow settings from a YAML file.

    The file holds a top-level ``workflow`` mapping.  Sections that are
    omitted fall back to ``DEFAULT_SETTINGS``.

    Example YAML structure::

        workflow:
          admin_can_override_sequence: false
          transition_rules:
            - from_stage: drawn
              to_stage: in-transit
              allowed_roles: [nurse]
            ...

    Args:
        path: Path to the YAML file.

    Returns:
        A validated ``WorkflowSettings`` instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If the settings fail validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "workflow" not in raw:
        raise ValueError("YAML file must contain a top-level 'workflow' mapping.")

    data = raw["workflow"]
    if not isinstance(data, dict):
        raise ValueError("'workflow' must be a mapping.")

    merged = DEFAULT_SETTINGS.model_dump()
    merged.update(data)
    return WorkflowSettings(**merged)


def resolve_settings(settings: WorkflowSettings | None) -> WorkflowSettings:
    """Return ``settings``, or ``DEFAULT_SETTINGS`` when none were given."""
    return settings if settings is not None else DEFAULT_SETTINGS
