"""
Core data models for the intake status workflow engine.

Patients are referenced by ``hn`` (hospital number).  Stages and roles are
closed enums; every legacy bilingual label is resolved to one of them at
the boundary, so downstream code never compares raw strings.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from intakeflow.errors import ValidationError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Stage(str, enum.Enum):
    """Processing stages a patient moves through.

    The sequence is fixed:

        AWAITING -> SCHEDULED -> DRAWN -> IN_TRANSIT -> IN_LAB -> COMPLETE

    with a single backward edge ``COMPLETE -> AWAITING`` (recheck).
    """

    AWAITING = "awaiting"
    SCHEDULED = "scheduled"
    DRAWN = "drawn"
    IN_TRANSIT = "in-transit"
    IN_LAB = "in-lab"
    COMPLETE = "complete"

    @property
    def legacy_label(self) -> str:
        """The Thai label stored by older clients."""
        return _STAGE_LEGACY_LABELS[self]


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.AWAITING,
    Stage.SCHEDULED,
    Stage.DRAWN,
    Stage.IN_TRANSIT,
    Stage.IN_LAB,
    Stage.COMPLETE,
)

_STAGE_LEGACY_LABELS: dict[Stage, str] = {
    Stage.AWAITING: "รอตรวจ",
    Stage.SCHEDULED: "นัดหมาย",
    Stage.DRAWN: "เจาะเลือด",
    Stage.IN_TRANSIT: "กำลังจัดส่ง",
    Stage.IN_LAB: "กำลังตรวจ",
    Stage.COMPLETE: "เสร็จสิ้น",
}

_STAGE_LOOKUP: dict[str, Stage] = {
    **{stage.value: stage for stage in Stage},
    **{label: stage for stage, label in _STAGE_LEGACY_LABELS.items()},
}


def parse_stage(raw: str | Stage) -> Stage:
    """Resolve a canonical or legacy stage label to a ``Stage``.

    Raises:
        ValidationError: If the label is not a known stage.
    """
    if isinstance(raw, Stage):
        return raw
    stage = _STAGE_LOOKUP.get((raw or "").strip())
    if stage is None:
        raise ValidationError(f"Unknown stage '{raw}'.", field="stage")
    return stage


class Role(str, enum.Enum):
    """Canonical actor roles.

    ``NONE`` is what an unrecognised role string normalizes to.  It holds
    no privileges anywhere in the policy.
    """

    ADMIN = "admin"
    DOCTOR = "doctor"
    NURSE = "nurse"
    LAB_TECH = "lab-tech"
    NONE = "none"


class ResponsibilityKind(str, enum.Enum):
    CREATOR = "creator"
    RESPONSIBLE = "responsible"


class NotificationKind(str, enum.Enum):
    """Popup hint attached to a system message for the inbox UI."""

    TIME = "time"
    SENT_SUCCESS = "sent_success"
    RESULT_READY = "result_ready"
    INFO = "info"


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

class ImpersonationContext(BaseModel):
    """Explicit per-request role override used by test and support tooling.

    Only honoured when ``enabled`` is set here *and* the workflow settings
    allow impersonation.
    """

    role: Role = Field(..., description="Role to act as for this request.")
    enabled: bool = Field(default=False)
    reason: str = Field(default="", description="Why the override is in use.")


class Actor(BaseModel):
    """The authenticated caller of a core operation."""

    account: str = Field(..., min_length=1, description="Staff account (email).")
    display_name: str = Field(default="")
    role: Role = Field(default=Role.NONE)

    @field_validator("account")
    @classmethod
    def normalize_account(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @classmethod
    def from_session(
        cls,
        account: str,
        display_name: str,
        role_label: str,
        impersonation: Optional[ImpersonationContext] = None,
        settings=None,
    ) -> "Actor":
        """Build an actor from identity-provider fields.

        This is the single place a raw role string is normalized.
        """
        from intakeflow.permissions import normalize_role

        return cls(
            account=account,
            display_name=display_name,
            role=normalize_role(role_label, impersonation, settings),
        )


# ---------------------------------------------------------------------------
# Patients and staff
# ---------------------------------------------------------------------------

class Patient(BaseModel):
    """A patient as seen by the workflow engine."""

    hn: str = Field(..., min_length=1, description="Hospital number.")
    name: str = Field(default="")
    surname: str = Field(default="")
    stage: Stage = Field(default=Stage.AWAITING)
    appointment_date: Optional[str] = Field(
        default=None,
        description="Populated only while the patient is in the scheduled stage.",
    )
    appointment_time: Optional[str] = Field(default=None)
    gender: str = Field(default="")
    age: Optional[int] = Field(default=None, ge=0)
    blood_type: str = Field(default="")
    disease: str = Field(default="-")
    allergies: str = Field(default="-")
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.surname}".strip()


class StaffAccount(BaseModel):
    """An entry in the account directory."""

    user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account: str = Field(..., min_length=1)
    display_name: str = Field(default="")
    role_label: str = Field(
        default="",
        description="Raw role string as stored by the identity provider.",
    )
    approved: bool = Field(default=True)

    @field_validator("account")
    @classmethod
    def normalize_account(cls, v: str) -> str:
        return v.strip().lower()


# ---------------------------------------------------------------------------
# Responsibility, history, notifications
# ---------------------------------------------------------------------------

class ResponsibilityRecord(BaseModel):
    """Links a staff account to a patient it is responsible for.

    Rows are soft-deleted by clearing ``active``; they are never removed.
    """

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_hn: str = Field(...)
    account: str = Field(...)
    kind: ResponsibilityKind = Field(default=ResponsibilityKind.RESPONSIBLE)
    active: bool = Field(default=True)
    assigned_by: str = Field(default="")
    assigned_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    display_name: str = Field(
        default="",
        description="Resolved from the account directory when listed.",
    )


class StatusHistoryEntry(BaseModel):
    """One recorded stage transition.  Never mutated once appended."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_id: str = Field(default="", description="Outbox event that produced this row.")
    patient_hn: str = Field(...)
    from_stage: Stage = Field(...)
    to_stage: Stage = Field(...)
    actor_account: str = Field(...)
    actor_display_name: str = Field(default="")
    actor_role: Role = Field(default=Role.NONE)
    note: str = Field(default="")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first one.",
    )


class NotificationMessage(BaseModel):
    """A message delivered to a staff inbox."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_id: str = Field(default="")
    sender: str = Field(default="system")
    recipient: str = Field(..., description="Internal user id of the recipient.")
    recipient_account: str = Field(default="")
    subject: str = Field(default="")
    body: str = Field(default="")
    category: str = Field(default="system_update")
    kind: NotificationKind = Field(default=NotificationKind.INFO)
    read: bool = Field(default=False)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class StageChangedEvent(BaseModel):
    """Outbox row written atomically with a stage change.

    The relay works through the two side effects independently, so a
    failed notification step can be retried without re-recording history.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_hn: str = Field(...)
    from_stage: Stage = Field(...)
    to_stage: Stage = Field(...)
    actor: Actor = Field(...)
    note: str = Field(default="")
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    history_recorded: bool = Field(default=False)
    notified: bool = Field(default=False)
    attempts: int = Field(default=0, ge=0)
    last_error: str = Field(default="")

    @property
    def completed(self) -> bool:
        return self.history_recorded and self.notified
