"""
Status Workflow -- the stage state machine and its side effects.

**State machine:**

    awaiting -> scheduled -> drawn -> in-transit -> in-lab -> complete

With the recheck path:

    complete -> awaiting

``request_transition()`` is the only way a patient's stage changes.  It
runs in this order:

1. Load the patient (``NotFoundError``).
2. Reject a stale ``observed_stage`` (``ConflictError``).
3. Check the actor's role against the edge (``AuthorizationError``).
4. Require appointment date and time for ``scheduled`` (``ValidationError``).
5. Compare-and-swap the stage; the store records a ``StageChangedEvent``
   in the same write (``ConflictError`` / ``PersistenceError``).
6. Hand the event to the ``StageEventRelay``, which records history and
   fans out notifications.  Relay failures are logged and left on the
   event for ``drain()`` to retry; they never fail the transition.

Everything up to step 5 happens before any write, so a rejected request
leaves no trace.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, Field

from intakeflow.config import WorkflowSettings, resolve_settings
from intakeflow.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
    WorkflowError,
)
from intakeflow.history import StatusHistoryLog
from intakeflow.models import Actor, Patient, Stage, StageChangedEvent, StatusHistoryEntry, parse_stage
from intakeflow.notifications import NotificationDispatcher
from intakeflow.permissions import can_transition, required_role_for, transition_options
from intakeflow.store import PatientStore


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / result models
# ---------------------------------------------------------------------------

class TransitionExtra(BaseModel):
    """Optional inputs that accompany a transition request."""

    note: str = Field(default="")
    scheduled_date: str = Field(default="")
    scheduled_time: str = Field(default="")


class TransitionResult(BaseModel):
    """What a successful ``request_transition`` reports back."""

    patient: Patient
    from_stage: Stage
    to_stage: Stage
    event_id: str
    history_recorded: bool = False
    notified_count: int = 0


# ---------------------------------------------------------------------------
# Outbox relay
# ---------------------------------------------------------------------------

class StageEventRelay:
    """Performs the side effects recorded in the outbox.

    Each event carries two independent steps, history and notification.
    ``process()`` runs whichever are still outstanding, so it can be
    called again for the same event without duplicating finished work.
    """

    def __init__(
        self,
        store: PatientStore,
        history: StatusHistoryLog,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self._store = store
        self._history = history
        self._dispatcher = dispatcher

    def process(self, event: StageChangedEvent) -> tuple[StageChangedEvent, int]:
        """Run outstanding steps for one event; never raises.

        Returns:
            The updated event and the number of recipients notified on
            this attempt.
        """
        event = event.model_copy(deep=True)
        event.attempts += 1
        errors: list[str] = []
        notified = 0

        if not event.history_recorded:
            try:
                if not self._history.has_event(event.event_id):
                    self._history.record_transition(
                        event.patient_hn,
                        event.from_stage,
                        event.to_stage,
                        event.actor,
                        note=event.note,
                        event_id=event.event_id,
                    )
                event.history_recorded = True
            except Exception as exc:
                logger.warning(
                    f"History append failed for {event.patient_hn} (event {event.event_id}): {exc}",
                    exc_info=True,
                )
                errors.append(f"history: {exc}")

        if not event.notified:
            try:
                result = self._dispatcher.fanout(
                    event.patient_hn, event.to_stage, event_id=event.event_id
                )
                notified = result.notified_count
                if result.complete:
                    event.notified = True
                else:
                    errors.append(f"notification: failed for {', '.join(result.failed)}")
            except Exception as exc:
                logger.warning(
                    f"Notification fan-out failed for {event.patient_hn} (event {event.event_id}): {exc}",
                    exc_info=True,
                )
                errors.append(f"notification: {exc}")

        event.last_error = "; ".join(errors)
        try:
            self._store.save_event(event)
        except Exception as exc:
            logger.warning(f"Could not save relay progress for event {event.event_id}: {exc}", exc_info=True)
        return event, notified

    def drain(self) -> int:
        """Retry every pending outbox event.

        Returns:
            How many events are completed after this pass.
        """
        completed = 0
        for event in self._store.pending_events():
            updated, _ = self.process(event)
            if updated.completed:
                completed += 1
        if completed:
            logger.info(f"Relay completed {completed} pending stage events")
        return completed


# ---------------------------------------------------------------------------
# Workflow orchestrator
# ---------------------------------------------------------------------------

class StatusWorkflow:
    """Validates, persists and announces patient stage changes."""

    def __init__(
        self,
        store: PatientStore,
        history: StatusHistoryLog,
        dispatcher: NotificationDispatcher,
        settings: Optional[WorkflowSettings] = None,
    ) -> None:
        self._store = store
        self._history = history
        self._settings = resolve_settings(settings)
        self.relay = StageEventRelay(store, history, dispatcher)

    def _load(self, hn: str) -> Patient:
        patient = self._store.get(hn)
        if patient is None:
            raise NotFoundError(f"Patient '{hn}' not found.", entity="patient", key=hn)
        return patient

    def request_transition(
        self,
        hn: str,
        target_stage: Stage | str,
        actor: Actor,
        extra: Optional[TransitionExtra] = None,
        observed_stage: Optional[Stage | str] = None,
    ) -> TransitionResult:
        """Move a patient to ``target_stage`` on behalf of ``actor``.

        Args:
            hn: Patient hospital number.
            target_stage: Requested stage, as a ``Stage`` or a canonical or
                legacy label.
            actor: Authenticated caller with a normalized role.
            extra: Note and, for ``scheduled``, appointment date and time.
            observed_stage: The stage the caller last saw.  When given it
                must match the stored stage.

        Returns:
            A ``TransitionResult`` once the stage is persisted.

        Raises:
            NotFoundError: Unknown patient.
            ConflictError: Stage changed since the caller observed it.
            AuthorizationError: Role may not perform this edge.
            ValidationError: Unknown stage label, or missing appointment
                date or time.
            PersistenceError: The store rejected the write.
        """
        target_stage = parse_stage(target_stage)
        if observed_stage is not None:
            observed_stage = parse_stage(observed_stage)
        extra = extra or TransitionExtra()
        patient = self._load(hn)
        from_stage = patient.stage

        if observed_stage is not None and observed_stage != from_stage:
            raise ConflictError(
                f"Patient '{hn}' is at '{from_stage.value}', not '{observed_stage.value}'. "
                "Reload and retry."
            )

        if not can_transition(actor.role, from_stage, target_stage, self._settings):
            required = required_role_for(from_stage, target_stage, self._settings)
            logger.debug(
                f"Denied {actor.account} ({actor.role.value}) {hn}: "
                f"{from_stage.value} -> {target_stage.value}"
            )
            raise AuthorizationError(
                f"Moving patient from '{from_stage.value}' to '{target_stage.value}' "
                f"requires role: {required}.",
                required_role=required,
                reason="transition_not_permitted",
            )

        appointment_date: Optional[str] = None
        appointment_time: Optional[str] = None
        if target_stage == Stage.SCHEDULED:
            if not extra.scheduled_date.strip():
                raise ValidationError(
                    "An appointment date is required to schedule a patient.",
                    field="scheduled_date",
                )
            if not extra.scheduled_time.strip():
                raise ValidationError(
                    "An appointment time is required to schedule a patient.",
                    field="scheduled_time",
                )
            appointment_date = extra.scheduled_date.strip()
            appointment_time = extra.scheduled_time.strip()

        event = StageChangedEvent(
            patient_hn=hn,
            from_stage=from_stage,
            to_stage=target_stage,
            actor=actor,
            note=extra.note,
        )
        try:
            updated = self._store.compare_and_set_stage(
                hn,
                expected=from_stage,
                stage=target_stage,
                appointment_date=appointment_date,
                appointment_time=appointment_time,
                event=event,
            )
        except WorkflowError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Could not save stage for patient '{hn}': {exc}") from exc

        logger.info(
            f"Patient {hn}: {from_stage.value} -> {target_stage.value} by {actor.account}"
        )

        event, notified = self.relay.process(event)
        return TransitionResult(
            patient=updated,
            from_stage=from_stage,
            to_stage=target_stage,
            event_id=event.event_id,
            history_recorded=event.history_recorded,
            notified_count=notified,
        )

    def available_transitions(self, hn: str, actor: Actor) -> list[Stage]:
        """Stages ``actor`` may move the patient to right now."""
        patient = self._load(hn)
        return [
            stage
            for stage in transition_options(patient.stage)
            if can_transition(actor.role, patient.stage, stage, self._settings)
        ]

    def history_for(self, hn: str) -> list[StatusHistoryEntry]:
        return self._history.entries_for(hn)

    def timeline_for(self, hn: str) -> dict[Stage, StatusHistoryEntry]:
        return self._history.timeline_for(hn)
