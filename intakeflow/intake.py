"""
Patient Intake -- registering, editing and deleting patient records.

A new patient always enters the workflow at ``awaiting`` with the
registering account as its creator.  Further responsible staff and the
first notification are best-effort: a failure there is logged and
reported on the result, but the patient stays registered.
"""

from __future__ import annotations

import logging
from typing import Iterable

from pydantic import BaseModel, Field

from intakeflow.errors import AuthorizationError, NotFoundError, WorkflowError
from intakeflow.models import Actor, Patient, Stage
from intakeflow.notifications import NotificationDispatcher
from intakeflow.permissions import can_create_patient, can_delete_patient, can_edit_patient_record
from intakeflow.responsibility import ResponsibilityRegistry
from intakeflow.store import AccountDirectory, PatientStore


logger = logging.getLogger(__name__)


class RegistrationResult(BaseModel):
    """Outcome of ``register_patient``."""

    patient: Patient
    creator: str
    responsible_added: list[str] = Field(default_factory=list)
    responsible_failed: list[str] = Field(default_factory=list)
    notified_count: int = 0


class PatientIntake:
    """Creates, edits and removes patients on behalf of staff."""

    def __init__(
        self,
        store: PatientStore,
        directory: AccountDirectory,
        registry: ResponsibilityRegistry,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self._store = store
        self._directory = directory
        self._registry = registry
        self._dispatcher = dispatcher

    def register_patient(
        self,
        patient: Patient,
        actor: Actor,
        additional_responsible: Iterable[str] = (),
    ) -> RegistrationResult:
        """Register a new patient with ``actor`` as creator.

        Whatever stage and appointment the incoming record carries, the
        patient is stored at ``awaiting`` with no appointment.

        Raises:
            AuthorizationError: The actor's role may not create patients.
            NotFoundError: The actor is not in the account directory.
            ConflictError: The HN is already registered.
        """
        if not can_create_patient(actor.role):
            raise AuthorizationError(
                f"Role '{actor.role.value}' may not register patients.",
                required_role="doctor or nurse",
                reason="create_patient",
            )
        # Checked up front so a missing creator never leaves an orphan patient.
        self._directory.resolve(actor.account)

        created = self._store.create(patient.model_copy(update={
            "stage": Stage.AWAITING,
            "appointment_date": None,
            "appointment_time": None,
        }))
        try:
            self._registry.assign_creator(created.hn, actor.account)
        except WorkflowError:
            self._store.delete(created.hn)
            logger.warning(f"Rolled back patient {created.hn}: creator could not be assigned")
            raise
        logger.info(f"Registered patient {created.hn} (creator {actor.account})")

        result = RegistrationResult(patient=created, creator=actor.account)
        for account in additional_responsible:
            if account.strip().lower() == actor.account:
                continue
            try:
                self._registry.add_responsible(created.hn, account, actor)
            except WorkflowError as exc:
                logger.warning(f"Could not add {account} to patient {created.hn}: {exc}")
                result.responsible_failed.append(account)
                continue
            result.responsible_added.append(account.strip().lower())

        try:
            fanout = self._dispatcher.fanout(created.hn, Stage.AWAITING)
            result.notified_count = fanout.notified_count
        except Exception as exc:
            logger.warning(f"Registration notice for {created.hn} failed: {exc}", exc_info=True)

        return result

    def update_record(self, hn: str, actor: Actor, changes: dict) -> Patient:
        """Edit demographic fields of a patient.

        Raises:
            NotFoundError: Unknown patient.
            AuthorizationError: Actor is neither admin nor responsible.
            ValidationError: A field is not editable or a value is invalid.
        """
        if hn not in self._store:
            raise NotFoundError(f"Patient '{hn}' not found.", entity="patient", key=hn)
        if not can_edit_patient_record(actor.role, self._registry.is_responsible(hn, actor.account)):
            raise AuthorizationError(
                f"'{actor.account}' may not edit patient '{hn}'.",
                required_role="admin or responsible doctor/nurse",
                reason="edit_patient",
            )
        updated = self._store.update_fields(hn, changes)
        logger.info(f"Updated patient {hn} fields {sorted(changes)} by {actor.account}")
        return updated

    def delete_patient(self, hn: str, actor: Actor) -> None:
        """Delete a patient.  Admin, or the creator if doctor or nurse.

        The patient's responsibility records are deactivated, so the HN
        carries no staff over if it is registered again.

        Raises:
            NotFoundError: Unknown patient.
            AuthorizationError: Actor may not delete this patient.
        """
        if hn not in self._store:
            raise NotFoundError(f"Patient '{hn}' not found.", entity="patient", key=hn)
        if not can_delete_patient(actor.role, self._registry.is_creator(hn, actor.account)):
            raise AuthorizationError(
                f"'{actor.account}' may not delete patient '{hn}'.",
                required_role="admin or creating doctor/nurse",
                reason="delete_patient",
            )
        self._store.delete(hn)
        self._registry.deactivate_patient(hn)
        logger.info(f"Deleted patient {hn} (by {actor.account})")
