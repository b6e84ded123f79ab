"""
In-memory collaborators: the patient store and the account directory.

Production deployments back these with a database.  The in-memory versions
keep the same contracts so the workflow can be exercised end to end.

The patient store is the sole synchronization point.  Its mutating methods
run under a lock so that ``compare_and_set_stage`` is atomic: the stage
write and the outbox event it records either both happen or neither does.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional

from intakeflow.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from intakeflow.models import Patient, StaffAccount, Stage, StageChangedEvent


# Fields a record edit may touch.  Stage and scheduling only change through
# compare_and_set_stage.
EDITABLE_FIELDS = frozenset(
    {"name", "surname", "gender", "age", "blood_type", "disease", "allergies"}
)


class PatientStore:
    """Keyed patient storage with a transactional outbox."""

    def __init__(self) -> None:
        self._patients: dict[str, Patient] = {}
        self._outbox: dict[str, StageChangedEvent] = {}
        self._lock = threading.Lock()

    def get(self, hn: str) -> Optional[Patient]:
        """Return a copy of the patient, or None if absent."""
        patient = self._patients.get(hn)
        return patient.model_copy(deep=True) if patient is not None else None

    def create(self, patient: Patient) -> Patient:
        """Insert a new patient.

        Raises:
            ConflictError: If the HN is already taken.
        """
        with self._lock:
            if patient.hn in self._patients:
                raise ConflictError(f"Patient HN '{patient.hn}' already exists.")
            self._patients[patient.hn] = patient.model_copy(deep=True)
        return patient.model_copy(deep=True)

    def update_fields(self, hn: str, changes: dict) -> Patient:
        """Apply demographic edits to a patient record."""
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields not editable here: {sorted(unknown)}", field=sorted(unknown)[0]
            )
        with self._lock:
            current = self._patients.get(hn)
            if current is None:
                raise NotFoundError(f"Patient '{hn}' not found.", entity="patient", key=hn)
            data = current.model_dump()
            data.update(changes)
            data["updated_at"] = datetime.now(timezone.utc)
            try:
                updated = Patient(**data)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            self._patients[hn] = updated
        return updated.model_copy(deep=True)

    def delete(self, hn: str) -> None:
        with self._lock:
            if self._patients.pop(hn, None) is None:
                raise NotFoundError(f"Patient '{hn}' not found.", entity="patient", key=hn)

    def compare_and_set_stage(
        self,
        hn: str,
        expected: Stage,
        stage: Stage,
        appointment_date: Optional[str],
        appointment_time: Optional[str],
        event: StageChangedEvent,
    ) -> Patient:
        """Atomically set the stage if it still equals ``expected``.

        The outbox event is recorded in the same critical section as the
        stage write.

        Raises:
            NotFoundError: If the patient no longer exists.
            ConflictError: If the persisted stage differs from ``expected``.
            PersistenceError: If the write itself fails.
        """
        with self._lock:
            current = self._patients.get(hn)
            if current is None:
                raise NotFoundError(f"Patient '{hn}' not found.", entity="patient", key=hn)
            if current.stage != expected:
                raise ConflictError(
                    f"Patient '{hn}' is at stage '{current.stage.value}', "
                    f"expected '{expected.value}'. Reload and retry."
                )
            updated = current.model_copy(update={
                "stage": stage,
                "appointment_date": appointment_date,
                "appointment_time": appointment_time,
                "updated_at": datetime.now(timezone.utc),
            })
            self._write(updated, event)
        return updated.model_copy(deep=True)

    def _write(self, patient: Patient, event: StageChangedEvent) -> None:
        """Commit a patient row and its outbox event together."""
        if event.event_id in self._outbox:
            raise PersistenceError(f"Outbox event '{event.event_id}' already recorded.")
        self._patients[patient.hn] = patient
        self._outbox[event.event_id] = event.model_copy(deep=True)

    # -- outbox --

    def pending_events(self) -> list[StageChangedEvent]:
        """Outbox events whose side effects have not all completed."""
        events = [e for e in self._outbox.values() if not e.completed]
        events.sort(key=lambda e: e.occurred_at)
        return [e.model_copy(deep=True) for e in events]

    def get_event(self, event_id: str) -> Optional[StageChangedEvent]:
        event = self._outbox.get(event_id)
        return event.model_copy(deep=True) if event is not None else None

    def save_event(self, event: StageChangedEvent) -> None:
        """Persist relay progress on an outbox event."""
        with self._lock:
            if event.event_id not in self._outbox:
                raise NotFoundError(
                    f"Outbox event '{event.event_id}' not found.",
                    entity="event",
                    key=event.event_id,
                )
            self._outbox[event.event_id] = event.model_copy(deep=True)

    def __contains__(self, hn: str) -> bool:
        return hn in self._patients

    def __len__(self) -> int:
        return len(self._patients)


class AccountDirectory:
    """Resolves staff accounts (emails) to internal ids and display names."""

    def __init__(self, accounts: Optional[list[StaffAccount]] = None) -> None:
        self._accounts: dict[str, StaffAccount] = {}
        for account in accounts or []:
            self.register(account)

    def register(self, account: StaffAccount) -> None:
        if account.account in self._accounts:
            raise ConflictError(f"Account '{account.account}' already registered.")
        self._accounts[account.account] = account.model_copy(deep=True)

    def get(self, account: str) -> Optional[StaffAccount]:
        found = self._accounts.get(account.strip().lower())
        return found.model_copy(deep=True) if found is not None else None

    def resolve(self, account: str) -> StaffAccount:
        """Like ``get`` but raises ``NotFoundError`` for unknown accounts."""
        found = self.get(account)
        if found is None:
            raise NotFoundError(
                f"Account '{account}' not found in directory.",
                entity="account",
                key=account,
            )
        return found

    def all(self) -> list[StaffAccount]:
        return [a.model_copy(deep=True) for a in sorted(
            self._accounts.values(), key=lambda a: a.account
        )]

    def __contains__(self, account: str) -> bool:
        return account.strip().lower() in self._accounts

    def __len__(self) -> int:
        return len(self._accounts)
