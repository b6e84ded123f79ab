"""
Responsibility Registry -- who owns and follows each patient.

Every patient has exactly one active ``creator`` record, assigned when the
patient is registered.  Any number of further staff may be ``responsible``.
Responsible staff receive stage notifications and may edit the patient.

Records are never removed.  Removing someone clears ``active``; adding
them again reactivates the same row, so each (patient, account) pair has
at most one record.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from intakeflow.errors import (
    AlreadyResponsibleError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from intakeflow.models import Actor, ResponsibilityKind, ResponsibilityRecord
from intakeflow.permissions import can_manage_responsibility
from intakeflow.store import AccountDirectory, PatientStore


logger = logging.getLogger(__name__)


def _normalize(account: str) -> str:
    return account.strip().lower()


class ResponsibilityRegistry:
    """In-memory registry of patient responsibility records."""

    def __init__(self, patients: PatientStore, directory: AccountDirectory) -> None:
        self._patients = patients
        self._directory = directory
        self._records: list[ResponsibilityRecord] = []
        self._lock = threading.Lock()

    # -- helpers --

    def _find(self, hn: str, account: str) -> Optional[ResponsibilityRecord]:
        account = _normalize(account)
        for record in self._records:
            if record.patient_hn == hn and record.account == account:
                return record
        return None

    def _active_creator(self, hn: str) -> Optional[ResponsibilityRecord]:
        for record in self._records:
            if (
                record.patient_hn == hn
                and record.active
                and record.kind == ResponsibilityKind.CREATOR
            ):
                return record
        return None

    def _require_patient(self, hn: str) -> None:
        if hn not in self._patients:
            raise NotFoundError(f"Patient '{hn}' not found.", entity="patient", key=hn)

    # -- operations --

    def assign_creator(self, hn: str, account: str) -> ResponsibilityRecord:
        """Record the account that registered the patient.

        An inactive record left behind by a deleted patient with the same
        HN is reused as the new creator record.

        Raises:
            NotFoundError: Unknown patient or account.
            ConflictError: The patient already has an active creator, or
                the account is already active on the patient.
        """
        self._require_patient(hn)
        staff = self._directory.resolve(account)
        with self._lock:
            if self._active_creator(hn) is not None:
                raise ConflictError(f"Patient '{hn}' already has a creator.")
            record = self._find(hn, staff.account)
            if record is not None and record.active:
                raise ConflictError(
                    f"Account '{staff.account}' already has a record for patient '{hn}'."
                )
            if record is None:
                record = ResponsibilityRecord(patient_hn=hn, account=staff.account)
                self._records.append(record)
            record.kind = ResponsibilityKind.CREATOR
            record.active = True
            record.assigned_by = staff.account
            record.assigned_at = datetime.now(timezone.utc)
            stored = record.model_copy(deep=True)
        logger.info(f"Assigned creator {staff.account} to patient {hn}")
        return stored

    def add_responsible(self, hn: str, account: str, assigned_by: Actor) -> ResponsibilityRecord:
        """Make ``account`` responsible for the patient.

        The caller must be admin or already responsible.  An inactive record
        for the same pair is reactivated in place.

        Raises:
            NotFoundError: Unknown patient or account.
            AuthorizationError: The caller may not manage this patient's staff.
            AlreadyResponsibleError: The account is already actively responsible.
        """
        self._require_patient(hn)
        if not can_manage_responsibility(
            assigned_by.role, self.is_responsible(hn, assigned_by.account)
        ):
            raise AuthorizationError(
                f"'{assigned_by.account}' may not assign staff to patient '{hn}'.",
                required_role="admin or responsible doctor/nurse",
                reason="manage_responsibility",
            )
        staff = self._directory.resolve(account)

        with self._lock:
            existing = self._find(hn, staff.account)
            if existing is not None:
                if existing.active:
                    raise AlreadyResponsibleError(
                        f"'{staff.account}' is already responsible for patient '{hn}'."
                    )
                existing.active = True
                existing.assigned_by = assigned_by.account
                existing.assigned_at = datetime.now(timezone.utc)
                logger.info(f"Reactivated {staff.account} for patient {hn}")
                return existing.model_copy(deep=True)

            record = ResponsibilityRecord(
                patient_hn=hn,
                account=staff.account,
                kind=ResponsibilityKind.RESPONSIBLE,
                assigned_by=assigned_by.account,
            )
            self._records.append(record)
            stored = record.model_copy(deep=True)
        logger.info(f"Added {staff.account} as responsible for patient {hn}")
        return stored

    def remove_responsible(self, hn: str, account: str, requested_by: Actor) -> ResponsibilityRecord:
        """Soft-delete a responsibility record.

        Non-admins may only remove themselves.  The creator record stays;
        use ``reassign_creator`` to hand a patient over.

        Raises:
            AuthorizationError: A non-admin targeting someone else.
            ValidationError: Target is the patient's creator.
            NotFoundError: No active record for the pair.
        """
        account = _normalize(account)
        if not requested_by.is_admin and account != requested_by.account:
            raise AuthorizationError(
                f"'{requested_by.account}' may only remove themselves.",
                required_role="admin",
                reason="remove_other_staff",
            )
        with self._lock:
            record = self._find(hn, account)
            if record is None or not record.active:
                raise NotFoundError(
                    f"'{account}' is not responsible for patient '{hn}'.",
                    entity="responsibility",
                    key=f"{hn}:{account}",
                )
            if record.kind == ResponsibilityKind.CREATOR:
                raise ValidationError(
                    "The creator cannot be removed; reassign the creator instead.",
                    field="account",
                )
            record.active = False
            stored = record.model_copy(deep=True)
        logger.info(f"Removed {account} from patient {hn} (by {requested_by.account})")
        return stored

    def reassign_creator(self, hn: str, account: str, requested_by: Actor) -> ResponsibilityRecord:
        """Hand creator status to another account (admin only).

        The previous creator stays on as ``responsible``.
        """
        if not requested_by.is_admin:
            raise AuthorizationError(
                "Only admin may reassign a patient's creator.",
                required_role="admin",
                reason="reassign_creator",
            )
        self._require_patient(hn)
        staff = self._directory.resolve(account)

        with self._lock:
            previous = self._active_creator(hn)
            if previous is not None:
                if previous.account == staff.account:
                    return previous.model_copy(deep=True)
                previous.kind = ResponsibilityKind.RESPONSIBLE

            record = self._find(hn, staff.account)
            if record is None:
                record = ResponsibilityRecord(patient_hn=hn, account=staff.account)
                self._records.append(record)
            record.kind = ResponsibilityKind.CREATOR
            record.active = True
            record.assigned_by = requested_by.account
            record.assigned_at = datetime.now(timezone.utc)
            stored = record.model_copy(deep=True)
        logger.info(f"Reassigned creator of patient {hn} to {staff.account}")
        return stored

    def deactivate_patient(self, hn: str) -> int:
        """Deactivate every record of a deleted patient.

        Returns:
            How many records were deactivated.
        """
        with self._lock:
            count = 0
            for record in self._records:
                if record.patient_hn == hn and record.active:
                    record.active = False
                    count += 1
        logger.info(f"Deactivated {count} responsibility records of deleted patient {hn}")
        return count

    def list_responsible(self, hn: str) -> list[ResponsibilityRecord]:
        """Active records for a patient, creator first, with display names."""
        active = [r for r in self._records if r.patient_hn == hn and r.active]
        active.sort(key=lambda r: (r.kind != ResponsibilityKind.CREATOR, r.assigned_at))

        listed = []
        for record in active:
            staff = self._directory.get(record.account)
            name = staff.display_name if staff is not None and staff.display_name else record.account
            listed.append(record.model_copy(update={"display_name": name}, deep=True))
        return listed

    def is_responsible(self, hn: str, account: str) -> bool:
        record = self._find(hn, account)
        return record is not None and record.active

    def is_creator(self, hn: str, account: str) -> bool:
        record = self._find(hn, account)
        return (
            record is not None
            and record.active
            and record.kind == ResponsibilityKind.CREATOR
        )

    def patients_for_account(self, account: str) -> list[str]:
        """HNs the account is actively responsible for."""
        account = _normalize(account)
        return sorted({r.patient_hn for r in self._records if r.account == account and r.active})

    def history_for(self, hn: str) -> list[ResponsibilityRecord]:
        """Every record for a patient, including deactivated ones."""
        return [r.model_copy(deep=True) for r in self._records if r.patient_hn == hn]
