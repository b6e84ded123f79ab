"""
Tests for intakeflow.responsibility -- Responsibility Registry.

Covers: creator assignment, adding staff (authorization, unknown accounts,
duplicates, reactivation), soft removal rules, creator reassignment,
the listing and lookup helpers, deactivation of deleted patients, and
concurrent adds.
"""

import threading

import pytest

from intakeflow.errors import (
    AlreadyResponsibleError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from intakeflow.models import Actor, Patient, ResponsibilityKind, Role, StaffAccount
from intakeflow.responsibility import ResponsibilityRegistry
from intakeflow.store import AccountDirectory, PatientStore


DOCTOR = "doctor@example.org"
NURSE = "nurse@example.org"
NURSE_2 = "nurse2@example.org"
LAB = "lab@example.org"
ADMIN = "admin@example.org"


def _make_registry(hn: str = "HN1") -> ResponsibilityRegistry:
    directory = AccountDirectory([
        StaffAccount(account=DOCTOR, display_name="Dr. D", role_label="doctor"),
        StaffAccount(account=NURSE, display_name="Nurse N", role_label="nurse"),
        StaffAccount(account=NURSE_2, display_name="", role_label="nurse"),
        StaffAccount(account=LAB, display_name="Lab L", role_label="lab_tech"),
        StaffAccount(account=ADMIN, display_name="Admin", role_label="admin"),
    ])
    store = PatientStore()
    store.create(Patient(hn=hn, name="Test", surname="Patient"))
    registry = ResponsibilityRegistry(store, directory)
    registry.assign_creator(hn, DOCTOR)
    return registry


def _make_actor(account: str, role: Role) -> Actor:
    return Actor(account=account, role=role)


# ---------------------------------------------------------------------------
# 1. Creator assignment
# ---------------------------------------------------------------------------

class TestAssignCreator:
    def test_creator_recorded(self):
        registry = _make_registry()
        assert registry.is_creator("HN1", DOCTOR) is True
        assert registry.is_responsible("HN1", DOCTOR) is True

    def test_second_creator_rejected(self):
        registry = _make_registry()
        with pytest.raises(ConflictError):
            registry.assign_creator("HN1", NURSE)

    def test_unknown_patient(self):
        registry = _make_registry()
        with pytest.raises(NotFoundError):
            registry.assign_creator("HN404", NURSE)

    def test_unknown_account(self):
        store = PatientStore()
        store.create(Patient(hn="HN1"))
        registry = ResponsibilityRegistry(store, AccountDirectory())
        with pytest.raises(NotFoundError):
            registry.assign_creator("HN1", "ghost@example.org")


# ---------------------------------------------------------------------------
# 2. Adding responsible staff
# ---------------------------------------------------------------------------

class TestAddResponsible:
    def test_responsible_doctor_adds_nurse(self):
        registry = _make_registry()
        record = registry.add_responsible("HN1", NURSE, _make_actor(DOCTOR, Role.DOCTOR))
        assert record.kind == ResponsibilityKind.RESPONSIBLE
        assert record.assigned_by == DOCTOR
        assert registry.is_responsible("HN1", NURSE) is True

    def test_admin_may_add_without_being_responsible(self):
        registry = _make_registry()
        registry.add_responsible("HN1", NURSE, _make_actor(ADMIN, Role.ADMIN))
        assert registry.is_responsible("HN1", NURSE) is True

    def test_unrelated_nurse_cannot_add(self):
        registry = _make_registry()
        with pytest.raises(AuthorizationError):
            registry.add_responsible("HN1", NURSE_2, _make_actor(NURSE, Role.NURSE))

    def test_lab_tech_cannot_add(self):
        registry = _make_registry()
        registry.add_responsible("HN1", LAB, _make_actor(ADMIN, Role.ADMIN))
        with pytest.raises(AuthorizationError):
            registry.add_responsible("HN1", NURSE, _make_actor(LAB, Role.LAB_TECH))

    def test_unknown_target_account(self):
        registry = _make_registry()
        with pytest.raises(NotFoundError):
            registry.add_responsible("HN1", "ghost@example.org", _make_actor(DOCTOR, Role.DOCTOR))

    def test_already_responsible(self):
        registry = _make_registry()
        doctor = _make_actor(DOCTOR, Role.DOCTOR)
        registry.add_responsible("HN1", NURSE, doctor)
        with pytest.raises(AlreadyResponsibleError, match="already responsible"):
            registry.add_responsible("HN1", NURSE, doctor)

    def test_readding_reactivates_existing_row(self):
        registry = _make_registry()
        registry.add_responsible("HN1", NURSE, _make_actor(DOCTOR, Role.DOCTOR))
        registry.remove_responsible("HN1", NURSE, _make_actor(NURSE, Role.NURSE))

        record = registry.add_responsible("HN1", NURSE, _make_actor(ADMIN, Role.ADMIN))

        rows = [r for r in registry.history_for("HN1") if r.account == NURSE]
        assert len(rows) == 1
        assert rows[0].active is True
        assert record.assigned_by == ADMIN


# ---------------------------------------------------------------------------
# 3. Removing responsible staff
# ---------------------------------------------------------------------------

class TestRemoveResponsible:
    def test_self_removal_soft_deletes(self):
        registry = _make_registry()
        registry.add_responsible("HN1", NURSE, _make_actor(DOCTOR, Role.DOCTOR))

        removed = registry.remove_responsible("HN1", NURSE, _make_actor(NURSE, Role.NURSE))

        assert removed.active is False
        assert registry.is_responsible("HN1", NURSE) is False
        assert any(r.account == NURSE for r in registry.history_for("HN1"))

    def test_non_admin_cannot_remove_others(self):
        registry = _make_registry()
        registry.add_responsible("HN1", NURSE, _make_actor(DOCTOR, Role.DOCTOR))
        with pytest.raises(AuthorizationError):
            registry.remove_responsible("HN1", NURSE, _make_actor(DOCTOR, Role.DOCTOR))
        assert registry.is_responsible("HN1", NURSE) is True

    def test_admin_can_remove_others(self):
        registry = _make_registry()
        registry.add_responsible("HN1", NURSE, _make_actor(DOCTOR, Role.DOCTOR))
        registry.remove_responsible("HN1", NURSE, _make_actor(ADMIN, Role.ADMIN))
        assert registry.is_responsible("HN1", NURSE) is False

    def test_creator_cannot_be_removed(self):
        registry = _make_registry()
        with pytest.raises(ValidationError):
            registry.remove_responsible("HN1", DOCTOR, _make_actor(DOCTOR, Role.DOCTOR))
        assert registry.is_creator("HN1", DOCTOR) is True

    def test_remove_when_not_responsible(self):
        registry = _make_registry()
        with pytest.raises(NotFoundError):
            registry.remove_responsible("HN1", NURSE, _make_actor(NURSE, Role.NURSE))


# ---------------------------------------------------------------------------
# 4. Creator reassignment
# ---------------------------------------------------------------------------

class TestReassignCreator:
    def test_admin_reassigns_and_old_creator_stays_responsible(self):
        registry = _make_registry()
        registry.reassign_creator("HN1", NURSE, _make_actor(ADMIN, Role.ADMIN))
        assert registry.is_creator("HN1", NURSE) is True
        assert registry.is_creator("HN1", DOCTOR) is False
        assert registry.is_responsible("HN1", DOCTOR) is True

    def test_reassign_reuses_existing_row(self):
        registry = _make_registry()
        registry.add_responsible("HN1", NURSE, _make_actor(DOCTOR, Role.DOCTOR))
        registry.reassign_creator("HN1", NURSE, _make_actor(ADMIN, Role.ADMIN))
        rows = [r for r in registry.history_for("HN1") if r.account == NURSE]
        assert len(rows) == 1
        assert rows[0].kind == ResponsibilityKind.CREATOR

    def test_non_admin_cannot_reassign(self):
        registry = _make_registry()
        with pytest.raises(AuthorizationError):
            registry.reassign_creator("HN1", NURSE, _make_actor(DOCTOR, Role.DOCTOR))


# ---------------------------------------------------------------------------
# 5. Listing
# ---------------------------------------------------------------------------

class TestListing:
    def test_list_active_creator_first_with_names(self):
        registry = _make_registry()
        doctor = _make_actor(DOCTOR, Role.DOCTOR)
        registry.add_responsible("HN1", NURSE, doctor)
        registry.add_responsible("HN1", NURSE_2, doctor)
        registry.remove_responsible("HN1", NURSE, _make_actor(NURSE, Role.NURSE))

        listed = registry.list_responsible("HN1")

        assert [r.account for r in listed] == [DOCTOR, NURSE_2]
        assert listed[0].display_name == "Dr. D"
        # No display name in the directory falls back to the account
        assert listed[1].display_name == NURSE_2

    def test_patients_for_account(self):
        registry = _make_registry()
        assert registry.patients_for_account(DOCTOR) == ["HN1"]
        assert registry.patients_for_account(NURSE) == []


# ---------------------------------------------------------------------------
# 6. Deleted patients
# ---------------------------------------------------------------------------

class TestDeactivatePatient:
    def test_all_records_deactivated(self):
        registry = _make_registry()
        registry.add_responsible("HN1", NURSE, _make_actor(DOCTOR, Role.DOCTOR))
        assert registry.deactivate_patient("HN1") == 2
        assert registry.list_responsible("HN1") == []
        assert registry.is_creator("HN1", DOCTOR) is False
        assert registry.patients_for_account(NURSE) == []
        assert len(registry.history_for("HN1")) == 2

    def test_creator_record_reused_for_new_patient(self):
        registry = _make_registry()
        registry.deactivate_patient("HN1")
        record = registry.assign_creator("HN1", DOCTOR)
        assert record.kind == ResponsibilityKind.CREATOR
        assert registry.is_creator("HN1", DOCTOR) is True
        assert len(registry.history_for("HN1")) == 1


# ---------------------------------------------------------------------------
# 7. Concurrent calls
# ---------------------------------------------------------------------------

class TestConcurrency:
    def test_concurrent_adds_keep_one_record_per_pair(self):
        registry = _make_registry()
        doctor = _make_actor(DOCTOR, Role.DOCTOR)
        barrier = threading.Barrier(8)
        outcomes: list[str] = []

        def add():
            barrier.wait()
            try:
                registry.add_responsible("HN1", NURSE, doctor)
                outcomes.append("added")
            except AlreadyResponsibleError:
                outcomes.append("duplicate")

        threads = [threading.Thread(target=add) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("added") == 1
        assert outcomes.count("duplicate") == 7
        assert [r.account for r in registry.history_for("HN1")].count(NURSE) == 1
