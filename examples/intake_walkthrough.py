"""
Intake Walkthrough: One Patient from Registration to Results
============================================================

This script runs a single synthetic patient through the whole intake
pipeline using in-memory collaborators.  No real patient data is used.

Steps demonstrated:
  1. Load workflow settings from YAML
  2. Set up staff accounts and the in-memory services
  3. Register a patient and add a second responsible nurse
  4. Walk the patient through every stage with the right roles
  5. Show a denied transition
  6. Print the stage timeline and history chain status
  7. Print each staff member's inbox

Usage:
    python -m examples.intake_walkthrough
    # or: python examples/intake_walkthrough.py
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from intakeflow.config import DEFAULT_SETTINGS, load_settings_from_yaml
from intakeflow.errors import AuthorizationError
from intakeflow.history import StatusHistoryLog
from intakeflow.intake import PatientIntake
from intakeflow.models import Actor, Patient, StaffAccount, Stage
from intakeflow.notifications import MessageInbox, NotificationDispatcher
from intakeflow.responsibility import ResponsibilityRegistry
from intakeflow.store import AccountDirectory, PatientStore
from intakeflow.timeline import build_stage_timeline
from intakeflow.workflow import StatusWorkflow, TransitionExtra


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    _banner("IntakeFlow Walkthrough")
    print("All data in this demo is synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load settings
    # ------------------------------------------------------------------
    _banner("Step 1: Load Workflow Settings")

    sample_yaml = Path(__file__).parent / "workflow_settings.yaml"
    if sample_yaml.exists():
        settings = load_settings_from_yaml(sample_yaml)
        print(f"Loaded settings from {sample_yaml.name}")
    else:
        settings = DEFAULT_SETTINGS
        print("Using built-in default settings")
    for rule in settings.transition_rules:
        roles = ", ".join(r.value for r in rule.allowed_roles)
        print(f"  {rule.from_stage.value:>10} -> {rule.to_stage.value:<10} {roles}")

    # ------------------------------------------------------------------
    # Step 2: Staff and services
    # ------------------------------------------------------------------
    _banner("Step 2: Staff Directory and Services")

    directory = AccountDirectory([
        StaffAccount(account="dr.somchai@example.org", display_name="Dr. Somchai", role_label="แพทย์"),
        StaffAccount(account="nurse.malee@example.org", display_name="Malee", role_label="nurse"),
        StaffAccount(account="nurse.ploy@example.org", display_name="Ploy", role_label="พยาบาล"),
        StaffAccount(account="lab.anan@example.org", display_name="Anan", role_label="lab_tech"),
    ])
    store = PatientStore()
    history = StatusHistoryLog()
    inbox = MessageInbox()
    registry = ResponsibilityRegistry(store, directory)
    dispatcher = NotificationDispatcher(registry, directory, store, inbox, settings)
    workflow = StatusWorkflow(store, history, dispatcher, settings)
    intake = PatientIntake(store, directory, registry, dispatcher)

    actors = {
        staff.account: Actor.from_session(staff.account, staff.display_name, staff.role_label)
        for staff in directory.all()
    }
    for account, actor in actors.items():
        print(f"  {account:<28} role={actor.role.value}")

    doctor = actors["dr.somchai@example.org"]
    nurse = actors["nurse.malee@example.org"]
    lab = actors["lab.anan@example.org"]

    # ------------------------------------------------------------------
    # Step 3: Register
    # ------------------------------------------------------------------
    _banner("Step 3: Register Patient")

    registration = intake.register_patient(
        Patient(hn="HN-0001", name="Synthetic", surname="Patient", age=54, blood_type="O+"),
        doctor,
        additional_responsible=["nurse.malee@example.org"],
    )
    print(f"Registered {registration.patient.hn} at stage {registration.patient.stage.value}")
    print(f"  creator: {registration.creator}")
    print(f"  responsible added: {registration.responsible_added}")
    for record in registry.list_responsible("HN-0001"):
        print(f"  - {record.display_name} ({record.kind.value})")

    # ------------------------------------------------------------------
    # Step 4: Walk the stages
    # ------------------------------------------------------------------
    _banner("Step 4: Stage Transitions")

    steps = [
        (Stage.SCHEDULED, nurse, TransitionExtra(scheduled_date="2026-10-20", scheduled_time="09:30")),
        (Stage.DRAWN, nurse, TransitionExtra(note="Two tubes drawn")),
        (Stage.IN_TRANSIT, lab, None),
        (Stage.IN_LAB, lab, None),
        (Stage.COMPLETE, doctor, TransitionExtra(note="Results reviewed")),
    ]
    for target, actor, extra in steps:
        result = workflow.request_transition("HN-0001", target, actor, extra)
        print(
            f"{result.from_stage.value:>10} -> {result.to_stage.value:<10} "
            f"by {actor.account}, notified {result.notified_count}"
        )

    # ------------------------------------------------------------------
    # Step 5: Denied transition
    # ------------------------------------------------------------------
    _banner("Step 5: Denied Transition")

    try:
        workflow.request_transition("HN-0001", Stage.AWAITING, lab)
    except AuthorizationError as exc:
        print(f"Denied ({exc.code}): {exc}")
        print(f"  required role: {exc.required_role}")

    # ------------------------------------------------------------------
    # Step 6: Timeline and history
    # ------------------------------------------------------------------
    _banner("Step 6: Stage Timeline")

    timeline = build_stage_timeline(store.get("HN-0001"), history)
    print(json.dumps(timeline.to_dict(), indent=2, ensure_ascii=False))

    valid, broken_at = history.verify_chain()
    print(f"\nHistory entries: {len(history)}; chain valid={valid}, broken_at={broken_at}")
    print(f"Pending outbox events: {len(store.pending_events())}")

    # ------------------------------------------------------------------
    # Step 7: Inboxes
    # ------------------------------------------------------------------
    _banner("Step 7: Staff Inboxes")

    for staff in directory.all():
        messages = inbox.messages_for(staff.user_id)
        print(f"{staff.display_name} ({len(messages)} messages)")
        for message in messages:
            print(f"  [{message.kind.value}] {message.body.splitlines()[0]}")

    _banner("Walkthrough Complete")


if __name__ == "__main__":
    main()
