"""
IntakeFlow Patient-Intake Status Workflow Engine
================================================

Moves patients through the blood-test intake pipeline (awaiting,
scheduled, drawn, in-transit, in-lab, complete) under a role-based
permission policy.  Every accepted stage change is recorded in an
append-only, hash-chained history and announced to the staff
responsible for the patient.

Stage changes are written together with an outbox event, so history and
notification side effects can be retried without repeating the change.
"""

__version__ = "0.1.0"
