"""
Permission Policy for the intake workflow.

Pure decision functions: given a role (and, for stage changes, a requested
edge) decide whether an action is allowed.  Nothing here has state or side
effects, and nothing here raises for a denial -- callers turn ``False``
into an ``AuthorizationError``.

**Roles:**

* ADMIN    -- may perform every action and any stage change.
* DOCTOR   -- books draws, confirms results, orders rechecks.
* NURSE    -- books and performs blood draws.
* LAB_TECH -- moves samples through the lab and records results.
* NONE     -- unrecognised role string; no privileges at all.

Raw role strings are resolved exactly once, by ``normalize_role``.
"""

from __future__ import annotations

import logging
from typing import Optional

from intakeflow.errors import AuthorizationError
from intakeflow.models import STAGE_ORDER, ImpersonationContext, Role, Stage


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Role normalization
# ---------------------------------------------------------------------------

_ROLE_ALIASES: dict[str, Role] = {
    "admin": Role.ADMIN,
    "administrator": Role.ADMIN,
    "ผู้ดูแล": Role.ADMIN,
    "ผู้ดูแลระบบ": Role.ADMIN,
    "doctor": Role.DOCTOR,
    "แพทย์": Role.DOCTOR,
    "nurse": Role.NURSE,
    "พยาบาล": Role.NURSE,
    "lab-tech": Role.LAB_TECH,
    "lab_tech": Role.LAB_TECH,
    "lab": Role.LAB_TECH,
    "lab technician": Role.LAB_TECH,
    "เจ้าหน้าที่ห้องปฏิบัติการ": Role.LAB_TECH,
}


def _settings_or_default(settings):
    if settings is not None:
        return settings
    from intakeflow.config import DEFAULT_SETTINGS

    return DEFAULT_SETTINGS


def normalize_role(
    raw: Optional[str],
    impersonation: Optional[ImpersonationContext] = None,
    settings=None,
) -> Role:
    """Map a legacy or bilingual role string to the canonical ``Role``.

    Matching is exact after trimming and case folding.  Anything that is
    not a known alias yields ``Role.NONE``.

    Args:
        raw: Role string supplied by the identity provider.
        impersonation: Optional explicit override for this request.
        settings: Workflow settings; impersonation is ignored unless
            ``allow_impersonation`` is set.

    Returns:
        The canonical role.
    """
    if impersonation is not None and impersonation.enabled:
        if _settings_or_default(settings).allow_impersonation:
            logger.info(
                f"Impersonating role '{impersonation.role.value}' "
                f"(actual '{raw}'): {impersonation.reason or 'no reason given'}"
            )
            return impersonation.role
        logger.warning("Impersonation requested but disabled by settings; ignoring")

    if not raw:
        return Role.NONE
    return _ROLE_ALIASES.get(raw.strip().casefold(), Role.NONE)


# ---------------------------------------------------------------------------
# Stage sequence
# ---------------------------------------------------------------------------

RECHECK_EDGE: tuple[Stage, Stage] = (Stage.COMPLETE, Stage.AWAITING)


def is_valid_transition(from_stage: Stage, to_stage: Stage) -> bool:
    """True only for a single forward step, or the recheck edge."""
    if from_stage == to_stage:
        return False
    if (from_stage, to_stage) == RECHECK_EDGE:
        return True
    return STAGE_ORDER.index(to_stage) == STAGE_ORDER.index(from_stage) + 1


def required_roles_for(from_stage: Stage, to_stage: Stage, settings=None) -> frozenset[Role]:
    """Non-admin roles authorized for an edge; empty means admin only."""
    if not is_valid_transition(from_stage, to_stage):
        return frozenset()
    rule = _settings_or_default(settings).rule_for(from_stage, to_stage)
    if rule is None:
        return frozenset()
    return frozenset(rule.allowed_roles)


def required_role_for(from_stage: Stage, to_stage: Stage, settings=None) -> str:
    """Display text naming the role(s) required for an edge.

    Returns e.g. ``"nurse"``, ``"doctor or nurse"``, or ``"admin"`` for
    edges no other role may perform.
    """
    roles = required_roles_for(from_stage, to_stage, settings)
    if not roles:
        return Role.ADMIN.value
    ordered = [r.value for r in Role if r in roles]
    return " or ".join(ordered)


def can_transition(role: Role, from_stage: Stage, to_stage: Stage, settings=None) -> bool:
    """Decide whether ``role`` may move a patient from one stage to another."""
    settings = _settings_or_default(settings)
    if role == Role.ADMIN:
        if settings.admin_can_override_sequence:
            return from_stage != to_stage
        return is_valid_transition(from_stage, to_stage)
    if role == Role.NONE:
        return False
    if not is_valid_transition(from_stage, to_stage):
        return False
    return role in required_roles_for(from_stage, to_stage, settings)


def next_allowed_stage(role: Role, current: Stage, settings=None) -> Optional[Stage]:
    """The stage ``role`` may move a patient at ``current`` to, if any."""
    if current == Stage.COMPLETE:
        target = Stage.AWAITING
    else:
        target = STAGE_ORDER[STAGE_ORDER.index(current) + 1]
    if can_transition(role, current, target, settings):
        return target
    return None


def transition_options(current: Stage) -> list[Stage]:
    """Stage choices offered for a patient currently at ``current``.

    ``awaiting`` is only offered as the recheck option once the patient is
    complete.
    """
    if current == Stage.COMPLETE:
        return [Stage.AWAITING] + [
            s for s in STAGE_ORDER if s not in (Stage.AWAITING, Stage.COMPLETE)
        ]
    return [s for s in STAGE_ORDER if s != Stage.AWAITING]


# ---------------------------------------------------------------------------
# Capability definitions
# ---------------------------------------------------------------------------

_CLINICAL = (Role.DOCTOR, Role.NURSE)

# Maps (role, action) -> allowed.  Missing pairs are denied.
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    # Admin
    (Role.ADMIN, "create_patient"): True,
    (Role.ADMIN, "edit_patient"): True,
    (Role.ADMIN, "delete_patient"): True,
    (Role.ADMIN, "manage_responsibility"): True,
    (Role.ADMIN, "view_status_panel"): True,
    (Role.ADMIN, "edit_lab"): True,
    (Role.ADMIN, "bulk_assign"): True,
    (Role.ADMIN, "manage_lab_settings"): True,
    # Doctor
    (Role.DOCTOR, "create_patient"): True,
    (Role.DOCTOR, "view_status_panel"): True,
    (Role.DOCTOR, "bulk_assign"): True,
    (Role.DOCTOR, "edit_lab"): False,
    (Role.DOCTOR, "manage_lab_settings"): False,
    # Nurse
    (Role.NURSE, "create_patient"): True,
    (Role.NURSE, "view_status_panel"): True,
    (Role.NURSE, "bulk_assign"): True,
    (Role.NURSE, "edit_lab"): False,
    (Role.NURSE, "manage_lab_settings"): False,
    # Lab technician
    (Role.LAB_TECH, "create_patient"): False,
    (Role.LAB_TECH, "edit_patient"): False,
    (Role.LAB_TECH, "delete_patient"): False,
    (Role.LAB_TECH, "manage_responsibility"): False,
    (Role.LAB_TECH, "view_status_panel"): True,
    (Role.LAB_TECH, "edit_lab"): True,
    (Role.LAB_TECH, "bulk_assign"): False,
    (Role.LAB_TECH, "manage_lab_settings"): True,
}


def check_permission(role: Role, action: str) -> bool:
    """Check whether a role has an unconditional permission for an action.

    Args:
        role: The actor's role.
        action: The action to check (e.g., 'create_patient').

    Returns:
        True if the role is permitted to perform the action, False otherwise.
    """
    return _PERMISSIONS.get((role, action), False)


def require_permission(role: Role, action: str) -> None:
    """Enforce a permission check; raise if denied.

    Raises:
        AuthorizationError: If the role is not permitted.
    """
    if not check_permission(role, action):
        raise AuthorizationError(
            f"Role '{role.value}' is not permitted to perform action '{action}'.",
            reason=action,
        )


def get_permissions_for_role(role: Role) -> dict[str, bool]:
    """Return all unconditional permissions listed for a role."""
    return {
        action: allowed
        for (r, action), allowed in _PERMISSIONS.items()
        if r == role
    }


# ---------------------------------------------------------------------------
# Capability predicates
# ---------------------------------------------------------------------------

def can_create_patient(role: Role) -> bool:
    return check_permission(role, "create_patient")


def can_edit_patient_record(role: Role, is_responsible: bool) -> bool:
    """Admin always; doctor or nurse only while responsible for the patient."""
    if check_permission(role, "edit_patient"):
        return True
    return role in _CLINICAL and is_responsible


def can_delete_patient(role: Role, is_owner: bool) -> bool:
    """Admin always; doctor or nurse only when they created the patient."""
    if check_permission(role, "delete_patient"):
        return True
    return role in _CLINICAL and is_owner


def can_manage_responsibility(role: Role, is_responsible: bool) -> bool:
    if check_permission(role, "manage_responsibility"):
        return True
    return role in _CLINICAL and is_responsible


def can_view_status_panel(role: Role) -> bool:
    return check_permission(role, "view_status_panel")


def can_edit_lab(role: Role) -> bool:
    return check_permission(role, "edit_lab")


def can_bulk_assign(role: Role) -> bool:
    return check_permission(role, "bulk_assign")


def can_manage_lab_settings(role: Role) -> bool:
    return check_permission(role, "manage_lab_settings")
