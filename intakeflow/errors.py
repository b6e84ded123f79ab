"""
Error taxonomy for the workflow engine.

Every core operation either returns a value or raises one of these.  The
``code`` tag is stable and meant for API layers that map errors to
responses.
"""

from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for all categorized workflow failures."""

    code = "workflow_error"


class AuthorizationError(WorkflowError):
    """Raised when the actor may not perform the requested operation."""

    code = "authorization"

    def __init__(
        self,
        message: str,
        required_role: Optional[str] = None,
        reason: str = "",
    ) -> None:
        super().__init__(message)
        self.required_role = required_role
        self.reason = reason


class ValidationError(WorkflowError):
    """Raised when required input for an operation is missing or malformed."""

    code = "validation"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(WorkflowError):
    """Raised when a referenced patient, account or record does not exist."""

    code = "not_found"

    def __init__(self, message: str, entity: str = "", key: str = "") -> None:
        super().__init__(message)
        self.entity = entity
        self.key = key


class PersistenceError(WorkflowError):
    """Raised when the backing store rejects a primary write."""

    code = "persistence"


class ConflictError(WorkflowError):
    """Raised when the store state no longer matches what the caller saw."""

    code = "conflict"


class AlreadyResponsibleError(ConflictError):
    """Raised when adding an account that is already actively responsible."""

    code = "already_responsible"
