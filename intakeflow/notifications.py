"""
Notification Dispatcher -- fan-out of stage changes to responsible staff.

A stage change produces one system message per active responsible
account.  Stages with no configured template produce nothing.  The
lab-result-ready trigger is narrower: it reaches responsible doctors only.

Delivery is at-least-once per triggering event, deduplicated per
``(event_id, recipient)`` by the inbox.  Re-running a fan-out for the same
event only fills in recipients that did not get a message the first time.

A failed send never aborts the remaining sends; the result reports who was
notified, who failed and who was skipped.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from intakeflow.config import WorkflowSettings, resolve_settings
from intakeflow.errors import ConflictError, NotFoundError
from intakeflow.models import (
    NotificationKind,
    NotificationMessage,
    Role,
    StaffAccount,
    Stage,
)
from intakeflow.permissions import normalize_role
from intakeflow.responsibility import ResponsibilityRegistry
from intakeflow.store import AccountDirectory, PatientStore


logger = logging.getLogger(__name__)


SYSTEM_UPDATE = "system_update"
BROADCAST = "notification"


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

class MessageInbox:
    """In-memory message store standing in for the messaging service."""

    def __init__(self) -> None:
        self._messages: list[NotificationMessage] = []
        self._lock = threading.Lock()

    def send(self, message: NotificationMessage) -> NotificationMessage:
        """Store a message.

        Raises:
            ConflictError: A message for the same event was already
                delivered to this recipient.
        """
        with self._lock:
            if message.event_id and self.has_message(message.event_id, message.recipient):
                raise ConflictError(
                    f"Recipient '{message.recipient}' already has a message for "
                    f"event '{message.event_id}'."
                )
            self._messages.append(message.model_copy(deep=True))
        return message

    def has_message(self, event_id: str, recipient: str) -> bool:
        return any(
            m.event_id == event_id and m.recipient == recipient
            for m in self._messages
        )

    def messages_for(self, recipient: str, category: Optional[str] = None) -> list[NotificationMessage]:
        return [
            m.model_copy(deep=True)
            for m in self._messages
            if m.recipient == recipient and (category is None or m.category == category)
        ]

    def unread_count(self, recipient: str) -> int:
        return sum(1 for m in self._messages if m.recipient == recipient and not m.read)

    def mark_read(self, message_id: str) -> None:
        """Flag a message as read.

        Raises:
            NotFoundError: No message has this id.
        """
        for message in self._messages:
            if message.message_id == message_id:
                message.read = True
                return
        raise NotFoundError(
            f"Message '{message_id}' not found.", entity="message", key=message_id
        )

    def __len__(self) -> int:
        return len(self._messages)


# ---------------------------------------------------------------------------
# Fan-out result
# ---------------------------------------------------------------------------

class FanoutResult:
    """Outcome of one fan-out."""

    def __init__(self) -> None:
        self.notified: list[str] = []
        self.already_delivered: list[str] = []
        self.failed: list[str] = []
        self.skipped: list[str] = []

    @property
    def notified_count(self) -> int:
        return len(self.notified)

    @property
    def complete(self) -> bool:
        """True when no recipient is still owed a message."""
        return not self.failed

    def __repr__(self) -> str:
        return (
            f"FanoutResult(notified={len(self.notified)}, "
            f"already_delivered={len(self.already_delivered)}, "
            f"failed={len(self.failed)}, skipped={len(self.skipped)})"
        )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class NotificationDispatcher:
    """Builds and sends stage notifications."""

    def __init__(
        self,
        registry: ResponsibilityRegistry,
        directory: AccountDirectory,
        patients: PatientStore,
        inbox: MessageInbox,
        settings: Optional[WorkflowSettings] = None,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self._patients = patients
        self._inbox = inbox
        self._settings = resolve_settings(settings)

    # -- helpers --

    def _patient_label(self, hn: str) -> str:
        patient = self._patients.get(hn)
        name = patient.full_name if patient is not None else ""
        return f"{name} (HN: {hn})" if name else f"HN: {hn}"

    def _results_link(self, hn: str) -> str:
        return self._settings.results_link_template.format(hn=hn)

    def _responsible_staff(
        self,
        hn: str,
        result: FanoutResult,
        role_filter: Optional[Callable[[Role], bool]] = None,
    ) -> list[StaffAccount]:
        """Resolve the patient's active responsible accounts to directory entries."""
        recipients: list[StaffAccount] = []
        for record in self._registry.list_responsible(hn):
            staff = self._directory.get(record.account)
            if staff is None:
                logger.warning(f"Responsible account {record.account} for {hn} not in directory; skipped")
                result.skipped.append(record.account)
                continue
            if role_filter is not None and not role_filter(normalize_role(staff.role_label)):
                result.skipped.append(record.account)
                continue
            recipients.append(staff)
        return recipients

    def _deliver(
        self,
        recipients: list[StaffAccount],
        subject: str,
        body: str,
        kind: NotificationKind,
        category: str,
        event_id: str,
        result: FanoutResult,
    ) -> FanoutResult:
        for staff in recipients:
            if event_id and self._inbox.has_message(event_id, staff.user_id):
                result.already_delivered.append(staff.account)
                continue
            message = NotificationMessage(
                event_id=event_id,
                sender=self._settings.system_sender,
                recipient=staff.user_id,
                recipient_account=staff.account,
                subject=subject,
                body=body,
                category=category,
                kind=kind,
            )
            try:
                self._inbox.send(message)
            except Exception as exc:
                logger.warning(f"Failed to notify {staff.account}: {exc}", exc_info=True)
                result.failed.append(staff.account)
                continue
            result.notified.append(staff.account)
        return result

    # -- triggers --

    def fanout(
        self,
        hn: str,
        new_stage: Stage,
        event_id: str = "",
        custom_subject: Optional[str] = None,
        custom_message: Optional[str] = None,
    ) -> FanoutResult:
        """Notify every active responsible account that ``hn`` reached ``new_stage``.

        Args:
            hn: Patient hospital number.
            new_stage: The stage the patient just entered.
            event_id: Triggering outbox event, used for deduplication.
            custom_subject: Optional subject overriding the template.
            custom_message: Optional text overriding the template message.

        Returns:
            A ``FanoutResult``; a stage with no template yields an empty one.
        """
        result = FanoutResult()
        template = self._settings.template_for(new_stage)
        if template is None and not custom_message:
            logger.debug(f"No notification template for stage {new_stage.value}")
            return result

        body = f"{custom_message or template.message}: {self._patient_label(hn)}"
        if template is not None and template.include_results_link:
            body += f"\n\n{template.results_link_prompt}: {self._results_link(hn)}"
        if custom_subject:
            subject = custom_subject
        elif template is not None:
            subject = template.subject.format(stage=new_stage.value)
        else:
            subject = f"Patient status update - {new_stage.value}"
        kind = template.kind if template is not None else NotificationKind.INFO

        recipients = self._responsible_staff(hn, result)
        if not recipients:
            logger.info(f"No responsible staff to notify for patient {hn}")
            return result

        self._deliver(recipients, subject, body, kind, SYSTEM_UPDATE, event_id, result)
        logger.info(
            f"Sent {result.notified_count} notifications for patient {hn} "
            f"stage {new_stage.value}"
        )
        return result

    def notify_lab_result_ready(
        self,
        hn: str,
        lab_tech_name: Optional[str] = None,
        event_id: str = "",
    ) -> FanoutResult:
        """Tell the patient's responsible doctors that lab results can be reviewed."""
        result = FanoutResult()
        body = f"Blood results for {self._patient_label(hn)} are ready for review"
        if lab_tech_name:
            body += f" - recorded by {lab_tech_name}"
        body += f"\n\nReview results: {self._results_link(hn)}"

        doctors = self._responsible_staff(hn, result, role_filter=lambda r: r == Role.DOCTOR)
        if not doctors:
            logger.info(f"No responsible doctors to notify about lab results for {hn}")
            return result

        self._deliver(
            doctors,
            self._settings.lab_result_subject,
            body,
            NotificationKind.RESULT_READY,
            SYSTEM_UPDATE,
            event_id,
            result,
        )
        logger.info(f"Sent {result.notified_count} lab result notifications for patient {hn}")
        return result

    def broadcast(self, message: str, subject: Optional[str] = None) -> FanoutResult:
        """Send a notice to every approved doctor and nurse in the directory."""
        result = FanoutResult()
        staff = []
        for account in self._directory.all():
            if account.approved and normalize_role(account.role_label) in (Role.DOCTOR, Role.NURSE):
                staff.append(account)
            else:
                result.skipped.append(account.account)
        return self._deliver(
            staff,
            subject or self._settings.broadcast_subject,
            message,
            NotificationKind.INFO,
            BROADCAST,
            "",
            result,
        )
