"""
Governance Notifications.

The people responsible for a command are told when its fate is settled:

    APPROVED   -> routine  (executed after review)
    REJECTED   -> routine
    EXPIRED    -> urgent   (nobody decided within the review window)
    EXECUTED   -> routine  (auto-executed; sent only to the rule's notify roles)

Notifications go through an injected ``Notifier``.  ``dispatch()`` never
lets a failing notifier affect the decision it reports; the failure is
logged and the notification is dropped.  Replayed decisions send nothing.

DISCLAIMER: Notifications are informational.  They do not replace the
review queue, and an undelivered notification does not change task state.
"""

from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from commandgate.models import ApprovalTask, ProposedCommand

logger = logging.getLogger(__name__)


class NotificationEvent(str, enum.Enum):
    EXECUTED = "executed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class NotificationPriority(str, enum.Enum):
    ROUTINE = "routine"
    URGENT = "urgent"


class Notification(BaseModel):
    """A message about one command's outcome, addressed to roles."""

    event: NotificationEvent
    priority: NotificationPriority = NotificationPriority.ROUTINE
    command_id: str
    task_id: Optional[str] = None
    kind: str
    subject_id: str
    recipients: list[str] = Field(default_factory=list, description="Role names.")
    message: str
    resource_ref: Optional[str] = None
    sent_at: datetime


class Notifier(Protocol):
    def send(self, notification: Notification) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes each notification to the log."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "[%s] notify %s: %s",
            notification.priority.value,
            ", ".join(notification.recipients) or "(no roles)",
            notification.message,
        )


class InMemoryNotifier:
    """Collects notifications in ``sent``, for tests and local inspection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        with self._lock:
            self.sent.append(notification)

    def events(self) -> list[NotificationEvent]:
        with self._lock:
            return [n.event for n in self.sent]


# ---------------------------------------------------------------------------
# Building and dispatching
# ---------------------------------------------------------------------------

def _task_recipients(task: ApprovalTask) -> list[str]:
    recipients: list[str] = []
    for role in [*task.approver_roles, *task.notify_roles]:
        if role not in recipients:
            recipients.append(role)
    return recipients


def task_notification(
    task: ApprovalTask,
    event: NotificationEvent,
    sent_at: datetime,
    resource_ref: Optional[str] = None,
) -> Notification:
    """Build the notification for a task reaching a terminal state."""
    kind = task.command.kind.value
    if event == NotificationEvent.APPROVED:
        message = f"AI command {kind} was approved and executed. Resource: {resource_ref}"
    elif event == NotificationEvent.REJECTED:
        message = f"AI command {kind} was rejected."
    else:
        message = f"AI command {kind} expired without approval."
    return Notification(
        event=event,
        priority=(
            NotificationPriority.URGENT
            if event == NotificationEvent.EXPIRED
            else NotificationPriority.ROUTINE
        ),
        command_id=task.command_id,
        task_id=task.task_id,
        kind=kind,
        subject_id=task.command.subject_id,
        recipients=_task_recipients(task),
        message=message,
        resource_ref=resource_ref,
        sent_at=sent_at,
    )


def execution_notification(
    command: ProposedCommand,
    command_id: str,
    recipients: list[str],
    resource_ref: Optional[str],
    sent_at: datetime,
) -> Notification:
    """Build the notification for an auto-executed command."""
    return Notification(
        event=NotificationEvent.EXECUTED,
        command_id=command_id,
        kind=command.kind.value,
        subject_id=command.subject_id,
        recipients=list(recipients),
        message=f"AI command {command.kind.value} was executed automatically. Resource: {resource_ref}",
        resource_ref=resource_ref,
        sent_at=sent_at,
    )


def dispatch(notifier: Notifier, notification: Notification) -> bool:
    """Send ``notification``; returns False if the notifier failed."""
    try:
        notifier.send(notification)
    except Exception as exc:
        logger.error(
            "Failed to send %s notification for %s (%s: %s)",
            notification.event.value,
            notification.command_id,
            type(exc).__name__,
            exc,
        )
        return False
    return True
