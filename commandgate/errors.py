"""
Error taxonomy for the governance engine.

Every failure the engine reports to a caller is one of these classes.
``InvalidCommand`` and ``PolicyBlocked`` are terminal for a command -- they
are audited and never retried.  ``DependencyError`` is reported as-is;
retrying is the caller's decision.  ``PolicyViolationOnApproval`` is kept
distinct from a human rejection so that a policy failure is never mistaken
for a clinician's judgment.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from commandgate.models import ApprovalTask


class GovernanceError(Exception):
    """Base class for all governance engine errors."""
    pass


class InvalidCommand(GovernanceError):
    """Raised when an inbound command envelope cannot be validated."""
    pass


class PolicyBlocked(GovernanceError):
    """Raised when a safety filter or the confidence floor blocks a command."""

    def __init__(self, reason: str, filter_name: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.filter_name = filter_name


class UnsupportedCommand(GovernanceError):
    """Raised when no executor is registered for a command kind."""
    pass


class DependencyError(GovernanceError):
    """Raised when the external resource store fails or does not answer in time."""
    pass


class PolicyViolationOnApproval(GovernanceError):
    """Raised when an approved (possibly edited) command fails re-validation."""

    def __init__(
        self,
        task_id: str,
        reason: str,
        filter_name: Optional[str] = None,
    ) -> None:
        super().__init__(f"Task {task_id}: {reason}")
        self.task_id = task_id
        self.reason = reason
        self.filter_name = filter_name


class ExpiredTask(GovernanceError):
    """Raised when a decision arrives for a task whose approval window has closed."""

    def __init__(self, task_id: str, expires_at: datetime) -> None:
        super().__init__(
            f"Task {task_id} expired at {expires_at.isoformat()}; "
            "decisions are no longer accepted."
        )
        self.task_id = task_id
        self.expires_at = expires_at


class AlreadyResolved(GovernanceError):
    """Raised by a task store when a status compare-and-swap loses.

    Carries the task as currently stored so the caller can return its
    prior terminal result instead of failing.
    """

    def __init__(self, task: "ApprovalTask") -> None:
        super().__init__(
            f"Task {task.task_id} is already {task.status.value}."
        )
        self.task = task


class TaskNotFound(GovernanceError, KeyError):
    """Raised when a task id is unknown to the approval queue."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"No approval task with id '{task_id}'")
        self.task_id = task_id

    def __str__(self) -> str:
        return self.args[0]


class InvalidTaskState(GovernanceError):
    """Raised when a stored task violates the lifecycle, e.g. a terminal
    task that carries no decision result."""

    def __init__(self, task_id: str, detail: str) -> None:
        super().__init__(f"Task {task_id} is in an invalid state: {detail}")
        self.task_id = task_id
        self.detail = detail
