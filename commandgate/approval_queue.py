"""
Human-in-the-Loop Approval Queue.

Commands that need human sign-off become ``ApprovalTask`` objects with a
review window.  This module exclusively owns task status transitions.

**State machine:**

    PENDING -> APPROVED
    PENDING -> REJECTED
    PENDING -> EXPIRED

All three targets are terminal.

**Human gates enforced in code:**

* An approval re-runs the safety filters and the approval rule against the
  command as the reviewer left it.  A reviewer's edit can never bypass
  policy: an edited command that is now blocked fails with
  ``PolicyViolationOnApproval`` and is not executed.
* A rejection never executes anything.
* Expiration is checked lazily on every read, poll and decision, so it is
  authoritative whether or not ``sweep_expired()`` is ever scheduled.
* Decisions for one task are serialized by a per-task lock, and the task
  store applies a compare-and-swap on status.  Of any number of concurrent
  decisions exactly one takes effect; the rest, like any re-delivered
  decision, get the stored result back with ``replayed=True`` and cause no
  execution, audit, or provenance writes.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Iterator, Literal, Optional, Union

from pydantic import BaseModel, Field

from commandgate.audit import AuditEventType, AuditRecorder, ClinicianAction
from commandgate.clock import Clock, SystemClock
from commandgate.config import DEFAULT_POLICY, ApprovalRule, ApprovalRuleResolver, GovernancePolicy
from commandgate.errors import (
    AlreadyResolved,
    DependencyError,
    ExpiredTask,
    InvalidCommand,
    InvalidTaskState,
    PolicyBlocked,
    PolicyViolationOnApproval,
    TaskNotFound,
    UnsupportedCommand,
)
from commandgate.executor import CommandExecutor
from commandgate.models import (
    ApprovalTask,
    DecisionAction,
    DecisionResult,
    ProposedCommand,
    Role,
    TaskStatus,
    generate_command_id,
)
from commandgate.notify import (
    LoggingNotifier,
    NotificationEvent,
    Notifier,
    dispatch,
    task_notification,
)
from commandgate.rbac import require_approver_role
from commandgate.safety_filters import evaluate_filters
from commandgate.store import InMemoryTaskStore, TaskStore

logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT = timedelta(hours=24)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

class Approve(BaseModel):
    """A reviewer approves the task, optionally with edits to the command."""

    decision: Literal["approve"] = "approve"
    approver_id: str = Field(..., min_length=1)
    modifications: Optional[dict[str, Any]] = Field(
        default=None,
        description="Field -> new value edits applied before execution.",
    )


class Reject(BaseModel):
    """A reviewer rejects the task."""

    decision: Literal["reject"] = "reject"
    approver_id: str = Field(..., min_length=1)
    reason: str = Field(default="No reason provided")


Decision = Union[Approve, Reject]


# ---------------------------------------------------------------------------
# Approval queue
# ---------------------------------------------------------------------------

class _TaskLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class ApprovalQueue:
    """Tracks queued commands and processes human decisions and expirations.

    Args:
        executor: Runs approved commands.
        recorder: Receives audit and provenance records.
        policy: Supplies the safety filters and confidence floor used for
            re-validation on approval.
        resolver: Approval rule resolver; defaults to ``policy.resolver()``.
        store: Task persistence; defaults to an in-memory store.
        clock: Time source for creation, expiry and decisions.
        notifier: Told when a task is approved, rejected or expired;
            defaults to logging the notification.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        recorder: AuditRecorder,
        policy: GovernancePolicy = DEFAULT_POLICY,
        resolver: Optional[ApprovalRuleResolver] = None,
        store: Optional[TaskStore] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._executor = executor
        self._recorder = recorder
        self._policy = policy
        self._resolver = resolver if resolver is not None else policy.resolver()
        self._store: TaskStore = store if store is not None else InMemoryTaskStore()
        self._clock = clock or SystemClock()
        self._notifier: Notifier = notifier if notifier is not None else LoggingNotifier()
        self._locks: dict[str, _TaskLock] = {}
        self._locks_guard = threading.Lock()

    # -- helpers --

    @contextmanager
    def _locked(self, task_id: str) -> Iterator[None]:
        """Serialize work on one task.

        Only known tasks get a lock, and an entry lives only while some
        caller holds or waits for it.

        Raises:
            TaskNotFound: If the id is unknown.
        """
        if self._store.get(task_id) is None:
            raise TaskNotFound(task_id)
        with self._locks_guard:
            entry = self._locks.get(task_id)
            if entry is None:
                entry = self._locks[task_id] = _TaskLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[task_id]

    def _load(self, task_id: str) -> ApprovalTask:
        task = self._store.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _transition(self, task: ApprovalTask, **changes: Any) -> tuple[ApprovalTask, bool]:
        """Move a pending task to a terminal state.

        Returns the stored task and whether this call made the transition.
        """
        updated = task.model_copy(update=changes)
        try:
            return self._store.compare_and_set(task.task_id, TaskStatus.PENDING, updated), True
        except AlreadyResolved as exc:
            logger.info(
                "Task %s was resolved concurrently (%s)", task.task_id, exc.task.status.value
            )
            return exc.task, False

    def _expire_if_due(self, task: ApprovalTask) -> ApprovalTask:
        now = self._clock.now()
        if not task.is_due_to_expire(now):
            return task

        result = DecisionResult(
            task_id=task.task_id,
            command_id=task.command_id,
            action=DecisionAction.EXPIRED,
            status=TaskStatus.EXPIRED,
            success=True,
            message="Command expired without approval",
        )
        stored, transitioned = self._transition(
            task, status=TaskStatus.EXPIRED, decided_at=now, result=result
        )
        if transitioned:
            logger.warning(
                "Approval task %s for %s expired at %s",
                task.task_id,
                task.command.kind.value,
                task.expires_at.isoformat(),
            )
            self._recorder.record(
                AuditEventType.EXPIRED,
                command=task.command,
                command_id=task.command_id,
                task_id=task.task_id,
                actor_id="SYSTEM",
                outcome_desc="Approval window closed without a decision",
                detail={"expires_at": task.expires_at.isoformat()},
            )
            dispatch(self._notifier, task_notification(stored, NotificationEvent.EXPIRED, now))
        return stored

    @staticmethod
    def _replay(task: ApprovalTask) -> DecisionResult:
        if task.result is None:
            raise InvalidTaskState(task.task_id, f"{task.status.value} without a stored result")
        return task.result.model_copy(update={"replayed": True})

    def _error_result(self, task: ApprovalTask, message: str) -> DecisionResult:
        return DecisionResult(
            task_id=task.task_id,
            command_id=task.command_id,
            action=DecisionAction.ERROR,
            status=TaskStatus.PENDING,
            success=False,
            message=message,
        )

    # -- lifecycle operations --

    def enqueue(
        self,
        command: ProposedCommand,
        rule: ApprovalRule,
        command_id: Optional[str] = None,
        warnings: Optional[list[str]] = None,
    ) -> ApprovalTask:
        """Create a pending task that expires ``rule.timeout`` from now.

        A rule with a zero timeout (kinds that normally auto-execute) gets
        the default 24 hour window, since such commands only reach the
        queue when something forced review.
        """
        now = self._clock.now()
        timeout = rule.timeout if rule.timeout > timedelta(0) else DEFAULT_TASK_TIMEOUT
        task = ApprovalTask(
            command=command,
            command_id=command_id or generate_command_id(),
            status=TaskStatus.PENDING,
            created_at=now,
            expires_at=now + timeout,
            approver_roles=list(rule.approver_roles),
            notify_roles=list(rule.notify_roles),
            warnings=list(warnings or []),
        )
        self._store.add(task)
        logger.info(
            "Queued %s (%s) as task %s, expires %s",
            command.kind.value,
            task.command_id,
            task.task_id,
            task.expires_at.isoformat(),
        )
        return task

    def get(self, task_id: str) -> ApprovalTask:
        """Return the task, expiring it first if its window has closed.

        Raises:
            TaskNotFound: If the id is unknown.
        """
        return self.poll(task_id)

    def poll(self, task_id: str) -> ApprovalTask:
        """Check a task, transitioning it to EXPIRED if past ``expires_at``.

        Polling an already-expired task returns it unchanged and writes
        nothing.

        Raises:
            TaskNotFound: If the id is unknown.
        """
        with self._locked(task_id):
            return self._expire_if_due(self._load(task_id))

    def on_decision(
        self,
        task_id: str,
        decision: Decision,
        approver_role: Optional[Role | str] = None,
    ) -> DecisionResult:
        """Apply a human decision to a task.

        Args:
            task_id: The task being decided.
            decision: ``Approve`` or ``Reject``.
            approver_role: When given, must be one of the task's approver roles.

        Returns:
            The ``DecisionResult``.  For a task that is already approved or
            rejected this is the stored result with ``replayed=True``.  If
            the executor reports an unsuccessful result the task stays
            pending and an ``error`` result is returned.

        Raises:
            TaskNotFound: If the id is unknown.
            ExpiredTask: If the task's approval window has closed.
            PolicyViolationOnApproval: If the (edited) command fails
                re-validation.  The task stays pending.
            DependencyError: If the resource store fails or times out.  The
                task stays pending so the decision can be retried.
            UnsupportedCommand: If no executor handles the command kind.
            PermissionError: If ``approver_role`` may not decide this task,
                or for an approval, is not an approver under the rule now
                in force for the command.
            InvalidTaskState: If a decided task carries no stored result.
        """
        with self._locked(task_id):
            task = self._expire_if_due(self._load(task_id))

            if task.status == TaskStatus.EXPIRED:
                raise ExpiredTask(task.task_id, task.expires_at)
            if task.is_terminal:
                logger.info(
                    "Decision re-delivered for %s task %s; returning stored result",
                    task.status.value,
                    task.task_id,
                )
                return self._replay(task)

            if approver_role is not None:
                require_approver_role(approver_role, task.approver_roles)

            if isinstance(decision, Reject):
                return self._reject(task, decision)
            return self._approve(task, decision, approver_role)

    def _reject(self, task: ApprovalTask, decision: Reject) -> DecisionResult:
        now = self._clock.now()
        result = DecisionResult(
            task_id=task.task_id,
            command_id=task.command_id,
            action=DecisionAction.REJECTED,
            status=TaskStatus.REJECTED,
            success=True,
            message=f"Command rejected: {decision.reason}",
        )
        stored, transitioned = self._transition(
            task,
            status=TaskStatus.REJECTED,
            approver_id=decision.approver_id,
            rejection_reason=decision.reason,
            decided_at=now,
            result=result,
        )
        if not transitioned:
            if stored.status == TaskStatus.EXPIRED:
                raise ExpiredTask(stored.task_id, stored.expires_at)
            return self._replay(stored)

        logger.info("Task %s rejected by %s", task.task_id, decision.approver_id)
        self._recorder.record_provenance(
            task.command,
            command_id=task.command_id,
            task_id=task.task_id,
            clinician_action=ClinicianAction.REJECTED,
            verifier_id=decision.approver_id,
            rejection_reason=decision.reason,
        )
        self._recorder.record(
            AuditEventType.REJECTED,
            command=task.command,
            command_id=task.command_id,
            task_id=task.task_id,
            actor_id=decision.approver_id,
            outcome_desc=decision.reason,
        )
        dispatch(self._notifier, task_notification(stored, NotificationEvent.REJECTED, now))
        return result

    def _revalidate(
        self, task: ApprovalTask, decision: Approve
    ) -> tuple[ProposedCommand, ApprovalRule]:
        """Re-run the filters on the command to execute and resolve its current rule."""
        command = task.command
        try:
            if decision.modifications:
                command = task.command.with_modifications(decision.modifications)
            evaluation = evaluate_filters(
                command, self._policy.safety_filters, self._policy.confidence_floor
            )
            evaluation.raise_for_block()
            rule = self._resolver.resolve(command.kind)
        except PolicyBlocked as exc:
            self._policy_violation(task, decision, exc.reason, exc.filter_name)
            raise PolicyViolationOnApproval(task.task_id, exc.reason, exc.filter_name) from exc
        except InvalidCommand as exc:
            self._policy_violation(task, decision, str(exc), None)
            raise PolicyViolationOnApproval(task.task_id, str(exc)) from exc
        except Exception as exc:
            reason = f"Re-validation failed: {type(exc).__name__}: {exc}"
            logger.exception("Re-validation error for task %s", task.task_id)
            self._policy_violation(task, decision, reason, None)
            raise PolicyViolationOnApproval(task.task_id, reason) from exc
        return command, rule

    def _policy_violation(
        self,
        task: ApprovalTask,
        decision: Approve,
        reason: str,
        filter_name: Optional[str],
    ) -> None:
        logger.warning(
            "Approval of task %s by %s failed re-validation: %s",
            task.task_id,
            decision.approver_id,
            reason,
        )
        self._recorder.record(
            AuditEventType.POLICY_VIOLATION_ON_APPROVAL,
            command=task.command,
            command_id=task.command_id,
            task_id=task.task_id,
            actor_id=decision.approver_id,
            outcome_desc=reason,
            detail={
                "filter": filter_name,
                "edited_fields": ProposedCommand.edited_fields(decision.modifications),
            },
        )

    def _approve(
        self,
        task: ApprovalTask,
        decision: Approve,
        approver_role: Optional[Role | str],
    ) -> DecisionResult:
        command, rule = self._revalidate(task, decision)
        if approver_role is not None:
            # The approver must still qualify under the policy in force now.
            require_approver_role(approver_role, rule.approver_roles)

        try:
            execution = self._executor.execute(command)
        except (DependencyError, UnsupportedCommand) as exc:
            message = f"{type(exc).__name__}: {exc}"
            self._recorder.record(
                AuditEventType.ERROR,
                command=command,
                command_id=task.command_id,
                task_id=task.task_id,
                actor_id=decision.approver_id,
                outcome_desc=message,
            )
            logger.error("Approved task %s could not be executed: %s", task.task_id, message)
            raise

        if not execution.success:
            self._recorder.record(
                AuditEventType.ERROR,
                command=command,
                command_id=task.command_id,
                task_id=task.task_id,
                actor_id=decision.approver_id,
                outcome_desc=execution.message,
            )
            return self._error_result(task, execution.message)

        now = self._clock.now()
        result = DecisionResult(
            task_id=task.task_id,
            command_id=task.command_id,
            action=DecisionAction.APPROVED,
            status=TaskStatus.APPROVED,
            success=True,
            message=execution.message,
            resource_ref=execution.resource_ref,
        )
        stored, transitioned = self._transition(
            task,
            status=TaskStatus.APPROVED,
            approver_id=decision.approver_id,
            modifications=decision.modifications,
            decided_at=now,
            result=result,
        )
        if not transitioned:
            # Only reachable when another process shares the store.
            logger.error(
                "Task %s executed (%s) but was resolved elsewhere as %s",
                task.task_id,
                execution.resource_ref,
                stored.status.value,
            )
            if stored.status == TaskStatus.EXPIRED:
                raise ExpiredTask(stored.task_id, stored.expires_at)
            return self._replay(stored)

        edited = ProposedCommand.edited_fields(decision.modifications)
        logger.info(
            "Task %s approved by %s; executed %s",
            task.task_id,
            decision.approver_id,
            execution.resource_ref,
        )
        self._recorder.record_provenance(
            command,
            command_id=task.command_id,
            task_id=task.task_id,
            clinician_action=ClinicianAction.EDITED if edited else ClinicianAction.ACCEPTED,
            targets=[execution.resource_ref] if execution.resource_ref else [],
            verifier_id=decision.approver_id,
            edited_fields=edited,
        )
        self._recorder.record(
            AuditEventType.APPROVED,
            command=command,
            command_id=task.command_id,
            task_id=task.task_id,
            actor_id=decision.approver_id,
            outcome_desc=execution.message,
            detail={"resource_ref": execution.resource_ref, "edited_fields": edited},
        )
        dispatch(
            self._notifier,
            task_notification(stored, NotificationEvent.APPROVED, now, execution.resource_ref),
        )
        return result

    # -- queries --

    def list_pending(self) -> list[ApprovalTask]:
        """Return pending tasks, expiring any whose window has closed."""
        self.sweep_expired()
        return self._store.list(TaskStatus.PENDING)

    def sweep_expired(self) -> list[ApprovalTask]:
        """Expire every pending task past its window; returns those expired.

        Optional housekeeping; lazy checks stay authoritative.
        """
        expired = []
        now = self._clock.now()
        for task in self._store.list(TaskStatus.PENDING):
            if not task.is_due_to_expire(now):
                continue
            with self._locked(task.task_id):
                before = self._load(task.task_id)
                after = self._expire_if_due(before)
                if before.status == TaskStatus.PENDING and after.status == TaskStatus.EXPIRED:
                    expired.append(after)
        return expired
