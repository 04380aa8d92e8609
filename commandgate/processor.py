"""
Command Processor -- Orchestration of Intake, Policy and Execution.

``CommandProcessor.process()`` is the entry point for every AI-originated
command.  Each command ends in exactly one of four outcomes:

    RECEIVED -> BLOCKED   (invalid, filtered out, or below the confidence floor)
    RECEIVED -> QUEUED    (approval task created; a human decides later)
    RECEIVED -> EXECUTED  (auto-executed; provenance written)
    RECEIVED -> ERROR     (executor failed; nothing took hold)

**Processing pipeline:**

1. Assign a unique command id and validate the envelope.
2. Evaluate the safety filters and the confidence floor.  A block ends
   processing with no side effect on the resource store.
3. Resolve the approval rule and decide whether approval is required.
   Filter ``require_approval`` matches and the generator's own approval
   hint can only escalate to review, never relax it.
4. Quiet hours: inside the configured window a command that would
   otherwise auto-execute is queued, unless it asserts urgency and the
   policy explicitly allows an urgent bypass.
5. Queue the command, or execute it and write provenance.

Any unexpected exception during steps 2-4 blocks the command with the
error as the reason.  Executor failures are reported, never retried here.

DISCLAIMER: The processor enforces organizational policy on AI proposals.
It does not assess the clinical appropriateness of a proposal; that is the
reviewing clinician's responsibility.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

from commandgate.approval_queue import ApprovalQueue
from commandgate.audit import AuditEventType, AuditRecorder, ClinicianAction
from commandgate.clock import Clock, SystemClock
from commandgate.config import DEFAULT_POLICY, ApprovalRuleResolver, GovernancePolicy
from commandgate.errors import DependencyError, InvalidCommand, PolicyBlocked, UnsupportedCommand
from commandgate.executor import CommandExecutor
from commandgate.models import ProposedCommand, generate_command_id, validate_command
from commandgate.notify import LoggingNotifier, Notifier, dispatch, execution_notification
from commandgate.safety_filters import evaluate_filters

logger = logging.getLogger(__name__)


class ProcessAction(str, enum.Enum):
    EXECUTED = "executed"
    QUEUED = "queued"
    BLOCKED = "blocked"
    ERROR = "error"


class ProcessResult(BaseModel):
    """What the caller learns about one processed command."""

    success: bool
    action: ProcessAction
    command_id: str
    message: str
    task_id: Optional[str] = Field(default=None, description="Set when queued.")
    resource_ref: Optional[str] = Field(default=None, description="Set when executed.")
    block_reason: Optional[str] = Field(default=None, description="Set when blocked.")
    blocking_filter: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class CommandProcessor:
    """Runs proposed commands through policy, then queues or executes them.

    Args:
        executor: Performs the side effect for auto-executed commands.
        recorder: Audit and provenance sink.  A fresh in-memory recorder is
            created when omitted.
        policy: Filters, confidence floor, quiet hours and approval rules.
        resolver: Approval rule resolver; defaults to ``policy.resolver()``.
        queue: Approval queue for commands that need review.  Built from
            the same executor, recorder, policy and clock when omitted.
        clock: Time source for quiet hours and task creation.
        notifier: Receives outcome notifications; shared with the queue
            it builds.  Logs them when omitted.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        recorder: Optional[AuditRecorder] = None,
        policy: GovernancePolicy = DEFAULT_POLICY,
        resolver: Optional[ApprovalRuleResolver] = None,
        queue: Optional[ApprovalQueue] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.notifier = notifier if notifier is not None else LoggingNotifier()
        self.recorder = recorder or AuditRecorder(clock=self.clock)
        self.policy = policy
        self.resolver = resolver if resolver is not None else policy.resolver()
        self.executor = executor
        self.queue = queue or ApprovalQueue(
            executor,
            self.recorder,
            policy=policy,
            resolver=self.resolver,
            clock=self.clock,
            notifier=self.notifier,
        )

    def _blocked(
        self,
        command_id: str,
        reason: str,
        *,
        command: Optional[ProposedCommand] = None,
        event_type: AuditEventType = AuditEventType.BLOCKED,
        filter_name: Optional[str] = None,
        warnings: Optional[list[str]] = None,
    ) -> ProcessResult:
        logger.warning("Command %s blocked: %s", command_id, reason)
        self.recorder.record(
            event_type,
            command=command,
            command_id=command_id,
            outcome_desc=reason,
            detail={"filter": filter_name} if filter_name else None,
        )
        return ProcessResult(
            success=False,
            action=ProcessAction.BLOCKED,
            command_id=command_id,
            message=f"Command blocked: {reason}",
            block_reason=reason,
            blocking_filter=filter_name,
            warnings=list(warnings or []),
        )

    def process(self, raw: Any) -> ProcessResult:
        """Process one inbound command.

        Args:
            raw: A decoded command envelope, or an already validated
                ``ProposedCommand``.

        Returns:
            A ``ProcessResult``.  Policy outcomes are reported here, never
            raised.
        """
        command_id = generate_command_id()

        # 1. Validate
        try:
            command = validate_command(raw)
        except InvalidCommand as exc:
            return self._blocked(
                command_id, str(exc), event_type=AuditEventType.INVALID
            )

        # 2-4. Filters, rule resolution, quiet hours
        try:
            evaluation = evaluate_filters(
                command, self.policy.safety_filters, self.policy.confidence_floor
            )
            if evaluation.blocked:
                return self._blocked(
                    command_id,
                    evaluation.reason or "Blocked by safety filter",
                    command=command,
                    filter_name=evaluation.blocking_filter,
                    warnings=evaluation.warnings,
                )

            rule = self.resolver.resolve(command.kind)
            reasons = []
            if self.resolver.requires_approval(command, rule):
                reasons.append("approval rule")
            if evaluation.requires_approval():
                reasons.append(f"safety filter ({', '.join(evaluation.require_approval_hints)})")
            if command.requires_approval_hint:
                reasons.append("generator requested review")
            if not reasons and self.policy.quiet_hours.forces_queue(command, self.clock.now()):
                reasons.append("quiet hours")
        except PolicyBlocked as exc:
            return self._blocked(
                command_id, exc.reason, command=command, filter_name=exc.filter_name
            )
        except Exception as exc:
            logger.exception("Policy evaluation failed for %s", command_id)
            return self._blocked(
                command_id,
                f"Policy evaluation failed: {type(exc).__name__}: {exc}",
                command=command,
            )

        warnings = evaluation.warnings

        # 5a. Queue
        if reasons:
            task = self.queue.enqueue(command, rule, command_id=command_id, warnings=warnings)
            self.recorder.record(
                AuditEventType.QUEUED,
                command=command,
                command_id=command_id,
                task_id=task.task_id,
                outcome_desc=f"Queued for approval: {', '.join(reasons)}",
                detail={
                    "approver_roles": task.approver_roles,
                    "expires_at": task.expires_at.isoformat(),
                    "warnings": warnings,
                },
            )
            return ProcessResult(
                success=True,
                action=ProcessAction.QUEUED,
                command_id=command_id,
                task_id=task.task_id,
                message=f"Command queued for approval (task {task.task_id})",
                warnings=warnings,
            )

        # 5b. Execute
        try:
            execution = self.executor.execute(command)
        except (DependencyError, UnsupportedCommand) as exc:
            message = f"{type(exc).__name__}: {exc}"
            return self._error(command, command_id, message, warnings)

        if not execution.success:
            return self._error(command, command_id, execution.message, warnings)

        self.recorder.record_provenance(
            command,
            command_id=command_id,
            clinician_action=ClinicianAction.PENDING,
            targets=[execution.resource_ref] if execution.resource_ref else [],
        )
        self.recorder.record(
            AuditEventType.EXECUTED,
            command=command,
            command_id=command_id,
            outcome_desc=execution.message,
            detail={
                "resource_ref": execution.resource_ref,
                "notify_roles": rule.notify_roles,
                "warnings": warnings,
            },
        )
        if rule.notify_roles:
            dispatch(
                self.notifier,
                execution_notification(
                    command,
                    command_id,
                    rule.notify_roles,
                    execution.resource_ref,
                    self.clock.now(),
                ),
            )
        return ProcessResult(
            success=True,
            action=ProcessAction.EXECUTED,
            command_id=command_id,
            resource_ref=execution.resource_ref,
            message=execution.message,
            warnings=warnings,
        )

    def _error(
        self,
        command: ProposedCommand,
        command_id: str,
        message: str,
        warnings: list[str],
    ) -> ProcessResult:
        logger.error("Execution of %s failed: %s", command_id, message)
        self.recorder.record(
            AuditEventType.ERROR,
            command=command,
            command_id=command_id,
            outcome_desc=message,
        )
        return ProcessResult(
            success=False,
            action=ProcessAction.ERROR,
            command_id=command_id,
            message=f"Execution failed: {message}",
            warnings=warnings,
        )
