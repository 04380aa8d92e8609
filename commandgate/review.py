"""
Review Surface and Review Reports.

A read-only view of queued commands for the people who decide them.  A
``ReviewItem`` carries what a reviewer needs to see in a list (kind,
subject, confidence, rationale, deadline).  A ``ReviewReport`` expands one
task into a timeline of its governance events and the reasoning the
generator gave, so a reviewer decides with full context.

Nothing here changes task state.  Decisions go through
``ApprovalQueue.on_decision()``.

Audit access is gated by role as well: ``query_audit()`` needs the
``query_audit`` permission, and ``export_audit()`` needs ``export_audit``
and leaves an ``audit_exported`` record behind.

DISCLAIMER: Review reports summarize AI proposals for clinician review.
They are not clinical assessments and do not replace the reviewer's
judgment.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from commandgate.approval_queue import ApprovalQueue
from commandgate.audit import AuditEventType, AuditLog, AuditRecord, AuditRecorder
from commandgate.models import ApprovalTask, Role, TaskStatus
from commandgate.rbac import require_permission


class ReviewItem(BaseModel):
    """One row of the review queue."""

    task_id: str
    command_id: str
    kind: str
    subject_id: str
    confidence: float
    rationale: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    approver_roles: list[str] = Field(default_factory=list)
    expires_at: datetime
    status: TaskStatus


def to_review_item(task: ApprovalTask) -> ReviewItem:
    command = task.command
    return ReviewItem(
        task_id=task.task_id,
        command_id=task.command_id,
        kind=command.kind.value,
        subject_id=command.subject_id,
        confidence=command.confidence,
        rationale=command.rationale,
        warnings=list(task.warnings),
        approver_roles=list(task.approver_roles),
        expires_at=task.expires_at,
        status=task.status,
    )


def list_review_items(queue: ApprovalQueue, role: Role | str) -> list[ReviewItem]:
    """Return the pending review queue, soonest deadline first.

    Raises:
        PermissionError: If ``role`` may not view the review queue.
    """
    require_permission(role, "view_review_queue")
    items = [to_review_item(task) for task in queue.list_pending()]
    return sorted(items, key=lambda item: item.expires_at)


class ReviewReport:
    """A structured report on one approval task for reviewer use."""

    def __init__(
        self,
        task_id: str,
        command_id: str,
        kind: str,
        subject_id: str,
        generator_id: str,
        confidence: float,
        current_status: str,
        warnings: list[str],
        timeline: list[dict[str, str]],
        reasoning_chain: list[str],
        generated_at: str,
    ) -> None:
        self.task_id = task_id
        self.command_id = command_id
        self.kind = kind
        self.subject_id = subject_id
        self.generator_id = generator_id
        self.confidence = confidence
        self.current_status = current_status
        self.warnings = warnings
        self.timeline = timeline
        self.reasoning_chain = reasoning_chain
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        return {
            "report_type": "AI Command Review Report",
            "disclaimer": (
                "This report summarizes an AI-generated proposal for clinician review. "
                "It does not constitute a clinical assessment."
            ),
            "task_id": self.task_id,
            "command_id": self.command_id,
            "kind": self.kind,
            "subject_id": self.subject_id,
            "generator_id": self.generator_id,
            "confidence": self.confidence,
            "current_status": self.current_status,
            "warnings": self.warnings,
            "timeline": self.timeline,
            "reasoning_chain": self.reasoning_chain,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"ReviewReport(task_id={self.task_id}, "
            f"kind={self.kind}, status={self.current_status})"
        )


def generate_review_report(
    task: ApprovalTask,
    audit_log: Optional[AuditLog] = None,
) -> ReviewReport:
    """Generate a review report for an approval task.

    Args:
        task: The approval task.
        audit_log: When given, the task's audit records are used for the
            timeline instead of the task's own timestamps.

    Returns:
        A ``ReviewReport``.
    """
    command = task.command
    reasoning = []
    if command.rationale:
        reasoning.append(command.rationale)
    reasoning.extend(f"Retrieved: {source}" for source in command.retrieval_sources)

    return ReviewReport(
        task_id=task.task_id,
        command_id=task.command_id,
        kind=command.kind.value,
        subject_id=command.subject_id,
        generator_id=command.generator_id,
        confidence=command.confidence,
        current_status=task.status.value,
        warnings=list(task.warnings),
        timeline=_build_timeline(task, audit_log),
        reasoning_chain=reasoning,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _build_timeline(task: ApprovalTask, audit_log: Optional[AuditLog]) -> list[dict[str, str]]:
    """Build a chronological timeline of the task's governance events."""
    if audit_log is not None:
        records = audit_log.query(command_id=task.command_id)
        if records:
            return [
                {
                    "event": r.event_type.value,
                    "timestamp": r.recorded_at.isoformat(),
                    "actor": r.actor_id,
                    "description": r.outcome_desc,
                }
                for r in sorted(records, key=lambda r: r.recorded_at)
            ]

    events = [{
        "event": "queued",
        "timestamp": task.created_at.isoformat(),
        "actor": task.command.generator_id,
        "description": f"Queued for review until {task.expires_at.isoformat()}.",
    }]
    if task.decided_at and task.status != TaskStatus.PENDING:
        if task.status == TaskStatus.EXPIRED:
            description = "Approval window closed without a decision."
        elif task.status == TaskStatus.REJECTED:
            description = f"Rejected: {task.rejection_reason}"
        else:
            description = task.result.message if task.result else "Approved."
        events.append({
            "event": task.status.value,
            "timestamp": task.decided_at.isoformat(),
            "actor": task.approver_id or "SYSTEM",
            "description": description,
        })
    return events


# ---------------------------------------------------------------------------
# Audit access
# ---------------------------------------------------------------------------

def query_audit(audit_log: AuditLog, role: Role | str, **filters: Any) -> list[AuditRecord]:
    """Query the audit log on behalf of ``role``.

    ``filters`` are passed to ``AuditLog.query()``.

    Raises:
        PermissionError: If ``role`` may not query the audit log.
    """
    require_permission(role, "query_audit")
    return audit_log.query(**filters)


def export_audit(
    recorder: AuditRecorder,
    role: Role | str,
    actor_id: str,
    time_start: Optional[datetime] = None,
    time_end: Optional[datetime] = None,
) -> dict[str, Any]:
    """Export the audit log for external review and record the export.

    The bundle is built before the export is recorded, so it never lists
    its own ``audit_exported`` event.

    Args:
        recorder: Owns the audit log being exported.
        role: The caller's role.
        actor_id: Who asked for the export.
        time_start: Earliest record to include.
        time_end: Latest record to include.

    Returns:
        The PHI-redacted bundle from ``AuditLog.export_for_review()``.

    Raises:
        PermissionError: If ``role`` may not export the audit log.
    """
    require_permission(role, "export_audit")
    export = recorder.audit_log.export_for_review(time_start=time_start, time_end=time_end)
    metadata = export["export_metadata"]
    recorder.record(
        AuditEventType.AUDIT_EXPORTED,
        actor_id=actor_id,
        outcome_desc=f"Exported {metadata['record_count']} audit records",
        detail={
            "role": role.value if isinstance(role, Role) else role,
            "record_count": metadata["record_count"],
            "chain_integrity": metadata["chain_integrity"],
            "time_start": time_start.isoformat() if time_start else None,
            "time_end": time_end.isoformat() if time_end else None,
        },
    )
    return export
