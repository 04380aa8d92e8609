"""
Tests for commandgate.approval_queue -- Human-in-the-Loop Approval Queue.

Covers: task creation and deadlines, approval with and without edits,
idempotent re-delivery, rejection, lazy expiration, re-validation of edited
commands, executor failures, approver role gating, concurrent decisions,
the expiry sweep, a SQLite-backed queue, outcome notifications, and
task lock bookkeeping.
"""

from __future__ import annotations

import base64
import threading
from datetime import datetime, timedelta, timezone

import pytest

from commandgate.approval_queue import Approve, ApprovalQueue, Reject
from commandgate.audit import AuditEventType, AuditRecorder, ClinicianAction, ProvenanceActivity
from commandgate.clock import FixedClock
from commandgate.config import DEFAULT_POLICY, ApprovalRule
from commandgate.errors import (
    DependencyError,
    ExpiredTask,
    InvalidTaskState,
    PolicyViolationOnApproval,
    TaskNotFound,
)
from commandgate.executor import CommandExecutor, InMemoryResourceStore
from commandgate.models import CommandKind, DecisionAction, Role, TaskStatus, validate_command
from commandgate.notify import InMemoryNotifier, NotificationEvent, NotificationPriority
from commandgate.store import InMemoryTaskStore, SqliteTaskStore


_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class _Env:
    """A queue wired to an in-memory resource store and a fixed clock."""

    def __init__(self, task_store=None, resources=None, notifier=None) -> None:
        self.clock = FixedClock(_NOW)
        self.resources = resources if resources is not None else InMemoryResourceStore()
        self.executor = CommandExecutor(self.resources, timeout_seconds=2)
        self.recorder = AuditRecorder(clock=self.clock)
        self.resolver = DEFAULT_POLICY.resolver()
        self.notifier = notifier if notifier is not None else InMemoryNotifier()
        self.queue = ApprovalQueue(
            self.executor,
            self.recorder,
            policy=DEFAULT_POLICY,
            resolver=self.resolver,
            store=task_store,
            clock=self.clock,
            notifier=self.notifier,
        )

    def enqueue(self, command, warnings=None):
        rule = self.resolver.resolve(command.kind)
        return self.queue.enqueue(command, rule, warnings=warnings)

    def audit_count(self, event_type: AuditEventType) -> int:
        return len(self.recorder.audit_log.query(event_type=event_type))


class _FlakyStore(InMemoryResourceStore):
    """Fails the first create call, then behaves normally."""

    def __init__(self) -> None:
        super().__init__()
        self.failures_left = 1

    def create(self, resource_type, resource):
        if self.failures_left:
            self.failures_left -= 1
            raise ConnectionError("record store unavailable")
        return super().create(resource_type, resource)


_BASE = {
    "patientId": "pat-001",
    "confidence": 0.9,
    "aiModel": "gen-test-v1",
    "reasoning": "Synthetic rationale.",
}


def _make_note(**overrides):
    return validate_command({
        "command": "CreateEncounterNoteDraft",
        **_BASE,
        "encounterId": "enc-1",
        "noteType": "progress",
        "content": "Original note.",
        **overrides,
    })


def _make_change(display: str = "Lisinopril 10 MG"):
    return validate_command({
        "command": "SuggestMedicationChange",
        **_BASE,
        "action": "modify",
        "medication": {"code": "29046", "system": "RxNorm", "display": display},
        "dosage": "10 mg",
    })


@pytest.fixture
def env():
    env = _Env()
    yield env
    env.executor.close()


# ---------------------------------------------------------------------------
# 1. Enqueue
# ---------------------------------------------------------------------------

class TestEnqueue:
    def test_note_task_expires_in_24h(self, env):
        task = env.enqueue(_make_note())
        assert task.status == TaskStatus.PENDING
        assert task.created_at == _NOW
        assert task.expires_at == _NOW + timedelta(hours=24)
        assert task.approver_roles == ["Practitioner", "Nurse"]
        assert env.queue.get(task.task_id) == task

    def test_zero_timeout_rule_gets_default_window(self, env):
        command = validate_command({
            "command": "SummarizePatientHistory",
            **_BASE,
            "summaryType": "medication",
            "summary": "Synthetic summary.",
        })
        task = env.enqueue(command)
        assert task.expires_at == _NOW + timedelta(hours=24)

    def test_warnings_are_carried(self, env):
        task = env.enqueue(_make_note(), warnings=["Warning: late night"])
        assert task.warnings == ["Warning: late night"]

    def test_enqueue_never_executes(self, env):
        env.enqueue(_make_note())
        assert env.resources.calls == []


# ---------------------------------------------------------------------------
# 2. Approve
# ---------------------------------------------------------------------------

class TestApprove:
    def test_approve_executes_once(self, env):
        task = env.enqueue(_make_note())
        result = env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))

        assert result.action == DecisionAction.APPROVED
        assert result.status == TaskStatus.APPROVED
        assert result.success is True
        assert result.replayed is False
        assert result.resource_ref.startswith("DocumentReference/")
        assert env.resources.calls == [("create", "DocumentReference")]

        stored = env.queue.get(task.task_id)
        assert stored.status == TaskStatus.APPROVED
        assert stored.approver_id == "dr-1"
        assert stored.decided_at == _NOW

    def test_approve_writes_provenance_and_audit(self, env):
        task = env.enqueue(_make_note())
        result = env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))

        provenance = env.recorder.provenance_log.query(task_id=task.task_id)
        assert len(provenance) == 1
        assert provenance[0].clinician_action == ClinicianAction.ACCEPTED
        assert provenance[0].targets == [result.resource_ref]
        assert [a.who for a in provenance[0].agents] == ["AI: gen-test-v1", "dr-1"]

        approved = env.recorder.audit_log.query(event_type=AuditEventType.APPROVED)
        assert len(approved) == 1
        assert approved[0].actor_id == "dr-1"
        assert approved[0].task_id == task.task_id

    def test_approve_twice_is_idempotent(self, env):
        task = env.enqueue(_make_note())
        first = env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))
        second = env.queue.on_decision(task.task_id, Approve(approver_id="dr-2"))

        assert second.replayed is True
        assert second.resource_ref == first.resource_ref
        assert second.action == DecisionAction.APPROVED
        assert len(env.resources.calls) == 1
        assert env.audit_count(AuditEventType.APPROVED) == 1
        assert len(env.recorder.provenance_log) == 1
        assert env.queue.get(task.task_id).approver_id == "dr-1"

    def test_approve_with_edit(self, env):
        task = env.enqueue(_make_note())
        result = env.queue.on_decision(
            task.task_id,
            Approve(approver_id="dr-1", modifications={"content": "Edited note."}),
        )
        resource = env.resources.get("DocumentReference", result.resource_ref.split("/", 1)[1])
        data = resource["content"][0]["attachment"]["data"]
        assert base64.b64decode(data).decode("utf-8") == "Edited note."

        provenance = env.recorder.provenance_log.query(task_id=task.task_id)[0]
        assert provenance.clinician_action == ClinicianAction.EDITED
        assert provenance.edited_fields == ["content"]
        assert env.queue.get(task.task_id).modifications == {"content": "Edited note."}

    def test_unknown_task(self, env):
        with pytest.raises(TaskNotFound):
            env.queue.on_decision("no-such-task", Approve(approver_id="dr-1"))
        with pytest.raises(KeyError):
            env.queue.poll("no-such-task")


# ---------------------------------------------------------------------------
# 3. Reject
# ---------------------------------------------------------------------------

class TestReject:
    def test_reject_never_executes(self, env):
        task = env.enqueue(_make_note())
        result = env.queue.on_decision(
            task.task_id, Reject(approver_id="dr-1", reason="Wrong encounter")
        )
        assert result.action == DecisionAction.REJECTED
        assert result.status == TaskStatus.REJECTED
        assert env.resources.calls == []

        stored = env.queue.get(task.task_id)
        assert stored.status == TaskStatus.REJECTED
        assert stored.rejection_reason == "Wrong encounter"

    def test_reject_records_nullified_provenance(self, env):
        task = env.enqueue(_make_note())
        env.queue.on_decision(task.task_id, Reject(approver_id="dr-1"))

        provenance = env.recorder.provenance_log.query(task_id=task.task_id)
        assert len(provenance) == 1
        assert provenance[0].activity == ProvenanceActivity.NULLIFY
        assert provenance[0].rejection_reason == "No reason provided"
        assert env.audit_count(AuditEventType.REJECTED) == 1

    def test_approve_after_reject_replays_rejection(self, env):
        task = env.enqueue(_make_note())
        env.queue.on_decision(task.task_id, Reject(approver_id="dr-1"))
        result = env.queue.on_decision(task.task_id, Approve(approver_id="dr-2"))

        assert result.replayed is True
        assert result.action == DecisionAction.REJECTED
        assert env.resources.calls == []
        assert env.audit_count(AuditEventType.APPROVED) == 0


# ---------------------------------------------------------------------------
# 4. Expiration
# ---------------------------------------------------------------------------

class TestExpiration:
    def test_poll_after_deadline_expires_once(self, env):
        task = env.enqueue(_make_note())
        env.clock.advance(timedelta(hours=24, seconds=1))

        first = env.queue.poll(task.task_id)
        second = env.queue.poll(task.task_id)

        assert first.status == TaskStatus.EXPIRED
        assert second.status == TaskStatus.EXPIRED
        assert first.result.action == DecisionAction.EXPIRED
        assert env.audit_count(AuditEventType.EXPIRED) == 1
        assert env.resources.calls == []

    def test_not_expired_at_exact_deadline(self, env):
        task = env.enqueue(_make_note())
        env.clock.advance(timedelta(hours=24))
        assert env.queue.poll(task.task_id).status == TaskStatus.PENDING
        result = env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))
        assert result.action == DecisionAction.APPROVED

    def test_decision_on_overdue_task_raises(self, env):
        task = env.enqueue(_make_note())
        env.clock.advance(timedelta(hours=25))

        with pytest.raises(ExpiredTask):
            env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))

        assert env.queue.get(task.task_id).status == TaskStatus.EXPIRED
        assert env.audit_count(AuditEventType.EXPIRED) == 1
        assert env.resources.calls == []

    def test_decision_on_expired_task_raises_every_time(self, env):
        task = env.enqueue(_make_note())
        env.clock.advance(timedelta(days=2))
        env.queue.poll(task.task_id)
        for decision in (Approve(approver_id="dr-1"), Reject(approver_id="dr-1")):
            with pytest.raises(ExpiredTask):
                env.queue.on_decision(task.task_id, decision)
        assert env.audit_count(AuditEventType.EXPIRED) == 1

    def test_sweep_and_list_pending(self, env):
        note_task = env.enqueue(_make_note())
        codes_task = env.enqueue(validate_command({
            "command": "SuggestBillingCodes",
            **_BASE,
            "encounterId": "enc-1",
            "suggestedCodes": [{"code": "99213", "system": "CPT"}],
        }))
        env.clock.advance(timedelta(hours=25))

        expired = env.queue.sweep_expired()
        assert [t.task_id for t in expired] == [note_task.task_id]
        assert env.queue.sweep_expired() == []
        assert [t.task_id for t in env.queue.list_pending()] == [codes_task.task_id]
        assert env.audit_count(AuditEventType.EXPIRED) == 1


# ---------------------------------------------------------------------------
# 5. Re-validation on approval
# ---------------------------------------------------------------------------

class TestRevalidation:
    def test_edit_below_confidence_floor_is_a_policy_violation(self, env):
        task = env.enqueue(_make_note())
        with pytest.raises(PolicyViolationOnApproval) as exc_info:
            env.queue.on_decision(
                task.task_id,
                Approve(approver_id="dr-1", modifications={"confidence": 0.3}),
            )
        assert "confidence" in exc_info.value.reason
        assert exc_info.value.filter_name == "ConfidenceFloor"
        assert env.resources.calls == []
        assert env.queue.get(task.task_id).status == TaskStatus.PENDING

        violations = env.recorder.audit_log.query(
            event_type=AuditEventType.POLICY_VIOLATION_ON_APPROVAL
        )
        assert len(violations) == 1
        assert violations[0].actor_id == "dr-1"
        assert violations[0].detail["edited_fields"] == ["confidence"]
        assert env.audit_count(AuditEventType.REJECTED) == 0

    def test_task_can_still_be_approved_after_violation(self, env):
        task = env.enqueue(_make_note())
        with pytest.raises(PolicyViolationOnApproval):
            env.queue.on_decision(
                task.task_id, Approve(approver_id="dr-1", modifications={"confidence": 0.1})
            )
        result = env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))
        assert result.action == DecisionAction.APPROVED

    def test_edit_into_blocked_medication(self, env):
        task = env.enqueue(_make_change())
        with pytest.raises(PolicyViolationOnApproval) as exc_info:
            env.queue.on_decision(
                task.task_id,
                Approve(
                    approver_id="dr-1",
                    modifications={
                        "medication": {"code": "7804", "system": "RxNorm", "display": "Oxycodone 5 MG"},
                    },
                ),
            )
        assert exc_info.value.filter_name == "BlockControlledSubstances"
        assert env.resources.calls == []

    def test_edit_of_kind_is_a_policy_violation(self, env):
        task = env.enqueue(_make_note())
        with pytest.raises(PolicyViolationOnApproval, match="cannot be modified"):
            env.queue.on_decision(
                task.task_id,
                Approve(approver_id="dr-1", modifications={"kind": "FlagAbnormalResult"}),
            )
        assert env.queue.get(task.task_id).status == TaskStatus.PENDING


# ---------------------------------------------------------------------------
# 6. Executor failures
# ---------------------------------------------------------------------------

class TestExecutorFailures:
    def test_dependency_error_leaves_task_pending(self):
        env = _Env(resources=_FlakyStore())
        try:
            task = env.enqueue(_make_note())
            with pytest.raises(DependencyError):
                env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))

            assert env.queue.get(task.task_id).status == TaskStatus.PENDING
            assert env.audit_count(AuditEventType.ERROR) == 1
            assert len(env.recorder.provenance_log) == 0
            assert env.notifier.sent == []

            result = env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))
            assert result.action == DecisionAction.APPROVED
            assert env.audit_count(AuditEventType.APPROVED) == 1
            assert env.notifier.events() == [NotificationEvent.APPROVED]
        finally:
            env.executor.close()

    def test_unsuccessful_execution_returns_error_result(self, env):
        command = validate_command({
            "command": "ProposeProblemListUpdate",
            **_BASE,
            "action": "resolve",
            "condition": {"code": "38341003", "system": "http://snomed.info/sct"},
        })
        task = env.enqueue(command)
        result = env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))

        assert result.action == DecisionAction.ERROR
        assert result.status == TaskStatus.PENDING
        assert result.success is False
        assert env.queue.get(task.task_id).status == TaskStatus.PENDING
        assert env.audit_count(AuditEventType.ERROR) == 1


# ---------------------------------------------------------------------------
# 7. Approver roles
# ---------------------------------------------------------------------------

class TestApproverRoles:
    def test_unlisted_role_cannot_decide(self, env):
        task = env.enqueue(_make_change())
        with pytest.raises(PermissionError):
            env.queue.on_decision(task.task_id, Approve(approver_id="rn-1"), approver_role=Role.NURSE)
        assert env.queue.get(task.task_id).status == TaskStatus.PENDING
        assert env.resources.calls == []

    def test_admin_cannot_decide(self, env):
        task = env.enqueue(_make_change())
        with pytest.raises(PermissionError):
            env.queue.on_decision(task.task_id, Reject(approver_id="admin-1"), approver_role=Role.ADMIN)

    def test_listed_role_decides(self, env):
        task = env.enqueue(_make_change())
        result = env.queue.on_decision(
            task.task_id, Approve(approver_id="rph-1"), approver_role="Pharmacist"
        )
        assert result.action == DecisionAction.APPROVED
        assert env.resources.calls == [("create", "MedicationRequest")]

    def test_approver_dropped_from_current_rule_cannot_approve(self, env):
        task = env.enqueue(_make_note())
        assert task.approver_roles == ["Practitioner", "Nurse"]
        env.resolver.update(
            CommandKind.CREATE_NOTE_DRAFT,
            ApprovalRule(approver_roles=["Practitioner"]),
            Role.ADMIN,
        )

        with pytest.raises(PermissionError, match="not an approver"):
            env.queue.on_decision(
                task.task_id, Approve(approver_id="rn-1"), approver_role=Role.NURSE
            )
        assert env.queue.get(task.task_id).status == TaskStatus.PENDING
        assert env.resources.calls == []
        assert env.notifier.sent == []

        result = env.queue.on_decision(
            task.task_id, Approve(approver_id="dr-1"), approver_role=Role.PRACTITIONER
        )
        assert result.action == DecisionAction.APPROVED

    def test_rule_change_does_not_gate_rejection(self, env):
        task = env.enqueue(_make_note())
        env.resolver.update(
            CommandKind.CREATE_NOTE_DRAFT,
            ApprovalRule(approver_roles=["Practitioner"]),
            Role.ADMIN,
        )
        result = env.queue.on_decision(
            task.task_id, Reject(approver_id="rn-1"), approver_role=Role.NURSE
        )
        assert result.action == DecisionAction.REJECTED


# ---------------------------------------------------------------------------
# 8. Concurrent decisions
# ---------------------------------------------------------------------------

class TestConcurrentDecisions:
    def _run_concurrently(self, env, task_id, decisions):
        barrier = threading.Barrier(len(decisions))
        results = []
        lock = threading.Lock()

        def worker(decision):
            barrier.wait()
            result = env.queue.on_decision(task_id, decision)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker, args=(d,)) for d in decisions]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def test_concurrent_approvals_execute_once(self, env):
        task = env.enqueue(_make_note())
        decisions = [Approve(approver_id=f"dr-{i}") for i in range(10)]
        results = self._run_concurrently(env, task.task_id, decisions)

        assert len(results) == 10
        assert sum(1 for r in results if not r.replayed) == 1
        assert len({r.resource_ref for r in results}) == 1
        assert env.resources.calls == [("create", "DocumentReference")]
        assert env.audit_count(AuditEventType.APPROVED) == 1
        assert len(env.recorder.provenance_log) == 1
        assert env.notifier.events() == [NotificationEvent.APPROVED]

    def test_concurrent_approve_and_reject_resolve_once(self, env):
        task = env.enqueue(_make_note())
        decisions = []
        for i in range(5):
            decisions.append(Approve(approver_id=f"dr-a{i}"))
            decisions.append(Reject(approver_id=f"dr-r{i}"))
        results = self._run_concurrently(env, task.task_id, decisions)

        winners = [r for r in results if not r.replayed]
        assert len(winners) == 1
        assert all(r.action == winners[0].action for r in results)

        final = env.queue.get(task.task_id)
        if final.status == TaskStatus.APPROVED:
            assert len(env.resources.calls) == 1
        else:
            assert final.status == TaskStatus.REJECTED
            assert env.resources.calls == []
        assert len(env.recorder.provenance_log) == 1
        assert len(env.notifier.sent) == 1


# ---------------------------------------------------------------------------
# 9. SQLite-backed queue
# ---------------------------------------------------------------------------

class TestSqliteBackedQueue:
    def test_decision_survives_a_new_queue(self, tmp_path):
        db = tmp_path / "tasks.db"
        env = _Env(task_store=SqliteTaskStore(db))
        try:
            task = env.enqueue(_make_note())
            first = env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))

            restarted = ApprovalQueue(
                env.executor, env.recorder, store=SqliteTaskStore(db), clock=env.clock
            )
            again = restarted.on_decision(task.task_id, Approve(approver_id="dr-1"))
            assert again.replayed is True
            assert again.resource_ref == first.resource_ref
            assert len(env.resources.calls) == 1
        finally:
            env.executor.close()


# ---------------------------------------------------------------------------
# 10. Notifications
# ---------------------------------------------------------------------------

class _BrokenNotifier:
    def send(self, notification):
        raise RuntimeError("pager gateway down")


class TestNotifications:
    def test_approval_notifies_once(self, env):
        task = env.enqueue(_make_note())
        result = env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))
        env.queue.on_decision(task.task_id, Approve(approver_id="dr-2"))
        env.queue.poll(task.task_id)

        assert env.notifier.events() == [NotificationEvent.APPROVED]
        sent = env.notifier.sent[0]
        assert sent.task_id == task.task_id
        assert sent.command_id == task.command_id
        assert sent.recipients == ["Practitioner", "Nurse"]
        assert sent.resource_ref == result.resource_ref
        assert sent.priority == NotificationPriority.ROUTINE
        assert sent.sent_at == _NOW

    def test_rejection_notifies_once(self, env):
        task = env.enqueue(_make_note())
        env.queue.on_decision(task.task_id, Reject(approver_id="dr-1", reason="Duplicate"))
        env.queue.on_decision(task.task_id, Approve(approver_id="dr-2"))

        assert env.notifier.events() == [NotificationEvent.REJECTED]
        assert env.notifier.sent[0].message == "AI command CreateEncounterNoteDraft was rejected."

    def test_expiry_notifies_once_and_is_urgent(self, env):
        task = env.enqueue(_make_note())
        env.clock.advance(timedelta(hours=25))
        env.queue.poll(task.task_id)
        env.queue.poll(task.task_id)
        env.queue.sweep_expired()
        with pytest.raises(ExpiredTask):
            env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))

        assert env.notifier.events() == [NotificationEvent.EXPIRED]
        assert env.notifier.sent[0].priority == NotificationPriority.URGENT

    def test_failed_or_blocked_approval_sends_nothing(self, env):
        task = env.enqueue(_make_note())
        with pytest.raises(PolicyViolationOnApproval):
            env.queue.on_decision(
                task.task_id, Approve(approver_id="dr-1", modifications={"confidence": 0.2})
            )
        assert env.notifier.sent == []

    def test_broken_notifier_does_not_affect_decision(self):
        env = _Env(notifier=_BrokenNotifier())
        try:
            task = env.enqueue(_make_note())
            result = env.queue.on_decision(task.task_id, Approve(approver_id="dr-1"))
            assert result.action == DecisionAction.APPROVED
            assert env.queue.get(task.task_id).status == TaskStatus.APPROVED
            assert env.audit_count(AuditEventType.APPROVED) == 1
        finally:
            env.executor.close()


# ---------------------------------------------------------------------------
# 11. Task locks and stored state
# ---------------------------------------------------------------------------

class TestTaskLocks:
    def test_unknown_ids_leave_no_lock_behind(self, env):
        for i in range(1000):
            with pytest.raises(TaskNotFound):
                env.queue.poll(f"unknown-{i}")
            with pytest.raises(TaskNotFound):
                env.queue.on_decision(f"unknown-{i}", Approve(approver_id="dr-1"))
        assert env.queue._locks == {}

    def test_locks_are_released_after_use(self, env):
        tasks = [env.enqueue(_make_note()) for _ in range(20)]
        for task in tasks:
            env.queue.poll(task.task_id)
            env.queue.on_decision(task.task_id, Reject(approver_id="dr-1"))
        for _ in range(5):
            env.enqueue(_make_note())
        env.clock.advance(timedelta(days=2))
        assert len(env.queue.sweep_expired()) == 5
        assert env.queue._locks == {}

    def test_decided_task_without_result_is_invalid(self, env):
        task = env.enqueue(_make_note())
        store = InMemoryTaskStore()
        store.add(task.model_copy(update={"status": TaskStatus.APPROVED, "approver_id": "dr-1"}))
        queue = ApprovalQueue(env.executor, env.recorder, store=store, clock=env.clock)

        with pytest.raises(InvalidTaskState, match="without a stored result"):
            queue.on_decision(task.task_id, Approve(approver_id="dr-2"))
        assert env.resources.calls == []
