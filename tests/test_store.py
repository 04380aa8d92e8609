"""
Tests for commandgate.store -- Approval Task Persistence.

Both adapters run the same cases: add and get, duplicate rejection,
compare-and-swap wins and losses, and status listing.  The SQLite adapter
is additionally checked for durability across instances.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from commandgate.errors import AlreadyResolved
from commandgate.models import ApprovalTask, TaskStatus, validate_command
from commandgate.store import InMemoryTaskStore, SqliteTaskStore


_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _make_task(command_id: str = "cmd-1", offset_minutes: int = 0) -> ApprovalTask:
    command = validate_command({
        "command": "QueueReferralLetter",
        "patientId": "pat-001",
        "confidence": 0.9,
        "aiModel": "gen-test-v1",
        "referringPractitionerId": "Practitioner/dr-1",
        "specialty": "cardiology",
        "urgency": "routine",
        "reasonForReferral": "Murmur",
        "clinicalSummary": "New systolic murmur.",
    })
    created = _NOW + timedelta(minutes=offset_minutes)
    return ApprovalTask(
        command=command,
        command_id=command_id,
        created_at=created,
        expires_at=created + timedelta(hours=48),
        approver_roles=["Practitioner"],
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryTaskStore()
    return SqliteTaskStore(tmp_path / "tasks.db")


# ---------------------------------------------------------------------------
# 1. Add and get
# ---------------------------------------------------------------------------

class TestAddAndGet:
    def test_round_trip(self, store):
        task = _make_task()
        store.add(task)
        loaded = store.get(task.task_id)
        assert loaded == task

    def test_unknown_task(self, store):
        assert store.get("nope") is None

    def test_duplicate_task_id_rejected(self, store):
        task = _make_task()
        store.add(task)
        with pytest.raises(ValueError):
            store.add(task)

    def test_one_task_per_command(self, store):
        store.add(_make_task("cmd-1"))
        with pytest.raises(ValueError):
            store.add(_make_task("cmd-1"))


# ---------------------------------------------------------------------------
# 2. Compare-and-swap
# ---------------------------------------------------------------------------

class TestCompareAndSet:
    def test_pending_to_approved(self, store):
        task = _make_task()
        store.add(task)
        updated = task.model_copy(update={"status": TaskStatus.APPROVED, "approver_id": "dr-1"})
        assert store.compare_and_set(task.task_id, TaskStatus.PENDING, updated) == updated
        assert store.get(task.task_id).status == TaskStatus.APPROVED

    def test_loser_sees_winner(self, store):
        task = _make_task()
        store.add(task)
        approved = task.model_copy(update={"status": TaskStatus.APPROVED})
        rejected = task.model_copy(update={"status": TaskStatus.REJECTED})
        store.compare_and_set(task.task_id, TaskStatus.PENDING, approved)

        with pytest.raises(AlreadyResolved) as exc_info:
            store.compare_and_set(task.task_id, TaskStatus.PENDING, rejected)
        assert exc_info.value.task.status == TaskStatus.APPROVED
        assert store.get(task.task_id).status == TaskStatus.APPROVED

    def test_unknown_task(self, store):
        task = _make_task()
        with pytest.raises(KeyError):
            store.compare_and_set(task.task_id, TaskStatus.PENDING, task)


# ---------------------------------------------------------------------------
# 3. Listing
# ---------------------------------------------------------------------------

class TestListing:
    def test_list_by_status_in_creation_order(self, store):
        first = _make_task("cmd-1", offset_minutes=0)
        second = _make_task("cmd-2", offset_minutes=5)
        third = _make_task("cmd-3", offset_minutes=10)
        for task in (third, first, second):
            store.add(task)
        store.compare_and_set(
            second.task_id,
            TaskStatus.PENDING,
            second.model_copy(update={"status": TaskStatus.EXPIRED}),
        )

        pending = store.list(TaskStatus.PENDING)
        assert [t.command_id for t in pending] == ["cmd-1", "cmd-3"]
        assert len(store.list()) == 3


# ---------------------------------------------------------------------------
# 4. Durability
# ---------------------------------------------------------------------------

class TestSqliteDurability:
    def test_tasks_survive_a_new_instance(self, tmp_path):
        path = tmp_path / "tasks.db"
        task = _make_task()
        SqliteTaskStore(path).add(task)

        reopened = SqliteTaskStore(path)
        assert reopened.get(task.task_id) == task
        assert [t.task_id for t in reopened.list(TaskStatus.PENDING)] == [task.task_id]
