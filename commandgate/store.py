"""
Approval task persistence.

The approval queue reads and writes tasks through a ``TaskStore``.  Status
changes go through ``compare_and_set()``, which only succeeds while the
stored status still equals the expected one.  A losing writer gets
``AlreadyResolved`` carrying the task as stored, so a racing decision
observes the winner's terminal state instead of overwriting it.

Two adapters are provided: ``InMemoryTaskStore`` for a single process and
``SqliteTaskStore``, which keeps tasks across process restarts.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import closing
from pathlib import Path
from typing import Optional, Protocol

from commandgate.errors import AlreadyResolved
from commandgate.models import ApprovalTask, TaskStatus


class TaskStore(Protocol):
    def add(self, task: ApprovalTask) -> None:
        ...

    def get(self, task_id: str) -> Optional[ApprovalTask]:
        ...

    def compare_and_set(
        self, task_id: str, expected: TaskStatus, updated: ApprovalTask
    ) -> ApprovalTask:
        ...

    def list(self, status: Optional[TaskStatus] = None) -> list[ApprovalTask]:
        ...


class InMemoryTaskStore:
    """Dictionary-backed task store guarded by a lock."""

    def __init__(self) -> None:
        self._tasks: dict[str, ApprovalTask] = {}
        self._command_ids: set[str] = set()
        self._lock = threading.Lock()

    def add(self, task: ApprovalTask) -> None:
        """Store a new task.

        Raises:
            ValueError: If the task id or command id is already stored.
        """
        with self._lock:
            if task.task_id in self._tasks:
                raise ValueError(f"Task {task.task_id} already exists")
            if task.command_id in self._command_ids:
                raise ValueError(f"Command {task.command_id} already has an approval task")
            self._tasks[task.task_id] = task
            self._command_ids.add(task.command_id)

    def get(self, task_id: str) -> Optional[ApprovalTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def compare_and_set(
        self, task_id: str, expected: TaskStatus, updated: ApprovalTask
    ) -> ApprovalTask:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(task_id)
            if current.status != expected:
                raise AlreadyResolved(current)
            self._tasks[task_id] = updated
            return updated

    def list(self, status: Optional[TaskStatus] = None) -> list[ApprovalTask]:
        with self._lock:
            tasks = list(self._tasks.values())
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        return sorted(tasks, key=lambda t: t.created_at)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS approval_tasks (
    task_id     TEXT PRIMARY KEY,
    command_id  TEXT NOT NULL UNIQUE,
    status      TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    expires_at  TEXT NOT NULL,
    body_json   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_approval_tasks_status ON approval_tasks (status, expires_at);
"""


class SqliteTaskStore:
    """SQLite-backed task store that survives process restarts.

    Status changes are a single ``UPDATE ... WHERE status = ?`` so the
    compare-and-swap holds across connections and processes.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.executescript(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def add(self, task: ApprovalTask) -> None:
        try:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    """
                    INSERT INTO approval_tasks (
                        task_id, command_id, status, created_at, expires_at, body_json
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task.task_id,
                        task.command_id,
                        task.status.value,
                        task.created_at.isoformat(),
                        task.expires_at.isoformat(),
                        task.model_dump_json(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError(
                f"Task {task.task_id} or command {task.command_id} already stored"
            ) from exc

    def get(self, task_id: str) -> Optional[ApprovalTask]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT body_json FROM approval_tasks WHERE task_id = ?", (task_id,)
            ).fetchone()
        if row is None:
            return None
        return ApprovalTask.model_validate_json(row["body_json"])

    def compare_and_set(
        self, task_id: str, expected: TaskStatus, updated: ApprovalTask
    ) -> ApprovalTask:
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                "UPDATE approval_tasks SET status = ?, body_json = ? WHERE task_id = ? AND status = ?",
                (updated.status.value, updated.model_dump_json(), task_id, expected.value),
            )
            changed = cursor.rowcount
        if changed == 1:
            return updated
        current = self.get(task_id)
        if current is None:
            raise KeyError(task_id)
        raise AlreadyResolved(current)

    def list(self, status: Optional[TaskStatus] = None) -> list[ApprovalTask]:
        query = "SELECT body_json FROM approval_tasks"
        params: tuple[str, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY created_at"
        with closing(self._connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [ApprovalTask.model_validate_json(row["body_json"]) for row in rows]
