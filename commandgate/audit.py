"""
Append-Only Audit and Provenance Recording (Hash-Chained).

Every governance decision -- invalid intake, block, queue, execution,
execution error, approval, rejection, expiration, and policy violation on
approval -- is recorded as an ``AuditRecord``.  Records are linked by a
SHA-256 hash chain: if a stored record is modified after the fact,
``verify_chain()`` reports where the chain breaks.

Every executed or rejected command additionally gets exactly one
``ProvenanceRecord`` naming the AI assembler and, where a human decided,
the verifier.

**Failure isolation:**  ``AuditRecorder`` never lets a failed write roll
back or block the action it describes.  A failed write is logged in full
to the ``commandgate.audit.fallback`` logger and counted, so the omission
is discoverable.

**Honest scope note:**  The hash chain provides structural tamper evidence
only.  The optional JSON-lines file is a convenience adapter; production
deployments persist records in a durable store with WORM or object-lock
guarantees.

DISCLAIMER: Audit records describe governance events.  They are not part
of the clinical record.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import re
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from commandgate.clock import Clock, SystemClock
from commandgate.models import ProposedCommand

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("commandgate.audit.fallback")


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Governance events written to the audit log."""

    # Intake and processing
    INVALID = "invalid"
    BLOCKED = "blocked"
    QUEUED = "queued"
    EXECUTED = "executed"
    ERROR = "error"

    # Approval lifecycle
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    POLICY_VIOLATION_ON_APPROVAL = "policy_violation_on_approval"

    # Audit operations
    AUDIT_EXPORTED = "audit_exported"


class AuditOutcome(str, enum.Enum):
    """Outcome codes (FHIR AuditEvent.outcome)."""

    SUCCESS = "0"
    MINOR_FAILURE = "4"
    SERIOUS_FAILURE = "8"


_FAILURE_EVENTS = {
    AuditEventType.INVALID,
    AuditEventType.BLOCKED,
    AuditEventType.ERROR,
    AuditEventType.POLICY_VIOLATION_ON_APPROVAL,
}

# Create for events that change the record store, Read otherwise.
_ACTION_CODES = {
    AuditEventType.EXECUTED: "C",
    AuditEventType.APPROVED: "C",
}


# ---------------------------------------------------------------------------
# Audit record model
# ---------------------------------------------------------------------------

class AuditRecord(BaseModel):
    """A single audit log entry.  Records are immutable once built."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: AuditEventType
    action: str = Field(default="R", description="C, R, U, D or E.")
    outcome: AuditOutcome = Field(default=AuditOutcome.SUCCESS)
    outcome_desc: str = Field(default="")
    command_id: Optional[str] = None
    task_id: Optional[str] = None
    subject_id: Optional[str] = None
    command_kind: Optional[str] = None
    actor_id: str = Field(
        default="SYSTEM",
        description="The generator for intake events, the approver for decisions.",
    )
    detail: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous record; empty for the first record.",
    )

    def canonical_bytes(self) -> bytes:
        """Return a deterministic byte representation for hashing."""
        data = self.model_dump(mode="json")
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Provenance record model
# ---------------------------------------------------------------------------

class ProvenanceActivity(str, enum.Enum):
    CREATE = "CREATE"
    NULLIFY = "NULLIFY"


class ClinicianAction(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EDITED = "edited"
    REJECTED = "rejected"


class ProvenanceAgent(BaseModel):
    role: str = Field(..., description="'assembler' for the AI, 'verifier' for the human.")
    who: str


class ProvenanceRecord(BaseModel):
    """Who or what produced, or decided against, a change."""

    provenance_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    targets: list[str] = Field(default_factory=list)
    activity: ProvenanceActivity
    agents: list[ProvenanceAgent]
    clinician_action: ClinicianAction
    command_id: str
    task_id: Optional[str] = None
    command_kind: str
    confidence: float
    retrieval_sources: list[str] = Field(default_factory=list)
    prompt_template: Optional[str] = None
    edited_fields: list[str] = Field(default_factory=list)
    rejection_reason: Optional[str] = None


# ---------------------------------------------------------------------------
# PHI redaction patterns
# ---------------------------------------------------------------------------

_PHI_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
}

_PHI_KEYS = {"name", "full_name", "first_name", "last_name", "dob", "date_of_birth",
             "ssn", "email", "phone", "address", "zip_code", "content", "summary",
             "clinical_summary"}


def redact_phi(detail: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``detail`` with PHI-like keys and patterns redacted."""
    redacted: dict[str, Any] = {}
    for key, value in detail.items():
        if key.lower() in _PHI_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            for pattern_name, pattern in _PHI_PATTERNS.items():
                value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", value)
            redacted[key] = value
        elif isinstance(value, dict):
            redacted[key] = redact_phi(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only, hash-chained audit log.

    There are no ``update()`` or ``delete()`` methods.  Appends are
    serialized by a lock so the chain order matches the append order across
    threads.  When ``path`` is given, each record is also appended to that
    file as one JSON line; ``AuditLog.load()`` rebuilds the log from it.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._records: list[AuditRecord] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()
        self._path = Path(path) if path is not None else None

    @classmethod
    def load(cls, path: str | Path) -> "AuditLog":
        """Rebuild a log from its JSON-lines file and keep appending to it."""
        log = cls(path)
        if log._path is not None and log._path.exists():
            with open(log._path, "r", encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        record = AuditRecord.model_validate_json(line)
                        log._records.append(record)
                        log._hashes.append(record.compute_hash())
        return log

    def append(self, record: AuditRecord) -> AuditRecord:
        """Store a copy of ``record`` linked to the chain and return it.

        The caller's instance is left untouched, and the returned copy
        shares nothing with the stored record.
        """
        with self._lock:
            record = record.model_copy(
                update={"previous_hash": self._hashes[-1] if self._hashes else ""},
                deep=True,
            )
            if self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(record.model_dump_json() + "\n")
            self._records.append(record)
            self._hashes.append(record.compute_hash())
        return record.model_copy(deep=True)

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None when the chain is intact.
        """
        with self._lock:
            records = list(self._records)
            hashes = list(self._hashes)

        for i, record in enumerate(records):
            expected_prev = "" if i == 0 else records[i - 1].compute_hash()
            if record.previous_hash != expected_prev:
                return (False, i)
            if hashes[i] != record.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        event_type: Optional[AuditEventType] = None,
        command_id: Optional[str] = None,
        task_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditRecord]:
        """Return copies of the records matching every given filter."""
        with self._lock:
            records = list(self._records)
        results = []
        for record in records:
            if event_type is not None and record.event_type != event_type:
                continue
            if command_id is not None and record.command_id != command_id:
                continue
            if task_id is not None and record.task_id != task_id:
                continue
            if subject_id is not None and record.subject_id != subject_id:
                continue
            if time_start is not None and record.recorded_at < time_start:
                continue
            if time_end is not None and record.recorded_at > time_end:
                continue
            results.append(record.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable, PHI-redacted export bundle."""
        records = self.query(time_start=time_start, time_end=time_end)
        exported = []
        for record in records:
            data = record.model_dump(mode="json")
            data["detail"] = redact_phi(record.detail)
            exported.append(data)

        chain_valid, broken_at = self.verify_chain()
        return {
            "export_metadata": {
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "record_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "records": exported,
        }

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Provenance log
# ---------------------------------------------------------------------------

class ProvenanceLog:
    """Append-only store of provenance records.

    Like ``AuditLog``, a log given a ``path`` writes one JSON line per
    record, and ``ProvenanceLog.load()`` rebuilds it after a restart.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._records: list[ProvenanceRecord] = []
        self._lock = threading.Lock()
        self._path = Path(path) if path is not None else None

    @classmethod
    def load(cls, path: str | Path) -> "ProvenanceLog":
        log = cls(path)
        if log._path is not None and log._path.exists():
            with open(log._path, "r", encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        log._records.append(ProvenanceRecord.model_validate_json(line))
        return log

    def append(self, record: ProvenanceRecord) -> ProvenanceRecord:
        with self._lock:
            if self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(record.model_dump_json() + "\n")
            self._records.append(record)
        return record

    def query(
        self,
        command_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> list[ProvenanceRecord]:
        with self._lock:
            records = list(self._records)
        return [
            r.model_copy(deep=True)
            for r in records
            if (command_id is None or r.command_id == command_id)
            and (task_id is None or r.task_id == task_id)
        ]

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------

class AuditRecorder:
    """Writes audit and provenance records without ever failing the caller.

    Required fields are the caller's responsibility; missing optional
    fields are tolerated.  A failed write is logged to the fallback
    channel, counted in ``failed_writes``, and swallowed.
    """

    def __init__(
        self,
        audit_log: Optional[AuditLog] = None,
        provenance_log: Optional[ProvenanceLog] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.audit_log = audit_log if audit_log is not None else AuditLog()
        self.provenance_log = provenance_log if provenance_log is not None else ProvenanceLog()
        self._clock = clock or SystemClock()
        self._failed_lock = threading.Lock()
        self.failed_writes = 0

    def record(
        self,
        event_type: AuditEventType,
        *,
        command: Optional[ProposedCommand] = None,
        command_id: Optional[str] = None,
        task_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        outcome_desc: str = "",
        detail: Optional[dict[str, Any]] = None,
    ) -> Optional[AuditRecord]:
        """Append one audit record; returns None if the write failed."""
        details = dict(detail or {})
        if command is not None:
            details.setdefault("confidence", command.confidence)
        record = AuditRecord(
            recorded_at=self._clock.now(),
            event_type=event_type,
            action=_ACTION_CODES.get(event_type, "R"),
            outcome=(
                AuditOutcome.SERIOUS_FAILURE
                if event_type in _FAILURE_EVENTS
                else AuditOutcome.SUCCESS
            ),
            outcome_desc=outcome_desc,
            command_id=command_id,
            task_id=task_id,
            subject_id=command.subject_id if command else None,
            command_kind=command.kind.value if command else None,
            actor_id=actor_id or (command.generator_id if command else "SYSTEM"),
            detail=details,
        )
        try:
            return self.audit_log.append(record)
        except Exception as exc:
            self._report_failure("audit", record.model_dump(mode="json"), exc)
            return None

    def record_provenance(
        self,
        command: ProposedCommand,
        *,
        command_id: str,
        clinician_action: ClinicianAction,
        targets: Optional[list[str]] = None,
        task_id: Optional[str] = None,
        verifier_id: Optional[str] = None,
        edited_fields: Optional[list[str]] = None,
        rejection_reason: Optional[str] = None,
    ) -> Optional[ProvenanceRecord]:
        """Append one provenance record; returns None if the write failed."""
        agents = [ProvenanceAgent(role="assembler", who=f"AI: {command.generator_id}")]
        if verifier_id:
            agents.append(ProvenanceAgent(role="verifier", who=verifier_id))
        record = ProvenanceRecord(
            recorded_at=self._clock.now(),
            targets=list(targets or []),
            activity=(
                ProvenanceActivity.NULLIFY
                if clinician_action == ClinicianAction.REJECTED
                else ProvenanceActivity.CREATE
            ),
            agents=agents,
            clinician_action=clinician_action,
            command_id=command_id,
            task_id=task_id,
            command_kind=command.kind.value,
            confidence=command.confidence,
            retrieval_sources=list(command.retrieval_sources),
            prompt_template=command.prompt_template,
            edited_fields=list(edited_fields or []),
            rejection_reason=rejection_reason,
        )
        try:
            return self.provenance_log.append(record)
        except Exception as exc:
            self._report_failure("provenance", record.model_dump(mode="json"), exc)
            return None

    def _report_failure(self, kind: str, payload: dict[str, Any], exc: Exception) -> None:
        with self._failed_lock:
            self.failed_writes += 1
        fallback_logger.error(
            "Failed to write %s record (%s: %s); record follows: %s",
            kind,
            type(exc).__name__,
            exc,
            json.dumps(payload, sort_keys=True, default=str),
        )
