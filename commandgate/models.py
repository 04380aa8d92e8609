"""
Core data models for the CommandGate governance engine.

A ``ProposedCommand`` is the canonical form of an AI-originated change
proposal: a common envelope (kind, subject, confidence, rationale, generator,
hints) plus a kind-specific ``payload``.  The payload is opaque to
governance except where a configured safety filter references one of its
fields by dot-path.

Inbound envelopes arrive as JSON documents from the generation component.
``validate_command()`` accepts both snake_case keys and the generator's
camelCase vocabulary (``patientId``, ``aiModel``, ``reasoning``, ...).
Unrecognized top-level fields are preserved in the payload.

DISCLAIMER: Payload validation checks structure only.  It does not judge
whether the proposed clinical content is correct.
"""

from __future__ import annotations

import copy
import enum
import math
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel, to_snake

from commandgate.errors import InvalidCommand


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CommandKind(str, enum.Enum):
    """Command kinds an AI generator may propose.

    Values are the generator's wire names.  Short hyphenated aliases
    (``create-note-draft``, ``flag-result``, ...) are accepted by
    ``parse_kind()``.
    """

    CREATE_NOTE_DRAFT = "CreateEncounterNoteDraft"
    PROPOSE_RECORD_UPDATE = "ProposeProblemListUpdate"
    SUGGEST_CODES = "SuggestBillingCodes"
    QUEUE_REFERRAL = "QueueReferralLetter"
    FLAG_RESULT = "FlagAbnormalResult"
    SUGGEST_CHANGE = "SuggestMedicationChange"
    SUMMARIZE = "SummarizePatientHistory"


class TaskStatus(str, enum.Enum):
    """Lifecycle states of an approval task.

    ``PENDING`` is the only non-terminal state.  A task leaves it exactly
    once, by a human decision or by lazy expiration.
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.APPROVED, TaskStatus.REJECTED, TaskStatus.EXPIRED}
)


class DecisionAction(str, enum.Enum):
    """Outcome reported for a decision or poll on an approval task."""

    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    ERROR = "error"


class Role(str, enum.Enum):
    """Organizational roles used by approval rules and access checks."""

    PRACTITIONER = "Practitioner"
    NURSE = "Nurse"
    PHARMACIST = "Pharmacist"
    BILLING_SPECIALIST = "BillingSpecialist"
    ADMIN = "Admin"
    AUDITOR = "Auditor"


_KIND_ALIASES: dict[str, CommandKind] = {
    "create-note-draft": CommandKind.CREATE_NOTE_DRAFT,
    "propose-record-update": CommandKind.PROPOSE_RECORD_UPDATE,
    "suggest-codes": CommandKind.SUGGEST_CODES,
    "queue-referral": CommandKind.QUEUE_REFERRAL,
    "flag-result": CommandKind.FLAG_RESULT,
    "suggest-change": CommandKind.SUGGEST_CHANGE,
    "summarize": CommandKind.SUMMARIZE,
}


def parse_kind(value: Any) -> CommandKind:
    """Resolve a wire name or short alias to a ``CommandKind``.

    Raises:
        ValueError: If the value names no known command kind.
    """
    if isinstance(value, CommandKind):
        return value
    if isinstance(value, str):
        try:
            return CommandKind(value)
        except ValueError:
            pass
        alias = _KIND_ALIASES.get(value.strip().lower().replace("_", "-"))
        if alias is not None:
            return alias
    raise ValueError(f"Unrecognized command kind: {value!r}")


# ---------------------------------------------------------------------------
# Kind-specific payloads
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
    )


class CodedConcept(_Payload):
    code: str = Field(..., min_length=1)
    system: str = Field(..., min_length=1)
    display: str = Field(default="")


class SuggestedCode(_Payload):
    code: str = Field(..., min_length=1)
    system: Literal["CPT", "ICD-10-CM", "ICD-10-PCS", "HCPCS"]
    display: str = Field(default="")
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    rationale: Optional[str] = None


class NoteDraftPayload(_Payload):
    encounter_id: str = Field(..., min_length=1)
    note_type: Literal["progress", "discharge", "consultation", "procedure", "history"]
    content: str = Field(..., min_length=1)
    sections: Optional[dict[str, str]] = None


class RecordUpdatePayload(_Payload):
    action: Literal["add", "resolve", "update"]
    condition: CodedConcept
    condition_id: Optional[str] = Field(
        default=None,
        description="Existing record to resolve or update; unused for 'add'.",
    )
    clinical_status: Optional[str] = None
    verification_status: Optional[str] = None
    severity: Optional[Literal["mild", "moderate", "severe"]] = None
    onset_date: Optional[str] = None


class CodesPayload(_Payload):
    encounter_id: str = Field(..., min_length=1)
    suggested_codes: list[SuggestedCode] = Field(..., min_length=1)


class ReferralPayload(_Payload):
    referring_practitioner_id: str = Field(..., min_length=1)
    recipient_practitioner_id: Optional[str] = None
    specialty: str = Field(..., min_length=1)
    urgency: Literal["routine", "urgent", "emergent"]
    reason_for_referral: str = Field(..., min_length=1)
    clinical_summary: str = Field(..., min_length=1)
    specific_questions: list[str] = Field(default_factory=list)


class FlagResultPayload(_Payload):
    observation_id: str = Field(..., min_length=1)
    severity: Literal["low", "medium", "high", "critical"]
    interpretation: str = Field(..., min_length=1)
    suggested_actions: list[str] = Field(default_factory=list)


class ChangePayload(_Payload):
    action: Literal["start", "stop", "modify", "substitute"]
    medication: CodedConcept
    current_medication_id: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    interactions: list[dict[str, Any]] = Field(default_factory=list)


class SummarizePayload(_Payload):
    summary_type: Literal[
        "comprehensive", "problem-focused", "medication", "surgical", "social"
    ]
    summary: str = Field(..., min_length=1)
    key_findings: list[str] = Field(default_factory=list)
    time_range: Optional[dict[str, str]] = None


PAYLOAD_MODELS: dict[CommandKind, type[_Payload]] = {
    CommandKind.CREATE_NOTE_DRAFT: NoteDraftPayload,
    CommandKind.PROPOSE_RECORD_UPDATE: RecordUpdatePayload,
    CommandKind.SUGGEST_CODES: CodesPayload,
    CommandKind.QUEUE_REFERRAL: ReferralPayload,
    CommandKind.FLAG_RESULT: FlagResultPayload,
    CommandKind.SUGGEST_CHANGE: ChangePayload,
    CommandKind.SUMMARIZE: SummarizePayload,
}


# ---------------------------------------------------------------------------
# Command envelope
# ---------------------------------------------------------------------------

# Inbound key -> envelope field.  Both snake_case and the generator's
# camelCase names are accepted.
_ENVELOPE_KEYS: dict[str, str] = {
    "kind": "kind",
    "command": "kind",
    "subject_id": "subject_id",
    "subjectId": "subject_id",
    "patient_id": "subject_id",
    "patientId": "subject_id",
    "confidence": "confidence",
    "rationale": "rationale",
    "reasoning": "rationale",
    "requires_approval_hint": "requires_approval_hint",
    "requiresApprovalHint": "requires_approval_hint",
    "requires_approval": "requires_approval_hint",
    "requiresApproval": "requires_approval_hint",
    "urgent": "urgent",
    "generator_id": "generator_id",
    "generatorId": "generator_id",
    "ai_model": "generator_id",
    "aiModel": "generator_id",
    "created_at": "created_at",
    "createdAt": "created_at",
    "retrieval_sources": "retrieval_sources",
    "retrievalSources": "retrieval_sources",
    "prompt_template": "prompt_template",
    "promptTemplate": "prompt_template",
}

# Extra names under which envelope fields are visible to filter field paths.
_DOCUMENT_ALIASES: dict[str, str] = {
    "command": "kind",
    "subjectId": "subject_id",
    "patientId": "subject_id",
    "generatorId": "generator_id",
    "aiModel": "generator_id",
    "createdAt": "created_at",
    "reasoning": "rationale",
}

_IMMUTABLE_FIELDS = {"kind", "subject_id"}


class ProposedCommand(BaseModel):
    """An AI-originated request to change or annotate a record.

    Instances are immutable; a human edit produces a new command through
    ``with_modifications()``.
    """

    model_config = ConfigDict(frozen=True)

    kind: CommandKind = Field(..., description="The command kind (tag of the union).")
    subject_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the record subject (the patient).",
    )
    confidence: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Generator confidence in [0, 1].  Out-of-range values are rejected, never clamped.",
    )
    rationale: Optional[str] = Field(
        default=None,
        description="Free-text reasoning supplied by the generator.",
    )
    requires_approval_hint: bool = Field(
        default=False,
        description="Advisory: the generator asks for review.  Can escalate, never relax.",
    )
    urgent: bool = Field(
        default=False,
        description="Explicit urgency assertion used by the quiet-hours bypass flag.",
    )
    generator_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the AI model or component that produced the command.",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp the command was generated.",
    )
    retrieval_sources: list[str] = Field(
        default_factory=list,
        description="References to the documents the generator retrieved.",
    )
    prompt_template: Optional[str] = Field(default=None)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Kind-specific fields plus any unrecognized inbound fields.",
    )

    @field_validator("confidence", mode="before")
    @classmethod
    def confidence_is_a_number(cls, v: Any) -> Any:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError(f"confidence must be a number, got {type(v).__name__}")
        if math.isnan(v):
            raise ValueError("confidence must not be NaN")
        return v

    @field_validator("created_at")
    @classmethod
    def created_at_is_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    def to_wire(self) -> dict[str, Any]:
        """Return the flat JSON envelope this command validates from."""
        data = copy.deepcopy(self.payload)
        data.update(self.model_dump(mode="json", exclude={"payload"}))
        return data

    def as_document(self) -> dict[str, Any]:
        """Return the generic document that filter field paths resolve against.

        Payload fields sit at the top level; envelope fields override them
        and are also visible under the generator's camelCase names.
        """
        document = copy.deepcopy(self.payload)
        envelope = self.model_dump(mode="json", exclude={"payload"})
        document.update(envelope)
        for alias, field in _DOCUMENT_ALIASES.items():
            document[alias] = envelope[field]
        return document

    def with_modifications(self, modifications: Mapping[str, Any]) -> "ProposedCommand":
        """Apply a reviewer's edits and re-validate the result.

        Envelope keys update the envelope; any other key replaces the
        payload field of the same (snake_case) name.

        Raises:
            InvalidCommand: If the edit touches the kind or subject, or the
                edited command fails validation.
        """
        if not isinstance(modifications, Mapping):
            raise InvalidCommand("modifications must be a mapping of field -> value")
        wire = self.to_wire()
        for key, value in modifications.items():
            target = _normalize_key(key)
            if target in _IMMUTABLE_FIELDS:
                raise InvalidCommand(f"'{key}' cannot be modified during review")
            wire[target] = value
        return validate_command(wire)

    @staticmethod
    def edited_fields(modifications: Mapping[str, Any] | None) -> list[str]:
        """Return the normalized names of the fields a reviewer edited."""
        if not modifications:
            return []
        return sorted({_normalize_key(k) for k in modifications})


def _normalize_key(key: str) -> str:
    return _ENVELOPE_KEYS.get(key) or to_snake(key)


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ())) or "<root>"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


def validate_command(raw: Any) -> ProposedCommand:
    """Validate an inbound envelope and build a ``ProposedCommand``.

    Args:
        raw: The decoded JSON envelope (a mapping).

    Returns:
        The validated command.

    Raises:
        InvalidCommand: If the kind is missing or unrecognized, confidence
            is missing, non-numeric or outside [0, 1], or any required
            envelope or payload field is missing or malformed.
    """
    if isinstance(raw, ProposedCommand):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidCommand(
            f"Command envelope must be a mapping, got {type(raw).__name__}"
        )

    envelope: dict[str, Any] = {}
    payload: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "payload" and isinstance(value, Mapping):
            payload.update(value)
            continue
        target = _ENVELOPE_KEYS.get(key)
        if target is None or target in envelope:
            payload[key] = value
        else:
            envelope[target] = value

    if "kind" not in envelope:
        raise InvalidCommand("Invalid command: missing command kind")
    try:
        kind = parse_kind(envelope["kind"])
    except ValueError as exc:
        raise InvalidCommand(str(exc)) from exc
    envelope["kind"] = kind

    if envelope.get("confidence") is None:
        raise InvalidCommand("Invalid command: confidence is required")

    try:
        parsed = PAYLOAD_MODELS[kind].model_validate(payload)
    except ValidationError as exc:
        raise InvalidCommand(
            f"Invalid {kind.value} payload: {_describe_validation_error(exc)}"
        ) from exc

    try:
        return ProposedCommand(**envelope, payload=parsed.model_dump(exclude_none=True))
    except ValidationError as exc:
        raise InvalidCommand(
            f"Invalid {kind.value} envelope: {_describe_validation_error(exc)}"
        ) from exc


def generate_command_id() -> str:
    """Return a globally unique command identifier."""
    return f"cmd-{uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# Execution and approval records
# ---------------------------------------------------------------------------

class ExecutionResult(BaseModel):
    """Outcome of one side-effecting call against the resource store."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    resource_type: Optional[str] = None
    resource_ref: Optional[str] = Field(
        default=None,
        description="Reference to the created or updated resource, e.g. 'Flag/123'.",
    )


class DecisionResult(BaseModel):
    """The result reported for a human decision or an expiration."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    command_id: str
    action: DecisionAction
    status: TaskStatus
    success: bool
    message: str
    resource_ref: Optional[str] = None
    replayed: bool = Field(
        default=False,
        description="True when this is the stored result of an earlier decision.",
    )


class ApprovalTask(BaseModel):
    """The queued, time-bounded unit of human review for one command.

    Only the approval queue changes a task's status.  Status changes
    produce a new instance; stored tasks are never mutated in place.
    """

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    command: ProposedCommand
    command_id: str = Field(..., min_length=1)
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime
    expires_at: datetime
    approver_roles: list[str] = Field(default_factory=list)
    notify_roles: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    approver_id: Optional[str] = None
    modifications: Optional[dict[str, Any]] = None
    rejection_reason: Optional[str] = None
    decided_at: Optional[datetime] = None
    result: Optional[DecisionResult] = Field(
        default=None,
        description="The terminal result, replayed for repeated decisions.",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_due_to_expire(self, now: datetime) -> bool:
        """A pending task expires once ``now`` is past ``expires_at``."""
        return self.status == TaskStatus.PENDING and now > self.expires_at
