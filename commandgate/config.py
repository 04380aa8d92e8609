"""
Governance Policy -- Approval Rules, Quiet Hours and Policy Loading.

This module holds the organization-configurable half of the engine: which
command kinds need human sign-off, who may approve them, how long a review
may stay open, when auto-execution is suppressed (quiet hours), and which
safety filters apply.  Policies are declared in YAML and validated through
pydantic models, so a malformed policy fails at load time rather than
while a command is in flight.

**Fail-closed resolution:**

* A command kind with no configured rule resolves to a conservative
  default -- approval required, generic practitioner role, 24 hour window.
  An unrecognized kind is never auto-executed.
* ``requires_approval`` is either a static boolean or the id of a named
  predicate registered in ``PREDICATES``.  Executable code never lives in
  the policy document.  A predicate that is unknown, raises, or reads a
  missing field resolves to *approval required*.

DISCLAIMER: Approval rules encode organizational review policy.  They do
not define clinical protocols.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Annotated, Any, Callable, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from commandgate.models import CommandKind, ProposedCommand, Role, parse_kind
from commandgate.rbac import require_permission
from commandgate.safety_filters import (
    DEFAULT_CONFIDENCE_FLOOR,
    DEFAULT_SAFETY_FILTERS,
    SafetyFilter,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------

_TIMEOUT_PATTERN = re.compile(r"^(\d+)\s*([smhdw])$")
_TIMEOUT_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_timeout(value: Any) -> timedelta:
    """Parse a review timeout such as ``"24h"``, ``"7d"``, ``"0"`` or seconds.

    Raises:
        ValueError: If the value is negative or not a recognized duration.
    """
    if isinstance(value, timedelta):
        delta = value
    elif isinstance(value, bool):
        raise ValueError("timeout must be a duration, not a boolean")
    elif isinstance(value, (int, float)):
        delta = timedelta(seconds=value)
    elif isinstance(value, str):
        text = value.strip().lower()
        if text.isdigit():
            delta = timedelta(seconds=int(text))
        else:
            match = _TIMEOUT_PATTERN.match(text)
            if not match:
                raise ValueError(
                    f"Unrecognized timeout {value!r}; use forms like '30m', '24h', '7d', '2w'."
                )
            delta = int(match.group(1)) * _TIMEOUT_UNITS[match.group(2)]
    else:
        raise ValueError(f"Unrecognized timeout {value!r}")
    if delta < timedelta(0):
        raise ValueError("timeout must not be negative")
    return delta


# ---------------------------------------------------------------------------
# Approval requirement variants
# ---------------------------------------------------------------------------

class StaticRequirement(BaseModel):
    """``requires_approval`` fixed to a boolean."""

    kind: Literal["static"] = "static"
    value: bool


class NamedPredicate(BaseModel):
    """``requires_approval`` computed by a registered predicate."""

    kind: Literal["predicate"] = "predicate"
    predicate: str = Field(..., min_length=1)


ApprovalRequirement = Annotated[
    Union[StaticRequirement, NamedPredicate],
    Field(discriminator="kind"),
]

Predicate = Callable[[ProposedCommand], bool]


def _record_update_needs_review(command: ProposedCommand) -> bool:
    # Only high-confidence additions to the problem list may skip review.
    return command.payload["action"] != "add" or command.confidence < 0.9


def _flag_is_critical(command: ProposedCommand) -> bool:
    return command.payload["severity"] == "critical"


PREDICATES: dict[str, Predicate] = {
    "record_update_needs_review": _record_update_needs_review,
    "flag_is_critical": _flag_is_critical,
}
"""Built-in predicates available to every resolver by id."""


# ---------------------------------------------------------------------------
# Approval rule model
# ---------------------------------------------------------------------------

class ApprovalRule(BaseModel):
    """Review policy for a single command kind."""

    requires_approval: ApprovalRequirement = Field(
        default_factory=lambda: StaticRequirement(value=True),
        description=(
            "Static boolean or named predicate.  YAML may give a bare bool, "
            "a predicate id string, or {predicate: <id>}."
        ),
    )
    approver_roles: list[str] = Field(
        default_factory=lambda: [Role.PRACTITIONER.value],
        description="Roles allowed to decide tasks of this kind.",
    )
    timeout: timedelta = Field(
        default=timedelta(hours=24),
        description="How long a queued task stays open before it expires.",
    )
    notify_roles: list[str] = Field(
        default_factory=list,
        description="Roles to notify about executions that skip review.",
    )
    audit_required: bool = Field(default=True)
    dual_approval: bool = Field(
        default=False,
        description="Reserved.  Carried through configuration but not enforced.",
    )

    @field_validator("requires_approval", mode="before")
    @classmethod
    def coerce_requirement(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return {"kind": "static", "value": v}
        if isinstance(v, str):
            return {"kind": "predicate", "predicate": v}
        if isinstance(v, dict) and "kind" not in v:
            if "predicate" in v:
                return {"kind": "predicate", **v}
            if "value" in v:
                return {"kind": "static", **v}
        return v

    @field_validator("timeout", mode="before")
    @classmethod
    def coerce_timeout(cls, v: Any) -> timedelta:
        return parse_timeout(v)


DEFAULT_RULE = ApprovalRule(
    requires_approval=StaticRequirement(value=True),
    approver_roles=[Role.PRACTITIONER.value],
    timeout=timedelta(hours=24),
    audit_required=True,
)
"""Conservative rule for command kinds with no configured rule."""


DEFAULT_APPROVAL_RULES: dict[CommandKind, ApprovalRule] = {
    CommandKind.CREATE_NOTE_DRAFT: ApprovalRule(
        requires_approval=True,
        approver_roles=[Role.PRACTITIONER.value, Role.NURSE.value],
        timeout="24h",
    ),
    CommandKind.PROPOSE_RECORD_UPDATE: ApprovalRule(
        requires_approval="record_update_needs_review",
        approver_roles=[Role.PRACTITIONER.value],
        timeout="48h",
    ),
    CommandKind.SUGGEST_CODES: ApprovalRule(
        requires_approval=True,
        approver_roles=[Role.PRACTITIONER.value, Role.BILLING_SPECIALIST.value],
        timeout="7d",
    ),
    CommandKind.QUEUE_REFERRAL: ApprovalRule(
        requires_approval=True,
        approver_roles=[Role.PRACTITIONER.value],
        timeout="48h",
    ),
    CommandKind.FLAG_RESULT: ApprovalRule(
        requires_approval=False,
        approver_roles=[],
        timeout="0",
        notify_roles=[Role.PRACTITIONER.value],
    ),
    CommandKind.SUGGEST_CHANGE: ApprovalRule(
        requires_approval=True,
        approver_roles=[Role.PRACTITIONER.value, Role.PHARMACIST.value],
        timeout="24h",
    ),
    CommandKind.SUMMARIZE: ApprovalRule(
        requires_approval=False,
        approver_roles=[],
        timeout="0",
    ),
}


# ---------------------------------------------------------------------------
# Approval rule resolver
# ---------------------------------------------------------------------------

class ApprovalRuleResolver:
    """Maps command kinds to approval rules and evaluates them.

    Rules are keyed by ``CommandKind``.  Lookups return deep copies so a
    caller cannot alter the registered policy.
    """

    def __init__(
        self,
        rules: Optional[dict[CommandKind, ApprovalRule]] = None,
        predicates: Optional[dict[str, Predicate]] = None,
        default_rule: ApprovalRule = DEFAULT_RULE,
    ) -> None:
        self._rules: dict[CommandKind, ApprovalRule] = {
            parse_kind(k): copy.deepcopy(v)
            for k, v in (DEFAULT_APPROVAL_RULES if rules is None else rules).items()
        }
        self._predicates: dict[str, Predicate] = dict(PREDICATES)
        if predicates:
            self._predicates.update(predicates)
        self._default_rule = default_rule
        self._lock = threading.Lock()

    def resolve(self, kind: CommandKind | str) -> ApprovalRule:
        """Return the rule for ``kind``, or the conservative default.

        Unrecognized kinds (including strings that name no ``CommandKind``)
        resolve to the default rule, which always requires approval.
        """
        try:
            key = parse_kind(kind)
        except ValueError:
            return copy.deepcopy(self._default_rule)
        with self._lock:
            rule = self._rules.get(key, self._default_rule)
            return copy.deepcopy(rule)

    def requires_approval(self, command: ProposedCommand, rule: ApprovalRule) -> bool:
        """Decide whether ``command`` needs human sign-off under ``rule``.

        Static requirements are returned directly.  Named predicates are
        evaluated over the command; any failure yields True.
        """
        requirement = rule.requires_approval
        if isinstance(requirement, StaticRequirement):
            return requirement.value

        with self._lock:
            predicate = self._predicates.get(requirement.predicate)
        if predicate is None:
            logger.warning(
                "Unknown approval predicate %r for %s; requiring approval",
                requirement.predicate,
                command.kind.value,
            )
            return True
        try:
            return bool(predicate(command))
        except Exception as exc:
            logger.warning(
                "Approval predicate %r failed for %s (%s: %s); requiring approval",
                requirement.predicate,
                command.kind.value,
                type(exc).__name__,
                exc,
            )
            return True

    def register(self, kind: CommandKind | str, rule: ApprovalRule, role: Role | str) -> None:
        """Register a rule for a kind that has none yet.

        Raises:
            PermissionError: If ``role`` may not manage policy.
            ValueError: If a rule for ``kind`` is already registered.
        """
        require_permission(role, "manage_policy")
        key = parse_kind(kind)
        with self._lock:
            if key in self._rules:
                raise ValueError(
                    f"Approval rule for '{key.value}' already registered. "
                    "Use update() to modify an existing rule."
                )
            self._rules[key] = copy.deepcopy(rule)

    def update(self, kind: CommandKind | str, rule: ApprovalRule, role: Role | str) -> None:
        """Replace the rule for an already-registered kind.

        Tasks already queued keep the approver roles they were created
        with, but approvals are checked against the rule in force.

        Raises:
            PermissionError: If ``role`` may not manage policy.
            KeyError: If no rule is registered for ``kind``.
        """
        require_permission(role, "manage_policy")
        key = parse_kind(kind)
        with self._lock:
            if key not in self._rules:
                raise KeyError(f"Cannot update: no approval rule registered for '{key.value}'")
            self._rules[key] = copy.deepcopy(rule)
        logger.info("Approval rule for %s updated", key.value)

    def register_predicate(self, predicate_id: str, predicate: Predicate) -> None:
        with self._lock:
            self._predicates[predicate_id] = predicate

    def list_kinds(self) -> list[CommandKind]:
        with self._lock:
            return sorted(self._rules, key=lambda k: k.value)

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, kind: object) -> bool:
        try:
            return parse_kind(kind) in self._rules
        except ValueError:
            return False


# ---------------------------------------------------------------------------
# Quiet hours
# ---------------------------------------------------------------------------

class QuietHours(BaseModel):
    """A daily window during which auto-execution is suppressed.

    The window is ``[start_hour, end_hour)`` in the configured UTC offset
    and may wrap midnight (22 -> 6).  Quiet hours only ever force queuing;
    they never relax a required approval.
    """

    enabled: bool = Field(default=True)
    start_hour: int = Field(default=22, ge=0, le=23)
    end_hour: int = Field(default=6, ge=0, le=23)
    utc_offset_minutes: int = Field(
        default=0,
        ge=-14 * 60,
        le=14 * 60,
        description="Offset of the organization's local time from UTC.",
    )
    allow_urgent_bypass: bool = Field(
        default=False,
        description=(
            "When true, commands that explicitly assert urgency may auto-execute "
            "during quiet hours if policy alone would allow it."
        ),
    )

    def is_active(self, now: datetime) -> bool:
        """Whether ``now`` falls inside the window."""
        if not self.enabled or self.start_hour == self.end_hour:
            return False
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(timezone(timedelta(minutes=self.utc_offset_minutes)))
        hour = local.hour
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour

    def forces_queue(self, command: ProposedCommand, now: datetime) -> bool:
        """Whether quiet hours require ``command`` to be queued at ``now``."""
        if not self.is_active(now):
            return False
        if command.urgent and self.allow_urgent_bypass:
            return False
        return True


# ---------------------------------------------------------------------------
# Governance policy document
# ---------------------------------------------------------------------------

class GovernancePolicy(BaseModel):
    """The complete declarative policy for one deployment."""

    confidence_floor: float = Field(
        default=DEFAULT_CONFIDENCE_FLOOR,
        ge=DEFAULT_CONFIDENCE_FLOOR,
        le=1.0,
        description=(
            "Commands below this confidence are always blocked.  It may be "
            "raised but never lowered below the built-in floor."
        ),
    )
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    safety_filters: list[SafetyFilter] = Field(
        default_factory=lambda: copy.deepcopy(DEFAULT_SAFETY_FILTERS),
        description="Filters in evaluation order.",
    )
    approval_rules: dict[CommandKind, ApprovalRule] = Field(
        default_factory=lambda: copy.deepcopy(DEFAULT_APPROVAL_RULES),
        description="Rules keyed by command kind.  Unlisted kinds use the conservative default.",
    )
    execution_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Bound on each call to the external resource store.",
    )

    @field_validator("approval_rules", mode="before")
    @classmethod
    def normalize_rule_keys(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {parse_kind(k): rule for k, rule in v.items()}
        return v

    @field_validator("safety_filters")
    @classmethod
    def filter_names_unique(cls, v: list[SafetyFilter]) -> list[SafetyFilter]:
        names = [f.name for f in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate safety filter names: {duplicates}")
        return v

    def resolver(self, predicates: Optional[dict[str, Predicate]] = None) -> ApprovalRuleResolver:
        """Build an ``ApprovalRuleResolver`` over this policy's rules."""
        return ApprovalRuleResolver(self.approval_rules, predicates=predicates)


DEFAULT_POLICY = GovernancePolicy()
"""Built-in policy: default filters, default rules, quiet hours 22:00-06:00 UTC."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_policy_from_yaml(path: str | Path) -> GovernancePolicy:
    """Load a governance policy document from a YAML file.

    Example YAML structure::

        confidence_floor: 0.6
        quiet_hours: {start_hour: 22, end_hour: 6}
        safety_filters:
          - name: BlockStatOrders
            action: block
            conditions:
              - {field: urgency, operator: equals, value: emergent}
        approval_rules:
          CreateEncounterNoteDraft:
            requires_approval: true
            approver_roles: [Practitioner, Nurse]
            timeout: 24h

    Omitted sections fall back to the built-in defaults.

    Args:
        path: Path to the YAML file.

    Returns:
        The validated ``GovernancePolicy``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the document is not a mapping.
        pydantic.ValidationError: If any section fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("Policy file must contain a mapping of policy sections.")

    unknown = sorted(set(raw) - set(GovernancePolicy.model_fields))
    if unknown:
        raise ValueError(f"Unknown policy sections: {unknown}")

    policy = GovernancePolicy(**raw)
    logger.info(
        "Loaded governance policy from %s: %d filters, %d approval rules",
        path,
        len(policy.safety_filters),
        len(policy.approval_rules),
    )
    return policy
