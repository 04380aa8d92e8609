"""
Safety Filter Evaluator -- Rule Matching for Proposed Commands.

A safety filter is an ordered list of field conditions joined by logical
AND, plus an action: ``block``, ``warn`` or ``require_approval``.  Filters
are evaluated against the command's generic document view (nested
mappings, lists and scalars), so filter configurations stay independent of
the Python model classes.

**Evaluation rules:**

* Disabled filters are skipped.
* The first enabled ``block`` filter whose conditions all match ends the
  evaluation -- later filters are not evaluated.
* ``warn`` and ``require_approval`` matches accumulate.
* A hardcoded confidence floor always blocks commands below it, whatever
  the configured filter set says.  This holds even for an empty or
  misconfigured filter list.
* A field path that does not exist never matches and never raises.

A blocked result still reports the warnings and approval hints collected
from filters evaluated before the block.  They are diagnostic only.
"""

from __future__ import annotations

import enum
import logging
import numbers
import re
from collections.abc import Mapping, Sequence
from functools import lru_cache
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from commandgate.errors import PolicyBlocked
from commandgate.models import ProposedCommand

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_FLOOR = 0.5


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FilterAction(str, enum.Enum):
    BLOCK = "block"
    WARN = "warn"
    REQUIRE_APPROVAL = "require_approval"


class ConditionOperator(str, enum.Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    MATCHES = "matches"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


# ---------------------------------------------------------------------------
# Dot-path resolution
# ---------------------------------------------------------------------------

class _Missing:
    """Sentinel for a field path that does not resolve."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def resolve_path(document: Any, path: str) -> Any:
    """Look up a dot-separated path in a nested mapping/list document.

    Mapping segments are keys; list segments must be integer indexes.

    Returns:
        The value at ``path``, or ``MISSING`` if any segment is absent.
    """
    current = document
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                index = int(segment)
            except ValueError:
                return MISSING
            if not -len(current) <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        logger.warning("Ignoring invalid filter pattern %r: %s", pattern, exc)
        return None


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Filter models
# ---------------------------------------------------------------------------

class Condition(BaseModel):
    """A single field condition inside a safety filter."""

    field: str = Field(..., min_length=1, description="Dot-path into the command document.")
    operator: ConditionOperator
    value: Any = Field(..., description="Operand compared against the resolved field value.")

    def matches(self, document: Mapping[str, Any]) -> bool:
        actual = resolve_path(document, self.field)
        if actual is MISSING:
            return False

        if self.operator == ConditionOperator.EQUALS:
            if isinstance(actual, bool) or isinstance(self.value, bool):
                return isinstance(actual, bool) and isinstance(self.value, bool) and actual == self.value
            return actual == self.value

        if self.operator == ConditionOperator.CONTAINS:
            if isinstance(actual, str):
                return str(self.value) in actual
            if isinstance(actual, (list, tuple)):
                return self.value in actual
            return False

        if self.operator == ConditionOperator.MATCHES:
            if not isinstance(actual, str):
                return False
            pattern = _compile(str(self.value))
            return pattern is not None and pattern.search(actual) is not None

        # Ordering operators compare numbers only.
        if not _is_number(actual) or not _is_number(self.value):
            return False
        if self.operator == ConditionOperator.GREATER_THAN:
            return actual > self.value
        return actual < self.value


class SafetyFilter(BaseModel):
    """A named rule that blocks, warns on, or escalates matching commands."""

    name: str = Field(..., min_length=1)
    description: str = Field(default="")
    enabled: bool = Field(default=True)
    action: FilterAction
    conditions: list[Condition] = Field(
        ...,
        min_length=1,
        description=(
            "Conditions joined by logical AND.  At least one is required so "
            "that a misconfigured filter cannot match every command."
        ),
    )

    @field_validator("name")
    @classmethod
    def name_has_no_padding(cls, v: str) -> str:
        if v != v.strip():
            raise ValueError("filter name must not have leading or trailing whitespace")
        return v

    def matches(self, document: Mapping[str, Any]) -> bool:
        return all(condition.matches(document) for condition in self.conditions)


# ---------------------------------------------------------------------------
# Evaluation result
# ---------------------------------------------------------------------------

class FilterEvaluationResult:
    """Outcome of evaluating one command against a filter set."""

    def __init__(
        self,
        blocked: bool,
        warnings: list[str],
        require_approval_hints: list[str],
        blocking_filter: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        self.blocked = blocked
        self.blocking_filter = blocking_filter
        self.reason = reason
        self.warnings = warnings
        self.require_approval_hints = require_approval_hints

    def requires_approval(self) -> bool:
        """Whether any matching filter escalated the command to human review."""
        return bool(self.require_approval_hints)

    def raise_for_block(self) -> None:
        """Raise ``PolicyBlocked`` if this result blocks the command."""
        if self.blocked:
            raise PolicyBlocked(self.reason or "Blocked by safety filter", self.blocking_filter)

    def __repr__(self) -> str:
        return (
            f"FilterEvaluationResult(blocked={self.blocked}, "
            f"blocking_filter={self.blocking_filter!r}, warnings={self.warnings}, "
            f"require_approval_hints={self.require_approval_hints})"
        )


CONFIDENCE_FLOOR_FILTER = "ConfidenceFloor"


def evaluate_filters(
    command: ProposedCommand,
    filters: Sequence[SafetyFilter],
    confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR,
) -> FilterEvaluationResult:
    """Evaluate a command against the configured filters and the confidence floor.

    Args:
        command: The validated command.
        filters: Filters in configured order.
        confidence_floor: Minimum confidence; commands below it are blocked.

    Returns:
        A ``FilterEvaluationResult``.
    """
    warnings: list[str] = []
    hints: list[str] = []

    if command.confidence < confidence_floor:
        return FilterEvaluationResult(
            blocked=True,
            warnings=warnings,
            require_approval_hints=hints,
            blocking_filter=CONFIDENCE_FLOOR_FILTER,
            reason=(
                f"Command confidence ({command.confidence}) is below minimum "
                f"threshold ({confidence_floor})"
            ),
        )

    document = command.as_document()
    for safety_filter in filters:
        if not safety_filter.enabled or not safety_filter.matches(document):
            continue

        if safety_filter.action == FilterAction.BLOCK:
            return FilterEvaluationResult(
                blocked=True,
                warnings=warnings,
                require_approval_hints=hints,
                blocking_filter=safety_filter.name,
                reason=safety_filter.description or f"Blocked by safety filter {safety_filter.name}",
            )
        if safety_filter.action == FilterAction.WARN:
            warnings.append(f"Warning: {safety_filter.description or safety_filter.name}")
        else:
            hints.append(safety_filter.name)
            warnings.append(
                f"Note: {safety_filter.description or safety_filter.name} - requires approval"
            )

    return FilterEvaluationResult(
        blocked=False,
        warnings=warnings,
        require_approval_hints=hints,
    )


# ---------------------------------------------------------------------------
# Default filters
# ---------------------------------------------------------------------------

CONTROLLED_SUBSTANCE_PATTERN = (
    r"(?i)\b(oxycodone|hydrocodone|hydromorphone|fentanyl|morphine|methadone|"
    r"buprenorphine|codeine|tramadol|alprazolam|lorazepam|diazepam|clonazepam|"
    r"amphetamine|methylphenidate|lisdexamfetamine|zolpidem)\b"
)

DEFAULT_SAFETY_FILTERS: list[SafetyFilter] = [
    SafetyFilter(
        name="BlockControlledSubstances",
        description="Block AI from directly ordering controlled substances",
        action=FilterAction.BLOCK,
        conditions=[
            Condition(field="kind", operator=ConditionOperator.EQUALS, value="SuggestMedicationChange"),
            Condition(field="medication.display", operator=ConditionOperator.MATCHES, value=CONTROLLED_SUBSTANCE_PATTERN),
        ],
    ),
    SafetyFilter(
        name="RequireApprovalCriticalCare",
        description="Critical-care context (DNR, ICU, chemotherapy)",
        action=FilterAction.REQUIRE_APPROVAL,
        conditions=[
            Condition(field="rationale", operator=ConditionOperator.MATCHES, value=r"(?i)\b(DNR|ICU|chemotherapy)\b"),
        ],
    ),
    SafetyFilter(
        name="QuietHoursWarning",
        description="Command generated during quiet hours",
        action=FilterAction.WARN,
        conditions=[
            Condition(field="created_at", operator=ConditionOperator.MATCHES, value=r"T(2[2-3]|0[0-5]):"),
        ],
    ),
    SafetyFilter(
        name="LowConfidenceBlock",
        description="Block commands with very low confidence",
        action=FilterAction.BLOCK,
        conditions=[
            Condition(field="confidence", operator=ConditionOperator.LESS_THAN, value=0.5),
        ],
    ),
]
