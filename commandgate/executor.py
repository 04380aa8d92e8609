"""
Command Executor -- Kind-to-Resource Mapping Against the Record Store.

Each command kind maps to exactly one side-effecting call on the external
resource store, through a registry of ``KindExecutor`` implementations.
The stable mapping is::

    CreateEncounterNoteDraft  -> DocumentReference (create)
    ProposeProblemListUpdate  -> Condition (create on 'add', update otherwise)
    SuggestBillingCodes       -> Claim (draft)
    QueueReferralLetter       -> ServiceRequest (draft)
    FlagAbnormalResult        -> Flag
    SuggestMedicationChange   -> MedicationRequest (draft)
    SummarizePatientHistory   -> DocumentReference

The executor performs no policy evaluation -- that belongs to the processor
and the approval queue.  Every store call is bounded by a timeout; a slow or
failing store surfaces as ``DependencyError`` and is never retried here.

Store calls only start on a free worker.  When every worker is busy the
call is refused with ``DependencyError`` before anything is submitted, so
a command reported as failed can never be applied later from the pool's
backlog.  There is no mid-flight cancellation: a call that has started and
then times out keeps running on its worker thread until it completes.
"""

from __future__ import annotations

import base64
import copy
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from commandgate.errors import DependencyError, GovernanceError, UnsupportedCommand
from commandgate.models import CommandKind, ExecutionResult, ProposedCommand

logger = logging.getLogger(__name__)

DEFAULT_EXECUTION_TIMEOUT_SECONDS = 10.0


# ---------------------------------------------------------------------------
# Resource store interface
# ---------------------------------------------------------------------------

class ResourceStore(Protocol):
    """The external system of record.  Its schema is owned elsewhere."""

    def create(self, resource_type: str, resource: dict[str, Any]) -> str:
        """Create a resource and return its id."""
        ...

    def update(self, resource_type: str, resource_id: str, changes: dict[str, Any]) -> str:
        """Apply ``changes`` to an existing resource and return its id."""
        ...


class InMemoryResourceStore:
    """Thread-safe in-process resource store for development and tests."""

    def __init__(self) -> None:
        self._resources: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []

    def create(self, resource_type: str, resource: dict[str, Any]) -> str:
        resource_id = str(uuid.uuid4())
        with self._lock:
            stored = copy.deepcopy(resource)
            stored["id"] = resource_id
            self._resources[(resource_type, resource_id)] = stored
            self.calls.append(("create", resource_type))
        return resource_id

    def update(self, resource_type: str, resource_id: str, changes: dict[str, Any]) -> str:
        with self._lock:
            key = (resource_type, resource_id)
            if key not in self._resources:
                raise KeyError(f"{resource_type}/{resource_id} does not exist")
            self._resources[key].update(copy.deepcopy(changes))
            self.calls.append(("update", resource_type))
        return resource_id

    def get(self, resource_type: str, resource_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            resource = self._resources.get((resource_type, resource_id))
            return copy.deepcopy(resource) if resource is not None else None

    def seed(self, resource_type: str, resource: dict[str, Any]) -> str:
        """Insert an existing resource (e.g. a Condition to be resolved)."""
        resource_id = resource.get("id") or str(uuid.uuid4())
        with self._lock:
            self._resources[(resource_type, resource_id)] = {**copy.deepcopy(resource), "id": resource_id}
        return resource_id

    def __len__(self) -> int:
        return len(self._resources)


# ---------------------------------------------------------------------------
# Kind executors
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _patient(command: ProposedCommand) -> dict[str, str]:
    return {"reference": f"Patient/{command.subject_id}"}


def _coding(concept: dict[str, Any]) -> dict[str, Any]:
    return {
        "coding": [
            {
                "system": concept.get("system"),
                "code": concept.get("code"),
                "display": concept.get("display", ""),
            }
        ],
        "text": concept.get("display", ""),
    }


def _attachment(text: str) -> dict[str, Any]:
    return {
        "attachment": {
            "contentType": "text/plain",
            "data": base64.b64encode(text.encode("utf-8")).decode("ascii"),
        }
    }


class KindExecutor:
    """Executes one command kind against the resource store.

    Subclasses set ``kind`` and ``resource_type`` and implement
    ``build_resource()``.  The default ``execute()`` creates one resource.
    """

    kind: CommandKind
    resource_type: str

    def build_resource(self, command: ProposedCommand) -> dict[str, Any]:
        raise NotImplementedError

    def execute(self, command: ProposedCommand, store: ResourceStore) -> ExecutionResult:
        resource_id = store.create(self.resource_type, self.build_resource(command))
        ref = f"{self.resource_type}/{resource_id}"
        return ExecutionResult(
            success=True,
            resource_type=self.resource_type,
            resource_ref=ref,
            message=f"Created {ref}",
        )


class NoteDraftExecutor(KindExecutor):
    kind = CommandKind.CREATE_NOTE_DRAFT
    resource_type = "DocumentReference"

    def build_resource(self, command: ProposedCommand) -> dict[str, Any]:
        p = command.payload
        return {
            "resourceType": self.resource_type,
            "status": "current",
            "docStatus": "preliminary",
            "type": {
                "coding": [{"system": "http://loinc.org", "code": "11506-3", "display": "Progress note"}],
                "text": f"{p['note_type']} note",
            },
            "subject": _patient(command),
            "context": {"encounter": [{"reference": f"Encounter/{p['encounter_id']}"}]},
            "date": _now_iso(),
            "content": [_attachment(p["content"])],
        }


class RecordUpdateExecutor(KindExecutor):
    kind = CommandKind.PROPOSE_RECORD_UPDATE
    resource_type = "Condition"

    def build_resource(self, command: ProposedCommand) -> dict[str, Any]:
        p = command.payload
        resource: dict[str, Any] = {
            "resourceType": self.resource_type,
            "clinicalStatus": {"coding": [{"code": p.get("clinical_status", "active")}]},
            "verificationStatus": {"coding": [{"code": p.get("verification_status", "confirmed")}]},
            "code": _coding(p["condition"]),
            "subject": _patient(command),
        }
        if "severity" in p:
            resource["severity"] = {"text": p["severity"]}
        if "onset_date" in p:
            resource["onsetDateTime"] = p["onset_date"]
        return resource

    def execute(self, command: ProposedCommand, store: ResourceStore) -> ExecutionResult:
        action = command.payload["action"]
        if action == "add":
            return super().execute(command, store)

        condition_id = command.payload.get("condition_id")
        if not condition_id:
            return ExecutionResult(
                success=False,
                resource_type=self.resource_type,
                message=f"'{action}' requires the id of an existing condition (condition_id)",
            )
        changes: dict[str, Any] = {}
        if action == "resolve":
            changes["clinicalStatus"] = {"coding": [{"code": "resolved"}]}
            changes["abatementDateTime"] = _now_iso()
        else:
            changes = self.build_resource(command)
        store.update(self.resource_type, condition_id, changes)
        ref = f"{self.resource_type}/{condition_id}"
        return ExecutionResult(
            success=True,
            resource_type=self.resource_type,
            resource_ref=ref,
            message=f"Updated {ref} ({action})",
        )


_CODE_SYSTEMS = {
    "CPT": "http://www.ama-assn.org/go/cpt",
    "HCPCS": "https://www.cms.gov/Medicare/Coding/HCPCSReleaseCodeSets",
    "ICD-10-CM": "http://hl7.org/fhir/sid/icd-10-cm",
    "ICD-10-PCS": "http://www.cms.gov/Medicare/Coding/ICD10",
}


class CodesExecutor(KindExecutor):
    kind = CommandKind.SUGGEST_CODES
    resource_type = "Claim"

    def build_resource(self, command: ProposedCommand) -> dict[str, Any]:
        codes = command.payload["suggested_codes"]
        diagnoses = [c for c in codes if c["system"].startswith("ICD-10")]
        procedures = [c for c in codes if c["system"] in ("CPT", "HCPCS")]
        return {
            "resourceType": self.resource_type,
            "status": "draft",
            "use": "claim",
            "type": {"coding": [{"code": "professional"}]},
            "patient": _patient(command),
            "created": _now_iso(),
            "encounter": [{"reference": f"Encounter/{command.payload['encounter_id']}"}],
            "diagnosis": [
                {
                    "sequence": i,
                    "diagnosisCodeableConcept": _coding({**c, "system": _CODE_SYSTEMS[c["system"]]}),
                }
                for i, c in enumerate(diagnoses, start=1)
            ],
            "item": [
                {
                    "sequence": i,
                    "productOrService": _coding({**c, "system": _CODE_SYSTEMS[c["system"]]}),
                }
                for i, c in enumerate(procedures, start=1)
            ],
        }


_REFERRAL_PRIORITY = {"emergent": "stat", "urgent": "urgent", "routine": "routine"}


class ReferralExecutor(KindExecutor):
    kind = CommandKind.QUEUE_REFERRAL
    resource_type = "ServiceRequest"

    def build_resource(self, command: ProposedCommand) -> dict[str, Any]:
        p = command.payload
        resource: dict[str, Any] = {
            "resourceType": self.resource_type,
            "status": "draft",
            "intent": "proposal",
            "priority": _REFERRAL_PRIORITY[p["urgency"]],
            "code": {"text": f"Referral to {p['specialty']}"},
            "subject": _patient(command),
            "requester": {"reference": p["referring_practitioner_id"]},
            "reasonCode": [{"text": p["reason_for_referral"]}],
            "note": [{"text": p["clinical_summary"]}]
            + [{"text": f"Question: {q}"} for q in p.get("specific_questions", [])],
        }
        if p.get("recipient_practitioner_id"):
            resource["performer"] = [{"reference": p["recipient_practitioner_id"]}]
        return resource


class FlagResultExecutor(KindExecutor):
    kind = CommandKind.FLAG_RESULT
    resource_type = "Flag"

    def build_resource(self, command: ProposedCommand) -> dict[str, Any]:
        p = command.payload
        return {
            "resourceType": self.resource_type,
            "status": "active",
            "category": [{"coding": [{"code": "clinical", "display": "Clinical"}]}],
            "code": {"text": f"AI Alert: {p['interpretation']}"},
            "subject": _patient(command),
            "period": {"start": _now_iso()},
            "extension": [
                {"url": "observation", "valueReference": {"reference": f"Observation/{p['observation_id']}"}},
                {"url": "severity", "valueString": p["severity"]},
            ],
        }


class ChangeExecutor(KindExecutor):
    kind = CommandKind.SUGGEST_CHANGE
    resource_type = "MedicationRequest"

    def build_resource(self, command: ProposedCommand) -> dict[str, Any]:
        p = command.payload
        resource: dict[str, Any] = {
            "resourceType": self.resource_type,
            "status": "draft",
            "intent": "proposal",
            "medicationCodeableConcept": _coding(p["medication"]),
            "subject": _patient(command),
            "note": [{"text": f"AI Rationale: {command.rationale or 'not provided'}"}],
        }
        if p.get("dosage"):
            text = p["dosage"]
            if p.get("frequency"):
                text += f" {p['frequency']}"
            if p.get("duration"):
                text += f" for {p['duration']}"
            resource["dosageInstruction"] = [{"text": text}]
        if p.get("current_medication_id"):
            resource["priorPrescription"] = {"reference": f"MedicationRequest/{p['current_medication_id']}"}
        return resource


class SummarizeExecutor(KindExecutor):
    kind = CommandKind.SUMMARIZE
    resource_type = "DocumentReference"

    def build_resource(self, command: ProposedCommand) -> dict[str, Any]:
        p = command.payload
        return {
            "resourceType": self.resource_type,
            "status": "current",
            "type": {
                "coding": [{"system": "http://loinc.org", "code": "11506-3", "display": "Progress note"}],
                "text": f"AI-Generated Patient Summary ({p['summary_type']})",
            },
            "subject": _patient(command),
            "date": _now_iso(),
            "content": [_attachment(p["summary"])],
        }


DEFAULT_KIND_EXECUTORS: tuple[type[KindExecutor], ...] = (
    NoteDraftExecutor,
    RecordUpdateExecutor,
    CodesExecutor,
    ReferralExecutor,
    FlagResultExecutor,
    ChangeExecutor,
    SummarizeExecutor,
)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class CommandExecutor:
    """Dispatches commands to their registered ``KindExecutor``.

    Args:
        store: The external resource store.
        timeout_seconds: Bound on each store call.
        executors: Kind executors to register.  Defaults to one per kind.
        max_workers: Concurrent store calls; further calls are refused.
    """

    def __init__(
        self,
        store: ResourceStore,
        timeout_seconds: float = DEFAULT_EXECUTION_TIMEOUT_SECONDS,
        executors: Optional[list[KindExecutor]] = None,
        max_workers: int = 8,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._store = store
        self._timeout = timeout_seconds
        self._registry: dict[CommandKind, KindExecutor] = {}
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="commandgate-exec"
        )
        # One slot per worker; a slot is held until the store call returns.
        self._slots = threading.BoundedSemaphore(max_workers)
        for executor in executors if executors is not None else [cls() for cls in DEFAULT_KIND_EXECUTORS]:
            self.register(executor)

    def register(self, executor: KindExecutor) -> None:
        self._registry[executor.kind] = executor

    def supports(self, kind: CommandKind) -> bool:
        return kind in self._registry

    def resource_mapping(self) -> dict[str, str]:
        """Return the ``{command kind: resource type}`` table."""
        return {k.value: e.resource_type for k, e in self._registry.items()}

    def _run(self, handler: KindExecutor, command: ProposedCommand) -> ExecutionResult:
        try:
            return handler.execute(command, self._store)
        finally:
            self._slots.release()

    def execute(self, command: ProposedCommand) -> ExecutionResult:
        """Run the side effect for ``command``.

        Raises:
            UnsupportedCommand: If no executor is registered for the kind.
            DependencyError: If every worker is busy, or the store raises
                or exceeds the timeout.
        """
        handler = self._registry.get(command.kind)
        if handler is None:
            raise UnsupportedCommand(f"No executor registered for {command.kind.value}")

        if not self._slots.acquire(blocking=False):
            logger.error(
                "All execution workers busy; refusing %s without side effect",
                command.kind.value,
            )
            raise DependencyError(
                f"Resource store busy: no free worker to execute {command.kind.value}"
            )
        try:
            future = self._pool.submit(self._run, handler, command)
        except BaseException:
            self._slots.release()
            raise

        try:
            result = future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            started = not future.cancel()
            if not started:
                self._slots.release()
            logger.error(
                "Resource store did not answer within %.1fs for %s%s",
                self._timeout,
                command.kind.value,
                "; the call is still running" if started else "",
            )
            raise DependencyError(
                f"Resource store timed out after {self._timeout}s executing {command.kind.value}"
            ) from exc
        except GovernanceError:
            raise
        except Exception as exc:
            logger.error(
                "Resource store call failed for %s: %s: %s",
                command.kind.value,
                type(exc).__name__,
                exc,
            )
            raise DependencyError(
                f"Resource store failed executing {command.kind.value}: {exc}"
            ) from exc

        logger.info("Executed %s: %s", command.kind.value, result.message)
        return result

    def close(self) -> None:
        self._pool.shutdown(wait=False)
