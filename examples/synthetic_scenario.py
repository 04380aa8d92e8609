"""
Synthetic Scenario: Governing AI Proposals During an Encounter
==============================================================

This script demonstrates the full CommandGate workflow using entirely
synthetic data.  No real patient data, PHI, or PII is used.

The scenario simulates a clinic where an AI assistant proposes changes to
a patient's chart during and after an encounter.

Steps demonstrated:
  1. Load the governance policy from YAML
  2. Auto-execute a low-risk abnormal-result flag
  3. Block a controlled-substance order and a low-confidence proposal
  4. Queue a note draft and approve it with an edit
  5. Queue a medication change and reject it
  6. Let a referral expire without a decision
  7. Generate a review report and export the audit log

DISCLAIMER: This is a synthetic demonstration.  This software does not
validate clinical content, and every AI proposal it queues requires review
by a licensed professional.

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from commandgate.approval_queue import Approve, Reject
from commandgate.audit import AuditLog, AuditRecorder, ProvenanceLog
from commandgate.clock import FixedClock
from commandgate.config import DEFAULT_POLICY, load_policy_from_yaml
from commandgate.executor import CommandExecutor, InMemoryResourceStore
from commandgate.models import Role
from commandgate.processor import CommandProcessor
from commandgate.review import export_audit, generate_review_report, list_review_items


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _command(kind: str, confidence: float, **fields) -> dict:
    return {
        "command": kind,
        "patientId": "synthetic-patient-001",
        "confidence": confidence,
        "aiModel": "synthetic-assistant-v1",
        "reasoning": fields.pop("reasoning", "Synthetic rationale for demonstration."),
        **fields,
    }


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    _banner("CommandGate Synthetic Scenario")
    print("DISCLAIMER: All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load governance policy
    # ------------------------------------------------------------------
    _banner("Step 1: Load Governance Policy")

    sample_yaml = Path(__file__).parent / "governance_policy.yaml"
    if sample_yaml.exists():
        policy = load_policy_from_yaml(sample_yaml)
        print(f"Loaded policy from {sample_yaml.name}")
    else:
        policy = DEFAULT_POLICY
        print("Using built-in default policy")
    print(f"  confidence floor: {policy.confidence_floor}")
    print(f"  filters: {[f.name for f in policy.safety_filters]}")

    # Midday, outside quiet hours
    clock = FixedClock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))
    audit_log = AuditLog()
    recorder = AuditRecorder(audit_log, ProvenanceLog(), clock=clock)
    store = InMemoryResourceStore()
    executor = CommandExecutor(store, timeout_seconds=policy.execution_timeout_seconds)
    processor = CommandProcessor(executor, recorder, policy=policy, clock=clock)

    # ------------------------------------------------------------------
    # Step 2: Auto-executed flag
    # ------------------------------------------------------------------
    _banner("Step 2: Flag an Abnormal Result (auto-executes)")

    result = processor.process(_command(
        "FlagAbnormalResult", 0.92,
        observationId="obs-k-5.9",
        severity="high",
        interpretation="Potassium 5.9 mmol/L above reference range",
    ))
    print(f"{result.action.value}: {result.message}")

    # ------------------------------------------------------------------
    # Step 3: Blocked proposals
    # ------------------------------------------------------------------
    _banner("Step 3: Blocked Proposals")

    result = processor.process(_command(
        "SuggestMedicationChange", 0.95,
        action="start",
        medication={"code": "7804", "system": "RxNorm", "display": "Oxycodone 5 MG"},
    ))
    print(f"{result.action.value}: {result.block_reason} [{result.blocking_filter}]")

    result = processor.process(_command(
        "SummarizePatientHistory", 0.4,
        summaryType="comprehensive",
        summary="Synthetic summary.",
    ))
    print(f"{result.action.value}: {result.block_reason}")

    # ------------------------------------------------------------------
    # Step 4: Note draft approved with an edit
    # ------------------------------------------------------------------
    _banner("Step 4: Note Draft (queued, approved with edit)")

    result = processor.process(_command(
        "CreateEncounterNoteDraft", 0.88,
        encounterId="enc-001",
        noteType="progress",
        content="Synthetic progress note draft.",
    ))
    print(f"{result.action.value}: task {result.task_id}")
    decision = processor.queue.on_decision(
        result.task_id,
        Approve(approver_id="dr-synthetic-001", modifications={"content": "Edited synthetic note."}),
        approver_role=Role.PRACTITIONER,
    )
    print(f"{decision.action.value}: {decision.message}")

    # ------------------------------------------------------------------
    # Step 5: Medication change rejected
    # ------------------------------------------------------------------
    _banner("Step 5: Medication Change (queued, rejected)")

    result = processor.process(_command(
        "SuggestMedicationChange", 0.81,
        action="modify",
        medication={"code": "29046", "system": "RxNorm", "display": "Lisinopril 20 MG"},
        dosage="20 mg",
        frequency="daily",
    ))
    decision = processor.queue.on_decision(
        result.task_id,
        Reject(approver_id="pharm-synthetic-002", reason="Recent creatinine rise"),
        approver_role=Role.PHARMACIST,
    )
    print(f"{decision.action.value}: {decision.message}")

    # ------------------------------------------------------------------
    # Step 6: Referral left to expire
    # ------------------------------------------------------------------
    _banner("Step 6: Referral (queued, expires)")

    result = processor.process(_command(
        "QueueReferralLetter", 0.9,
        referringPractitionerId="Practitioner/dr-synthetic-001",
        specialty="nephrology",
        urgency="routine",
        reasonForReferral="Synthetic: declining renal function",
        clinicalSummary="Synthetic clinical summary.",
    ))
    referral_task_id = result.task_id
    print("Pending review items:")
    for item in list_review_items(processor.queue, Role.PRACTITIONER):
        print(f"  {item.kind} (confidence {item.confidence}) due {item.expires_at.isoformat()}")

    clock.advance(timedelta(hours=49))
    task = processor.queue.poll(referral_task_id)
    print(f"After 49h the referral task is {task.status.value}")

    # ------------------------------------------------------------------
    # Step 7: Review report and audit export
    # ------------------------------------------------------------------
    _banner("Step 7: Review Report and Audit Export")

    report = generate_review_report(task, audit_log)
    print(json.dumps(report.to_dict(), indent=2, default=str))

    export = export_audit(recorder, Role.AUDITOR, actor_id="auditor-1")
    print(json.dumps(export["export_metadata"], indent=2))
    valid, broken_at = audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")
    print(f"Resource store calls: {store.calls}")

    executor.close()

    _banner("Scenario Complete")
    print("All data was synthetic. No real patients, PHI, or PII.")


if __name__ == "__main__":
    main()
