"""
CommandGate -- AI Command Governance Engine
===========================================

Intercepts AI-originated change proposals ("commands") before they reach a
clinical system of record.  Every command is checked against configured
safety filters and organizational approval rules, then either executed,
queued for time-bounded human approval, or blocked.  Every governance
decision is written to an append-only, hash-chained audit log together with
a provenance trail naming the AI generator and the human verifier.

DISCLAIMER: This software does not validate the clinical correctness of AI
output.  It enforces governance policy only; the judgment of the reviewing
clinician remains authoritative.
"""

__version__ = "0.1.0"
