"""
infrachestra.schemas - Schema definitions for the orchestration layer.

This module defines the core data structures for infrachestra:

StackDef -> Plan -> RunRecord -> StepManifest -> LedgerEntry

Lifecycle:
1. StackDef: Static, version-controlled step set (ids, dependencies, actions, inputs)
2. Plan: Dependency-ordered, immutable sequence of StepDefs
3. RunRecord: Runtime record when the executor starts walking a plan
4. StepManifest: Dispatchable unit sent to an action handler
5. LedgerEntry: Append-only record of every attempt and classification

Boundaries:
- infrachestra: Orchestration (ordering, reconciliation, retry, rollback)
- handlers: External provisioning systems (terraform, aws, kubectl, helm)
"""

from .actions import ActionKind
from .step_def import (
    ActionSpec,
    ProbeSpec,
    StepDef,
    StackDef,
    DefinitionError,
)
from .plan import Plan
from .state import (
    StepState,
    Observation,
    Reconciliation,
    StateRecord,
)
from .ledger import (
    LedgerEntry,
    Outcome,
    Phase,
    ULID,
)
from .run_record import RunRecord
from .step_manifest import StepManifest

__all__ = [
    # Actions
    "ActionKind",
    # Definitions
    "ActionSpec",
    "ProbeSpec",
    "StepDef",
    "StackDef",
    "DefinitionError",
    # Plan
    "Plan",
    # State
    "StepState",
    "Observation",
    "Reconciliation",
    "StateRecord",
    # Ledger
    "LedgerEntry",
    "Outcome",
    "Phase",
    "ULID",
    # Run Record
    "RunRecord",
    # Step Manifest
    "StepManifest",
]
