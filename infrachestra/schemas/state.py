"""
Reconciliation schemas - live state of a step against external systems.

Observation is what a probe saw. Reconciliation is the classification the
executor acts on. StateRecord is the last desired state the executor
recorded for a step after applying it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class StepState(str, Enum):
    """Classification of a step against live external state."""
    ABSENT = "absent"
    PARTIAL = "partial"
    APPLIED = "applied"
    CONFLICTING = "conflicting"


@dataclass(frozen=True)
class Observation:
    """
    Raw result of probing the system of record for one step.

    Attributes:
        found: Whether any matching resource exists
        complete: Whether every expected sub-resource exists
        recorded_key: Idempotency key recorded for the resource (None if the
                      resource exists outside our record)
        existing_id: Identifier of the existing resource, if known
        missing: Names of sub-resources that were expected but not found
        detail: Free-text diagnostic from the probe
    """
    found: bool
    complete: bool = True
    recorded_key: Optional[str] = None
    existing_id: Optional[str] = None
    missing: tuple[str, ...] = field(default_factory=tuple)
    detail: str = ""

    @classmethod
    def absent(cls, detail: str = "") -> "Observation":
        return cls(found=False, complete=False, detail=detail)


@dataclass(frozen=True)
class Reconciliation:
    """
    Classification of a step, as consumed by the executor.

    Attributes:
        step_id: The step that was reconciled
        state: absent / partial / applied / conflicting
        existing_id: Identifier to adopt (import) instead of re-creating
        recorded_key: Key found on the live resource
        missing: Sub-resources to resume when partial
        message: Human readable explanation
    """
    step_id: str
    state: StepState
    existing_id: Optional[str] = None
    recorded_key: Optional[str] = None
    missing: tuple[str, ...] = field(default_factory=tuple)
    message: str = ""

    @property
    def apply_mode(self) -> str:
        """How an apply action should treat existing resources."""
        if self.state == StepState.ABSENT:
            return "create"
        if self.state == StepState.PARTIAL and self.recorded_key is None and self.existing_id:
            return "import"
        return "resume"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "step_id": self.step_id,
            "state": self.state.value,
        }
        if self.existing_id is not None:
            result["existing_id"] = self.existing_id
        if self.recorded_key is not None:
            result["recorded_key"] = self.recorded_key
        if self.missing:
            result["missing"] = list(self.missing)
        if self.message:
            result["message"] = self.message
        return result


@dataclass(frozen=True)
class StateRecord:
    """
    The last desired state recorded for a step after a successful apply.

    Attributes:
        step_id: The step the record belongs to
        idempotency_key: Key of the desired state that was applied
        existing_id: Identifier reported by the handler (e.g. cluster ARN)
        complete: False when the apply is known to have been partial
        outputs: Handler outputs, available to later runs via @run refs
        updated_at: When the record was written
    """
    step_id: str
    idempotency_key: str
    existing_id: Optional[str] = None
    complete: bool = True
    outputs: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "step_id": self.step_id,
            "idempotency_key": self.idempotency_key,
            "complete": self.complete,
            "updated_at": self.updated_at.isoformat(),
        }
        if self.existing_id is not None:
            result["existing_id"] = self.existing_id
        if self.outputs:
            result["outputs"] = self.outputs
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateRecord":
        return cls(
            step_id=data["step_id"],
            idempotency_key=data["idempotency_key"],
            existing_id=data.get("existing_id"),
            complete=data.get("complete", True),
            outputs=data.get("outputs", {}),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else _utcnow(),
        )
