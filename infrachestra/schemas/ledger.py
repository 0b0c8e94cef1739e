"""
Ledger schemas - the append-only audit trail of a run.

Every attempt of every action, and every non-success classification, is one
LedgerEntry. Entries are immutable; the ledger only grows.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .state import StepState

# ULID type alias for documentation
ULID = str


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    """What the executor was doing when the entry was written."""
    RUN = "run"
    RECONCILE = "reconcile"
    APPLY = "apply"
    VERIFY = "verify"
    DESTROY = "destroy"
    ROLLBACK = "rollback"


class Outcome(str, Enum):
    """Outcome recorded for a ledger entry."""
    STARTED = "started"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED_TRANSIENT = "failed_transient"
    FAILED_PERMANENT = "failed_permanent"
    RECONCILE_UNAVAILABLE = "reconcile_unavailable"
    DRIFT_DETECTED = "drift_detected"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    HALTED = "halted"

    @property
    def is_terminal_success(self) -> bool:
        return self in (Outcome.SUCCEEDED, Outcome.SKIPPED, Outcome.ROLLED_BACK)

    @property
    def is_failure(self) -> bool:
        return self in (
            Outcome.FAILED_TRANSIENT,
            Outcome.FAILED_PERMANENT,
            Outcome.RECONCILE_UNAVAILABLE,
            Outcome.DRIFT_DETECTED,
            Outcome.CANCELLED,
            Outcome.ROLLBACK_FAILED,
            Outcome.HALTED,
        )


@dataclass(frozen=True)
class LedgerEntry:
    """
    One append-only record in the run ledger.

    Attributes:
        run_id: ULID of the run
        seq: Position of the entry within the run (0-indexed)
        step_id: Step the entry concerns ("*" for run-level entries)
        phase: Executor phase (reconcile, apply, verify, destroy, rollback, run)
        attempt: Attempt number within the phase (1-indexed, 0 for run-level)
        outcome: What happened
        timestamp: When the entry was written (UTC)
        message: Diagnostic message
        state: StepState observed, for reconcile entries
    """
    run_id: ULID
    seq: int
    step_id: str
    phase: Phase
    attempt: int
    outcome: Outcome
    timestamp: datetime
    message: str = ""
    state: Optional[StepState] = None

    def __post_init__(self):
        if self.seq < 0:
            raise ValueError("seq must be >= 0")
        if self.attempt < 0:
            raise ValueError("attempt must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "seq": self.seq,
            "step_id": self.step_id,
            "phase": self.phase.value,
            "attempt": self.attempt,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
        }
        if self.state is not None:
            result["state"] = self.state.value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerEntry":
        """Deserialize from dictionary."""
        return cls(
            run_id=data["run_id"],
            seq=data["seq"],
            step_id=data["step_id"],
            phase=Phase(data["phase"]),
            attempt=data.get("attempt", 0),
            outcome=Outcome(data["outcome"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            message=data.get("message", ""),
            state=StepState(data["state"]) if data.get("state") else None,
        )
