"""
RunRecord schema - tracks one orchestration run.

A RunRecord is created when the executor starts walking a plan and is
updated once, on completion, with the final status and halting reason.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# ULID type alias for documentation
ULID = str


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class RunRecord:
    """
    A record of a lifecycle run.

    Attributes:
        run_id: ULID uniquely identifying this run
        stack_id: The stack being orchestrated
        mode: 'apply' or 'destroy'
        plan_order: Step ids in the order the plan was walked
        dry_run: True if no handler was invoked
        started_at: When the run started
        completed_at: When the run completed (None if still running)
        status: 'running', 'success', 'failed'
        halted_step: Step at which the run halted, if any
        halt_reason: Error message of the halting condition
        duration_ms: Total execution time in milliseconds
    """
    run_id: ULID
    stack_id: str
    mode: str = "apply"
    plan_order: list[str] = field(default_factory=list)
    dry_run: bool = False
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    status: str = "running"
    halted_step: Optional[str] = None
    halt_reason: Optional[str] = None
    duration_ms: Optional[int] = None

    def finish(self, status: str, halted_step: Optional[str] = None, halt_reason: Optional[str] = None) -> None:
        """Mark the run complete."""
        self.completed_at = _utcnow()
        self.status = status
        self.halted_step = halted_step
        self.halt_reason = halt_reason
        self.duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "stack_id": self.stack_id,
            "mode": self.mode,
            "plan_order": self.plan_order,
            "started_at": self.started_at.isoformat(),
            "status": self.status,
        }
        if self.dry_run:
            result["dry_run"] = True
        if self.completed_at:
            result["completed_at"] = self.completed_at.isoformat()
        if self.halted_step is not None:
            result["halted_step"] = self.halted_step
        if self.halt_reason is not None:
            result["halt_reason"] = self.halt_reason
        if self.duration_ms is not None:
            result["duration_ms"] = self.duration_ms
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunRecord":
        """Deserialize from dictionary."""
        completed_at = None
        if data.get("completed_at"):
            completed_at = datetime.fromisoformat(data["completed_at"])
        return cls(
            run_id=data["run_id"],
            stack_id=data["stack_id"],
            mode=data.get("mode", "apply"),
            plan_order=data.get("plan_order", []),
            dry_run=data.get("dry_run", False),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=completed_at,
            status=data.get("status", "running"),
            halted_step=data.get("halted_step"),
            halt_reason=data.get("halt_reason"),
            duration_ms=data.get("duration_ms"),
        )
