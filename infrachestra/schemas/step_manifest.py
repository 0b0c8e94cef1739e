"""
StepManifest schema - the dispatchable unit for one step action.

A StepManifest captures everything a handler needs to perform an action:
resolved parameters, the idempotency key, and what the reconciler learned
about existing resources (create vs resume vs import).
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .actions import ActionKind

# ULID type alias for documentation
ULID = str


@dataclass(frozen=True)
class StepManifest:
    """
    A dispatchable manifest for one step action.

    Handlers must treat manifests as replay-safe: given the same manifest,
    applying twice converges on the same external state.

    Attributes:
        run_id: ULID of the run this action belongs to
        step_id: Identifier of the step within the stack
        handler: Name of the handler the manifest is dispatched to
        action: apply / destroy / verify / verify_destroyed
        resolved_params: Action parameters with @run.* references resolved
        idempotency_key: Desired-state key of the step
        mode: 'create', 'resume' or 'import' (apply only)
        existing_id: Identifier of an existing resource to adopt or resume
        missing: Sub-resources the reconciler found missing
        variables: Placeholder context (config + stack variables)
    """
    run_id: ULID
    step_id: str
    handler: str
    action: ActionKind
    resolved_params: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str = ""
    mode: str = "create"
    existing_id: Optional[str] = None
    missing: tuple[str, ...] = field(default_factory=tuple)
    variables: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.mode not in ("create", "resume", "import"):
            raise ValueError(f"Unknown apply mode: {self.mode}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "step_id": self.step_id,
            "handler": self.handler,
            "action": self.action.value,
            "resolved_params": self.resolved_params,
            "idempotency_key": self.idempotency_key,
            "mode": self.mode,
        }
        if self.existing_id is not None:
            result["existing_id"] = self.existing_id
        if self.missing:
            result["missing"] = list(self.missing)
        return result
