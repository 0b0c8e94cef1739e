"""
Base handler protocol and common implementations.

Handlers are responsible for executing StepManifests dispatched by the
Executor. Each handler drives one kind of external provisioning system as an
opaque (apply, destroy, verify) operation.

Handler result contract (all keys optional):
- resource_id: identifier of the created/adopted resource
- outputs: dict exposed to later steps as @run.<step_id>.<key>
- complete: False if the handler knows the apply was partial

Errors are exceptions, not values: raise TransientError to request a retry
and PermanentError to fail the step immediately.
"""

from abc import ABC, abstractmethod
from typing import Any

from infrachestra.credentials import CredentialContext
from infrachestra.schemas import StepManifest


class Handler(ABC):
    """
    Abstract base class for action handlers.

    Handlers receive StepManifests and perform the corresponding action,
    returning the result as a dictionary.
    """

    @abstractmethod
    def execute(self, manifest: StepManifest, credentials: CredentialContext) -> dict[str, Any]:
        """
        Execute a step manifest.

        Args:
            manifest: The StepManifest containing the action details
            credentials: Read-only credential context for the run

        Returns:
            The execution result as a dictionary

        Raises:
            TransientError: Safe to retry
            PermanentError: Do not retry
        """
        pass


class NoOpHandler(Handler):
    """
    No-op handler for testing and steps with no external effect.

    Returns a description of the manifest without executing anything.
    """

    def execute(self, manifest: StepManifest, credentials: CredentialContext) -> dict[str, Any]:
        """Return a no-op result without executing."""
        return {
            "status": "noop",
            "handler": manifest.handler,
            "action": manifest.action.value,
            "outputs": dict(manifest.resolved_params.get("outputs") or {}),
        }
