"""
Error classes for infrachestra.

These error types enable retry classification at execution boundaries:
- TransientError: Safe to retry (throttling, network issues, API timeouts)
- PermanentError: Do not retry (validation errors, permission denied)

Handlers and probes raise these errors to signal retry behavior.
The executor catches at the boundary for retry/backoff and ledger recording.

Orchestration errors (plan-build, drift, rollback) carry the step ids they
concern so the CLI can report the precise halting step.
"""

from typing import Iterable, Optional


class InfrachestraError(Exception):
    """Base exception for infrachestra."""
    pass


class TransientError(InfrachestraError):
    """
    Transient error - safe to retry.

    Examples:
    - Rate limit exceeded / request throttled
    - Network timeout, connection reset
    - Control plane temporarily unavailable

    The executor retries operations that raise TransientError
    according to the configured RetryPolicy.
    """
    pass


class PermanentError(InfrachestraError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid configuration or parameters
    - Permission denied
    - Missing executable

    The executor fails the step immediately, without retry,
    when PermanentError is raised.
    """
    pass


class ConfigError(InfrachestraError):
    """Configuration validation error."""
    pass


class PlanError(InfrachestraError):
    """Raised when a step set cannot be ordered into a Plan."""
    pass


class CycleDetected(PlanError):
    """The step set contains one or more dependency cycles."""

    def __init__(self, ids: Iterable[str]):
        self.ids = tuple(sorted(ids))
        super().__init__(f"Dependency cycle detected among steps: {', '.join(self.ids)}")


class UnknownDependency(PlanError):
    """A step depends on an id that is not part of the step set."""

    def __init__(self, step_id: str, dependency: str):
        self.step_id = step_id
        self.dependency = dependency
        super().__init__(f"Step '{step_id}' depends on unknown step '{dependency}'")


class ReconcileUnavailable(TransientError):
    """The external system of record could not be queried (timeout, auth, outage)."""

    def __init__(self, step_id: str, message: str):
        self.step_id = step_id
        super().__init__(f"Cannot reconcile step '{step_id}': {message}")


class DriftDetected(InfrachestraError):
    """
    The live resource carries a different idempotency key than the step.

    Never auto-resolved: the run halts pending operator intervention.
    """

    def __init__(self, step_id: str, expected_key: str, recorded_key: Optional[str]):
        self.step_id = step_id
        self.expected_key = expected_key
        self.recorded_key = recorded_key
        super().__init__(
            f"Drift detected on step '{step_id}': recorded key {recorded_key!r} "
            f"does not match desired key {expected_key!r}"
        )


class ActionFailed(InfrachestraError):
    """A step action failed (after retries when transient)."""

    def __init__(self, step_id: str, action: str, transient: bool, cause: Optional[BaseException] = None):
        self.step_id = step_id
        self.action = action
        self.transient = transient
        self.cause = cause
        kind = "transient" if transient else "permanent"
        super().__init__(f"Step '{step_id}' {action} failed ({kind}): {cause}")


class RollbackIncomplete(InfrachestraError):
    """Rollback could not unwind every step; these are left in an unknown state."""

    def __init__(self, step_ids: Iterable[str]):
        self.step_ids = tuple(step_ids)
        super().__init__(
            f"Rollback incomplete, steps left in unknown state: {', '.join(self.step_ids)}"
        )


class ConfirmationRequired(InfrachestraError):
    """Teardown was requested without the exact operator confirmation token."""
    pass


class RunCancelled(InfrachestraError):
    """The run was cancelled by the operator or exceeded its timeout budget."""
    pass
