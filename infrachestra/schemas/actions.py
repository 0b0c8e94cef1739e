"""
ActionKind enum defining the lifecycle operations a step can expose.

- apply   -> create, resume or adopt the step's resources
- destroy -> remove the step's resources (teardown and rollback)
- verify  -> read-only health check run after apply (and after destroy
             when declared as verify_destroyed)
"""

from enum import Enum


class ActionKind(str, Enum):
    """Lifecycle operations dispatched to action handlers."""
    APPLY = "apply"
    DESTROY = "destroy"
    VERIFY = "verify"
    VERIFY_DESTROYED = "verify_destroyed"

    @property
    def is_mutating(self) -> bool:
        """Whether the action changes external state."""
        return self in (ActionKind.APPLY, ActionKind.DESTROY)

    @classmethod
    def from_string(cls, value: str) -> "ActionKind":
        """Parse an ActionKind from its string value."""
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Unknown action: {value}")
