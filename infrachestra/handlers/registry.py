"""
Handler Registry for dispatching step actions to handlers.

The registry maps handler names (the `handler` of a StepDef) to Handler
instances, providing the central dispatch mechanism for the Executor.
"""

from typing import Any

from infrachestra.credentials import CredentialContext
from infrachestra.errors import PermanentError
from infrachestra.schemas import StepManifest

from .base import Handler, NoOpHandler
from .command import CommandHandler


class HandlerRegistry:
    """
    Registry for handler dispatch by name.

    Usage:
        registry = HandlerRegistry()
        registry.register("command", CommandHandler())

        # Dispatch a manifest
        result = registry.dispatch(manifest, credentials)

        # Or use factory with defaults
        registry = HandlerRegistry.create_default()
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        """Register (or replace) the handler for a name."""
        self._handlers[name] = handler

    def get(self, name: str) -> Handler:
        """
        Get the handler for a name.

        Raises:
            KeyError: If no handler is registered under that name
        """
        if name not in self._handlers:
            registered = sorted(self._handlers)
            raise KeyError(f"No handler registered for: {name}. Registered: {registered}")
        return self._handlers[name]

    def has(self, name: str) -> bool:
        return name in self._handlers

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(self, manifest: StepManifest, credentials: CredentialContext) -> dict[str, Any]:
        """
        Dispatch a manifest to its handler.

        An unknown handler name is a permanent failure of the step.
        """
        try:
            handler = self.get(manifest.handler)
        except KeyError as e:
            raise PermanentError(str(e)) from e
        return handler.execute(manifest, credentials)

    @classmethod
    def create_default(cls) -> "HandlerRegistry":
        """Registry with the built-in `command` and `noop` handlers."""
        registry = cls()
        registry.register("command", CommandHandler())
        registry.register("noop", NoOpHandler())
        return registry

    @classmethod
    def create_noop(cls, names: tuple[str, ...] = ("command", "noop")) -> "HandlerRegistry":
        """Registry that answers every given name with a NoOpHandler."""
        registry = cls()
        noop = NoOpHandler()
        for name in names:
            registry.register(name, noop)
        return registry
