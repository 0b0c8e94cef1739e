"""
StepDef / StackDef schemas - the declarative lifecycle definition.

A StackDef is the static, version-controlled description of an
infrastructure stack: a set of named steps, their dependencies, the handler
that performs their actions and the desired-state inputs that identify them.
The planner orders StackDef steps into a Plan; nothing here executes code.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from infrachestra.errors import InfrachestraError
from infrachestra.idem_keys import desired_state_key

from .actions import ActionKind


class DefinitionError(InfrachestraError):
    """Raised when a step or stack definition is malformed."""
    pass


@dataclass(frozen=True)
class ActionSpec:
    """
    Parameters for one lifecycle action of a step.

    The params are opaque to the planner and reconciler; they are interpreted
    by the step's handler (for the command handler: command, cwd, env,
    timeout_s, outputs).
    """
    kind: ActionKind
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.params)


@dataclass(frozen=True)
class ProbeSpec:
    """
    How the reconciler queries the external system of record for a step.

    kind:
        - "record": the state record store is the system of record (default)
        - "command": run a query command, see reconciler.CommandProbe
        - any other name registered with the Reconciler
    """
    kind: str = "record"
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **self.params}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ProbeSpec":
        if not data:
            return cls()
        params = {k: v for k, v in data.items() if k != "kind"}
        return cls(kind=data.get("kind", "record"), params=params)


@dataclass(frozen=True)
class StepDef:
    """
    A named unit of lifecycle work.

    Immutable once defined; the plan is built from these.

    Attributes:
        step_id: Unique identifier within the stack
        label: Human readable description
        depends_on: Ordered ids of steps that must be applied first
        handler: Name of the action handler (the step's action reference)
        actions: Parameters per ActionKind
        inputs: Declared desired-state inputs (hashed into idempotency_key)
        probe: How the reconciler observes the step's resources
    """
    step_id: str
    label: str = ""
    depends_on: tuple[str, ...] = field(default_factory=tuple)
    handler: str = "noop"
    actions: dict[ActionKind, ActionSpec] = field(default_factory=dict)
    inputs: dict[str, Any] = field(default_factory=dict)
    probe: ProbeSpec = field(default_factory=ProbeSpec)

    def __post_init__(self):
        if not self.step_id or not isinstance(self.step_id, str):
            raise DefinitionError(f"Invalid step id: {self.step_id!r}")
        if len(set(self.depends_on)) != len(self.depends_on):
            raise DefinitionError(f"Step '{self.step_id}': duplicate dependencies {list(self.depends_on)}")
        for kind, spec in self.actions.items():
            if spec.kind != kind:
                raise DefinitionError(
                    f"Step '{self.step_id}': action registered as '{kind.value}' "
                    f"but declares '{spec.kind.value}'"
                )

    @property
    def idempotency_key(self) -> str:
        """Deterministic hash of the step's declared desired-state inputs."""
        apply_spec = self.actions.get(ActionKind.APPLY)
        return desired_state_key(
            self.handler,
            self.inputs,
            apply_spec.params if apply_spec else None,
        )

    @property
    def display_name(self) -> str:
        return self.label or self.step_id

    def has_action(self, kind: ActionKind) -> bool:
        return kind in self.actions

    def action(self, kind: ActionKind) -> Optional[ActionSpec]:
        return self.actions.get(kind)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        result: dict[str, Any] = {
            "step_id": self.step_id,
            "handler": self.handler,
            "depends_on": list(self.depends_on),
        }
        if self.label:
            result["label"] = self.label
        if self.actions:
            result["actions"] = {k.value: spec.to_dict() for k, spec in self.actions.items()}
        if self.inputs:
            result["inputs"] = self.inputs
        if self.probe != ProbeSpec():
            result["probe"] = self.probe.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], step_id: Optional[str] = None) -> "StepDef":
        """
        Deserialize from dictionary.

        Accepts either `handler` or the shorthand `action` (a handler name)
        as the action reference, and `depends_on` or `dependencies`.
        """
        if data is None:
            data = {}
        sid = step_id or data.get("step_id") or data.get("id")

        handler = data.get("handler")
        action_ref = data.get("action")
        if handler is None and isinstance(action_ref, str):
            handler = action_ref

        deps = data.get("depends_on", data.get("dependencies", ())) or ()
        if isinstance(deps, str):
            deps = (deps,)

        actions: dict[ActionKind, ActionSpec] = {}
        for name, params in (data.get("actions") or {}).items():
            try:
                kind = ActionKind.from_string(name)
            except ValueError as e:
                raise DefinitionError(f"Step '{sid}': {e}") from e
            actions[kind] = ActionSpec(kind=kind, params=dict(params or {}))

        return cls(
            step_id=sid,
            label=data.get("label", ""),
            depends_on=tuple(deps),
            handler=handler or "noop",
            actions=actions,
            inputs=dict(data.get("inputs") or {}),
            probe=ProbeSpec.from_dict(data.get("probe")),
        )


@dataclass(frozen=True)
class StackDef:
    """
    A stack definition - the declarative step set for one environment.

    Attributes:
        stack_id: Unique identifier for the stack
        version: Version of the definition
        description: Free text
        variables: Stack-level placeholder values (merged over config vars)
        steps: Step definitions, in declaration order
    """
    stack_id: str
    version: str = "0.0.0"
    description: str = ""
    variables: dict[str, Any] = field(default_factory=dict)
    steps: tuple[StepDef, ...] = field(default_factory=tuple)

    def __post_init__(self):
        step_ids = [s.step_id for s in self.steps]
        if len(step_ids) != len(set(step_ids)):
            duplicates = sorted({sid for sid in step_ids if step_ids.count(sid) > 1})
            raise DefinitionError(f"Duplicate step IDs: {duplicates}")

    def step_map(self) -> dict[str, StepDef]:
        return {s.step_id: s for s in self.steps}

    def get_step(self, step_id: str) -> Optional[StepDef]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "stack_id": self.stack_id,
            "version": self.version,
            "steps": {s.step_id: {k: v for k, v in s.to_dict().items() if k != "step_id"} for s in self.steps},
        }
        if self.description:
            result["description"] = self.description
        if self.variables:
            result["variables"] = self.variables
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StackDef":
        """
        Deserialize from dictionary.

        `steps` may be a mapping of step id -> definition or a list of
        definitions carrying their own `step_id`.
        """
        if "stack_id" not in data:
            raise DefinitionError("Stack definition missing 'stack_id'")

        raw_steps = data.get("steps") or {}
        if isinstance(raw_steps, Mapping):
            steps = tuple(StepDef.from_dict(v, step_id=k) for k, v in raw_steps.items())
        else:
            steps = tuple(StepDef.from_dict(v) for v in raw_steps)

        return cls(
            stack_id=data["stack_id"],
            version=str(data.get("version", "0.0.0")),
            description=data.get("description", ""),
            variables=dict(data.get("variables") or {}),
            steps=steps,
        )
