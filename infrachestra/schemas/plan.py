"""
Plan schema - a dependency-ordered sequence of steps for one run.

Plans are produced by infrachestra.planner.build_plan and are immutable.
Invariants (enforced by the planner):
- no cycles
- every dependency id resolves to a step in the same plan
- each step appears after all of its dependencies
"""

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from .step_def import StepDef


@dataclass(frozen=True)
class Plan:
    """
    An ordered, immutable sequence of StepDefs.

    Attributes:
        stack_id: The stack this plan was built from
        steps: Steps in topological order
    """
    stack_id: str
    steps: tuple[StepDef, ...] = field(default_factory=tuple)

    def __post_init__(self):
        seen: set[str] = set()
        for step in self.steps:
            for dep in step.depends_on:
                if dep not in seen:
                    raise ValueError(
                        f"Plan order violates dependency: '{step.step_id}' before '{dep}'"
                    )
            seen.add(step.step_id)

    def __iter__(self) -> Iterator[StepDef]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def order(self) -> tuple[str, ...]:
        """Step ids in execution order."""
        return tuple(s.step_id for s in self.steps)

    def get(self, step_id: str) -> Optional[StepDef]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def index(self, step_id: str) -> int:
        return self.order.index(step_id)

    def reversed(self) -> tuple[StepDef, ...]:
        """Steps in teardown order (dependents before their dependencies)."""
        return tuple(reversed(self.steps))

    def dependents_of(self, step_id: str) -> tuple[str, ...]:
        """Ids of steps that directly depend on step_id."""
        return tuple(s.step_id for s in self.steps if step_id in s.depends_on)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stack_id": self.stack_id,
            "order": list(self.order),
            "steps": [s.to_dict() for s in self.steps],
        }
