"""
Planner - order a step set into a Plan.

The planner is a pure function of its input:
- validates that every dependency resolves (UnknownDependency)
- orders steps with Kahn's algorithm, breaking ties lexicographically by
  step id so repeated runs over the same step set produce the same order
- reports every id that lies on a dependency cycle (CycleDetected)

Input is a mapping of step id -> StepDef, step id -> plain dict of the
form {label, action|handler, depends_on, ...} as found in stack files, or
step id -> bare list of dependency ids.
"""

import heapq
import logging
from typing import Any, Mapping, Sequence, Union

from infrachestra.errors import CycleDetected, UnknownDependency
from infrachestra.schemas import DefinitionError, Plan, StackDef, StepDef

logger = logging.getLogger(__name__)


StepSource = Mapping[str, Union[StepDef, Mapping[str, Any], Sequence[str]]]


def _coerce_steps(steps: StepSource) -> dict[str, StepDef]:
    """Normalize the planner input into StepDefs keyed by id."""
    result: dict[str, StepDef] = {}
    for step_id, value in steps.items():
        if isinstance(value, StepDef):
            if value.step_id != step_id:
                raise ValueError(f"Step keyed as '{step_id}' has step_id '{value.step_id}'")
            result[step_id] = value
        elif value is None or isinstance(value, Mapping):
            result[step_id] = StepDef.from_dict(value or {}, step_id=step_id)
        elif isinstance(value, (list, tuple)):
            # bare dependency list: {"cluster": ["network"]}
            result[step_id] = StepDef.from_dict({"depends_on": list(value)}, step_id=step_id)
        else:
            raise DefinitionError(
                f"Step '{step_id}' must be a mapping or a list of dependencies, "
                f"got {type(value).__name__}"
            )
    return result


def _check_dependencies(steps: Mapping[str, StepDef]) -> None:
    for step_id in sorted(steps):
        for dep in steps[step_id].depends_on:
            if dep not in steps:
                raise UnknownDependency(step_id, dep)


def _cycle_members(steps: Mapping[str, StepDef], candidates: set[str]) -> set[str]:
    """
    Return the ids among candidates that lie on a cycle.

    Uses Tarjan's strongly connected components over the candidate subgraph:
    members of components with more than one node, plus self-loops.
    Iterative to avoid recursion limits on long chains.
    """
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    members: set[str] = set()
    counter = 0

    def successors(node: str) -> list[str]:
        return sorted(d for d in steps[node].depends_on if d in candidates)

    for root in sorted(candidates):
        if root in index_of:
            continue
        work = [(root, iter(successors(root)))]
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)

        while work:
            node, children = work[-1]
            advanced = False
            for child in children:
                if child not in index_of:
                    index_of[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(successors(child))))
                    advanced = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
            if advanced:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])

            if lowlink[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in steps[node].depends_on:
                    members.update(component)

    return members


def topological_order(steps: Mapping[str, StepDef]) -> list[str]:
    """
    Deterministic topological order of the step ids.

    Raises:
        UnknownDependency: If a dependency id is not in the step set
        CycleDetected: If the step set contains a cycle
    """
    _check_dependencies(steps)

    remaining = {sid: len(set(step.depends_on)) for sid, step in steps.items()}
    dependents: dict[str, list[str]] = {sid: [] for sid in steps}
    for sid, step in steps.items():
        for dep in set(step.depends_on):
            dependents[dep].append(sid)

    ready = [sid for sid, count in remaining.items() if count == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        sid = heapq.heappop(ready)
        order.append(sid)
        for child in dependents[sid]:
            remaining[child] -= 1
            if remaining[child] == 0:
                heapq.heappush(ready, child)

    if len(order) != len(steps):
        unresolved = set(steps) - set(order)
        raise CycleDetected(_cycle_members(steps, unresolved))

    return order


def build_plan(steps: Union[StepSource, StackDef], stack_id: str = "adhoc") -> Plan:
    """
    Build a Plan from a step set.

    Args:
        steps: A StackDef, or a mapping of step id -> StepDef / definition dict /
            list of dependency ids
        stack_id: Stack identifier for the plan (ignored for StackDef input)

    Returns:
        Plan with steps in deterministic topological order

    Raises:
        UnknownDependency: If a dependency id does not resolve
        CycleDetected: If the dependency graph has a cycle
        DefinitionError: If a step value is neither a mapping nor a dependency list
    """
    if isinstance(steps, StackDef):
        stack_id = steps.stack_id
        step_map = steps.step_map()
    else:
        step_map = _coerce_steps(steps)

    order = topological_order(step_map)
    logger.debug(f"Plan for {stack_id}: {' -> '.join(order)}")
    return Plan(stack_id=stack_id, steps=tuple(step_map[sid] for sid in order))
