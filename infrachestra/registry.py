"""
StackRegistry - Load and validate StackDefs from storage.

The registry provides:
- Loading StackDefs from YAML or JSON files in a definitions directory
- Version support (optional, default="latest")
- Caching loaded definitions
- Validation of StackDef structure
- Content-addressable lookup via SHA256 hash
- Rendering ${name} placeholders so idempotency keys hash concrete values
"""

import hashlib
import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from infrachestra.errors import InfrachestraError
from infrachestra.handlers.command import expand
from infrachestra.schemas import ActionSpec, ProbeSpec, StackDef


class StackNotFoundError(InfrachestraError):
    """Raised when a stack definition is not found."""
    pass


class StackValidationError(InfrachestraError):
    """Raised when a stack definition fails validation."""
    pass


def bundled_stacks_dir() -> Path:
    """Directory of the stacks shipped with the package."""
    return Path(__file__).parent / "stacks"


def render(stack: StackDef, variables: Mapping[str, Any]) -> StackDef:
    """
    Fill ${name} placeholders in step inputs, action params and probes.

    Stack variables override the given context. Names that are unknown at
    render time (e.g. ${run_id}, ${existing_id}) are left for the handler.
    """
    stack_variables = expand(stack.variables, variables)
    context = {**variables, **stack_variables}
    steps = []
    for step in stack.steps:
        actions = {
            kind: ActionSpec(kind=kind, params=expand(spec.params, context))
            for kind, spec in step.actions.items()
        }
        steps.append(replace(
            step,
            actions=actions,
            inputs=expand(step.inputs, context),
            probe=ProbeSpec(kind=step.probe.kind, params=expand(step.probe.params, context)),
        ))
    return replace(stack, variables=stack_variables, steps=tuple(steps))


class StackRegistry:
    """
    Registry for loading and caching StackDefs.

    Loads stack definitions from files organized in a directory tree.
    Supports both flat and nested directory structures.

    Example directory structure:
        stacks/
            secure-supply-chain.yaml
            staging/
                sandbox.yaml
    """

    def __init__(self, definitions_dir: Path | str):
        """
        Initialize the registry.

        Args:
            definitions_dir: Path to directory containing stack definition files
        """
        self._definitions_dir = Path(definitions_dir)
        self._cache: dict[str, StackDef] = {}
        self._hash_index: dict[str, str] = {}  # sha256 -> stack_id

    @property
    def definitions_dir(self) -> Path:
        """Get the definitions directory path."""
        return self._definitions_dir

    def load(self, stack_id: str, version: Optional[str] = None) -> StackDef:
        """
        Load a StackDef by ID and optional version.

        Searches for {stack_id}.yaml, .yml or .json in the definitions
        directory tree. YAML files are preferred over JSON when both exist.
        Results are cached for subsequent calls.

        Raises:
            StackNotFoundError: If the definition file doesn't exist
                                or if version doesn't match
            StackValidationError: If the definition is invalid
        """
        if version is None or version == "latest":
            if stack_id in self._cache:
                return self._cache[stack_id]

        def_path = self._find_definition(stack_id)
        if def_path is None:
            raise StackNotFoundError(f"Stack definition not found: {stack_id}")

        try:
            data = self._load_file(def_path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise StackValidationError(f"Failed to load {def_path}: {e}") from e

        if not isinstance(data, dict):
            raise StackValidationError(f"Invalid StackDef in {def_path}: expected a mapping")

        try:
            stack_def = StackDef.from_dict(data)
        except (InfrachestraError, TypeError, ValueError, AttributeError) as e:
            raise StackValidationError(f"Invalid StackDef in {def_path}: {e}") from e

        if stack_def.stack_id != stack_id:
            raise StackValidationError(
                f"Stack ID mismatch: file is '{stack_id}' but stack_id is '{stack_def.stack_id}'"
            )

        if version is not None and version != "latest":
            if stack_def.version != version:
                raise StackNotFoundError(
                    f"Version mismatch for {stack_id}: requested '{version}', found '{stack_def.version}'"
                )

        self._cache[stack_id] = stack_def
        self._hash_index[self.compute_hash(stack_def)] = stack_id

        return stack_def

    def _load_file(self, path: Path) -> Any:
        suffix = path.suffix.lower()
        with open(path) as f:
            if suffix in (".yaml", ".yml"):
                return yaml.safe_load(f)
            elif suffix == ".json":
                return json.load(f)
            else:
                raise ValueError(f"Unsupported file format: {suffix}")

    def load_by_hash(self, sha256: str) -> Optional[StackDef]:
        """Return a cached StackDef by its content hash, or None."""
        stack_id = self._hash_index.get(sha256)
        if stack_id is None:
            return None
        return self._cache.get(stack_id)

    def list_stacks(self) -> list[str]:
        """Sorted stack IDs found in the definitions directory."""
        if not self._definitions_dir.exists():
            return []

        stack_ids = set()
        for ext in ["*.yaml", "*.yml", "*.json"]:
            for f in self._definitions_dir.glob(f"**/{ext}"):
                stack_ids.add(f.stem)

        return sorted(stack_ids)

    def _find_definition(self, stack_id: str) -> Optional[Path]:
        # YAML first, then JSON
        for ext in [".yaml", ".yml", ".json"]:
            filename = f"{stack_id}{ext}"

            root_path = self._definitions_dir / filename
            if root_path.exists():
                return root_path

            matches = sorted(self._definitions_dir.glob(f"**/{filename}"))
            if matches:
                return matches[0]

        return None

    @staticmethod
    def compute_hash(stack_def: StackDef) -> str:
        """
        Compute SHA256 hash of a StackDef for content addressing.

        Uses canonical JSON serialization (sorted keys, no whitespace)
        to ensure consistent hashing.
        """
        canonical = json.dumps(stack_def.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def clear_cache(self) -> None:
        """Clear the definition cache."""
        self._cache.clear()
        self._hash_index.clear()
