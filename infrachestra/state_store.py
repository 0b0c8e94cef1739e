"""
StateRecordStore - last recorded desired state per step.

After a successful apply the executor records the step's idempotency key,
the resource identifier reported by the handler and the handler outputs.
The reconciler compares the recorded key with the step's current key to
classify drift; @run.<step>.* references fall back to recorded outputs for
steps skipped as already applied.

Storage backends:
- In-memory (for testing)
- File-based (one JSON document per stack, replaced atomically)
"""

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from infrachestra.schemas import StateRecord


class StateRecordStore(ABC):
    """Abstract base class for state record storage."""

    @abstractmethod
    def get(self, step_id: str) -> Optional[StateRecord]:
        """Return the record for a step, None if nothing is recorded."""
        pass

    @abstractmethod
    def put(self, record: StateRecord) -> None:
        """Store or replace the record for record.step_id."""
        pass

    @abstractmethod
    def delete(self, step_id: str) -> None:
        """Remove the record for a step (no-op if absent)."""
        pass

    @abstractmethod
    def all(self) -> dict[str, StateRecord]:
        """All records keyed by step id."""
        pass


class InMemoryStateStore(StateRecordStore):
    """In-memory implementation for testing."""

    def __init__(self, records: Optional[dict[str, StateRecord]] = None):
        self._records: dict[str, StateRecord] = dict(records or {})

    def get(self, step_id: str) -> Optional[StateRecord]:
        return self._records.get(step_id)

    def put(self, record: StateRecord) -> None:
        self._records[record.step_id] = record

    def delete(self, step_id: str) -> None:
        self._records.pop(step_id, None)

    def all(self) -> dict[str, StateRecord]:
        return dict(self._records)


class FileStateStore(StateRecordStore):
    """
    File-based implementation.

    Layout:
        state_dir/
            {stack_id}.json   {"step_id": {...StateRecord...}, ...}
    """

    def __init__(self, state_dir: Path | str, stack_id: str):
        self._state_dir = Path(state_dir)
        self._stack_id = stack_id
        self._state_dir.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._state_dir / f"{self._stack_id}.json"

    def _load(self) -> dict[str, StateRecord]:
        if not self.path.exists():
            return {}
        with open(self.path) as f:
            data = json.load(f)
        return {sid: StateRecord.from_dict(rec) for sid, rec in data.items()}

    def _save(self, records: dict[str, StateRecord]) -> None:
        tmp_path = self.path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump({sid: rec.to_dict() for sid, rec in sorted(records.items())}, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def get(self, step_id: str) -> Optional[StateRecord]:
        return self._load().get(step_id)

    def put(self, record: StateRecord) -> None:
        records = self._load()
        records[record.step_id] = record
        self._save(records)

    def delete(self, step_id: str) -> None:
        records = self._load()
        if step_id in records:
            del records[step_id]
            self._save(records)

    def all(self) -> dict[str, StateRecord]:
        return self._load()
