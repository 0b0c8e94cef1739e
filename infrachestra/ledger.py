"""
RunLedger - append-only record of a run's attempts and outcomes.

The ledger manages:
- RunRecords (created when execution starts, finalized when it ends)
- LedgerEntries (one per attempt, classification and rollback action)

The executor is the only writer. Entries are never mutated in place, so no
locking is needed. The "started" entry for an action is durable before the
action runs: a run whose last entry for a step is "started" crashed
mid-action and the step's external state is unknown.

Storage backends:
- In-memory (for testing)
- File-based (JSON Lines, one entry per line, fsynced per append)
"""

import json
import os
import random
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from infrachestra.schemas import (
    LedgerEntry,
    Outcome,
    Phase,
    RunRecord,
    StepState,
)


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(ALPHABET) for _ in range(16))

    return timestamp_part + random_part


class RunLedger(ABC):
    """
    Abstract base class for run ledgers.

    Implementations must provide methods to:
    - Store and retrieve RunRecords
    - Append and read LedgerEntries
    - List known runs
    """

    @abstractmethod
    def store_run(self, run: RunRecord) -> None:
        """Store or update a run record."""
        pass

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[RunRecord]:
        """Retrieve a run record by ID, None if unknown."""
        pass

    @abstractmethod
    def list_runs(self) -> list[str]:
        """Run ids known to the ledger, oldest first."""
        pass

    @abstractmethod
    def append(self, entry: LedgerEntry) -> None:
        """
        Durably append one entry.

        Must not return before the entry would survive a process crash.
        """
        pass

    @abstractmethod
    def entries(self, run_id: str) -> list[LedgerEntry]:
        """All entries of a run in append order."""
        pass

    def create_run(
        self,
        stack_id: str,
        mode: str,
        plan_order: Iterable[str],
        dry_run: bool = False,
    ) -> RunRecord:
        """Create and store a new run record with a fresh ULID."""
        run = RunRecord(
            run_id=generate_ulid(),
            stack_id=stack_id,
            mode=mode,
            plan_order=list(plan_order),
            dry_run=dry_run,
        )
        self.store_run(run)
        return run

    def record(
        self,
        run_id: str,
        step_id: str,
        phase: Phase,
        attempt: int,
        outcome: Outcome,
        message: str = "",
        state: Optional[StepState] = None,
    ) -> LedgerEntry:
        """Build the next entry for a run and append it."""
        entry = LedgerEntry(
            run_id=run_id,
            seq=self._next_seq(run_id),
            step_id=step_id,
            phase=phase,
            attempt=attempt,
            outcome=outcome,
            timestamp=datetime.now(timezone.utc),
            message=message,
            state=state,
        )
        self.append(entry)
        return entry

    def _next_seq(self, run_id: str) -> int:
        return len(self.entries(run_id))

    def interrupted_steps(self, run_id: str) -> list[str]:
        """
        Steps whose last entry is 'started'.

        These crashed (or were killed) while an action was in flight.
        """
        last: dict[str, LedgerEntry] = {}
        for entry in self.entries(run_id):
            last[entry.step_id] = entry
        return [sid for sid, entry in last.items() if entry.outcome == Outcome.STARTED]

    def applied_steps(self, run_id: str) -> list[str]:
        """Steps this run applied successfully, in the order they were applied."""
        applied: list[str] = []
        for entry in self.entries(run_id):
            if entry.phase == Phase.APPLY and entry.outcome == Outcome.SUCCEEDED:
                if entry.step_id not in applied:
                    applied.append(entry.step_id)
            elif entry.phase == Phase.ROLLBACK and entry.outcome == Outcome.ROLLED_BACK:
                if entry.step_id in applied:
                    applied.remove(entry.step_id)
        return applied


class InMemoryLedger(RunLedger):
    """
    In-memory implementation of RunLedger for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._runs: dict[str, RunRecord] = {}
        self._entries: dict[str, list[LedgerEntry]] = {}

    def store_run(self, run: RunRecord) -> None:
        self._runs[run.run_id] = run
        self._entries.setdefault(run.run_id, [])

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def list_runs(self) -> list[str]:
        return sorted(self._runs)

    def append(self, entry: LedgerEntry) -> None:
        self._entries.setdefault(entry.run_id, []).append(entry)

    def entries(self, run_id: str) -> list[LedgerEntry]:
        return list(self._entries.get(run_id, []))

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._runs.clear()
        self._entries.clear()


class FileLedger(RunLedger):
    """
    File-based implementation of RunLedger.

    Stores artifacts in a directory tree:
        ledger_dir/
            runs/
                {run_id}.json
            entries/
                {run_id}.jsonl
    """

    def __init__(self, ledger_dir: Path | str):
        self._ledger_dir = Path(ledger_dir)
        self._seq: dict[str, int] = {}
        self._ensure_dirs()

    @property
    def ledger_dir(self) -> Path:
        return self._ledger_dir

    def _ensure_dirs(self) -> None:
        """Create the directory structure if needed."""
        for subdir in ["runs", "entries"]:
            (self._ledger_dir / subdir).mkdir(parents=True, exist_ok=True)

    def _entries_path(self, run_id: str) -> Path:
        return self._ledger_dir / "entries" / f"{run_id}.jsonl"

    def store_run(self, run: RunRecord) -> None:
        run_path = self._ledger_dir / "runs" / f"{run.run_id}.json"
        tmp_path = run_path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(run.to_dict(), f, indent=2)
        os.replace(tmp_path, run_path)

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        run_path = self._ledger_dir / "runs" / f"{run_id}.json"
        if not run_path.exists():
            return None
        with open(run_path) as f:
            data = json.load(f)
        return RunRecord.from_dict(data)

    def list_runs(self) -> list[str]:
        return sorted(p.stem for p in (self._ledger_dir / "runs").glob("*.json"))

    def append(self, entry: LedgerEntry) -> None:
        path = self._entries_path(entry.run_id)
        with open(path, "a") as f:
            f.write(json.dumps(entry.to_dict()) + "\n")
            f.flush()
            os.fsync(f.fileno())
        self._seq[entry.run_id] = entry.seq + 1

    def entries(self, run_id: str) -> list[LedgerEntry]:
        path = self._entries_path(run_id)
        if not path.exists():
            return []
        result = []
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                result.append(LedgerEntry.from_dict(json.loads(line)))
        return result

    def _next_seq(self, run_id: str) -> int:
        if run_id not in self._seq:
            self._seq[run_id] = len(self.entries(run_id))
        return self._seq[run_id]
