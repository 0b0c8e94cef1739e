"""Tests for infrachestra.ledger module.

Tests InMemoryLedger and FileLedger: run records, append-only entries,
sequence numbering and the derived views used by rollback and the CLI.
"""

import json

import pytest

from infrachestra.ledger import FileLedger, InMemoryLedger, generate_ulid
from infrachestra.schemas import LedgerEntry, Outcome, Phase, RunRecord, StepState


@pytest.fixture(params=["memory", "file"])
def any_ledger(request, tmp_path):
    if request.param == "memory":
        return InMemoryLedger()
    return FileLedger(tmp_path / "ledger")


class TestGenerateUlid:

    def test_length_and_alphabet(self):
        ulid = generate_ulid()
        assert len(ulid) == 26
        assert set(ulid) <= set("0123456789ABCDEFGHJKMNPQRSTVWXYZ")

    def test_unique(self):
        assert len({generate_ulid() for _ in range(100)}) == 100


class TestRunLedger:
    """Behavior shared by both backends."""

    def test_create_run_is_stored(self, any_ledger):
        run = any_ledger.create_run("stack", "apply", ["a", "b"])

        stored = any_ledger.get_run(run.run_id)
        assert stored.stack_id == "stack"
        assert stored.plan_order == ["a", "b"]
        assert stored.status == "running"
        assert run.run_id in any_ledger.list_runs()

    def test_get_unknown_run(self, any_ledger):
        assert any_ledger.get_run("nope") is None
        assert any_ledger.entries("nope") == []

    def test_record_assigns_sequence(self, any_ledger):
        run = any_ledger.create_run("stack", "apply", ["a"])
        first = any_ledger.record(run.run_id, "a", Phase.APPLY, 1, Outcome.STARTED)
        second = any_ledger.record(run.run_id, "a", Phase.APPLY, 1, Outcome.SUCCEEDED, "done")

        assert (first.seq, second.seq) == (0, 1)
        entries = any_ledger.entries(run.run_id)
        assert [e.outcome for e in entries] == [Outcome.STARTED, Outcome.SUCCEEDED]
        assert entries[1].message == "done"

    def test_entries_keep_reconciled_state(self, any_ledger):
        run = any_ledger.create_run("stack", "apply", ["a"])
        any_ledger.record(run.run_id, "a", Phase.RECONCILE, 1, Outcome.SUCCEEDED, state=StepState.PARTIAL)

        assert any_ledger.entries(run.run_id)[0].state == StepState.PARTIAL

    def test_interrupted_steps(self, any_ledger):
        run = any_ledger.create_run("stack", "apply", ["a", "b"])
        any_ledger.record(run.run_id, "a", Phase.APPLY, 1, Outcome.STARTED)
        any_ledger.record(run.run_id, "a", Phase.APPLY, 1, Outcome.SUCCEEDED)
        any_ledger.record(run.run_id, "b", Phase.APPLY, 1, Outcome.STARTED)

        assert any_ledger.interrupted_steps(run.run_id) == ["b"]

    def test_applied_steps_excludes_rolled_back(self, any_ledger):
        run = any_ledger.create_run("stack", "apply", ["a", "b"])
        for sid in ("a", "b"):
            any_ledger.record(run.run_id, sid, Phase.APPLY, 1, Outcome.SUCCEEDED)
        any_ledger.record(run.run_id, "b", Phase.ROLLBACK, 0, Outcome.ROLLED_BACK)

        assert any_ledger.applied_steps(run.run_id) == ["a"]

    def test_finished_run_round_trips(self, any_ledger):
        run = any_ledger.create_run("stack", "destroy", ["b", "a"], dry_run=True)
        run.finish("failed", halted_step="b", halt_reason="boom")
        any_ledger.store_run(run)

        stored = any_ledger.get_run(run.run_id)
        assert stored.status == "failed"
        assert stored.halted_step == "b"
        assert stored.halt_reason == "boom"
        assert stored.dry_run
        assert stored.duration_ms is not None


class TestFileLedger:
    """JSON Lines persistence."""

    def test_one_json_object_per_line(self, tmp_path):
        ledger = FileLedger(tmp_path)
        run = ledger.create_run("stack", "apply", ["a"])
        ledger.record(run.run_id, "a", Phase.APPLY, 1, Outcome.STARTED)
        ledger.record(run.run_id, "a", Phase.APPLY, 1, Outcome.FAILED_TRANSIENT, "throttled")

        lines = (tmp_path / "entries" / f"{run.run_id}.jsonl").read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["outcome"] == "failed_transient"
        assert (tmp_path / "runs" / f"{run.run_id}.json").exists()

    def test_sequence_continues_across_instances(self, tmp_path):
        first = FileLedger(tmp_path)
        run = first.create_run("stack", "apply", ["a"])
        first.record(run.run_id, "a", Phase.APPLY, 1, Outcome.STARTED)

        second = FileLedger(tmp_path)
        entry = second.record(run.run_id, "a", Phase.APPLY, 1, Outcome.SUCCEEDED)

        assert entry.seq == 1
        assert [e.seq for e in second.entries(run.run_id)] == [0, 1]

    def test_entry_round_trip_preserves_fields(self, tmp_path):
        ledger = FileLedger(tmp_path)
        run = ledger.create_run("stack", "apply", ["a"])
        written = ledger.record(run.run_id, "a", Phase.RECONCILE, 2, Outcome.DRIFT_DETECTED, "drift", StepState.CONFLICTING)

        read = ledger.entries(run.run_id)[0]
        assert read == written

    def test_run_record_from_dict(self):
        run = RunRecord(run_id="01ABC", stack_id="s")
        assert RunRecord.from_dict(run.to_dict()).run_id == "01ABC"


class TestLedgerEntry:

    def test_to_dict_omits_empty_state(self, ledger):
        run = ledger.create_run("s", "apply", [])
        entry = ledger.record(run.run_id, "*", Phase.RUN, 0, Outcome.STARTED)
        data = entry.to_dict()
        assert data["phase"] == "run"
        assert LedgerEntry.from_dict(data).outcome == Outcome.STARTED
