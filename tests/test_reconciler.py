"""Tests for infrachestra.reconciler module.

Covers the four-way classification, the record probe, and the command probe
run against small Python one-liners standing in for cloud CLIs.
"""

import sys

import pytest

from infrachestra.credentials import CredentialContext
from infrachestra.errors import PermanentError, ReconcileUnavailable
from infrachestra.reconciler import CommandProbe, Reconciler, StateProbe, classify
from infrachestra.schemas import (
    ActionKind,
    ActionSpec,
    Observation,
    ProbeSpec,
    StateRecord,
    StepDef,
    StepState,
)


def _py(code):
    return [sys.executable, "-c", code]


def _command_step(command, components=None, absent_codes=None, **probe_params):
    params = {"command": command, **probe_params}
    if components is not None:
        params["components"] = components
    if absent_codes is not None:
        params["absent_codes"] = absent_codes
    return StepDef(
        step_id="cluster",
        handler="command",
        actions={ActionKind.APPLY: ActionSpec(ActionKind.APPLY, {"command": ["true"]})},
        inputs={"name": "demo"},
        probe=ProbeSpec(kind="command", params=params),
    )


class TestClassify:

    def test_absent(self, make_step):
        result = classify(make_step("network"), Observation.absent())
        assert result.state == StepState.ABSENT
        assert result.apply_mode == "create"

    def test_applied(self, make_step):
        step = make_step("network")
        obs = Observation(found=True, recorded_key=step.idempotency_key, existing_id="vpc-1")
        result = classify(step, obs)
        assert result.state == StepState.APPLIED
        assert result.existing_id == "vpc-1"

    def test_conflicting_on_key_mismatch(self, make_step):
        step = make_step("network")
        result = classify(step, Observation(found=True, recorded_key="sha256:other"))
        assert result.state == StepState.CONFLICTING
        assert result.recorded_key == "sha256:other"

    def test_mismatch_wins_over_incomplete(self, make_step):
        step = make_step("network")
        obs = Observation(found=True, complete=False, recorded_key="sha256:other", missing=("nat",))
        assert classify(step, obs).state == StepState.CONFLICTING

    def test_partial_resume(self, make_step):
        step = make_step("network")
        obs = Observation(found=True, complete=False, recorded_key=step.idempotency_key, missing=("nat",))
        result = classify(step, obs)
        assert result.state == StepState.PARTIAL
        assert result.missing == ("nat",)
        assert result.apply_mode == "resume"
        assert "nat" in result.message

    def test_unrecorded_resource_is_adopted(self, make_step):
        result = classify(make_step("network"), Observation(found=True, existing_id="vpc-9"))
        assert result.state == StepState.PARTIAL
        assert result.apply_mode == "import"
        assert result.existing_id == "vpc-9"

    def test_unrecorded_without_id_resumes(self, make_step):
        result = classify(make_step("network"), Observation(found=True))
        assert result.apply_mode == "resume"

    def test_to_dict(self, make_step):
        data = classify(make_step("network"), Observation.absent("gone")).to_dict()
        assert data == {"step_id": "network", "state": "absent", "message": "gone"}


class TestRecordProbe:

    def test_no_record_is_absent(self, state_store, credentials, make_step):
        reconciler = Reconciler(state_store)
        assert reconciler.reconcile(make_step("network"), credentials).state == StepState.ABSENT

    def test_matching_record_is_applied(self, state_store, credentials, make_step):
        step = make_step("network")
        state_store.put(StateRecord("network", step.idempotency_key, existing_id="vpc-1"))

        result = Reconciler(state_store).reconcile(step, credentials)
        assert result.state == StepState.APPLIED
        assert result.existing_id == "vpc-1"

    def test_incomplete_record_is_partial(self, state_store, credentials, make_step):
        step = make_step("network")
        state_store.put(StateRecord("network", step.idempotency_key, complete=False))

        result = Reconciler(state_store).reconcile(step, credentials)
        assert result.state == StepState.PARTIAL
        assert result.apply_mode == "resume"

    def test_changed_definition_is_conflicting(self, state_store, credentials, make_step):
        state_store.put(StateRecord("network", make_step("network", cidr="10.0.0.0/16").idempotency_key))

        result = Reconciler(state_store).reconcile(make_step("network", cidr="10.1.0.0/16"), credentials)
        assert result.state == StepState.CONFLICTING


class TestCommandProbe:

    def test_found_uses_stdout_as_id(self, state_store, credentials):
        step = _command_step(_py("print('arn:aws:eks:cluster/demo')"))
        result = Reconciler(state_store).reconcile(step, credentials)

        assert result.state == StepState.PARTIAL
        assert result.apply_mode == "import"
        assert result.existing_id == "arn:aws:eks:cluster/demo"

    def test_absent_exit_code(self, state_store, credentials):
        step = _command_step(_py("import sys; sys.exit(254)"), absent_codes=[254])
        assert Reconciler(state_store).reconcile(step, credentials).state == StepState.ABSENT

    def test_found_and_recorded_is_applied(self, state_store, credentials):
        step = _command_step(_py("print('arn:1')"))
        state_store.put(StateRecord("cluster", step.idempotency_key, existing_id="arn:1"))

        assert Reconciler(state_store).reconcile(step, credentials).state == StepState.APPLIED

    def test_missing_component_is_partial(self, state_store, credentials):
        step = _command_step(
            _py("print('arn:1')"),
            components=[
                {"name": "control-plane", "command": _py("pass")},
                {"name": "nodegroup", "command": _py("import sys; sys.exit(1)")},
            ],
        )
        state_store.put(StateRecord("cluster", step.idempotency_key, existing_id="arn:1"))

        result = Reconciler(state_store).reconcile(step, credentials)
        assert result.state == StepState.PARTIAL
        assert result.missing == ("nodegroup",)
        assert result.apply_mode == "resume"

    def test_unexpected_exit_is_unavailable(self, state_store, credentials):
        step = _command_step(_py("import sys; sys.stderr.write('ExpiredToken'); sys.exit(255)"))
        with pytest.raises(ReconcileUnavailable, match="ExpiredToken"):
            Reconciler(state_store).reconcile(step, credentials)

    def test_timeout_is_unavailable(self, state_store, credentials):
        step = _command_step(_py("import time; time.sleep(5)"), timeout_s=0.2)
        with pytest.raises(ReconcileUnavailable, match="timed out"):
            Reconciler(state_store).reconcile(step, credentials)

    def test_missing_executable_is_permanent(self, state_store, credentials):
        step = _command_step(["definitely-not-a-real-binary-xyz"])
        with pytest.raises(PermanentError):
            Reconciler(state_store).reconcile(step, credentials)

    def test_variables_expand_into_command(self, state_store, credentials):
        step = _command_step(_py("import sys; print(sys.argv[1])") + ["${app_name}"])
        result = Reconciler(state_store, variables={"app_name": "petclinic"}).reconcile(step, credentials)
        assert result.existing_id == "petclinic"

    def test_credentials_exported_to_query(self, state_store):
        creds = CredentialContext("arn:test", {"AWS_REGION": "eu-west-1"})
        step = _command_step(_py("import os; print(os.environ['AWS_REGION'])"))
        assert Reconciler(state_store).reconcile(step, creds).existing_id == "eu-west-1"

    def test_probe_without_command(self, credentials):
        step = StepDef(step_id="x", probe=ProbeSpec(kind="command", params={}))
        with pytest.raises(PermanentError, match="no command"):
            CommandProbe().observe(step, credentials, None, {})


class TestReconciler:

    def test_unknown_probe_kind(self, state_store, credentials):
        step = StepDef(step_id="x", probe=ProbeSpec(kind="carrier-pigeon"))
        with pytest.raises(PermanentError, match="unknown probe kind"):
            Reconciler(state_store).reconcile(step, credentials)

    def test_invalidated_credentials(self, state_store, credentials, make_step):
        credentials.invalidate()
        with pytest.raises(PermanentError, match="invalidated"):
            Reconciler(state_store).reconcile(make_step("network"), credentials)

    def test_registered_probe(self, state_store, credentials):
        class AlwaysThere(StateProbe):
            def observe(self, step, credentials, record, variables):
                return Observation(found=True, recorded_key=step.idempotency_key)

        reconciler = Reconciler(state_store)
        reconciler.register_probe("always", AlwaysThere())
        step = StepDef(step_id="x", probe=ProbeSpec(kind="always"))

        assert reconciler.reconcile(step, credentials).state == StepState.APPLIED
        assert reconciler.state_store is state_store
