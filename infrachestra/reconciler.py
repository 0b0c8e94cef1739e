"""
Reconciler - classify each step against live external state.

For every step the reconciler asks a probe what exists in the external
system of record, then classifies the step:

- absent:      nothing found                               -> executor creates
- applied:     found, recorded key matches, complete       -> executor skips
- partial:     found but incomplete, or found outside our
               record (adopt via import)                   -> executor resumes
- conflicting: found with a different recorded key (drift) -> executor halts

Query failures (timeouts, auth failures, throttling) raise
ReconcileUnavailable. The executor owns retry/backoff for these because it
must ledger every failed query before deciding to retry.

Probes:
- record:  the StateRecordStore is the system of record
- command: a query command (terraform state show, aws eks describe-cluster,
           helm status ...), with optional component commands that detect
           partially applied resources
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from infrachestra.credentials import CredentialContext
from infrachestra.errors import PermanentError, ReconcileUnavailable, TransientError
from infrachestra.handlers.command import build_env, expand, run_command, to_argv
from infrachestra.schemas import (
    Observation,
    Reconciliation,
    StateRecord,
    StepDef,
    StepState,
)
from infrachestra.state_store import StateRecordStore

logger = logging.getLogger(__name__)


DEFAULT_QUERY_TIMEOUT_S = 120


def classify(step: StepDef, observation: Observation) -> Reconciliation:
    """
    Classify an observation into a StepState.

    Pure function: the same step and observation always classify the same way.
    """
    expected = step.idempotency_key

    if not observation.found:
        return Reconciliation(
            step_id=step.step_id,
            state=StepState.ABSENT,
            message=observation.detail or "no matching resource",
        )

    if observation.recorded_key is None:
        return Reconciliation(
            step_id=step.step_id,
            state=StepState.PARTIAL,
            existing_id=observation.existing_id,
            missing=observation.missing,
            message=observation.detail or "resource exists but is not recorded; will adopt",
        )

    if observation.recorded_key != expected:
        return Reconciliation(
            step_id=step.step_id,
            state=StepState.CONFLICTING,
            existing_id=observation.existing_id,
            recorded_key=observation.recorded_key,
            missing=observation.missing,
            message=observation.detail or "recorded desired state differs from definition",
        )

    if not observation.complete:
        return Reconciliation(
            step_id=step.step_id,
            state=StepState.PARTIAL,
            existing_id=observation.existing_id,
            recorded_key=observation.recorded_key,
            missing=observation.missing,
            message=observation.detail or f"incomplete, missing: {', '.join(observation.missing) or 'unknown'}",
        )

    return Reconciliation(
        step_id=step.step_id,
        state=StepState.APPLIED,
        existing_id=observation.existing_id,
        recorded_key=observation.recorded_key,
        message=observation.detail or "up to date",
    )


class StateProbe(ABC):
    """Observes the external system of record for one step."""

    @abstractmethod
    def observe(
        self,
        step: StepDef,
        credentials: CredentialContext,
        record: Optional[StateRecord],
        variables: Mapping[str, Any],
    ) -> Observation:
        """
        Probe the step's resources.

        Raises:
            ReconcileUnavailable: If the system of record cannot be queried
            PermanentError: If the probe is misconfigured
        """
        pass


class RecordProbe(StateProbe):
    """Trust the state record store alone."""

    def observe(self, step, credentials, record, variables) -> Observation:
        if record is None:
            return Observation.absent("no state record")
        return Observation(
            found=True,
            complete=record.complete,
            recorded_key=record.idempotency_key,
            existing_id=record.existing_id,
            detail="" if record.complete else "recorded apply was incomplete",
        )


class CommandProbe(StateProbe):
    """
    Query the external system with commands.

    Probe params:
        command: query argv; exit 0 = found (stripped stdout = existing id)
        absent_codes: exit codes that mean "not found" (default [1])
        components: list of {name, command} sub-resource queries
        cwd, env, timeout_s: as for the command handler
    """

    def observe(self, step, credentials, record, variables) -> Observation:
        params = expand(step.probe.params, variables)
        if "command" not in params:
            raise PermanentError(f"Step '{step.step_id}': command probe has no command")

        absent_codes = set(params.get("absent_codes", [1]))
        env = build_env(credentials, params.get("env"))
        cwd = params.get("cwd")
        timeout_s = float(params.get("timeout_s", DEFAULT_QUERY_TIMEOUT_S))

        found, stdout = self._query(step, params["command"], absent_codes, cwd, env, timeout_s)
        if not found:
            return Observation.absent(f"query reports no resource for {step.step_id}")

        missing = []
        for component in params.get("components") or []:
            name = component.get("name") or str(component.get("command"))
            present, _ = self._query(step, component["command"], absent_codes, cwd, env, timeout_s)
            if not present:
                missing.append(name)

        existing_id = stdout.strip()[:256] or (record.existing_id if record else None)
        return Observation(
            found=True,
            complete=not missing and (record.complete if record else True),
            recorded_key=record.idempotency_key if record else None,
            existing_id=existing_id,
            missing=tuple(missing),
        )

    def _query(self, step, command, absent_codes, cwd, env, timeout_s) -> tuple[bool, str]:
        argv = to_argv(command)
        try:
            result = run_command(argv, cwd, env, timeout_s)
        except TransientError as e:
            raise ReconcileUnavailable(step.step_id, str(e)) from e

        if result.returncode == 0:
            return True, result.stdout or ""
        if result.returncode in absent_codes:
            return False, ""
        stderr = (result.stderr or "").strip()[:500]
        raise ReconcileUnavailable(
            step.step_id,
            f"{argv[0]} exited with code {result.returncode}: {stderr}",
        )


class Reconciler:
    """
    Classifies steps against live state.

    Usage:
        reconciler = Reconciler(state_store)
        result = reconciler.reconcile(step, credentials)
        if result.state == StepState.APPLIED: ...
    """

    def __init__(
        self,
        state_store: StateRecordStore,
        probes: Optional[dict[str, StateProbe]] = None,
        variables: Optional[Mapping[str, Any]] = None,
    ):
        self._state_store = state_store
        self._probes: dict[str, StateProbe] = {
            "record": RecordProbe(),
            "command": CommandProbe(),
        }
        self._probes.update(probes or {})
        self._variables = dict(variables or {})

    @property
    def state_store(self) -> StateRecordStore:
        return self._state_store

    def register_probe(self, kind: str, probe: StateProbe) -> None:
        self._probes[kind] = probe

    def observe(self, step: StepDef, credentials: CredentialContext) -> Observation:
        """Run the step's probe and return the raw observation."""
        credentials.require()
        probe = self._probes.get(step.probe.kind)
        if probe is None:
            raise PermanentError(
                f"Step '{step.step_id}': unknown probe kind '{step.probe.kind}'. "
                f"Registered: {sorted(self._probes)}"
            )
        record = self._state_store.get(step.step_id)
        return probe.observe(step, credentials, record, self._variables)

    def reconcile(self, step: StepDef, credentials: CredentialContext) -> Reconciliation:
        """
        Observe and classify one step.

        Raises:
            ReconcileUnavailable: If the system of record cannot be queried
            PermanentError: If the probe is unknown or credentials are invalid
        """
        observation = self.observe(step, credentials)
        result = classify(step, observation)
        logger.debug(f"[{step.step_id}] reconciled as {result.state.value}: {result.message}")
        return result
