"""
Executor - walk a Plan, invoking step actions with retry and rollback.

The Executor implements:
- Per-step reconciliation before acting (catches drift introduced by
  earlier steps or by other operators)
- Skip for applied steps, halt on conflicting (DriftDetected)
- Bounded retries with exponential backoff and jitter for transient failures
- Immediate failure for permanent failures
- Best-effort rollback, in reverse plan order, of resources created by this run
- Teardown mode gated by an operator confirmation token
- Write-ahead ledger discipline: the "started" entry of an action is durable
  before the action runs, and every failure is ledgered before any
  control-flow decision is taken on it

Execution flow (apply):
1. Create RunRecord
2. For each step in plan order:
   a. Check cancellation
   b. Reconcile (retrying ReconcileUnavailable)
   c. applied -> skip; conflicting -> halt; otherwise build a StepManifest
   d. Dispatch apply (then verify, if declared) via HandlerRegistry
   e. Record the step's desired state in the StateRecordStore
3. On halt: roll back what this run created; imported/resumed steps keep their resource
4. Finalize RunRecord

Steps run strictly sequentially. Cancellation is checked between steps and
at each retry boundary; an action already in flight is never interrupted.
"""

import logging
import random
import re
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from infrachestra.credentials import CredentialContext
from infrachestra.errors import (
    ActionFailed,
    ConfirmationRequired,
    DriftDetected,
    InfrachestraError,
    PermanentError,
    ReconcileUnavailable,
    RollbackIncomplete,
    RunCancelled,
    TransientError,
)
from infrachestra.handlers import HandlerRegistry
from infrachestra.ledger import RunLedger
from infrachestra.reconciler import Reconciler
from infrachestra.retry import RetryPolicy
from infrachestra.schemas import (
    ActionKind,
    LedgerEntry,
    Outcome,
    Phase,
    Plan,
    Reconciliation,
    RunRecord,
    StateRecord,
    StepDef,
    StepManifest,
    StepState,
)

logger = logging.getLogger(__name__)


DEFAULT_CONFIRMATION_TOKEN = "DESTROY"

# Reference pattern for @run.* references
RUN_REF_PATTERN = re.compile(r"@run\.([a-zA-Z_][a-zA-Z0-9_\-]*(?:\.[a-zA-Z0-9_\-]+)*)")

# Step results that satisfy a dependent step
SATISFIED = ("applied", "skipped", "planned")

RUN_STEP = "*"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DRIFT = 2
EXIT_ROLLBACK_INCOMPLETE = 3
EXIT_CONFIRMATION_REFUSED = 4
EXIT_CANCELLED = 130


def _lookup_ref(path: str, step_outputs: dict[str, Any], original: str) -> Any:
    parts = path.split(".")
    step_id = parts[0]
    if step_id not in step_outputs:
        raise ValueError(f"@run reference to unknown or unapplied step: {step_id}")
    result = step_outputs[step_id]
    for part in parts[1:]:
        if isinstance(result, dict) and part in result:
            result = result[part]
        else:
            raise ValueError(f"@run reference path not found: {original} (missing '{part}')")
    return result


def _resolve_run_refs(value: Any, step_outputs: dict[str, Any]) -> Any:
    """
    Resolve @run.* references in a value using earlier step outputs.

    @run.step_id.path.to.value resolves to step_outputs["step_id"]["path"]["to"]["value"].
    A string that is exactly one reference resolves to the referenced value
    (any type); references embedded in longer strings are substituted as text.

    Raises:
        ValueError: If a reference cannot be resolved
    """
    if isinstance(value, str):
        if "@run." not in value:
            return value
        match = RUN_REF_PATTERN.fullmatch(value)
        if match:
            return _lookup_ref(match.group(1), step_outputs, value)
        return RUN_REF_PATTERN.sub(
            lambda m: str(_lookup_ref(m.group(1), step_outputs, m.group(0))), value
        )
    elif isinstance(value, dict):
        return {k: _resolve_run_refs(v, step_outputs) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_resolve_run_refs(v, step_outputs) for v in value]
    else:
        return value


class CancelToken:
    """
    Run-level cancellation signal.

    Set by an operator interrupt (cancel()) or implicitly once the optional
    timeout budget has elapsed. Thread-safe; signal handlers may call cancel().
    """

    def __init__(self, timeout_s: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + timeout_s if timeout_s is not None else None
        self._reason = ""

    def cancel(self, reason: str = "operator interrupt") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.cancel("run timeout budget exceeded")
            return True
        return False

    @property
    def reason(self) -> str:
        return self._reason


@dataclass
class StepResult:
    """Final state of one step in a run, for the terminal summary."""
    step_id: str
    final: str = "not_run"
    state: Optional[StepState] = None
    attempts: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "final": self.final,
            "state": self.state.value if self.state else None,
            "attempts": self.attempts,
            "message": self.message,
        }


class ExecutionResult:
    """Result of one apply or teardown run."""

    def __init__(
        self,
        run_record: RunRecord,
        ledger: RunLedger,
        steps: dict[str, StepResult],
        error: Optional[Exception] = None,
        rollback_error: Optional[RollbackIncomplete] = None,
    ):
        self.run_record = run_record
        self.ledger = ledger
        self.steps = steps
        self.error = error
        self.rollback_error = rollback_error

    @property
    def run_id(self) -> str:
        return self.run_record.run_id

    @property
    def success(self) -> bool:
        return self.error is None and self.rollback_error is None

    @property
    def halted_step(self) -> Optional[str]:
        return self.run_record.halted_step

    @property
    def entries(self) -> list[LedgerEntry]:
        return self.ledger.entries(self.run_id)

    @property
    def exit_code(self) -> int:
        if self.success:
            return EXIT_OK
        if self.rollback_error is not None:
            return EXIT_ROLLBACK_INCOMPLETE
        if isinstance(self.error, ConfirmationRequired):
            return EXIT_CONFIRMATION_REFUSED
        if isinstance(self.error, DriftDetected):
            return EXIT_DRIFT
        if isinstance(self.error, RunCancelled):
            return EXIT_CANCELLED
        return EXIT_FAILED

    @property
    def halt_reason(self) -> Optional[str]:
        reasons = [str(e) for e in (self.error, self.rollback_error) if e is not None]
        return "; ".join(reasons) or None

    def summary(self) -> list[dict[str, Any]]:
        """Per-step final states in plan order."""
        return [self.steps[sid].to_dict() for sid in self.run_record.plan_order]


@dataclass
class _RunContext:
    run: RunRecord
    credentials: CredentialContext
    results: dict[str, StepResult]
    step_outputs: dict[str, Any] = field(default_factory=dict)
    # steps applied over a pre-existing resource, with the record they had before
    adopted: dict[str, Optional[StateRecord]] = field(default_factory=dict)


class Executor:
    """
    Execution engine for Plans.

    Usage:
        executor = Executor(
            ledger=FileLedger(config.ledger_dir),
            reconciler=Reconciler(FileStateStore(config.state_dir, plan.stack_id)),
            handlers=HandlerRegistry.create_default(),
        )
        with credential_scope(provider) as credentials:
            result = executor.apply(plan, credentials)
    """

    def __init__(
        self,
        ledger: RunLedger,
        reconciler: Reconciler,
        handlers: Optional[HandlerRegistry] = None,
        retry: Optional[RetryPolicy] = None,
        reconcile_retry: Optional[RetryPolicy] = None,
        cancel_token: Optional[CancelToken] = None,
        confirmation_token: str = DEFAULT_CONFIRMATION_TOKEN,
        variables: Optional[dict[str, Any]] = None,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the executor.

        Args:
            ledger: RunLedger receiving every attempt and classification
            reconciler: Reconciler consulted before each step
            handlers: HandlerRegistry for action dispatch (default: command + noop)
            retry: Retry policy for actions (default: 3 attempts)
            reconcile_retry: Retry policy for ReconcileUnavailable (default: same as retry)
            cancel_token: Run-level cancellation signal
            confirmation_token: Sentinel required by teardown
            variables: Placeholder context passed to handlers
            dry_run: Reconcile and report without invoking any handler
            sleep: Backoff sleep function (injectable for tests)
            rng: Random source for jitter (injectable for tests)
        """
        if not confirmation_token:
            raise ValueError("confirmation_token must be non-empty")
        self._ledger = ledger
        self._reconciler = reconciler
        self._handlers = handlers or HandlerRegistry.create_default()
        self._retry = retry or RetryPolicy()
        self._reconcile_retry = reconcile_retry or self._retry
        self._cancel = cancel_token or CancelToken()
        self._confirmation_token = confirmation_token
        self._variables = dict(variables or {})
        self._dry_run = dry_run
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def ledger(self) -> RunLedger:
        return self._ledger

    @property
    def cancel_token(self) -> CancelToken:
        return self._cancel

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(self, plan: Plan, credentials: CredentialContext) -> ExecutionResult:
        """
        Bring every step of the plan to the applied state.

        Never raises for orchestration failures; they are reported in the
        ExecutionResult (error, rollback_error, exit_code) and the ledger.
        """
        run = self._ledger.create_run(plan.stack_id, "apply", plan.order, dry_run=self._dry_run)
        ctx = _RunContext(run, credentials, {sid: StepResult(sid) for sid in plan.order})
        self._record(run, RUN_STEP, Phase.RUN, 0, Outcome.STARTED, f"apply {plan.stack_id}: {' -> '.join(plan.order)}")
        logger.info(
            f"Run {run.run_id}: applying {plan.stack_id} ({len(plan)} steps)",
            extra={"step": RUN_STEP, "event": "run_started", "metadata": {"run_id": run.run_id, "mode": "apply"}},
        )

        error: Optional[Exception] = None
        halted_step: Optional[str] = None
        for step in plan:
            try:
                self._check_cancel(run, step.step_id, Phase.RUN)
                self._apply_step(plan, step, ctx)
            except Exception as e:
                error = e
                halted_step = step.step_id
                self._mark_failed(ctx.results[step.step_id], e)
                self._record(run, step.step_id, Phase.RUN, 0, Outcome.HALTED, str(e))
                logger.error(f"[{step.step_id}] halted: {e}", extra={"step": step.step_id, "event": "halted"})
                break

        rollback_error = None
        if error is not None and not self._dry_run:
            rollback_error = self._rollback(plan, ctx)

        return self._finish(ctx, error, rollback_error, halted_step)

    def _apply_step(self, plan: Plan, step: StepDef, ctx: _RunContext) -> None:
        run = ctx.run
        result = ctx.results[step.step_id]
        self._check_dependencies(step, ctx)

        reconciliation = self._reconcile(step, ctx)
        result.state = reconciliation.state

        if reconciliation.state == StepState.APPLIED:
            self._record(run, step.step_id, Phase.APPLY, 0, Outcome.SKIPPED, "already applied", reconciliation.state)
            record = self._reconciler.state_store.get(step.step_id)
            ctx.step_outputs[step.step_id] = self._outputs_from_record(record, reconciliation)
            result.final = "skipped"
            result.message = reconciliation.message
            logger.info(f"[{step.step_id}] already applied, skipping", extra={"step": step.step_id, "event": "skipped"})
            return

        if reconciliation.state == StepState.CONFLICTING:
            drift = DriftDetected(step.step_id, step.idempotency_key, reconciliation.recorded_key)
            self._record(run, step.step_id, Phase.RECONCILE, 0, Outcome.DRIFT_DETECTED, str(drift), reconciliation.state)
            raise drift

        if self._dry_run:
            message = f"dry run: would {reconciliation.apply_mode}"
            self._record(run, step.step_id, Phase.APPLY, 0, Outcome.SKIPPED, message, reconciliation.state)
            ctx.step_outputs[step.step_id] = {}
            result.final = "planned"
            result.message = message
            return

        if reconciliation.apply_mode != "create":
            ctx.adopted[step.step_id] = self._reconciler.state_store.get(step.step_id)

        logger.info(
            f"[{step.step_id}] applying ({reconciliation.apply_mode}): {step.display_name}",
            extra={"step": step.step_id, "event": "apply", "metadata": {"mode": reconciliation.apply_mode}},
        )
        output = self._run_action(step, ActionKind.APPLY, Phase.APPLY, ctx, reconciliation)

        has_verify = step.has_action(ActionKind.VERIFY)
        record = StateRecord(
            step_id=step.step_id,
            idempotency_key=step.idempotency_key,
            existing_id=output.get("resource_id") or reconciliation.existing_id,
            complete=bool(output.get("complete", True)) and not has_verify,
            outputs=dict(output.get("outputs") or {}),
        )
        self._reconciler.state_store.put(record)

        if has_verify:
            self._run_action(step, ActionKind.VERIFY, Phase.VERIFY, ctx, reconciliation)
            record = replace(record, complete=bool(output.get("complete", True)))
            self._reconciler.state_store.put(record)

        ctx.step_outputs[step.step_id] = self._outputs_from_record(record, reconciliation)
        result.final = "applied"
        result.message = f"{reconciliation.apply_mode} succeeded"

    @staticmethod
    def _outputs_from_record(record: Optional[StateRecord], reconciliation: Reconciliation) -> dict[str, Any]:
        outputs: dict[str, Any] = dict(record.outputs) if record else {}
        resource_id = (record.existing_id if record else None) or reconciliation.existing_id
        if resource_id is not None:
            outputs.setdefault("resource_id", resource_id)
        return outputs

    def _check_dependencies(self, step: StepDef, ctx: _RunContext) -> None:
        """A step starts only after every dependency reached a terminal success."""
        for dep in step.depends_on:
            dep_result = ctx.results.get(dep)
            if dep_result is None or dep_result.final not in SATISFIED:
                raise PermanentError(
                    f"Step '{step.step_id}' cannot start: dependency '{dep}' is "
                    f"{dep_result.final if dep_result else 'missing'}"
                )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def _rollback(self, plan: Plan, ctx: _RunContext) -> Optional[RollbackIncomplete]:
        """
        Unwind the steps this run applied, in reverse plan order.

        Best-effort: a failed destroy is ledgered and the rollback continues
        with the remaining steps. Never touches steps this run did not apply.
        Steps applied in import or resume mode were built over a resource that
        existed before this run: the resource is left in place and only the
        StateRecord it had before the run is restored.
        """
        run = ctx.run
        applied = set(self._ledger.applied_steps(run.run_id))
        to_unwind = [s for s in plan.reversed() if s.step_id in applied]
        if not to_unwind:
            return None

        ids = [s.step_id for s in to_unwind if s.step_id not in ctx.adopted]
        self._record(
            run, RUN_STEP, Phase.ROLLBACK, 0, Outcome.STARTED,
            f"rolling back: {', '.join(ids) or 'nothing created by this run'}",
        )
        if ids:
            logger.warning(
                f"Run {run.run_id}: rolling back {', '.join(ids)}",
                extra={"step": RUN_STEP, "event": "rollback"},
            )

        failed: list[str] = []
        for step in to_unwind:
            result = ctx.results[step.step_id]
            if step.step_id in ctx.adopted:
                self._restore_record(step.step_id, ctx.adopted[step.step_id])
                self._record(run, step.step_id, Phase.ROLLBACK, 0, Outcome.SKIPPED, "pre-existing resource left in place")
                result.final = "kept"
                result.message = "pre-existing resource left in place"
                logger.info(
                    f"[{step.step_id}] pre-existing resource left in place",
                    extra={"step": step.step_id, "event": "rollback_kept"},
                )
                continue
            try:
                self._run_action(step, ActionKind.DESTROY, Phase.ROLLBACK, ctx, None, honor_cancel=False)
            except ActionFailed as e:
                self._record(run, step.step_id, Phase.ROLLBACK, 0, Outcome.ROLLBACK_FAILED, str(e))
                failed.append(step.step_id)
                result.final = "unknown"
                result.message = str(e)
                logger.error(f"[{step.step_id}] rollback failed: {e}", extra={"step": step.step_id, "event": "rollback_failed"})
                continue
            self._reconciler.state_store.delete(step.step_id)
            self._record(run, step.step_id, Phase.ROLLBACK, 0, Outcome.ROLLED_BACK, "rolled back")
            result.final = "rolled_back"
            result.message = "rolled back"

        if failed:
            error = RollbackIncomplete(failed)
            self._record(run, RUN_STEP, Phase.ROLLBACK, 0, Outcome.ROLLBACK_FAILED, str(error))
            return error
        self._record(run, RUN_STEP, Phase.ROLLBACK, 0, Outcome.SUCCEEDED, "rollback complete")
        return None

    def _restore_record(self, step_id: str, prior: Optional[StateRecord]) -> None:
        if prior is None:
            self._reconciler.state_store.delete(step_id)
        else:
            self._reconciler.state_store.put(prior)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self, plan: Plan, credentials: CredentialContext, confirmation: Optional[str]) -> ExecutionResult:
        """
        Destroy every step of the plan, dependents first.

        Requires `confirmation` to equal the configured sentinel; otherwise
        no action runs and the result carries ConfirmationRequired.
        Teardown does not roll back: a failure halts the remaining steps.
        """
        order = [s.step_id for s in plan.reversed()]
        run = self._ledger.create_run(plan.stack_id, "destroy", order, dry_run=self._dry_run)
        ctx = _RunContext(run, credentials, {sid: StepResult(sid) for sid in order})

        if confirmation != self._confirmation_token:
            error = ConfirmationRequired(
                f"Destruction cancelled. You must type '{self._confirmation_token}' to proceed."
            )
            self._record(run, RUN_STEP, Phase.RUN, 0, Outcome.HALTED, str(error))
            return self._finish(ctx, error, None, None)

        self._record(run, RUN_STEP, Phase.RUN, 0, Outcome.STARTED, f"destroy {plan.stack_id}: {' -> '.join(order)}")
        logger.warning(
            f"Run {run.run_id}: destroying {plan.stack_id} ({len(plan)} steps)",
            extra={"step": RUN_STEP, "event": "run_started", "metadata": {"run_id": run.run_id, "mode": "destroy"}},
        )

        error: Optional[Exception] = None
        halted_step: Optional[str] = None
        for step in plan.reversed():
            try:
                self._check_cancel(run, step.step_id, Phase.RUN)
                self._destroy_step(step, ctx)
            except Exception as e:
                error = e
                halted_step = step.step_id
                self._mark_failed(ctx.results[step.step_id], e)
                self._record(run, step.step_id, Phase.RUN, 0, Outcome.HALTED, str(e))
                logger.error(f"[{step.step_id}] halted: {e}", extra={"step": step.step_id, "event": "halted"})
                break

        return self._finish(ctx, error, None, halted_step)

    def _destroy_step(self, step: StepDef, ctx: _RunContext) -> None:
        run = ctx.run
        result = ctx.results[step.step_id]
        reconciliation = self._reconcile(step, ctx)
        result.state = reconciliation.state

        if reconciliation.state == StepState.ABSENT:
            self._record(run, step.step_id, Phase.DESTROY, 0, Outcome.SKIPPED, "already absent", reconciliation.state)
            result.final = "absent"
            result.message = reconciliation.message
            return

        if reconciliation.state == StepState.CONFLICTING:
            drift = DriftDetected(step.step_id, step.idempotency_key, reconciliation.recorded_key)
            self._record(run, step.step_id, Phase.RECONCILE, 0, Outcome.DRIFT_DETECTED, str(drift), reconciliation.state)
            raise drift

        if self._dry_run:
            self._record(run, step.step_id, Phase.DESTROY, 0, Outcome.SKIPPED, "dry run: would destroy", reconciliation.state)
            result.final = "planned"
            result.message = "dry run: would destroy"
            return

        logger.info(f"[{step.step_id}] destroying: {step.display_name}", extra={"step": step.step_id, "event": "destroy"})
        self._run_action(step, ActionKind.DESTROY, Phase.DESTROY, ctx, reconciliation)
        self._reconciler.state_store.delete(step.step_id)

        if step.has_action(ActionKind.VERIFY_DESTROYED):
            self._run_action(step, ActionKind.VERIFY_DESTROYED, Phase.VERIFY, ctx, reconciliation)

        result.final = "destroyed"
        result.message = "destroyed"

    # ------------------------------------------------------------------
    # Shared machinery
    # ------------------------------------------------------------------

    def _reconcile(self, step: StepDef, ctx: _RunContext) -> Reconciliation:
        """Reconcile a step, retrying ReconcileUnavailable with backoff."""
        run = ctx.run
        attempt = 1
        while True:
            self._check_cancel(run, step.step_id, Phase.RECONCILE)
            try:
                reconciliation = self._reconciler.reconcile(step, ctx.credentials)
            except ReconcileUnavailable as e:
                self._record(run, step.step_id, Phase.RECONCILE, attempt, Outcome.RECONCILE_UNAVAILABLE, str(e))
                if attempt >= self._reconcile_retry.max_attempts:
                    raise
                self._backoff(self._reconcile_retry, attempt, step.step_id)
                attempt += 1
                continue
            except Exception as e:
                self._record(run, step.step_id, Phase.RECONCILE, attempt, Outcome.FAILED_PERMANENT, f"{type(e).__name__}: {e}")
                raise

            self._record(
                run, step.step_id, Phase.RECONCILE, attempt, Outcome.SUCCEEDED,
                reconciliation.message, reconciliation.state,
            )
            return reconciliation

    def _run_action(
        self,
        step: StepDef,
        kind: ActionKind,
        phase: Phase,
        ctx: _RunContext,
        reconciliation: Optional[Reconciliation],
        honor_cancel: bool = True,
    ) -> dict[str, Any]:
        """Resolve params, build the manifest and invoke with retries."""
        spec = step.action(kind)
        raw_params = spec.params if spec else {}
        try:
            params = _resolve_run_refs(raw_params, ctx.step_outputs)
        except ValueError as e:
            self._record(ctx.run, step.step_id, phase, 1, Outcome.FAILED_PERMANENT, str(e))
            raise ActionFailed(step.step_id, kind.value, False, e) from e

        manifest = StepManifest(
            run_id=ctx.run.run_id,
            step_id=step.step_id,
            handler=step.handler,
            action=kind,
            resolved_params=params,
            idempotency_key=step.idempotency_key,
            mode=reconciliation.apply_mode if reconciliation else "resume",
            existing_id=reconciliation.existing_id if reconciliation else None,
            missing=reconciliation.missing if reconciliation else (),
            variables=self._variables,
        )
        return self._invoke(manifest, phase, ctx, honor_cancel)

    def _invoke(self, manifest: StepManifest, phase: Phase, ctx: _RunContext, honor_cancel: bool) -> dict[str, Any]:
        """
        Dispatch a manifest with bounded retries.

        Ledger discipline per attempt: 'started' before dispatch, then exactly
        one of succeeded / failed_transient / failed_permanent.
        """
        run = ctx.run
        step_id = manifest.step_id
        action = manifest.action.value
        result = ctx.results.get(step_id)
        attempt = 1
        while True:
            if honor_cancel:
                self._check_cancel(run, step_id, phase)

            self._record(run, step_id, phase, attempt, Outcome.STARTED, f"{action} attempt {attempt}")
            if result is not None:
                result.attempts += 1
            try:
                output = self._handlers.dispatch(manifest, ctx.credentials)
            except TransientError as e:
                self._record(run, step_id, phase, attempt, Outcome.FAILED_TRANSIENT, str(e))
                if attempt >= self._retry.max_attempts:
                    raise ActionFailed(step_id, action, True, e) from e
                self._backoff(self._retry, attempt, step_id)
                attempt += 1
                continue
            except Exception as e:
                self._record(run, step_id, phase, attempt, Outcome.FAILED_PERMANENT, f"{type(e).__name__}: {e}")
                raise ActionFailed(step_id, action, False, e) from e

            self._record(run, step_id, phase, attempt, Outcome.SUCCEEDED, f"{action} succeeded")
            return output or {}

    def _backoff(self, policy: RetryPolicy, attempt: int, step_id: str) -> None:
        delay = policy.delay_for(attempt, self._rng)
        logger.warning(
            f"[{step_id}] attempt {attempt} failed, retrying in {delay:.1f}s",
            extra={"step": step_id, "event": "retry", "metadata": {"attempt": attempt, "delay_s": delay}},
        )
        self._sleep(delay)

    def _check_cancel(self, run: RunRecord, step_id: str, phase: Phase) -> None:
        if self._cancel.cancelled:
            error = RunCancelled(f"Run cancelled before '{step_id}' ({self._cancel.reason})")
            self._record(run, step_id, phase, 0, Outcome.CANCELLED, str(error))
            raise error

    def _record(
        self,
        run: RunRecord,
        step_id: str,
        phase: Phase,
        attempt: int,
        outcome: Outcome,
        message: str = "",
        state: Optional[StepState] = None,
    ) -> LedgerEntry:
        return self._ledger.record(run.run_id, step_id, phase, attempt, outcome, message, state)

    @staticmethod
    def _mark_failed(result: StepResult, error: Exception) -> None:
        if isinstance(error, DriftDetected):
            result.final = "drift"
        elif isinstance(error, RunCancelled):
            result.final = "cancelled"
        else:
            result.final = "failed"
        result.message = str(error)

    def _finish(
        self,
        ctx: _RunContext,
        error: Optional[Exception],
        rollback_error: Optional[RollbackIncomplete],
        halted_step: Optional[str],
    ) -> ExecutionResult:
        run = ctx.run
        result = ExecutionResult(run, self._ledger, ctx.results, error, rollback_error)
        if result.success:
            self._record(run, RUN_STEP, Phase.RUN, 0, Outcome.SUCCEEDED, f"{run.mode} complete")
            run.finish("success")
            logger.info(f"Run {run.run_id}: {run.mode} complete", extra={"step": RUN_STEP, "event": "run_complete"})
        else:
            run.finish("failed", halted_step=halted_step, halt_reason=result.halt_reason)
            if error is not None and not isinstance(error, InfrachestraError):
                logger.error(f"Run {run.run_id}: unexpected error", exc_info=error, extra={"step": RUN_STEP, "event": "unexpected_error"})
        self._ledger.store_run(run)
        return result
