"""
CLI interface for infrachestra.

Provides commands to discover stacks, inspect plans, apply and destroy
them, and read the run ledger.

Stacks are defined as YAML/JSON files in the configured definitions
directory (default: the stacks bundled with the package).
"""

import json
import shutil
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click
from rich.markup import escape
from rich.table import Table

from infrachestra import __version__
from infrachestra.utils import console, print_banner, print_error, print_info, print_success, print_warning


STATE_STYLES = {
    "applied": "green",
    "skipped": "cyan",
    "destroyed": "green",
    "absent": "cyan",
    "planned": "blue",
    "rolled_back": "yellow",
    "kept": "cyan",
    "failed": "red",
    "drift": "red",
    "unknown": "red",
    "cancelled": "yellow",
    "not_run": "dim",
}


@click.group()
@click.version_option(version=__version__, prog_name="infrachestra")
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to config.yaml (default: $INFRACHESTRA_HOME/config.yaml)",
)
@click.pass_context
def main(ctx, config_path: Optional[Path]):
    """
    infrachestra - Idempotent infrastructure lifecycle orchestrator.

    Plans dependency-ordered steps, reconciles them against live state and
    applies or destroys them with retries, rollback and a run ledger.
    """
    from infrachestra.config import load_config
    from infrachestra.errors import ConfigError
    from infrachestra.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        # init and doctor work without a config; other commands check later
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        config.log_file_path(),
        log_level=config.log_level(),
        log_format=config.log_format(),
        console_output=config.log_to_console(),
    )


def _require_config(ctx):
    if "config" not in ctx.obj:
        print_error(f"Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}")
        click.echo("Run 'infrachestra init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _registry(config):
    from infrachestra.registry import StackRegistry

    return StackRegistry(config.definitions_path())


def _load_stack(config, stack_id: str):
    """Load and render a stack; exit 1 with a message on failure."""
    from infrachestra.registry import StackNotFoundError, StackValidationError, render

    registry = _registry(config)
    try:
        stack = registry.load(stack_id)
    except StackNotFoundError:
        print_error(f"Unknown stack: {stack_id}")
        available = registry.list_stacks()
        if available:
            click.echo("\nAvailable stacks:", err=True)
            for sid in available:
                click.echo(f"  {sid}", err=True)
        raise SystemExit(1)
    except StackValidationError as e:
        print_error(escape(str(e)))
        raise SystemExit(1)
    return render(stack, config.vars())


def _build_plan(stack):
    from infrachestra.errors import PlanError
    from infrachestra.planner import build_plan

    try:
        return build_plan(stack)
    except PlanError as e:
        print_error(f"Invalid plan for {stack.stack_id}: {escape(str(e))}")
        raise SystemExit(1)


def _build_executor(config, stack, dry_run: bool, cancel_token):
    from infrachestra.executor import Executor
    from infrachestra.handlers import HandlerRegistry
    from infrachestra.ledger import FileLedger
    from infrachestra.reconciler import Reconciler
    from infrachestra.state_store import FileStateStore

    variables = {**config.vars(), **stack.variables}
    reconciler = Reconciler(
        FileStateStore(config.state_path(), stack.stack_id),
        variables=variables,
    )
    return Executor(
        ledger=FileLedger(config.ledger_path()),
        reconciler=reconciler,
        handlers=HandlerRegistry.create_default(),
        retry=config.retry,
        reconcile_retry=config.reconcile_policy(),
        cancel_token=cancel_token,
        confirmation_token=config.confirmation_token,
        variables=variables,
        dry_run=dry_run,
    )


@contextmanager
def _interrupt_cancels(token) -> Iterator[None]:
    """SIGINT sets the run's cancel token instead of killing the process."""
    def handler(signum, frame):
        token.cancel("operator interrupt")
        print_warning("Interrupt received: finishing the current action, then stopping")

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _credential_provider(config):
    from infrachestra.credentials import provider_from_config

    return provider_from_config(config.credentials)


def _print_summary(result) -> None:
    from infrachestra.utils import format_duration

    run = result.run_record
    title = f"{run.mode} {run.stack_id} ({run.run_id})"
    if run.dry_run:
        title += " (dry run)"
    table = Table(title=title)
    table.add_column("Step")
    table.add_column("Observed")
    table.add_column("Result")
    table.add_column("Attempts", justify="right")
    table.add_column("Message", overflow="fold")
    for row in result.summary():
        style = STATE_STYLES.get(row["final"], "")
        table.add_row(
            row["step_id"],
            row["state"] or "-",
            f"[{style}]{row['final']}[/{style}]" if style else row["final"],
            str(row["attempts"]),
            escape(row["message"]),
        )
    console.print(table)
    if run.duration_ms is not None:
        print_info(f"Duration: {format_duration(run.duration_ms / 1000)}")


def _run(ctx, stack_id: str, dry_run: bool, destroy: bool, confirmation: Optional[str] = None) -> None:
    from infrachestra.credentials import credential_scope
    from infrachestra.errors import InfrachestraError
    from infrachestra.executor import CancelToken

    config = _require_config(ctx)
    stack = _load_stack(config, stack_id)
    plan = _build_plan(stack)

    token = CancelToken(timeout_s=config.run_timeout_s)
    executor = _build_executor(config, stack, dry_run, token)
    action = "destroy" if destroy else "apply"
    print_banner(f"{action} {stack.stack_id}" + (" (dry run)" if dry_run else ""))

    try:
        with _interrupt_cancels(token), credential_scope(_credential_provider(config), config.retry) as credentials:
            if destroy:
                result = executor.teardown(plan, credentials, confirmation)
            else:
                result = executor.apply(plan, credentials)
    except InfrachestraError as e:
        print_error(f"Could not acquire credentials: {escape(str(e))}")
        raise SystemExit(1)

    _print_summary(result)
    if result.success:
        print_success(f"{stack_id} {action} complete (run {result.run_id})")
        return

    if result.halted_step:
        print_error(f"Halted at {result.halted_step}: {escape(str(result.error))}")
    elif result.error is not None:
        print_error(escape(str(result.error)))
    if result.rollback_error is not None:
        print_error(f"{escape(str(result.rollback_error))}. Manual cleanup required.")
    raise SystemExit(result.exit_code)


# =============================================================================
# Lifecycle Commands
# =============================================================================

@main.command("plan")
@click.argument("stack")
@click.option("--reconcile", is_flag=True, help="Also query live state for each step")
@click.pass_context
def plan_cmd(ctx, stack: str, reconcile: bool):
    """
    Show the deterministic execution order of a stack.

    Examples:

        infrachestra plan secure-supply-chain

        infrachestra plan secure-supply-chain --reconcile
    """
    from infrachestra.idem_keys import short_key

    config = _require_config(ctx)
    stack_def = _load_stack(config, stack)
    plan = _build_plan(stack_def)

    states: dict[str, str] = {}
    if reconcile:
        states = _reconcile_states(config, stack_def, plan)

    table = Table(title=f"Plan: {stack_def.stack_id} v{stack_def.version}")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Depends on")
    table.add_column("Handler")
    table.add_column("Key")
    if reconcile:
        table.add_column("State")
    for i, step in enumerate(plan, start=1):
        row = [
            str(i),
            step.step_id,
            ", ".join(step.depends_on) or "-",
            step.handler,
            short_key(step.idempotency_key),
        ]
        if reconcile:
            row.append(states.get(step.step_id, "-"))
        table.add_row(*row)
    console.print(table)


def _reconcile_states(config, stack, plan) -> dict[str, str]:
    from infrachestra.credentials import credential_scope
    from infrachestra.errors import InfrachestraError, ReconcileUnavailable
    from infrachestra.reconciler import Reconciler
    from infrachestra.state_store import FileStateStore

    reconciler = Reconciler(
        FileStateStore(config.state_path(), stack.stack_id),
        variables={**config.vars(), **stack.variables},
    )
    states: dict[str, str] = {}
    try:
        with credential_scope(_credential_provider(config), config.retry) as credentials:
            for step in plan:
                try:
                    states[step.step_id] = reconciler.reconcile(step, credentials).state.value
                except ReconcileUnavailable as e:
                    states[step.step_id] = "unavailable"
                    print_warning(str(e))
    except InfrachestraError as e:
        print_error(f"Could not reconcile: {escape(str(e))}")
        raise SystemExit(1)
    return states


@main.command("apply")
@click.argument("stack")
@click.option("--dry-run", is_flag=True, help="Reconcile and report without invoking handlers")
@click.pass_context
def apply_cmd(ctx, stack: str, dry_run: bool):
    """
    Bring every step of a stack to the applied state.

    Exit codes: 0 success, 1 failure, 2 drift, 3 rollback incomplete,
    130 cancelled.

    Examples:

        infrachestra apply secure-supply-chain

        infrachestra apply secure-supply-chain --dry-run
    """
    _run(ctx, stack, dry_run=dry_run, destroy=False)


@main.command("destroy")
@click.argument("stack")
@click.option("--confirm", "confirmation", help="Confirmation token (prompted when omitted)")
@click.option("--dry-run", is_flag=True, help="Reconcile and report without invoking handlers")
@click.pass_context
def destroy_cmd(ctx, stack: str, confirmation: Optional[str], dry_run: bool):
    """
    Destroy every step of a stack, dependents first.

    Exit code 4 when the confirmation token does not match.

    Examples:

        infrachestra destroy secure-supply-chain

        infrachestra destroy secure-supply-chain --confirm DESTROY
    """
    config = _require_config(ctx)
    if confirmation is None:
        print_warning(f"This will destroy all resources of {stack}. This action cannot be undone!")
        confirmation = click.prompt(
            f"Type '{config.confirmation_token}' to confirm", default="", show_default=False
        )
    _run(ctx, stack, dry_run=dry_run, destroy=True, confirmation=confirmation)


# =============================================================================
# Stack Commands
# =============================================================================

@main.group("stacks")
def stacks_group():
    """Inspect stack definitions."""
    pass


@stacks_group.command("list")
@click.pass_context
def list_stacks(ctx):
    """List available stacks."""
    config = _require_config(ctx)
    registry = _registry(config)
    stack_ids = registry.list_stacks()
    if not stack_ids:
        click.echo(f"No stack definitions found in {registry.definitions_dir}")
        return
    for stack_id in stack_ids:
        click.echo(stack_id)


@stacks_group.command("show")
@click.argument("stack")
@click.pass_context
def show_stack(ctx, stack: str):
    """Show a stack definition (placeholders rendered)."""
    from infrachestra.registry import StackRegistry

    config = _require_config(ctx)
    stack_def = _load_stack(config, stack)
    click.echo(f"Stack: {stack_def.stack_id}")
    click.echo(f"Version: {stack_def.version}")
    click.echo(f"Hash: {StackRegistry.compute_hash(stack_def)}")
    click.echo()
    click.echo(json.dumps(stack_def.to_dict(), indent=2))


# =============================================================================
# Ledger Commands
# =============================================================================

@main.group("ledger")
def ledger_group():
    """Read the run ledger."""
    pass


def _ledger(ctx):
    from infrachestra.ledger import FileLedger

    config = _require_config(ctx)
    return FileLedger(config.ledger_path())


@ledger_group.command("list")
@click.option("--limit", default=20, show_default=True, type=int, help="Most recent runs to show")
@click.pass_context
def ledger_list(ctx, limit: int):
    """List recorded runs, most recent first."""
    ledger = _ledger(ctx)
    run_ids = sorted(ledger.list_runs(), reverse=True)[:limit]
    if not run_ids:
        click.echo("No runs recorded.")
        return

    table = Table(title="Runs")
    table.add_column("Run", no_wrap=True)
    table.add_column("Stack")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Started")
    for run_id in run_ids:
        run = ledger.get_run(run_id)
        if run is None:
            continue
        mode = f"{run.mode} (dry run)" if run.dry_run else run.mode
        table.add_row(run.run_id, run.stack_id, mode, run.status, run.started_at.strftime("%Y-%m-%d %H:%M:%S"))
    console.print(table)


@ledger_group.command("show")
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON lines instead of a table")
@click.pass_context
def ledger_show(ctx, run_id: str, as_json: bool):
    """Show every ledger entry of a run."""
    ledger = _ledger(ctx)
    run = ledger.get_run(run_id)
    if run is None:
        print_error(f"Unknown run: {run_id}")
        raise SystemExit(1)

    entries = ledger.entries(run_id)
    if as_json:
        for entry in entries:
            click.echo(json.dumps(entry.to_dict()))
        return

    click.echo(f"Run: {run.run_id}  Stack: {run.stack_id}  Mode: {run.mode}  Status: {run.status}")
    if run.halted_step:
        click.echo(f"Halted at: {run.halted_step} ({run.halt_reason})")

    table = Table()
    table.add_column("Seq", justify="right")
    table.add_column("Time")
    table.add_column("Step")
    table.add_column("Phase")
    table.add_column("Try", justify="right")
    table.add_column("Outcome")
    table.add_column("Message", overflow="fold")
    for entry in entries:
        table.add_row(
            str(entry.seq),
            entry.timestamp.strftime("%H:%M:%S"),
            entry.step_id,
            entry.phase.value,
            str(entry.attempt) if entry.attempt else "",
            entry.outcome.value,
            escape(entry.message),
        )
    console.print(table)

    interrupted = [sid for sid in ledger.interrupted_steps(run_id) if sid != "*"]
    if interrupted:
        print_warning(
            f"Interrupted mid-action: {', '.join(interrupted)}. "
            f"Re-run apply; reconciliation will resume or adopt them."
        )


# =============================================================================
# Setup Commands
# =============================================================================

@main.command("doctor")
@click.pass_context
def doctor(ctx):
    """Check configuration and required external tools."""
    from infrachestra.config import OrchestratorConfig

    config = ctx.obj.get("config")
    ok = True
    if config is None:
        print_error(f"Config: {ctx.obj.get('config_error', 'not loaded')}")
        config = OrchestratorConfig()
        ok = False
    else:
        print_success(f"Config: project {config.project_name} in {config.region}")

    for tool in config.required_tools:
        path = shutil.which(tool)
        if path:
            print_success(f"{tool}: {path}")
        else:
            print_error(f"{tool} is required but not installed")
            ok = False

    if not ok:
        raise SystemExit(1)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize infrachestra configuration."""
    from infrachestra.config import CONFIG_FILENAME, default_config_yaml, get_infrachestra_home

    home = get_infrachestra_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / CONFIG_FILENAME
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(default_config_yaml())
    click.echo(f"Initialized infrachestra config at {cfg_path}")


if __name__ == "__main__":
    main()
