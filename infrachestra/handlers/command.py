"""
Command handler - drive external CLIs (terraform, aws, kubectl, helm).

Action params:
    command: argv list (or a string, split with shlex)
    import_command: argv run before `command` when the reconciler asks to
                    adopt an existing resource (mode=import)
    cwd: working directory
    env: extra environment variables
    timeout_s: subprocess timeout (default 1800)
    outputs: "json" to parse stdout as JSON, otherwise the stdout tail is kept
    resource_id: key of the JSON output holding the resource identifier,
                 or "stdout" to use stripped stdout

${name} placeholders in argv, cwd and env are filled from the manifest's
variables (config + stack variables) rather than from the shell.

Failure classification:
- timeout, or stderr matching throttling/network patterns -> TransientError
- permission/validation errors, missing executable, any other exit -> PermanentError
"""

import json
import logging
import os
import re
import shlex
import subprocess
from string import Template
from typing import Any, Mapping, Optional, Sequence

from infrachestra.credentials import CredentialContext
from infrachestra.errors import PermanentError, TransientError
from infrachestra.schemas import ActionKind, StepManifest

from .base import Handler

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_S = 1800

# Inherited from the operator's environment so binaries can be located
INHERITED_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "USER")

PERMANENT_PATTERNS = re.compile(
    r"access ?denied|unauthorized|forbidden|permission denied|not authorized|"
    r"invalid(parameter|input|argument)|validation ?error|malformed",
    re.IGNORECASE,
)

TRANSIENT_PATTERNS = re.compile(
    r"throttl|rate exceeded|ratelimit|too many requests|requestlimitexceeded|"
    r"timed? ?out|connection (reset|refused)|temporarily unavailable|"
    r"service ?unavailable|\b(429|502|503|504)\b|tls handshake|"
    r"error acquiring the state lock|i/o timeout",
    re.IGNORECASE,
)


def expand(value: Any, variables: Mapping[str, Any]) -> Any:
    """Recursively fill ${name} placeholders; unknown names are left intact."""
    if isinstance(value, str):
        return Template(value).safe_substitute({k: str(v) for k, v in variables.items()})
    if isinstance(value, dict):
        return {k: expand(v, variables) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [expand(v, variables) for v in value]
    return value


def is_transient_failure(stderr: str) -> bool:
    """Classify a failed command by its diagnostic output."""
    if PERMANENT_PATTERNS.search(stderr or ""):
        return False
    return bool(TRANSIENT_PATTERNS.search(stderr or ""))


def to_argv(command: Any) -> list[str]:
    if isinstance(command, str):
        return shlex.split(command)
    if isinstance(command, (list, tuple)) and command:
        return [str(part) for part in command]
    raise PermanentError(f"Invalid command: {command!r}")


def build_env(
    credentials: Optional[CredentialContext],
    extra: Optional[Mapping[str, Any]] = None,
) -> dict[str, str]:
    """Explicit subprocess environment: inherited basics + credentials + extra."""
    env = {name: os.environ[name] for name in INHERITED_ENV if name in os.environ}
    if credentials is not None:
        env.update(credentials.env())
    for key, value in (extra or {}).items():
        env[str(key)] = str(value)
    return env


def run_command(
    argv: Sequence[str],
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> subprocess.CompletedProcess:
    """
    Run a command without raising on non-zero exit.

    Raises:
        TransientError: If the command timed out
        PermanentError: If the executable or working directory does not exist
    """
    logger.debug(f"Executing: {' '.join(argv)}")
    try:
        return subprocess.run(
            list(argv),
            cwd=cwd,
            env=dict(env) if env is not None else None,
            capture_output=True,
            text=True,
            timeout=timeout_s,
            check=False,
        )
    except FileNotFoundError as e:
        raise PermanentError(f"Command not found: {e.filename or argv[0]}") from e
    except NotADirectoryError as e:
        raise PermanentError(f"Invalid working directory: {cwd}") from e
    except subprocess.TimeoutExpired as e:
        raise TransientError(f"Command timed out after {timeout_s}s: {' '.join(argv)}") from e


def raise_for_failure(result: subprocess.CompletedProcess, argv: Sequence[str]) -> None:
    """Translate a non-zero exit into Transient/PermanentError."""
    if result.returncode == 0:
        return
    stderr = (result.stderr or "").strip()
    message = f"{argv[0]} exited with code {result.returncode}"
    if stderr:
        message += f": {stderr[:500]}"
    if is_transient_failure(stderr):
        raise TransientError(message)
    raise PermanentError(message)


class CommandHandler(Handler):
    """Run the action's command as a subprocess."""

    def __init__(self, default_timeout_s: float = DEFAULT_TIMEOUT_S):
        self.default_timeout_s = default_timeout_s

    def execute(self, manifest: StepManifest, credentials: CredentialContext) -> dict[str, Any]:
        variables = {
            **manifest.variables,
            "step_id": manifest.step_id,
            "run_id": manifest.run_id,
            "mode": manifest.mode,
            "existing_id": manifest.existing_id or "",
        }
        params = expand(manifest.resolved_params, variables)
        if "command" not in params:
            raise PermanentError(f"Step '{manifest.step_id}' {manifest.action.value}: no command configured")

        env = build_env(credentials, {
            "INFRACHESTRA_RUN_ID": manifest.run_id,
            "INFRACHESTRA_STEP_ID": manifest.step_id,
            "INFRACHESTRA_ACTION": manifest.action.value,
            "INFRACHESTRA_MODE": manifest.mode,
            "INFRACHESTRA_EXISTING_ID": manifest.existing_id or "",
            "INFRACHESTRA_MISSING": ",".join(manifest.missing),
            "INFRACHESTRA_IDEMPOTENCY_KEY": manifest.idempotency_key,
            **(params.get("env") or {}),
        })
        cwd = params.get("cwd")
        timeout_s = float(params.get("timeout_s", self.default_timeout_s))

        if (
            manifest.action == ActionKind.APPLY
            and manifest.mode == "import"
            and params.get("import_command")
        ):
            import_argv = to_argv(params["import_command"])
            logger.info(f"[{manifest.step_id}] adopting existing resource {manifest.existing_id}")
            raise_for_failure(run_command(import_argv, cwd, env, timeout_s), import_argv)

        argv = to_argv(params["command"])
        result = run_command(argv, cwd, env, timeout_s)
        raise_for_failure(result, argv)

        return self._parse_result(manifest, params, result)

    def _parse_result(
        self,
        manifest: StepManifest,
        params: Mapping[str, Any],
        result: subprocess.CompletedProcess,
    ) -> dict[str, Any]:
        stdout = result.stdout or ""
        parsed: dict[str, Any] = {"returncode": result.returncode}

        outputs: dict[str, Any] = {}
        if params.get("outputs") == "json":
            try:
                loaded = json.loads(stdout or "{}")
            except json.JSONDecodeError as e:
                raise PermanentError(f"Step '{manifest.step_id}': stdout is not valid JSON: {e}") from e
            outputs = _flatten_terraform_outputs(loaded) if isinstance(loaded, dict) else {"value": loaded}
            parsed["outputs"] = outputs
        else:
            parsed["stdout"] = stdout[-2000:]

        resource_key = params.get("resource_id")
        if resource_key == "stdout":
            parsed["resource_id"] = stdout.strip() or None
        elif resource_key:
            parsed["resource_id"] = outputs.get(resource_key)
        elif manifest.existing_id:
            parsed["resource_id"] = manifest.existing_id

        return parsed


def _flatten_terraform_outputs(data: dict[str, Any]) -> dict[str, Any]:
    """
    Unwrap `terraform output -json` documents ({"name": {"value": ...}}).

    Plain JSON objects are returned unchanged.
    """
    if data and all(isinstance(v, dict) and "value" in v for v in data.values()):
        return {k: v["value"] for k, v in data.items()}
    return data
