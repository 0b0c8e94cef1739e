"""Tests for infrachestra.handlers.

The command handler is exercised with the running interpreter standing in
for terraform/aws/kubectl so the tests need no cloud tooling.
"""

import json
import subprocess
import sys
from unittest.mock import patch

import pytest

from infrachestra.errors import PermanentError, TransientError
from infrachestra.handlers import CommandHandler, HandlerRegistry, NoOpHandler
from infrachestra.handlers.command import expand, is_transient_failure, to_argv
from infrachestra.schemas import ActionKind, StepManifest


def _py(code):
    return [sys.executable, "-c", code]


def _manifest(params, action=ActionKind.APPLY, mode="create", existing_id=None, handler="command", variables=None):
    return StepManifest(
        run_id="01RUN",
        step_id="cluster",
        handler=handler,
        action=action,
        resolved_params=params,
        idempotency_key="sha256:abc",
        mode=mode,
        existing_id=existing_id,
        missing=("nodegroup",) if mode == "resume" else (),
        variables=variables or {},
    )


class TestFailureClassification:

    @pytest.mark.parametrize("stderr", [
        "An error occurred (Throttling) when calling the DescribeCluster operation: Rate exceeded",
        "Error: Error acquiring the state lock",
        "dial tcp 10.0.0.1:443: i/o timeout",
        "503 Service Unavailable",
        "read: connection reset by peer",
    ])
    def test_transient(self, stderr):
        assert is_transient_failure(stderr)

    @pytest.mark.parametrize("stderr", [
        "An error occurred (AccessDenied) when calling the CreateRole operation",
        "error: You must be logged in to the server (Unauthorized)",
        "ValidationError: invalid cidr block",
        "",
    ])
    def test_permanent(self, stderr):
        assert not is_transient_failure(stderr)

    def test_permission_error_beats_timeout_wording(self):
        assert not is_transient_failure("AccessDenied: request timed out while checking permissions")


class TestHelpers:

    def test_expand_nested(self):
        value = {"cmd": ["deploy", "${app_name}"], "env": {"NS": "${namespace}"}, "n": 3}
        assert expand(value, {"app_name": "petclinic", "namespace": "prod"}) == {
            "cmd": ["deploy", "petclinic"],
            "env": {"NS": "prod"},
            "n": 3,
        }

    def test_expand_leaves_unknown_placeholders(self):
        assert expand("${unknown}-x", {}) == "${unknown}-x"

    def test_to_argv(self):
        assert to_argv("terraform apply -auto-approve") == ["terraform", "apply", "-auto-approve"]
        assert to_argv(["helm", 3]) == ["helm", "3"]
        with pytest.raises(PermanentError):
            to_argv([])


class TestCommandHandler:

    def test_success_keeps_stdout_tail(self, credentials):
        result = CommandHandler().execute(_manifest({"command": _py("print('created')")}), credentials)
        assert result["returncode"] == 0
        assert result["stdout"].strip() == "created"

    def test_json_outputs(self, credentials):
        doc = json.dumps({"endpoint": "https://eks", "arn": "arn:aws:eks:1"})
        params = {"command": _py(f"print({doc!r})"), "outputs": "json", "resource_id": "arn"}

        result = CommandHandler().execute(_manifest(params), credentials)
        assert result["outputs"] == {"endpoint": "https://eks", "arn": "arn:aws:eks:1"}
        assert result["resource_id"] == "arn:aws:eks:1"

    def test_terraform_outputs_are_unwrapped(self, credentials):
        doc = json.dumps({"vpc_id": {"value": "vpc-1", "sensitive": False}})
        params = {"command": _py(f"print({doc!r})"), "outputs": "json"}

        result = CommandHandler().execute(_manifest(params), credentials)
        assert result["outputs"] == {"vpc_id": "vpc-1"}

    def test_invalid_json_is_permanent(self, credentials):
        params = {"command": _py("print('not json')"), "outputs": "json"}
        with pytest.raises(PermanentError, match="not valid JSON"):
            CommandHandler().execute(_manifest(params), credentials)

    def test_stdout_resource_id(self, credentials):
        params = {"command": _py("print('  vpc-42 ')"), "resource_id": "stdout"}
        assert CommandHandler().execute(_manifest(params), credentials)["resource_id"] == "vpc-42"

    def test_throttled_exit_is_transient(self, credentials):
        params = {"command": _py("import sys; sys.stderr.write('Rate exceeded'); sys.exit(254)")}
        with pytest.raises(TransientError, match="Rate exceeded"):
            CommandHandler().execute(_manifest(params), credentials)

    def test_denied_exit_is_permanent(self, credentials):
        params = {"command": _py("import sys; sys.stderr.write('AccessDenied'); sys.exit(254)")}
        with pytest.raises(PermanentError, match="AccessDenied"):
            CommandHandler().execute(_manifest(params), credentials)

    def test_timeout_is_transient(self, credentials):
        params = {"command": _py("import time; time.sleep(5)"), "timeout_s": 0.2}
        with pytest.raises(TransientError, match="timed out"):
            CommandHandler().execute(_manifest(params), credentials)

    def test_missing_command_param(self, credentials):
        with pytest.raises(PermanentError, match="no command configured"):
            CommandHandler().execute(_manifest({}), credentials)

    def test_environment_carries_context(self, credentials):
        code = (
            "import json, os; print(json.dumps({k: os.environ.get(k) for k in "
            "['AWS_REGION', 'INFRACHESTRA_STEP_ID', 'INFRACHESTRA_MODE', 'INFRACHESTRA_MISSING', 'EXTRA']}))"
        )
        params = {"command": _py(code), "outputs": "json", "env": {"EXTRA": "${namespace}"}}
        manifest = _manifest(params, mode="resume", variables={"namespace": "prod"})

        outputs = CommandHandler().execute(manifest, credentials)["outputs"]
        assert outputs == {
            "AWS_REGION": "us-east-1",
            "INFRACHESTRA_STEP_ID": "cluster",
            "INFRACHESTRA_MODE": "resume",
            "INFRACHESTRA_MISSING": "nodegroup",
            "EXTRA": "prod",
        }

    def test_import_mode_runs_import_command_first(self, credentials, tmp_path):
        marker = tmp_path / "imported"
        params = {
            "import_command": _py(f"open({str(marker)!r}, 'w').write('${{existing_id}}')"),
            "command": _py(f"print(open({str(marker)!r}).read())"),
            "resource_id": "stdout",
        }
        manifest = _manifest(params, mode="import", existing_id="arn:role/gha")

        result = CommandHandler().execute(manifest, credentials)
        assert marker.read_text() == "arn:role/gha"
        assert result["resource_id"] == "arn:role/gha"

    def test_import_command_ignored_in_create_mode(self, credentials, tmp_path):
        marker = tmp_path / "imported"
        params = {
            "import_command": _py(f"open({str(marker)!r}, 'w').write('x')"),
            "command": _py("pass"),
        }
        CommandHandler().execute(_manifest(params), credentials)
        assert not marker.exists()

    def test_existing_id_carried_as_resource_id(self, credentials):
        manifest = _manifest({"command": _py("pass")}, mode="resume", existing_id="arn:1")
        assert CommandHandler().execute(manifest, credentials)["resource_id"] == "arn:1"


class TestNoOpHandler:

    def test_returns_declared_outputs(self, credentials):
        manifest = _manifest({"outputs": {"vpc_id": "vpc-0"}}, handler="noop")
        result = NoOpHandler().execute(manifest, credentials)
        assert result["status"] == "noop"
        assert result["outputs"] == {"vpc_id": "vpc-0"}


class TestHandlerRegistry:

    def test_default_registry(self):
        registry = HandlerRegistry.create_default()
        assert registry.names == ["command", "noop"]
        assert isinstance(registry.get("command"), CommandHandler)

    def test_get_unknown_raises_key_error(self):
        with pytest.raises(KeyError, match="Registered"):
            HandlerRegistry().get("terraform")

    def test_dispatch_unknown_is_permanent(self, credentials):
        with pytest.raises(PermanentError, match="No handler registered"):
            HandlerRegistry().dispatch(_manifest({}, handler="terraform"), credentials)

    def test_dispatch_routes_by_handler_name(self, credentials):
        registry = HandlerRegistry()
        registry.register("noop", NoOpHandler())
        assert registry.has("noop")
        assert registry.dispatch(_manifest({}, handler="noop"), credentials)["action"] == "apply"

    def test_create_noop(self, credentials):
        registry = HandlerRegistry.create_noop()
        result = registry.dispatch(_manifest({"command": ["rm", "-rf", "/"]}), credentials)
        assert result["status"] == "noop"


class TestRunCommand:

    def test_passes_explicit_env_and_timeout(self, credentials):
        completed = subprocess.CompletedProcess(["terraform"], 0, stdout="ok", stderr="")
        with patch("infrachestra.handlers.command.subprocess.run", return_value=completed) as run:
            params = {"command": ["terraform", "apply"], "cwd": "/srv/infra", "timeout_s": 42}
            CommandHandler().execute(_manifest(params), credentials)

        kwargs = run.call_args.kwargs
        assert run.call_args.args[0] == ["terraform", "apply"]
        assert kwargs["cwd"] == "/srv/infra"
        assert kwargs["timeout"] == 42.0
        assert kwargs["env"]["AWS_REGION"] == "us-east-1"
        assert kwargs["env"]["INFRACHESTRA_ACTION"] == "apply"

    def test_bad_working_directory_is_permanent(self, credentials):
        with patch("infrachestra.handlers.command.subprocess.run", side_effect=NotADirectoryError()):
            with pytest.raises(PermanentError, match="working directory"):
                CommandHandler().execute(_manifest({"command": ["terraform"], "cwd": "/etc/hosts"}), credentials)
