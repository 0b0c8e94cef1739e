import os

import pytest
import yaml

from infrachestra.config import (
    OrchestratorConfig,
    default_config_yaml,
    get_config_path,
    get_infrachestra_home,
    load_config,
)
from infrachestra.errors import ConfigError
from infrachestra.retry import RetryPolicy


@pytest.fixture
def config_file(tmp_path):
    def write(data):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(data))
        return path
    return write


def test_home_from_env(isolated_home):
    assert get_infrachestra_home() == isolated_home
    assert get_config_path() == isolated_home / "config.yaml"


def test_defaults(isolated_home):
    config = OrchestratorConfig()
    assert config.project_name == "secure-supply-chain"
    assert config.retry == RetryPolicy()
    assert config.state_path() == isolated_home / "state"
    assert config.ledger_path() == isolated_home / "ledger"
    assert config.log_file_path() == isolated_home / "logs" / "infrachestra.log"
    assert config.definitions_path().name == "stacks"


def test_load_config(config_file, tmp_path):
    path = config_file({
        "project_name": "demo",
        "region": "eu-west-1",
        "state_dir": str(tmp_path / "state"),
        "retry": {"max_attempts": 5, "base_delay_s": 2},
        "reconcile_attempts": 4,
        "variables": {"app_name": "petclinic"},
        "logging": {"level": "debug", "format": "pretty"},
    })
    config = load_config(path)

    assert config.retry.max_attempts == 5
    assert config.reconcile_policy().max_attempts == 4
    assert config.reconcile_policy().base_delay_s == 2
    assert config.state_path() == tmp_path / "state"
    assert config.log_level() == "DEBUG"
    assert config.vars() == {"project_name": "demo", "region": "eu-west-1", "app_name": "petclinic"}


def test_missing_config(tmp_path):
    with pytest.raises(FileNotFoundError, match="infrachestra init"):
        load_config(tmp_path / "nope.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("project_name: [unclosed")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(path)


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config(path).region == "us-east-1"


def test_unknown_keys_rejected(config_file):
    with pytest.raises(ConfigError, match="colour"):
        load_config(config_file({"colour": "blue"}))


@pytest.mark.parametrize("data", [
    {"reconcile_attempts": 0},
    {"run_timeout_s": -5},
    {"run_timeout_s": 0},
    {"confirmation_token": ""},
    {"logging": {"format": "xml"}},
    {"logging": {"level": "chatty"}},
    {"retry": {"max_attempts": 0}},
    {"variables": ["not", "a", "mapping"]},
])
def test_validation(config_file, data):
    with pytest.raises(ConfigError):
        load_config(config_file(data))


def test_env_file_loaded_without_override(config_file, tmp_path, monkeypatch):
    monkeypatch.setenv("INFRA_TEST_KEPT", "from-shell")
    # registered with monkeypatch so teardown removes what load_dotenv sets
    monkeypatch.setenv("INFRA_TEST_NEW", "unset")
    monkeypatch.delenv("INFRA_TEST_NEW")
    (tmp_path / ".env").write_text("INFRA_TEST_KEPT=from-file\nINFRA_TEST_NEW=loaded\n")

    load_config(config_file({"env_file": ".env"}))

    assert os.environ["INFRA_TEST_KEPT"] == "from-shell"
    assert os.environ["INFRA_TEST_NEW"] == "loaded"


def test_missing_env_file(config_file):
    with pytest.raises(ConfigError, match="env_file"):
        load_config(config_file({"env_file": "missing.env"}))


def test_default_config_yaml_loads(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(default_config_yaml())

    config = load_config(path)
    assert config.credentials == {"kind": "command"}
    assert config.log_format() == "pretty"
