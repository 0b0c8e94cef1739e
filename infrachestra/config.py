"""
Configuration management for infrachestra.

Loads and validates config.yaml from INFRACHESTRA_HOME
(default ~/.config/infrachestra). An optional env_file is loaded with
python-dotenv before credentials are acquired; variables already present in
the environment win.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from infrachestra.errors import ConfigError
from infrachestra.retry import RetryPolicy

CONFIG_FILENAME = "config.yaml"

LOG_FORMATS = ("structured", "pretty")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_infrachestra_home() -> Path:
    """Directory holding config.yaml, state and ledger by default."""
    return Path(os.environ.get("INFRACHESTRA_HOME", "~/.config/infrachestra")).expanduser()


def get_config_path() -> Path:
    return get_infrachestra_home() / CONFIG_FILENAME


@dataclass
class OrchestratorConfig:
    project_name: str = "secure-supply-chain"
    region: str = "us-east-1"
    definitions_dir: Optional[str] = None
    state_dir: Optional[str] = None
    ledger_dir: Optional[str] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    reconcile_attempts: int = 3
    run_timeout_s: Optional[float] = None
    confirmation_token: str = "DESTROY"
    credentials: dict[str, Any] = field(default_factory=dict)
    required_tools: list[str] = field(default_factory=lambda: ["aws", "terraform", "kubectl"])
    variables: dict[str, Any] = field(default_factory=dict)
    env_file: Optional[str] = None
    logging: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.retry, dict):
            self.retry = RetryPolicy.from_dict(self.retry)
        if not self.project_name:
            raise ConfigError("project_name must be non-empty")
        if not self.region:
            raise ConfigError("region must be non-empty")
        if not isinstance(self.reconcile_attempts, int) or self.reconcile_attempts < 1:
            raise ConfigError(f"reconcile_attempts must be a positive integer, got {self.reconcile_attempts!r}")
        if self.run_timeout_s is not None and self.run_timeout_s <= 0:
            raise ConfigError(f"run_timeout_s must be positive, got {self.run_timeout_s}")
        if not self.confirmation_token:
            raise ConfigError("confirmation_token must be non-empty")
        if not isinstance(self.credentials, dict):
            raise ConfigError("credentials must be a mapping")
        if not isinstance(self.variables, dict):
            raise ConfigError("variables must be a mapping")
        log_format = self.logging.get("format", "structured")
        if log_format not in LOG_FORMATS:
            raise ConfigError(f"logging.format must be one of {LOG_FORMATS}, got {log_format!r}")
        log_level = str(self.logging.get("level", "INFO")).upper()
        if log_level not in LOG_LEVELS:
            raise ConfigError(f"logging.level must be one of {LOG_LEVELS}, got {log_level!r}")

    @property
    def home(self) -> Path:
        return get_infrachestra_home()

    def definitions_path(self) -> Path:
        """Stack definitions directory (default: the bundled stacks)."""
        if self.definitions_dir:
            return Path(self.definitions_dir).expanduser()
        return Path(__file__).parent / "stacks"

    def state_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return self.home / "state"

    def ledger_path(self) -> Path:
        if self.ledger_dir:
            return Path(self.ledger_dir).expanduser()
        return self.home / "ledger"

    def log_file_path(self) -> Path:
        log_file = self.logging.get("file")
        if log_file:
            return Path(log_file).expanduser()
        return self.home / "logs" / "infrachestra.log"

    def log_level(self) -> str:
        return str(self.logging.get("level", "INFO")).upper()

    def log_format(self) -> str:
        return self.logging.get("format", "structured")

    def log_to_console(self) -> bool:
        return bool(self.logging.get("console", True))

    def reconcile_policy(self) -> RetryPolicy:
        """Same backoff as actions, with its own attempt budget."""
        return RetryPolicy.from_dict({**self.retry.to_dict(), "max_attempts": self.reconcile_attempts})

    def vars(self) -> dict[str, Any]:
        """Placeholder context for ${name} expansion in step params."""
        context = {"project_name": self.project_name, "region": self.region}
        context.update(self.variables)
        return context

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, RetryPolicy):
                value = value.to_dict()
            if value is not None:
                result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestratorConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)


def load_config(path: Optional[Path] = None) -> OrchestratorConfig:
    """
    Load configuration from config.yaml.

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the file is not valid YAML or fails validation
    """
    config_path = Path(path) if path else get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(
            f"infrachestra config.yaml not found at {config_path}. "
            f"Run 'infrachestra init' to create one."
        )

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    config = OrchestratorConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if not env_path.is_absolute():
            env_path = config_path.parent / env_path
        if not env_path.exists():
            raise ConfigError(f"env_file not found: {env_path}")
        load_dotenv(env_path, override=False)

    return config


def default_config_yaml() -> str:
    """Contents written by `infrachestra init`."""
    config = OrchestratorConfig(logging={"level": "INFO", "format": "pretty", "console": True})
    data = config.to_dict()
    data["credentials"] = {"kind": "command"}
    return yaml.safe_dump(data, sort_keys=False)
