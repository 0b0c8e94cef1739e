"""
Credential context - short-lived authentication material for one run.

Credentials are acquired once before a run, shared read-only by the
reconciler and the executor's handlers, and invalidated when the run ends.
Using an invalidated or expired context is a permanent error.

Providers:
- static: fixed material (tests, local development)
- env: named environment variables, required ones validated up front
- command: an identity command such as `aws sts get-caller-identity`
"""

import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional, Sequence

from infrachestra.errors import ConfigError, PermanentError, TransientError
from infrachestra.retry import RetryPolicy, retry_transient

logger = logging.getLogger(__name__)


# Environment variables forwarded from the operator's shell to handlers
DEFAULT_PASSTHROUGH = (
    "AWS_PROFILE",
    "AWS_REGION",
    "AWS_DEFAULT_REGION",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "KUBECONFIG",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialContext:
    """
    Process-scoped, read-only holder of authentication material.

    Attributes:
        identity: Who the material authenticates as (role ARN, account, user)
        material: Read-only mapping exported to handlers as environment variables
        acquired_at: When the material was acquired
        expires_at: When the material stops being valid (None = end of run)
    """

    def __init__(
        self,
        identity: str,
        material: Optional[Mapping[str, str]] = None,
        expires_at: Optional[datetime] = None,
    ):
        self._identity = identity
        self._material = MappingProxyType(dict(material or {}))
        self._acquired_at = _utcnow()
        self._expires_at = expires_at
        self._valid = True

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def acquired_at(self) -> datetime:
        return self._acquired_at

    @property
    def expires_at(self) -> Optional[datetime]:
        return self._expires_at

    @property
    def valid(self) -> bool:
        if not self._valid:
            return False
        if self._expires_at is not None and _utcnow() >= self._expires_at:
            return False
        return True

    @property
    def material(self) -> Mapping[str, str]:
        self.require()
        return self._material

    def require(self) -> None:
        """Raise PermanentError unless the context is usable."""
        if not self._valid:
            raise PermanentError(f"Credentials for {self._identity} have been invalidated")
        if not self.valid:
            raise PermanentError(f"Credentials for {self._identity} expired at {self._expires_at}")

    def env(self) -> dict[str, str]:
        """Material as an environment mapping for subprocesses."""
        return dict(self.material)

    def invalidate(self) -> None:
        """Drop the material. Idempotent."""
        self._valid = False
        self._material = MappingProxyType({})

    def __repr__(self) -> str:
        state = "valid" if self.valid else "invalid"
        return f"CredentialContext(identity={self._identity!r}, {state})"


class CredentialProvider(ABC):
    """Acquires a CredentialContext before a run."""

    @abstractmethod
    def acquire(self) -> CredentialContext:
        """
        Acquire credentials.

        Raises:
            PermanentError: If credentials are missing or rejected
        """
        pass


class StaticCredentialProvider(CredentialProvider):
    """Fixed material, optionally with a time-to-live."""

    def __init__(self, identity: str = "static", material: Optional[Mapping[str, str]] = None, ttl_s: Optional[float] = None):
        self.identity = identity
        self.material = dict(material or {})
        self.ttl_s = ttl_s

    def acquire(self) -> CredentialContext:
        expires_at = _utcnow() + timedelta(seconds=self.ttl_s) if self.ttl_s else None
        return CredentialContext(self.identity, self.material, expires_at=expires_at)


class EnvCredentialProvider(CredentialProvider):
    """
    Material from environment variables.

    Every name in `required` must be set and non-empty; names in `optional`
    are forwarded when present.
    """

    def __init__(
        self,
        required: Sequence[str] = (),
        optional: Sequence[str] = DEFAULT_PASSTHROUGH,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.required = tuple(required)
        self.optional = tuple(optional)
        self._environ = environ

    def acquire(self) -> CredentialContext:
        environ = self._environ if self._environ is not None else os.environ
        missing = [name for name in self.required if not environ.get(name)]
        if missing:
            raise PermanentError(f"Required environment variables not set: {', '.join(missing)}")

        material = {name: environ[name] for name in (*self.required, *self.optional) if environ.get(name)}
        identity = material.get("AWS_PROFILE") or material.get("AWS_ACCESS_KEY_ID") or "environment"
        return CredentialContext(identity, material)


class CommandCredentialProvider(CredentialProvider):
    """
    Verify credentials with an identity command.

    The command must print JSON; `Arn` (or `UserId`) becomes the identity and
    `Account` is exported as AWS_ACCOUNT_ID. Environment variables listed in
    `passthrough` are forwarded as material.
    """

    def __init__(
        self,
        command: Sequence[str] = ("aws", "sts", "get-caller-identity", "--output", "json"),
        passthrough: Sequence[str] = DEFAULT_PASSTHROUGH,
        timeout_s: float = 30.0,
    ):
        self.command = list(command)
        self.passthrough = tuple(passthrough)
        self.timeout_s = timeout_s

    def acquire(self) -> CredentialContext:
        logger.debug(f"Checking credentials: {' '.join(self.command)}")
        try:
            result = subprocess.run(
                self.command,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                check=False,
            )
        except FileNotFoundError as e:
            raise PermanentError(f"Credential command not found: {self.command[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise TransientError(f"Credential command timed out after {self.timeout_s}s") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()[:500]
            raise PermanentError(f"Credentials not configured or invalid: {stderr}")

        try:
            identity_doc = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise PermanentError(f"Credential command returned invalid JSON: {e}") from e

        material = {name: os.environ[name] for name in self.passthrough if os.environ.get(name)}
        if identity_doc.get("Account"):
            material["AWS_ACCOUNT_ID"] = str(identity_doc["Account"])
        identity = identity_doc.get("Arn") or identity_doc.get("UserId") or "unknown"
        logger.info(f"Credentials verified for {identity}")
        return CredentialContext(identity, material)


def provider_from_config(settings: Optional[Mapping[str, Any]]) -> CredentialProvider:
    """
    Build a provider from the `credentials` config section.

    Example:
        credentials:
          kind: command
          command: [aws, sts, get-caller-identity, --output, json]
    """
    settings = dict(settings or {})
    kind = settings.pop("kind", "env")
    if kind == "env":
        return EnvCredentialProvider(
            required=settings.get("required", ()),
            optional=settings.get("optional", DEFAULT_PASSTHROUGH),
        )
    if kind == "command":
        return CommandCredentialProvider(
            command=settings.get("command", ("aws", "sts", "get-caller-identity", "--output", "json")),
            passthrough=settings.get("passthrough", DEFAULT_PASSTHROUGH),
            timeout_s=float(settings.get("timeout_s", 30.0)),
        )
    if kind == "static":
        return StaticCredentialProvider(
            identity=settings.get("identity", "static"),
            material=settings.get("material", {}),
            ttl_s=settings.get("ttl_s"),
        )
    raise ConfigError(f"Unknown credentials kind: {kind}")


@contextmanager
def credential_scope(
    provider: CredentialProvider,
    policy: Optional[RetryPolicy] = None,
) -> Iterator[CredentialContext]:
    """
    Acquire credentials for the duration of a run; always invalidate.

    With a policy, transient acquisition failures (e.g. an STS timeout) are retried.
    """
    if policy is not None:
        context = retry_transient(provider.acquire, policy, description="credential acquisition")
    else:
        context = provider.acquire()
    try:
        yield context
    finally:
        context.invalidate()
        logger.debug(f"Credentials for {context.identity} invalidated")
