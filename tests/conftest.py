import logging

import pytest

from infrachestra.credentials import CredentialContext
from infrachestra.ledger import InMemoryLedger
from infrachestra.retry import RetryPolicy
from infrachestra.schemas import ActionKind, ActionSpec, StepDef
from infrachestra.state_store import InMemoryStateStore


def _make_step(step_id, depends_on=(), inputs=None, destroy=True, verify=False, **apply_params):
    """StepDef with apply (and by default destroy) actions."""
    actions = {ActionKind.APPLY: ActionSpec(ActionKind.APPLY, dict(apply_params))}
    if destroy:
        actions[ActionKind.DESTROY] = ActionSpec(ActionKind.DESTROY, {})
    if verify:
        actions[ActionKind.VERIFY] = ActionSpec(ActionKind.VERIFY, {})
    return StepDef(
        step_id=step_id,
        depends_on=tuple(depends_on),
        handler="fake",
        actions=actions,
        inputs=dict(inputs or {}),
    )


@pytest.fixture
def make_step():
    return _make_step


@pytest.fixture
def credentials():
    return CredentialContext("arn:aws:iam::123456789012:role/test", {"AWS_REGION": "us-east-1"})


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def fast_retry():
    """Three attempts, no real delays, no jitter."""
    return RetryPolicy(max_attempts=3, base_delay_s=1.0, multiplier=2.0, max_delay_s=30.0, jitter=0.0)


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Never read or write the operator's real ~/.config/infrachestra."""
    home = tmp_path / "infrachestra_home"
    monkeypatch.setenv("INFRACHESTRA_HOME", str(home))
    return home


@pytest.fixture(autouse=True)
def reset_logging():
    """CLI invocations attach handlers to the package logger; drop them after each test."""
    yield
    logger = logging.getLogger("infrachestra")
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []
