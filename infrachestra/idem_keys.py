"""
Idempotency key generation for lifecycle steps.

A step's idempotency key is a deterministic hash of its declared
desired-state inputs. The executor records the key alongside each applied
resource; the reconciler compares the recorded key with the step's current
key to tell "already applied" from "drifted".

Key pattern:
    sha256:{hex digest of canonical JSON}

Rule: the key is opaque - never parsed. Only equality matters.

Inputs that describe presentation or ordering (label, depends_on) are not
part of the key, so relabelling a step or adding a dependency does not
register as drift.
"""

import hashlib
import json
from typing import Any, Mapping, Optional


KEY_PREFIX = "sha256:"


def canonical_json(value: Any) -> str:
    """
    Serialize a value to canonical JSON (sorted keys, no whitespace).

    Example:
        >>> canonical_json({"b": 1, "a": [1, 2]})
        '{"a":[1,2],"b":1}'
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def desired_state_key(
    handler: str,
    inputs: Mapping[str, Any],
    apply_params: Optional[Mapping[str, Any]] = None,
) -> str:
    """
    Compute the idempotency key for a step's desired state.

    Args:
        handler: Name of the action handler responsible for the step
        inputs: Declared desired-state inputs of the step
        apply_params: Parameters of the step's apply action

    Returns:
        Key string of the form "sha256:<64 hex chars>"

    Example:
        >>> key = desired_state_key("command", {"region": "us-east-1"})
        >>> key == desired_state_key("command", {"region": "us-east-1"})
        True
    """
    payload = {
        "handler": handler,
        "inputs": dict(inputs),
        "apply": dict(apply_params or {}),
    }
    digest = hashlib.sha256(canonical_json(payload).encode()).hexdigest()
    return f"{KEY_PREFIX}{digest}"


def short_key(key: Optional[str], length: int = 12) -> str:
    """Abbreviate a key for console output."""
    if not key:
        return "-"
    if key.startswith(KEY_PREFIX):
        key = key[len(KEY_PREFIX):]
    return key[:length]
