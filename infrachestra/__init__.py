"""
infrachestra - Idempotent infrastructure lifecycle orchestrator

Plans dependency-ordered steps, reconciles them against live state, and
applies or destroys them with bounded retries, rollback and a run ledger.
"""

__version__ = "0.1.0"


__all__ = [
    "OrchestratorConfig",
    "load_config",
    "get_infrachestra_home",
    "build_plan",
    "Reconciler",
    "Executor",
    "ExecutionResult",
    "CancelToken",
]

from .config import OrchestratorConfig, load_config, get_infrachestra_home
from .planner import build_plan
from .reconciler import Reconciler
from .executor import CancelToken, ExecutionResult, Executor
