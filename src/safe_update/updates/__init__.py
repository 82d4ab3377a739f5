"""
Module update orchestration for safe-update.

This package implements controlled, reversible module updates:
- Version classification and the update strategy table
- Update attempt records
- Rollback points on a LIFO stack
- State machine driving validate, snapshot, apply, verify, commit/rollback
- Risk-ordered batch execution
"""

from safe_update.updates.batch import (
    BatchEntry,
    BatchResult,
    BatchScheduler,
    BatchStatus,
    UpdateRequest,
)
from safe_update.updates.context import Module, RollbackPoint, UpdateContext
from safe_update.updates.rollback import RollbackManager
from safe_update.updates.state_machine import (
    OutcomeKind,
    UpdateOutcome,
    UpdateState,
    UpdateStateMachine,
)
from safe_update.updates.version import (
    UPDATE_STRATEGIES,
    RiskLevel,
    UpdateStrategy,
    UpdateType,
    classify,
    compare_versions,
    get_strategy,
    is_semantic_version,
    parse_semantic_version,
)

__all__ = [
    # Versions
    "UpdateType",
    "RiskLevel",
    "UpdateStrategy",
    "UPDATE_STRATEGIES",
    "classify",
    "compare_versions",
    "get_strategy",
    "is_semantic_version",
    "parse_semantic_version",
    # Attempts
    "Module",
    "RollbackPoint",
    "UpdateContext",
    # Rollback
    "RollbackManager",
    # State machine
    "UpdateStateMachine",
    "UpdateState",
    "OutcomeKind",
    "UpdateOutcome",
    # Batch
    "BatchScheduler",
    "BatchEntry",
    "BatchResult",
    "BatchStatus",
    "UpdateRequest",
]
