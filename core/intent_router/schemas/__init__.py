"""Pydantic models for graphs, execution state and execution settings."""

from intent_router.schemas.execution import (
    ApprovalRecord,
    ErrorKind,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    ExecutionStatusReport,
    NodeResult,
)
from intent_router.schemas.graph import (
    ApprovalNode,
    ApprovalOptions,
    BackoffStrategy,
    EdgeSpec,
    IntentGraph,
    RetryPolicy,
    StandardNode,
)
from intent_router.schemas.requirements import (
    ExecutionConfig,
    QualityRequirements,
    RerunStrategy,
    SafetyRequirements,
)

__all__ = [
    # Graph
    "IntentGraph",
    "StandardNode",
    "ApprovalNode",
    "ApprovalOptions",
    "EdgeSpec",
    "RetryPolicy",
    "BackoffStrategy",
    # Execution
    "ExecutionStatus",
    "ErrorKind",
    "NodeResult",
    "ApprovalRecord",
    "ExecutionState",
    "ExecutionResult",
    "ExecutionStatusReport",
    # Settings
    "ExecutionConfig",
    "QualityRequirements",
    "SafetyRequirements",
    "RerunStrategy",
]
