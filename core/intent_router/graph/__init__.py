"""Graph execution: validation, scheduling, node execution, HITL and quality."""

from intent_router.graph.conditions import EdgeCondition, evaluate_expression
from intent_router.graph.engine import ExecutionEngine
from intent_router.graph.hitl import (
    ApprovalDecision,
    ApprovalRequest,
    HITLController,
    HITLNotifier,
    LoggingNotifier,
)
from intent_router.graph.inputs import resolve_node_input
from intent_router.graph.node_executor import NodeExecutor, compute_backoff_ms
from intent_router.graph.quality import (
    BasicSafetyValidator,
    CompletenessQualityGate,
    QualityGate,
    QualityRequest,
    QualityVerdict,
    SafetyCheck,
    SafetyValidator,
)
from intent_router.graph.scheduler import Scheduler, SchedulingDecision
from intent_router.graph.validator import GraphValidator, ValidationResult, validate_graph

__all__ = [
    # Engine
    "ExecutionEngine",
    # Validation and scheduling
    "GraphValidator",
    "ValidationResult",
    "validate_graph",
    "Scheduler",
    "SchedulingDecision",
    "EdgeCondition",
    "evaluate_expression",
    "resolve_node_input",
    # Node execution
    "NodeExecutor",
    "compute_backoff_ms",
    # HITL (Human-in-the-loop)
    "HITLController",
    "HITLNotifier",
    "LoggingNotifier",
    "ApprovalRequest",
    "ApprovalDecision",
    # Quality and safety
    "QualityGate",
    "QualityRequest",
    "QualityVerdict",
    "CompletenessQualityGate",
    "SafetyValidator",
    "SafetyCheck",
    "BasicSafetyValidator",
]
