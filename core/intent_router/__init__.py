"""
Intent Router - Executes intent graphs of agent calls.

An intent graph is a DAG of agent invocations produced by an upstream
planner. The router validates it, runs independent nodes in parallel,
pauses at human-approval nodes and reruns work that fails a quality check.

Quick start:
    from intent_router import AgentRegistry, ExecutionEngine

    registry = AgentRegistry()
    registry.register("search", lambda tool, input: {"hits": []})
    engine = ExecutionEngine(registry)
    result = await engine.execute_graph(graph_dict)
"""

from intent_router.agents import AgentRegistry, AgentRequest, AgentResponse, HttpAgentInvoker
from intent_router.errors import (
    ExecutionNotFoundError,
    GraphValidationError,
    IntentRouterError,
    InvalidExecutionStateError,
    PersistenceRequiredForPauseFailed,
    SafetyCheckFailedError,
)
from intent_router.graph import ExecutionEngine, GraphValidator, Scheduler
from intent_router.schemas import (
    ExecutionConfig,
    ExecutionResult,
    ExecutionStatus,
    IntentGraph,
    NodeResult,
)
from intent_router.storage import FileStateStore, InMemoryStateStore

__version__ = "0.1.0"

__all__ = [
    # Engine
    "ExecutionEngine",
    "GraphValidator",
    "Scheduler",
    # Schemas
    "IntentGraph",
    "ExecutionConfig",
    "ExecutionResult",
    "ExecutionStatus",
    "NodeResult",
    # Agents
    "AgentRegistry",
    "AgentRequest",
    "AgentResponse",
    "HttpAgentInvoker",
    # Storage
    "InMemoryStateStore",
    "FileStateStore",
    # Errors
    "IntentRouterError",
    "GraphValidationError",
    "SafetyCheckFailedError",
    "PersistenceRequiredForPauseFailed",
    "ExecutionNotFoundError",
    "InvalidExecutionStateError",
]
