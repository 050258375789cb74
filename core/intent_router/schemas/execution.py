"""
Execution State Schema - Everything needed to report on or resume an execution.

ExecutionState is owned by a single in-flight execution. The engine is its
only writer; a state store keeps a serialized snapshot for crash recovery and
resume. Membership in completed/failed/skipped is append-like: a node leaves
those lists only when a quality rerun re-enqueues it.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from intent_router.schemas.graph import IntentGraph
from intent_router.schemas.requirements import ExecutionConfig


def now_iso() -> str:
    """Current UTC time in ISO 8601 format."""
    return datetime.now(UTC).isoformat()


class ExecutionStatus(StrEnum):
    """Status of an execution."""

    RUNNING = "running"
    PAUSED_FOR_APPROVAL = "paused_for_approval"
    PAUSED = "paused"  # Manual pause requested by an operator
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_QUALITY = "failed_quality"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.FAILED_QUALITY,
            ExecutionStatus.CANCELLED,
        )

    @property
    def is_paused(self) -> bool:
        return self in (ExecutionStatus.PAUSED_FOR_APPROVAL, ExecutionStatus.PAUSED)


class ErrorKind(StrEnum):
    """Why a node did not produce a successful result."""

    TIMEOUT = "Timeout"
    AGENT_ERROR = "AgentError"
    UPSTREAM_FAILURE = "UpstreamFailure"
    SKIPPED = "Skipped"  # Branch not taken
    CANCELLED = "Cancelled"


class NodeResult(BaseModel):
    """Outcome of one node. Immutable once written."""

    node_id: str
    success: bool
    result: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    execution_time_ms: int = 0
    attempts: int = 0
    started_at: str | None = None
    timestamp: str = Field(default_factory=now_iso)  # Completion time

    model_config = {"frozen": True}

    @classmethod
    def upstream_failure(cls, node_id: str, failed_dependency: str) -> "NodeResult":
        return cls(
            node_id=node_id,
            success=False,
            error=f"Dependency '{failed_dependency}' failed",
            error_kind=ErrorKind.UPSTREAM_FAILURE,
        )

    @classmethod
    def skipped(cls, node_id: str, reason: str) -> "NodeResult":
        return cls(
            node_id=node_id,
            success=False,
            error=reason,
            error_kind=ErrorKind.SKIPPED,
        )


class ApprovalRecord(BaseModel):
    """A human (or automatic) decision on an approval node."""

    approved: bool
    modified_context: dict[str, Any] | None = None
    decided_at: str = Field(default_factory=now_iso)
    automatic: bool = False


class ExecutionState(BaseModel):
    """Complete, serializable state of one execution."""

    execution_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    graph: IntentGraph
    config: ExecutionConfig = Field(default_factory=ExecutionConfig)

    current_node: str | None = None
    completed_nodes: list[str] = Field(default_factory=list)
    failed_nodes: list[str] = Field(default_factory=list)
    skipped_nodes: list[str] = Field(default_factory=list)
    results: dict[str, NodeResult] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    approvals: dict[str, ApprovalRecord] = Field(default_factory=dict)

    # Quality loop
    attempt_count: int = 0
    quality_score: float | None = None
    quality_report: dict[str, Any] | None = None

    # Suspension / termination
    paused_at_node: str | None = None
    paused_reason: str | None = None
    paused_at: str | None = None
    cancelled_at: str | None = None
    cancelled_reason: str | None = None
    error: str | None = None

    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    model_config = {"extra": "allow"}

    def touch(self) -> None:
        self.updated_at = now_iso()

    def resolved_nodes(self) -> set[str]:
        """Nodes that reached an outcome in the current pass."""
        return set(self.completed_nodes) | set(self.failed_nodes) | set(self.skipped_nodes)

    def is_resolved(self, node_id: str) -> bool:
        return (
            node_id in self.completed_nodes
            or node_id in self.failed_nodes
            or node_id in self.skipped_nodes
        )

    def all_resolved(self) -> bool:
        return all(self.is_resolved(node_id) for node_id in self.graph.node_ids)

    def record(self, result: NodeResult) -> None:
        """Record a node outcome in the matching bucket."""
        if self.is_resolved(result.node_id):
            raise ValueError(f"Node '{result.node_id}' already has an outcome in this pass")
        self.results[result.node_id] = result
        if result.success:
            self.completed_nodes.append(result.node_id)
        elif result.error_kind == ErrorKind.SKIPPED:
            self.skipped_nodes.append(result.node_id)
        else:
            self.failed_nodes.append(result.node_id)
        self.touch()

    def discard(self, node_ids: set[str]) -> None:
        """Drop outcomes so the nodes become eligible for scheduling again."""
        self.completed_nodes = [n for n in self.completed_nodes if n not in node_ids]
        self.failed_nodes = [n for n in self.failed_nodes if n not in node_ids]
        self.skipped_nodes = [n for n in self.skipped_nodes if n not in node_ids]
        for node_id in node_ids:
            self.results.pop(node_id, None)
        self.touch()

    def result_values(self) -> dict[str, Any]:
        """Map node id to the raw result of every successful node."""
        return {nid: r.result for nid, r in self.results.items() if r.success}


class ExecutionResult(BaseModel):
    """Structured result returned by every engine entry point.

    Callers must inspect ``status``; partial failure is not signalled by
    exceptions.
    """

    execution_id: str
    status: ExecutionStatus
    results: dict[str, NodeResult] = Field(default_factory=dict)
    completed_nodes: list[str] = Field(default_factory=list)
    failed_nodes: list[str] = Field(default_factory=list)
    skipped_nodes: list[str] = Field(default_factory=list)
    nodes_executed: int = 0
    execution_time_ms: int = 0
    context: dict[str, Any] = Field(default_factory=dict)

    paused_at_node: str | None = None
    waiting_for_approval: bool = False
    approval_request: dict[str, Any] | None = None

    attempt_count: int = 0
    quality_score: float | None = None
    error: str | None = None

    @classmethod
    def from_state(
        cls,
        state: ExecutionState,
        execution_time_ms: int = 0,
        approval_request: dict[str, Any] | None = None,
    ) -> "ExecutionResult":
        executed = sum(
            1 for r in state.results.values() if r.attempts > 0 or r.node_id in state.approvals
        )
        return cls(
            execution_id=state.execution_id,
            status=state.status,
            results=dict(state.results),
            completed_nodes=list(state.completed_nodes),
            failed_nodes=list(state.failed_nodes),
            skipped_nodes=list(state.skipped_nodes),
            nodes_executed=executed,
            execution_time_ms=execution_time_ms,
            context=dict(state.context),
            paused_at_node=state.paused_at_node,
            waiting_for_approval=state.status == ExecutionStatus.PAUSED_FOR_APPROVAL,
            approval_request=approval_request,
            attempt_count=state.attempt_count,
            quality_score=state.quality_score,
            error=state.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ExecutionStatusReport(BaseModel):
    """Progress summary for status queries."""

    execution_id: str
    status: ExecutionStatus
    progress_percentage: float
    nodes_completed: int
    nodes_total: int
    nodes_failed: int
    current_node: str | None = None
    created_at: str
    updated_at: str
    waiting_for_approval: dict[str, Any] | None = None

    @classmethod
    def from_state(cls, state: ExecutionState) -> "ExecutionStatusReport":
        total = len(state.graph.nodes)
        completed = len(state.completed_nodes)
        waiting = None
        if state.status == ExecutionStatus.PAUSED_FOR_APPROVAL:
            waiting = {"node_id": state.paused_at_node, "paused_at": state.paused_at}
        return cls(
            execution_id=state.execution_id,
            status=state.status,
            progress_percentage=(completed / total) * 100 if total else 0.0,
            nodes_completed=completed,
            nodes_total=total,
            nodes_failed=len(state.failed_nodes),
            current_node=state.current_node,
            created_at=state.created_at,
            updated_at=state.updated_at,
            waiting_for_approval=waiting,
        )
