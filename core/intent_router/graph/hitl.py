"""
HITL (Human-In-The-Loop) approval protocol.

State machine for an execution that reaches an approval node:

    running --(approval node ready)--> paused_for_approval
    paused_for_approval --resume(approved)--> running (approve branch)
    paused_for_approval --resume(rejected)--> running (reject branch)
    paused_for_approval --cancel--> cancelled

The controller only changes ExecutionState fields; persisting the suspended
state and returning to the caller is the engine's job. Approval timeouts are
advisory: they are handed to the notifier, and an execution with no decision
stays paused until it is resumed or cancelled.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from intent_router.errors import InvalidExecutionStateError
from intent_router.schemas.execution import (
    ApprovalRecord,
    ExecutionState,
    ExecutionStatus,
    NodeResult,
    now_iso,
)
from intent_router.schemas.graph import ApprovalNode

logger = logging.getLogger(__name__)


@dataclass
class ApprovalRequest:
    """What a human operator needs to make a decision."""

    execution_id: str
    graph_id: str
    node_id: str
    action_description: str
    options: list[str] = field(default_factory=lambda: ["approve", "reject"])
    timeout_seconds: int | None = None
    required_approvers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "execution_id": self.execution_id,
            "graph_id": self.graph_id,
            "node_id": self.node_id,
            "action_description": self.action_description,
            "options": self.options,
            "timeout_seconds": self.timeout_seconds,
            "required_approvers": self.required_approvers,
        }


@dataclass
class ApprovalDecision:
    """A human's answer to an ApprovalRequest."""

    approved: bool
    modified_context: dict[str, Any] | None = None

    def to_result(self) -> dict[str, Any]:
        return {"approved": self.approved, "modified_context": self.modified_context}


@runtime_checkable
class HITLNotifier(Protocol):
    """Side channel that tells a human an execution is waiting on them."""

    async def notify(self, request: ApprovalRequest) -> None: ...


class LoggingNotifier:
    """Notifier that only writes the request to the log."""

    async def notify(self, request: ApprovalRequest) -> None:
        logger.info(
            f"⏸ Execution {request.execution_id} awaits approval at '{request.node_id}': "
            f"{request.action_description}",
            extra={"event": "approval_requested"},
        )


class HITLController:
    """
    Suspends executions at approval nodes and applies decisions on resume.

    Notification is fire-and-forget: a slow or failing notifier never delays
    or breaks the pause.
    """

    def __init__(self, notifier: HITLNotifier | None = None):
        self.notifier = notifier or LoggingNotifier()
        self._pending: set[asyncio.Task] = set()

    def build_request(self, state: ExecutionState, node: ApprovalNode) -> ApprovalRequest:
        options = node.approval_options
        return ApprovalRequest(
            execution_id=state.execution_id,
            graph_id=state.graph.graph_id,
            node_id=node.id,
            action_description=options.action_description
            or node.description
            or f"Approve step '{node.id}'",
            options=list(options.options),
            timeout_seconds=options.timeout_seconds,
            required_approvers=list(options.required_approvers),
        )

    def suspend(self, state: ExecutionState, node: ApprovalNode) -> ApprovalRequest:
        """Move the execution into ``paused_for_approval`` at ``node``."""
        state.status = ExecutionStatus.PAUSED_FOR_APPROVAL
        state.paused_at_node = node.id
        state.current_node = node.id
        state.paused_reason = "awaiting_approval"
        state.paused_at = now_iso()
        state.touch()
        return self.build_request(state, node)

    def notify(self, request: ApprovalRequest) -> None:
        """Send the request to the notifier without waiting for it."""
        task = asyncio.create_task(self.notifier.notify(request))
        self._pending.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"HITL notifier failed: {error}")

    async def flush(self) -> None:
        """Wait for outstanding notifications (mostly for tests and shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    def check_resumable(state: ExecutionState, approved: bool | None) -> None:
        """Raise unless ``state`` is paused and the decision fits the pause kind."""
        if state.status == ExecutionStatus.PAUSED_FOR_APPROVAL:
            if approved is None:
                raise InvalidExecutionStateError(
                    state.execution_id, state.status, "resume without a decision"
                )
            return
        if state.status != ExecutionStatus.PAUSED:
            raise InvalidExecutionStateError(state.execution_id, state.status, "resume")

    @staticmethod
    def apply_decision(
        state: ExecutionState,
        node: ApprovalNode,
        decision: ApprovalDecision,
        automatic: bool = False,
    ) -> NodeResult:
        """
        Record the decision and return the approval node's result.

        ``modified_context`` is merged into the execution context. The caller
        records the returned NodeResult, which marks the node completed.
        """
        if decision.modified_context:
            state.context.update(decision.modified_context)
        state.approvals[node.id] = ApprovalRecord(
            approved=decision.approved,
            modified_context=decision.modified_context,
            automatic=automatic,
        )
        if state.paused_at_node == node.id:
            state.paused_at_node = None
            state.paused_reason = None
            state.paused_at = None
        state.status = ExecutionStatus.RUNNING
        state.touch()

        verb = "approved" if decision.approved else "rejected"
        how = " automatically" if automatic else ""
        logger.info(f"Approval node '{node.id}' {verb}{how}")
        return NodeResult(
            node_id=node.id,
            success=True,
            result=decision.to_result(),
            started_at=now_iso(),
        )

    @staticmethod
    def replay_decision(state: ExecutionState, node: ApprovalNode) -> NodeResult | None:
        """Result for an approval node that already has a recorded decision."""
        record = state.approvals.get(node.id)
        if record is None:
            return None
        return NodeResult(
            node_id=node.id,
            success=True,
            result={"approved": record.approved, "modified_context": record.modified_context},
            started_at=now_iso(),
        )
