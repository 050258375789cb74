"""
Exceptions raised by the intent router.

Node-level failures (timeouts, agent errors, upstream failures) are never
raised out of the engine; they are recorded on NodeResult. Only the errors
below abort an engine call.
"""

from dataclasses import dataclass
from enum import StrEnum


class IntentRouterError(Exception):
    """Base class for all intent router errors."""


class IssueKind(StrEnum):
    """Kinds of structural problems found while validating a graph."""

    CYCLE_DETECTED = "CycleDetected"
    DANGLING_REFERENCE = "DanglingReference"
    MALFORMED_APPROVAL_NODE = "MalformedApprovalNode"
    DUPLICATE_NODE_ID = "DuplicateNodeId"


@dataclass
class GraphIssue:
    """A single validation finding."""

    kind: IssueKind
    detail: str
    node_id: str | None = None

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}"


class GraphValidationError(IntentRouterError):
    """The submitted graph is not a well-formed DAG."""

    def __init__(self, issues: list[GraphIssue]):
        self.issues = issues
        super().__init__("Invalid graph: " + "; ".join(str(i) for i in issues))

    @property
    def kinds(self) -> set[IssueKind]:
        return {issue.kind for issue in self.issues}


class SafetyCheckFailedError(IntentRouterError):
    """Pre-execution safety validation rejected the input."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Safety validation failed: " + "; ".join(errors))


class StateStoreError(IntentRouterError):
    """An execution state store could not load or save a snapshot."""


class PersistenceRequiredForPauseFailed(IntentRouterError):
    """State could not be persisted before suspending an execution.

    Without a persisted snapshot the execution could never be resumed, so
    the pause is aborted instead.
    """

    def __init__(self, execution_id: str, node_id: str | None):
        self.execution_id = execution_id
        self.node_id = node_id
        super().__init__(
            f"Failed to persist execution '{execution_id}' before pausing at node '{node_id}'"
        )


class ExecutionNotFoundError(IntentRouterError):
    """No execution with the given id is active or persisted."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class InvalidExecutionStateError(IntentRouterError):
    """The requested operation is not allowed in the execution's current status."""

    def __init__(self, execution_id: str, status: str, operation: str):
        self.execution_id = execution_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} execution '{execution_id}' in status: {status}")


class AgentError(IntentRouterError):
    """An agent invocation failed."""

    retryable: bool = False


class AgentUnavailableError(AgentError):
    """Transient transport failure; the call may succeed if retried."""

    retryable = True


class AgentValidationError(AgentError):
    """The agent rejected the request; retrying will not help."""

    retryable = False
