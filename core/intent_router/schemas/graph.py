"""
Intent Graph Schema - The DAG of agent invocations submitted for execution.

A graph is produced upstream by a planner and handed to the engine as JSON.
Nodes come in two kinds, resolved once while the graph is parsed:

- StandardNode: one agent/tool invocation
- ApprovalNode: a human-in-the-loop checkpoint that suspends execution

Edges and node ``dependencies`` both contribute predecessors; an edge may
additionally carry a condition (see ``intent_router.graph.conditions``).
"""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator

# Markers the upstream planners use for approval steps
HITL_AGENT = "hitl"
LEGACY_HITL_AGENT = "gaff-tools"
LEGACY_HITL_TOOL = "human_in_the_loop"


class BackoffStrategy(StrEnum):
    """How the delay between retry attempts grows."""

    LINEAR = "linear"  # attempt * base
    EXPONENTIAL = "exponential"  # base * 2^(attempt-1)


class RetryPolicy(BaseModel):
    """Retry settings for a node's agent invocation."""

    max_attempts: int = Field(default=1, ge=1)
    backoff: BackoffStrategy = Field(
        default=BackoffStrategy.EXPONENTIAL,
        validation_alias=AliasChoices("backoff", "backoff_strategy"),
    )

    model_config = {"extra": "allow", "populate_by_name": True}


class ApprovalOptions(BaseModel):
    """Presentation hints for the human operator. Not enforced by the engine."""

    action_description: str = ""
    options: list[str] = Field(default_factory=lambda: ["approve", "reject"])
    timeout_seconds: int | None = None  # Advisory, enforced by the notifier
    required_approvers: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class NodeSpec(BaseModel):
    """Fields shared by every node kind."""

    id: str = Field(validation_alias=AliasChoices("id", "node_id"))
    agent: str
    tool: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    retry_policy: RetryPolicy | None = None
    timeout_ms: int | None = Field(default=None, gt=0)
    description: str = ""

    model_config = {"extra": "allow", "populate_by_name": True}


class StandardNode(NodeSpec):
    """A node that invokes one agent tool."""

    kind: Literal["standard"] = "standard"


class ApprovalNode(NodeSpec):
    """
    A node that pauses execution until a human approves or rejects.

    Branch targets are gated on the decision: the targets of the branch not
    taken are skipped. ``default_next`` fills in whichever branch is missing.
    """

    kind: Literal["approval"] = "approval"
    agent: str = HITL_AGENT
    approval_options: ApprovalOptions = Field(default_factory=ApprovalOptions)
    next_on_approve: list[str] | None = None
    next_on_reject: list[str] | None = None
    default_next: list[str] | None = None

    @field_validator("next_on_approve", "next_on_reject", "default_next", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @property
    def has_branches(self) -> bool:
        approve = self.next_on_approve if self.next_on_approve is not None else self.default_next
        reject = self.next_on_reject if self.next_on_reject is not None else self.default_next
        return approve is not None and reject is not None

    def branch_targets(self, approved: bool) -> list[str]:
        """Targets of the branch taken for a decision."""
        branch = self.next_on_approve if approved else self.next_on_reject
        if branch is None:
            branch = self.default_next
        return list(branch or [])

    def gated_targets(self) -> dict[str, set[bool]]:
        """Map each branch target to the decisions under which it runs."""
        gates: dict[str, set[bool]] = {}
        for approved in (True, False):
            for target in self.branch_targets(approved):
                gates.setdefault(target, set()).add(approved)
        return gates


def is_approval_marker(data: dict[str, Any]) -> bool:
    """Check whether a raw node dict describes an approval step."""
    if data.get("kind") == "approval":
        return True
    agent = data.get("agent")
    if agent == HITL_AGENT:
        return True
    return agent == LEGACY_HITL_AGENT and data.get("tool") == LEGACY_HITL_TOOL


Node = Annotated[StandardNode | ApprovalNode, Field(discriminator="kind")]


class EdgeSpec(BaseModel):
    """
    A directed edge between two nodes.

    Examples:
        EdgeSpec(source="fetch", target="analyze")
        EdgeSpec(source="fetch", target="fallback", condition="on_failure")
        EdgeSpec(source="score", target="publish", condition="result['score'] > 0.8")
    """

    source: str = Field(
        validation_alias=AliasChoices("from", "from_node", "source"),
        serialization_alias="from",
    )
    target: str = Field(
        validation_alias=AliasChoices("to", "to_node", "target"),
        serialization_alias="to",
    )
    condition: str | None = None
    data_flow: dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "allow", "populate_by_name": True}


class ExecutionPlan(BaseModel):
    """Planner hints. The scheduler derives its own grouping from the edges."""

    execution_strategy: str = "parallel"
    parallel_groups: list[list[str]] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class IntentGraph(BaseModel):
    """Complete graph submitted for execution."""

    graph_id: str = Field(validation_alias=AliasChoices("graph_id", "id"))
    version: str = "1.0.0"
    nodes: list[Node] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    execution_plan: ExecutionPlan | None = None
    default_retry_policy: RetryPolicy | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("nodes", mode="before")
    @classmethod
    def _tag_node_kinds(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        tagged = []
        for item in value:
            if isinstance(item, dict) and "kind" not in item:
                item = {**item, "kind": "approval" if is_approval_marker(item) else "standard"}
            tagged.append(item)
        return tagged

    def get_node(self, node_id: str) -> StandardNode | ApprovalNode | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def approval_nodes(self) -> list[ApprovalNode]:
        return [node for node in self.nodes if isinstance(node, ApprovalNode)]

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        return [e for e in self.edges if e.target == node_id]

    def ordering_pairs(self) -> list[tuple[str, str]]:
        """
        Every (upstream, downstream) pair that constrains execution order.

        Declared dependencies, edges and approval branch targets all count.
        Pairs are returned once each, in declaration order.
        """
        pairs: list[tuple[str, str]] = []
        for node in self.nodes:
            for dep in node.dependencies:
                pairs.append((dep, node.id))
            if isinstance(node, ApprovalNode):
                for target in node.gated_targets():
                    pairs.append((node.id, target))
        for edge in self.edges:
            pairs.append((edge.source, edge.target))
        return list(dict.fromkeys(pairs))

    def predecessors(self) -> dict[str, list[str]]:
        """Map each node id to the ids that must resolve before it may run."""
        known = set(self.node_ids)
        preds: dict[str, list[str]] = {node_id: [] for node_id in self.node_ids}
        for upstream, downstream in self.ordering_pairs():
            if upstream in known and downstream in known:
                preds[downstream].append(upstream)
        return preds

    def successors(self) -> dict[str, list[str]]:
        """Map each node id to the ids waiting on it."""
        known = set(self.node_ids)
        succs: dict[str, list[str]] = {node_id: [] for node_id in self.node_ids}
        for upstream, downstream in self.ordering_pairs():
            if upstream in known and downstream in known:
                succs[upstream].append(downstream)
        return succs
