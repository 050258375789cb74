"""Structural validation for intent graphs.

Runs before any execution state is created. A graph that fails here is
never scheduled.
"""

import logging
from dataclasses import dataclass, field

from intent_router.errors import GraphIssue, GraphValidationError, IssueKind
from intent_router.schemas.graph import ApprovalNode, IntentGraph

logger = logging.getLogger(__name__)

# DFS colors
_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass
class ValidationResult:
    """Result of validating a graph."""

    issues: list[GraphIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(str(i) for i in self.issues)

    def raise_for_issues(self) -> None:
        if self.issues:
            raise GraphValidationError(self.issues)


class GraphValidator:
    """
    Checks that a graph is a well-formed DAG.

    Pure: inspects the graph and reports every problem it finds, without
    touching execution state.
    """

    def validate(self, graph: IntentGraph) -> ValidationResult:
        issues: list[GraphIssue] = []
        issues.extend(self._check_duplicate_ids(graph))
        issues.extend(self._check_references(graph))
        issues.extend(self._check_approval_nodes(graph))
        issues.extend(self._check_cycles(graph))

        if issues:
            logger.debug(f"Graph '{graph.graph_id}' failed validation: {len(issues)} issue(s)")
        return ValidationResult(issues=issues)

    def _check_duplicate_ids(self, graph: IntentGraph) -> list[GraphIssue]:
        seen: set[str] = set()
        issues = []
        for node_id in graph.node_ids:
            if node_id in seen:
                issues.append(
                    GraphIssue(
                        kind=IssueKind.DUPLICATE_NODE_ID,
                        detail=f"Node id '{node_id}' is declared more than once",
                        node_id=node_id,
                    )
                )
            seen.add(node_id)
        return issues

    def _check_references(self, graph: IntentGraph) -> list[GraphIssue]:
        known = set(graph.node_ids)
        issues = []

        def dangling(node_id: str | None, detail: str) -> None:
            issues.append(
                GraphIssue(kind=IssueKind.DANGLING_REFERENCE, detail=detail, node_id=node_id)
            )

        for node in graph.nodes:
            for dep in node.dependencies:
                if dep not in known:
                    dangling(node.id, f"Node '{node.id}' depends on unknown node '{dep}'")
            if isinstance(node, ApprovalNode):
                for target in node.gated_targets():
                    if target not in known:
                        dangling(
                            node.id,
                            f"Approval node '{node.id}' branches to unknown node '{target}'",
                        )

        for edge in graph.edges:
            if edge.source not in known:
                dangling(edge.source, f"Edge references missing source '{edge.source}'")
            if edge.target not in known:
                dangling(edge.target, f"Edge references missing target '{edge.target}'")

        return issues

    def _check_approval_nodes(self, graph: IntentGraph) -> list[GraphIssue]:
        issues = []
        successors = graph.successors()
        for node in graph.approval_nodes():
            # Without any branch fields, plain dependents are the fallthrough
            # and run after either decision.
            declares_branch = any(
                value is not None
                for value in (node.next_on_approve, node.next_on_reject, node.default_next)
            )
            if not declares_branch and successors[node.id]:
                continue
            if not node.has_branches:
                missing = [
                    name
                    for name, value in (
                        ("next_on_approve", node.next_on_approve),
                        ("next_on_reject", node.next_on_reject),
                    )
                    if value is None
                ]
                issues.append(
                    GraphIssue(
                        kind=IssueKind.MALFORMED_APPROVAL_NODE,
                        detail=(
                            f"Approval node '{node.id}' is missing {', '.join(missing)} "
                            "and has no default_next"
                        ),
                        node_id=node.id,
                    )
                )
        return issues

    def _check_cycles(self, graph: IntentGraph) -> list[GraphIssue]:
        """Three-color DFS; a back-edge to a gray node closes a cycle."""
        successors = graph.successors()
        color = {node_id: _WHITE for node_id in successors}
        issues = []

        for root in successors:
            if color[root] != _WHITE:
                continue
            # Iterative DFS: stack of (node, iterator over its successors)
            color[root] = _GRAY
            stack = [(root, iter(successors[root]))]
            path = [root]
            while stack:
                node_id, children = stack[-1]
                child = next(children, None)
                if child is None:
                    color[node_id] = _BLACK
                    stack.pop()
                    path.pop()
                    continue
                if color[child] == _GRAY:
                    cycle = path[path.index(child) :] + [child]
                    issues.append(
                        GraphIssue(
                            kind=IssueKind.CYCLE_DETECTED,
                            detail=f"Cycle detected at node '{child}': {' -> '.join(cycle)}",
                            node_id=child,
                        )
                    )
                elif color[child] == _WHITE:
                    color[child] = _GRAY
                    stack.append((child, iter(successors[child])))
                    path.append(child)

        return issues


def validate_graph(graph: IntentGraph) -> None:
    """Raise GraphValidationError if the graph is not a well-formed DAG."""
    GraphValidator().validate(graph).raise_for_issues()
