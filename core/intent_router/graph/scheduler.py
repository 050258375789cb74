"""
Scheduler - Decides which nodes may run next.

A node becomes ready once every predecessor has an outcome and every
constraint into it is satisfied (strict AND). Predecessors come from three
places: declared ``dependencies``, edges, and approval branch targets.

Per constraint, the source's outcome decides:

    condition      source completed   source failed     source skipped
    on_success     satisfied          UpstreamFailure   skipped
    on_failure     skipped            satisfied         skipped
    always         satisfied          satisfied         satisfied
    expression     evaluate           UpstreamFailure   skipped

An edge between two nodes governs that pair; a plain dependency only adds
an on_success constraint where no edge exists. Approval branch targets are
additionally gated on the recorded decision.

Nodes that can never run are resolved here (failed with UpstreamFailure or
skipped) so independent branches keep going and the loop terminates.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from intent_router.graph.conditions import EdgeCondition, classify, evaluate_expression
from intent_router.schemas.execution import ExecutionState, NodeResult
from intent_router.schemas.graph import EdgeSpec, IntentGraph

logger = logging.getLogger(__name__)


class _Outcome(StrEnum):
    PENDING = "pending"
    SATISFIED = "satisfied"
    SKIP = "skip"
    FAIL = "fail"


@dataclass
class SchedulingDecision:
    """What the engine should do next."""

    ready: list[str] = field(default_factory=list)
    resolutions: list[NodeResult] = field(default_factory=list)  # Never dispatched


class Scheduler:
    """Dependency-respecting ordering for one graph."""

    def __init__(self, graph: IntentGraph):
        self.graph = graph
        self._order = graph.node_ids
        self._predecessors = graph.predecessors()
        self._successors = graph.successors()

        self._edges: dict[tuple[str, str], list[EdgeSpec]] = {}
        for edge in graph.edges:
            self._edges.setdefault((edge.source, edge.target), []).append(edge)

        # (approval node, target) -> decisions under which target runs
        self._gates: dict[tuple[str, str], set[bool]] = {}
        for node in graph.approval_nodes():
            for target, decisions in node.gated_targets().items():
                self._gates[(node.id, target)] = decisions

    # === READINESS ===

    def predecessors(self, node_id: str) -> list[str]:
        return list(self._predecessors.get(node_id, []))

    def plan(self, state: ExecutionState, running: Iterable[str] = ()) -> SchedulingDecision:
        """
        Compute ready nodes and the nodes that can never run.

        Pure: the state is not modified. Resolutions are propagated
        transitively within the call, so a failure deep in one branch
        resolves its whole downstream in one pass.
        """
        in_flight = set(running)
        outcomes: dict[str, str] = {}  # node id -> "completed" | "failed" | "skipped"
        for node_id in state.completed_nodes:
            outcomes[node_id] = "completed"
        for node_id in state.failed_nodes:
            outcomes[node_id] = "failed"
        for node_id in state.skipped_nodes:
            outcomes[node_id] = "skipped"

        results = state.result_values()
        decision = SchedulingDecision()

        changed = True
        while changed:
            changed = False
            for node_id in self._order:
                if node_id in outcomes or node_id in in_flight:
                    continue
                verdict, blocker = self._evaluate(node_id, state, outcomes, results)
                if verdict == _Outcome.FAIL:
                    outcomes[node_id] = "failed"
                    decision.resolutions.append(NodeResult.upstream_failure(node_id, blocker))
                    changed = True
                elif verdict == _Outcome.SKIP:
                    outcomes[node_id] = "skipped"
                    decision.resolutions.append(
                        NodeResult.skipped(node_id, f"Branch not taken after '{blocker}'")
                    )
                    changed = True

        for node_id in self._order:
            if node_id in outcomes or node_id in in_flight:
                continue
            verdict, _ = self._evaluate(node_id, state, outcomes, results)
            if verdict == _Outcome.SATISFIED:
                decision.ready.append(node_id)

        return decision

    def ready_nodes(self, state: ExecutionState, running: Iterable[str] = ()) -> list[str]:
        """Nodes whose constraints are all satisfied, in graph order."""
        return self.plan(state, running).ready

    def is_finished(self, state: ExecutionState) -> bool:
        return state.all_resolved()

    def _evaluate(
        self,
        node_id: str,
        state: ExecutionState,
        outcomes: dict[str, str],
        results: dict,
    ) -> tuple[_Outcome, str | None]:
        preds = self._predecessors.get(node_id, [])
        if any(pred not in outcomes for pred in preds):
            return _Outcome.PENDING, None

        failed_by: str | None = None
        skipped_by: str | None = None
        for pred in preds:
            for outcome in self._constraint_outcomes(pred, node_id, state, outcomes, results):
                if outcome == _Outcome.FAIL and failed_by is None:
                    failed_by = pred
                elif outcome == _Outcome.SKIP and skipped_by is None:
                    skipped_by = pred

        if failed_by is not None:
            return _Outcome.FAIL, failed_by
        if skipped_by is not None:
            return _Outcome.SKIP, skipped_by
        return _Outcome.SATISFIED, None

    def _constraint_outcomes(
        self,
        source: str,
        target: str,
        state: ExecutionState,
        outcomes: dict[str, str],
        results: dict,
    ) -> list[_Outcome]:
        source_status = outcomes[source]
        found: list[_Outcome] = []

        gate = self._gates.get((source, target))
        if gate is not None:
            found.append(self._gate_outcome(source, gate, source_status, state))

        edges = self._edges.get((source, target))
        if edges:
            for edge in edges:
                found.append(self._edge_outcome(edge, source_status, state, results))
        elif gate is None:
            # Plain dependency
            found.append(self._status_outcome(EdgeCondition.ON_SUCCESS, source_status))

        return found

    @staticmethod
    def _status_outcome(kind: EdgeCondition, source_status: str) -> _Outcome:
        if kind == EdgeCondition.ALWAYS:
            return _Outcome.SATISFIED
        if source_status == "skipped":
            return _Outcome.SKIP
        if kind == EdgeCondition.ON_FAILURE:
            return _Outcome.SATISFIED if source_status == "failed" else _Outcome.SKIP
        # on_success and expressions need a successful source
        return _Outcome.SATISFIED if source_status == "completed" else _Outcome.FAIL

    def _edge_outcome(
        self,
        edge: EdgeSpec,
        source_status: str,
        state: ExecutionState,
        results: dict,
    ) -> _Outcome:
        kind = classify(edge.condition)
        outcome = self._status_outcome(kind, source_status)
        if kind != EdgeCondition.EXPRESSION or outcome != _Outcome.SATISFIED:
            return outcome

        source_result = state.results.get(edge.source)
        passed = evaluate_expression(
            edge.condition,
            source_result.result if source_result else None,
            context=state.context,
            results=results,
        )
        return _Outcome.SATISFIED if passed else _Outcome.SKIP

    @staticmethod
    def _gate_outcome(
        source: str,
        decisions: set[bool],
        source_status: str,
        state: ExecutionState,
    ) -> _Outcome:
        if source_status == "skipped":
            return _Outcome.SKIP
        if source_status == "failed":
            return _Outcome.FAIL
        record = state.approvals.get(source)
        if record is None:
            logger.warning(f"Approval node '{source}' completed without a recorded decision")
            return _Outcome.SKIP
        return _Outcome.SATISFIED if record.approved in decisions else _Outcome.SKIP

    # === STRUCTURE ===

    def execution_levels(self) -> list[list[str]]:
        """
        Group nodes into levels; every node's predecessors sit in earlier levels.

        Nodes in the same level have no ordering relationship and may run
        concurrently. Assumes a validated (acyclic) graph.
        """
        remaining = {node_id: len(set(preds)) for node_id, preds in self._predecessors.items()}
        levels: list[list[str]] = []
        current = [node_id for node_id in self._order if remaining[node_id] == 0]
        placed: set[str] = set()

        while current:
            levels.append(current)
            placed.update(current)
            following: list[str] = []
            for node_id in current:
                for succ in dict.fromkeys(self._successors.get(node_id, [])):
                    remaining[succ] -= 1
                    if remaining[succ] == 0 and succ not in placed:
                        following.append(succ)
            current = [node_id for node_id in self._order if node_id in set(following)]

        return levels

    def topological_order(self) -> list[str]:
        return [node_id for level in self.execution_levels() for node_id in level]

    def downstream_closure(self, node_ids: Iterable[str]) -> set[str]:
        """The given nodes plus every node transitively waiting on them."""
        closure: set[str] = set()
        stack = [node_id for node_id in node_ids if node_id in self._successors]
        while stack:
            node_id = stack.pop()
            if node_id in closure:
                continue
            closure.add(node_id)
            stack.extend(self._successors.get(node_id, []))
        return closure

    def first_in_order(self, node_ids: Iterable[str]) -> str | None:
        wanted = set(node_ids)
        for node_id in self._order:
            if node_id in wanted:
                return node_id
        return None
