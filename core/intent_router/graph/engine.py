"""
Execution Engine - Runs intent graphs end to end.

validate -> (safety check) -> schedule/dispatch -> (pause/resume)
    -> quality check -> (rerun) -> final result

Each engine instance tracks its own active executions; nothing is shared
through module globals. Per execution id there is exactly one writer at a
time, enforced by an ``asyncio.Lock`` keyed by the id.

Node-level failures never raise out of the engine. Callers inspect
``ExecutionResult.status``; only validation, safety and pause-persistence
problems surface as exceptions.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from typing import Any

from intent_router.agents.protocol import AgentInvoker
from intent_router.config import get_execution_config
from intent_router.errors import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    PersistenceRequiredForPauseFailed,
    SafetyCheckFailedError,
)
from intent_router.graph.hitl import ApprovalDecision, HITLController
from intent_router.graph.inputs import resolve_node_input
from intent_router.graph.node_executor import NodeExecutor, resolve_retry_policy
from intent_router.graph.quality import (
    BasicSafetyValidator,
    CompletenessQualityGate,
    QualityCriteria,
    QualityGate,
    QualityRequest,
    QualityVerdict,
    SafetyValidator,
    is_effectively_acceptable,
    plan_rerun,
)
from intent_router.graph.scheduler import Scheduler
from intent_router.graph.validator import GraphValidator
from intent_router.observability.logging import set_trace_context, trace_context
from intent_router.runtime.event_bus import EventBus, EventType
from intent_router.schemas.execution import (
    ErrorKind,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    ExecutionStatusReport,
    NodeResult,
    now_iso,
)
from intent_router.schemas.graph import ApprovalNode, IntentGraph, RetryPolicy, StandardNode
from intent_router.schemas.requirements import ExecutionConfig, RerunStrategy
from intent_router.storage.state_store import ExecutionStateStore, InMemoryStateStore

logger = logging.getLogger(__name__)

# Outcomes of one scheduling pass
_FINISHED = "finished"
_PAUSED = "paused"
_CANCELLED = "cancelled"


@dataclass
class _ActiveExecution:
    """Runtime bookkeeping for an execution this engine is driving."""

    state: ExecutionState
    scheduler: Scheduler
    executor: NodeExecutor
    running: dict[asyncio.Task, str] = field(default_factory=dict)
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_reason: str | None = None
    pause_reason: str | None = None
    approval_request: dict[str, Any] | None = None


@dataclass
class _ExecutionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ExecutionEngine:
    """
    Orchestrates validation, scheduling, HITL pauses and quality reruns.

    Example:
        registry = AgentRegistry()
        registry.register("fetcher", fetch_handler)
        engine = ExecutionEngine(registry, state_store=FileStateStore("~/.intent-router"))

        result = await engine.execute_graph(graph, context={"user": "u1"})
        if result.status == ExecutionStatus.PAUSED_FOR_APPROVAL:
            result = await engine.resume_execution(result.execution_id, approved=True)
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        state_store: ExecutionStateStore | None = None,
        event_bus: EventBus | None = None,
        quality_gate: QualityGate | None = None,
        safety_validator: SafetyValidator | None = None,
        hitl: HITLController | None = None,
        default_config: ExecutionConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            invoker: Transport for every agent call
            state_store: Snapshot store (in-memory when omitted)
            event_bus: Receives lifecycle events when given
            quality_gate: Scores finished passes (CompletenessQualityGate by default)
            safety_validator: Pre/post hooks (BasicSafetyValidator by default)
            hitl: Approval controller (logs approval requests by default)
            default_config: Used when execute_graph gets no config
            sleep: Backoff sleep, injectable for tests
        """
        self.invoker = invoker
        self.state_store = state_store if state_store is not None else InMemoryStateStore()
        self.event_bus = event_bus
        self.quality_gate = quality_gate or CompletenessQualityGate()
        self.safety_validator = safety_validator or BasicSafetyValidator()
        self.hitl = hitl or HITLController()
        self.default_config = default_config or ExecutionConfig()
        self.validator = GraphValidator()
        self._sleep = sleep

        self._active: dict[str, _ActiveExecution] = {}
        self._locks: dict[str, _ExecutionLock] = {}

    @classmethod
    def from_config(cls, invoker: AgentInvoker | None = None, **kwargs: Any) -> "ExecutionEngine":
        """
        Build an engine from the configuration files.

        Execution defaults come from ~/.intent-router/configuration.json; when
        no invoker is given, agents are reached over HTTP as declared in
        gaff.json.
        """
        if invoker is None:
            from intent_router.agents.http_client import HttpAgentInvoker

            invoker = HttpAgentInvoker.from_config()
        kwargs.setdefault("default_config", get_execution_config())
        return cls(invoker, **kwargs)

    # === PUBLIC API ===

    async def execute_graph(
        self,
        graph: IntentGraph | dict[str, Any],
        context: dict[str, Any] | None = None,
        config: ExecutionConfig | dict[str, Any] | None = None,
        execution_id: str | None = None,
    ) -> ExecutionResult:
        """
        Validate and run a graph.

        Returns when the execution reaches a terminal status or pauses.

        Raises:
            GraphValidationError: The graph is not a well-formed DAG
            SafetyCheckFailedError: Pre-execution safety validation failed
            PersistenceRequiredForPauseFailed: A pause could not be persisted
        """
        if not isinstance(graph, IntentGraph):
            graph = IntentGraph.model_validate(graph)
        if config is None:
            config = self.default_config
        elif not isinstance(config, ExecutionConfig):
            config = ExecutionConfig.model_validate(config)
        context = dict(context or {})

        self.validator.validate(graph).raise_for_issues()

        safety = config.safety_requirements
        if safety.enabled:
            check = await self.safety_validator.validate_input(context, safety)
            if not check.passed:
                logger.warning(f"Safety validation rejected graph '{graph.graph_id}'")
                raise SafetyCheckFailedError(check.errors)

        execution_id = execution_id or f"exec_{uuid.uuid4().hex}"
        async with self._exclusive(execution_id):
            existing = await self.state_store.get(execution_id)
            if existing is not None:
                raise InvalidExecutionStateError(execution_id, existing.status, "start")

            state = ExecutionState(
                execution_id=execution_id,
                graph=graph,
                config=config,
                context=context,
            )
            with self._trace_scope(state):
                logger.info(
                    f"▶ Starting execution of graph '{graph.graph_id}' "
                    f"({len(graph.nodes)} nodes, max_parallel={config.max_parallel})"
                )
                await self._emit(
                    EventType.EXECUTION_STARTED,
                    state,
                    context=context,
                    nodes=len(graph.nodes),
                )
                await self._persist(state)
                return await self._drive(self._activate(state))

    async def resume_execution(
        self,
        execution_id: str,
        approved: bool | None = None,
        modified_context: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """
        Continue a paused execution.

        ``approved`` is required when paused for approval and ignored for a
        manual pause. A second resume of the same pause fails with
        InvalidExecutionStateError.
        """
        if execution_id in self._active:
            raise InvalidExecutionStateError(
                execution_id, self._active[execution_id].state.status, "resume"
            )

        async with self._exclusive(execution_id):
            state = await self.state_store.get(execution_id)
            if state is None:
                raise ExecutionNotFoundError(execution_id)
            self.hitl.check_resumable(state, approved)

            with self._trace_scope(state):
                active = self._activate(state)
                paused_at = state.paused_at_node

                if state.status == ExecutionStatus.PAUSED_FOR_APPROVAL:
                    node = state.graph.get_node(paused_at) if paused_at else None
                    if not isinstance(node, ApprovalNode):
                        self._active.pop(execution_id, None)
                        raise InvalidExecutionStateError(
                            execution_id, state.status, "resume at a non-approval node"
                        )
                    result = self.hitl.apply_decision(
                        state, node, ApprovalDecision(bool(approved), modified_context)
                    )
                    await self._record(active, result)
                else:
                    if modified_context:
                        state.context.update(modified_context)
                    state.status = ExecutionStatus.RUNNING
                    state.paused_at_node = None
                    state.paused_reason = None
                    state.paused_at = None
                    state.touch()

                logger.info(f"▶ Resuming execution {execution_id} (paused at '{paused_at}')")
                await self._emit(
                    EventType.EXECUTION_RESUMED,
                    state,
                    node_id=paused_at,
                    approved=approved,
                )
                await self._persist(state)
                return await self._drive(active)

    async def cancel_execution(self, execution_id: str, reason: str = "") -> ExecutionResult:
        """
        Cancel a running or paused execution.

        A running execution stops dispatching, its in-flight nodes are
        cancelled (waiting at most ``cancel_grace_seconds``) and the call
        returns once the execution is marked cancelled.
        """
        active = self._active.get(execution_id)
        if active is not None:
            if active.cancel_reason is None:
                active.cancel_reason = reason or "cancelled"
                active.wake.set()
            await active.done.wait()
            return ExecutionResult.from_state(active.state)

        async with self._exclusive(execution_id):
            state = await self.state_store.get(execution_id)
            if state is None:
                raise ExecutionNotFoundError(execution_id)
            if state.status.is_terminal:
                raise InvalidExecutionStateError(execution_id, state.status, "cancel")

            with self._trace_scope(state):
                self._mark_cancelled(state, reason or "cancelled")
                await self._persist(state)
                await self._emit(EventType.EXECUTION_CANCELLED, state, reason=state.cancelled_reason)
                return ExecutionResult.from_state(state)

    async def pause_execution(self, execution_id: str, reason: str = "") -> ExecutionStatusReport:
        """
        Manually pause a running execution.

        Dispatch stops, in-flight nodes finish, and the execution is
        persisted with status ``paused``. Resume needs no decision.
        """
        active = self._active.get(execution_id)
        if active is None:
            state = await self.state_store.get(execution_id)
            if state is None:
                raise ExecutionNotFoundError(execution_id)
            raise InvalidExecutionStateError(execution_id, state.status, "pause")

        if active.pause_reason is None and active.cancel_reason is None:
            active.pause_reason = reason or "manual_pause"
            active.wake.set()
        await active.done.wait()
        return ExecutionStatusReport.from_state(active.state)

    async def get_execution_status(self, execution_id: str) -> ExecutionStatusReport:
        active = self._active.get(execution_id)
        if active is not None:
            return ExecutionStatusReport.from_state(active.state)
        state = await self.state_store.get(execution_id)
        if state is None:
            raise ExecutionNotFoundError(execution_id)
        return ExecutionStatusReport.from_state(state)

    async def route_to_agent(
        self,
        agent: str,
        tool: str,
        input: dict[str, Any],
        timeout_ms: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> NodeResult:
        """Single ad-hoc agent call with the engine's timeout and retry handling."""
        config = self.default_config
        node = StandardNode(id=f"{agent}.{tool}", agent=agent, tool=tool, input=input)
        executor = NodeExecutor(
            self.invoker,
            base_delay_ms=config.retry_base_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
            sleep=self._sleep,
        )
        return await executor.execute(
            node,
            dict(input),
            retry_policy=resolve_retry_policy(retry_policy, config.default_retry_policy),
            timeout_ms=timeout_ms or config.default_timeout_ms,
        )

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._active

    # === DRIVER ===

    @asynccontextmanager
    async def _exclusive(self, execution_id: str) -> AsyncIterator[None]:
        """Hold the execution's lock; the entry is dropped when its last user leaves."""
        entry = self._locks.get(execution_id)
        if entry is None:
            entry = self._locks[execution_id] = _ExecutionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[execution_id]

    def _activate(self, state: ExecutionState) -> _ActiveExecution:
        config = state.config

        async def on_retry(node_id: str, attempt: int, max_attempts: int, error: str) -> None:
            if self.event_bus is not None:
                await self.event_bus.emit_node_retry(
                    state.execution_id, node_id, attempt, max_attempts, error
                )

        active = _ActiveExecution(
            state=state,
            scheduler=Scheduler(state.graph),
            executor=NodeExecutor(
                self.invoker,
                base_delay_ms=config.retry_base_delay_ms,
                max_delay_ms=config.retry_max_delay_ms,
                sleep=self._sleep,
                on_retry=on_retry,
            ),
        )
        self._active[state.execution_id] = active
        return active

    @contextmanager
    def _trace_scope(self, state: ExecutionState) -> Iterator[None]:
        previous = trace_context.get()
        set_trace_context(execution_id=state.execution_id, graph_id=state.graph.graph_id)
        try:
            yield
        finally:
            trace_context.set(previous)

    async def _drive(self, active: _ActiveExecution) -> ExecutionResult:
        """Run passes until the execution pauses or reaches a terminal status."""
        state = active.state
        start = time.monotonic()
        try:
            while True:
                outcome = await self._run_pass(active)
                if outcome == _PAUSED:
                    return ExecutionResult.from_state(
                        state,
                        execution_time_ms=_elapsed_ms(start),
                        approval_request=active.approval_request,
                    )
                if outcome == _CANCELLED or active.cancel_reason is not None:
                    await self._finish_cancelled(active)
                    return ExecutionResult.from_state(state, execution_time_ms=_elapsed_ms(start))

                if not await self._quality_loop_continues(active):
                    break

            await self._finalize(state)
            return ExecutionResult.from_state(state, execution_time_ms=_elapsed_ms(start))
        except asyncio.CancelledError:
            logger.warning(f"Execution {state.execution_id} task was cancelled")
            for task in active.running:
                task.cancel()
            self._mark_cancelled(state, "Execution task cancelled")
            await self._persist(state)
            raise
        finally:
            self._active.pop(state.execution_id, None)
            active.done.set()

    async def _run_pass(self, active: _ActiveExecution) -> str:
        """
        Dispatch ready nodes until nothing is left to do.

        Returns ``_FINISHED`` when every node has an outcome, ``_PAUSED`` when
        suspended (approval or manual pause), ``_CANCELLED`` on cancel.
        """
        state = active.state
        scheduler = active.scheduler
        running = active.running
        state.status = ExecutionStatus.RUNNING

        while True:
            if active.cancel_reason is not None:
                await self._abort_running(active)
                return _CANCELLED

            decision = scheduler.plan(state, running.values())
            for resolution in decision.resolutions:
                await self._record(active, resolution)

            pause_node: ApprovalNode | None = None
            standard_ready: list[str] = []
            replayed = False
            for node_id in decision.ready:
                node = state.graph.get_node(node_id)
                if not isinstance(node, ApprovalNode):
                    standard_ready.append(node_id)
                    continue
                if pause_node is not None:
                    continue
                replay = self.hitl.replay_decision(state, node)
                if replay is not None:
                    logger.info(f"Reusing recorded decision for approval node '{node_id}'")
                    await self._record(active, replay)
                    replayed = True
                elif not state.config.enable_hitl:
                    result = self.hitl.apply_decision(
                        state, node, ApprovalDecision(approved=True), automatic=True
                    )
                    await self._record(active, result)
                    replayed = True
                else:
                    pause_node = node
            if replayed:
                continue

            draining = pause_node is not None or active.pause_reason is not None
            if not draining:
                for node_id in standard_ready:
                    if len(running) >= state.config.max_parallel:
                        break
                    await self._dispatch(active, node_id)

            if not running:
                if pause_node is not None:
                    await self._suspend_for_approval(active, pause_node)
                    return _PAUSED
                if active.pause_reason is not None:
                    await self._suspend_manual(active)
                    return _PAUSED
                if scheduler.is_finished(state):
                    return _FINISHED
                await self._fail_unschedulable(active)
                continue

            waiter = asyncio.create_task(active.wake.wait())
            try:
                done, _ = await asyncio.wait(
                    {*running, waiter}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                if not waiter.done():
                    waiter.cancel()
            active.wake.clear()

            for task in done:
                if task is waiter:
                    continue
                node_id = running.pop(task)
                await self._record(active, self._task_result(task, node_id))

            if running:
                state.current_node = next(iter(running.values()))
            await self._snapshot(state)

    async def _dispatch(self, active: _ActiveExecution, node_id: str) -> None:
        state = active.state
        node = state.graph.get_node(node_id)
        state.current_node = node_id
        state.touch()
        logger.info(f"→ Dispatching node '{node_id}' ({node.agent}.{node.tool})")
        await self._emit(EventType.NODE_STARTED, state, node_id=node_id, agent=node.agent)
        task = asyncio.create_task(self._run_node(active, node))
        active.running[task] = node_id

    async def _run_node(self, active: _ActiveExecution, node: StandardNode) -> NodeResult:
        state = active.state
        graph = state.graph
        resolved_input = resolve_node_input(
            node,
            state.result_values(),
            state.context,
            graph.get_incoming_edges(node.id),
        )
        return await active.executor.execute(
            node,
            resolved_input,
            retry_policy=resolve_retry_policy(
                node.retry_policy,
                graph.default_retry_policy,
                state.config.default_retry_policy,
            ),
            timeout_ms=node.timeout_ms or state.config.default_timeout_ms,
        )

    @staticmethod
    def _task_result(task: asyncio.Task, node_id: str) -> NodeResult:
        if task.cancelled():
            return NodeResult(
                node_id=node_id,
                success=False,
                error="Node execution was cancelled",
                error_kind=ErrorKind.CANCELLED,
            )
        error = task.exception()
        if error is not None:
            logger.error(f"Node '{node_id}' crashed: {error}", exc_info=error)
            return NodeResult(
                node_id=node_id,
                success=False,
                error=f"{type(error).__name__}: {error}",
                error_kind=ErrorKind.AGENT_ERROR,
            )
        return task.result()

    async def _record(self, active: _ActiveExecution, result: NodeResult) -> None:
        state = active.state
        state.record(result)
        if result.success:
            await self._emit(
                EventType.NODE_COMPLETED,
                state,
                node_id=result.node_id,
                execution_time_ms=result.execution_time_ms,
                attempts=result.attempts,
            )
        elif result.error_kind == ErrorKind.SKIPPED:
            logger.info(f"⊘ Node '{result.node_id}' skipped: {result.error}")
        else:
            if result.error_kind == ErrorKind.UPSTREAM_FAILURE:
                logger.warning(f"✗ Node '{result.node_id}' not run: {result.error}")
            await self._emit(
                EventType.NODE_FAILED,
                state,
                node_id=result.node_id,
                error=result.error,
                error_kind=result.error_kind,
            )

    async def _fail_unschedulable(self, active: _ActiveExecution) -> None:
        state = active.state
        stuck = [node_id for node_id in state.graph.node_ids if not state.is_resolved(node_id)]
        logger.error(f"Execution {state.execution_id} cannot make progress; stuck nodes: {stuck}")
        for node_id in stuck:
            await self._record(
                active,
                NodeResult(
                    node_id=node_id,
                    success=False,
                    error="Node could not be scheduled",
                    error_kind=ErrorKind.AGENT_ERROR,
                ),
            )

    async def _abort_running(self, active: _ActiveExecution) -> None:
        """Cancel in-flight nodes, waiting at most the configured grace period."""
        running = active.running
        if not running:
            return
        tasks = list(running)
        for task in tasks:
            task.cancel()
        grace = active.state.config.cancel_grace_seconds
        _, pending = await asyncio.wait(tasks, timeout=grace)
        if pending:
            logger.warning(f"{len(pending)} node(s) did not stop within {grace}s of cancel")

        for task in tasks:
            node_id = running.pop(task)
            if task in pending:
                result = NodeResult(
                    node_id=node_id,
                    success=False,
                    error="Node did not stop after cancellation",
                    error_kind=ErrorKind.CANCELLED,
                )
            else:
                result = self._task_result(task, node_id)
            await self._record(active, result)

    # === SUSPENSION AND TERMINATION ===

    async def _suspend_for_approval(self, active: _ActiveExecution, node: ApprovalNode) -> None:
        state = active.state
        request = self.hitl.suspend(state, node)
        await self._persist(state, required_for=node.id)

        active.approval_request = request.to_dict()
        logger.info(f"⏸ Paused for approval at node '{node.id}'")
        self.hitl.notify(request)
        if self.event_bus is not None:
            await self.event_bus.emit_execution_paused(
                state.execution_id,
                state.graph.graph_id,
                node.id,
                reason="awaiting_approval",
                approval_request=active.approval_request,
            )

    async def _suspend_manual(self, active: _ActiveExecution) -> None:
        state = active.state
        state.status = ExecutionStatus.PAUSED
        state.paused_reason = active.pause_reason
        state.paused_at_node = state.current_node
        state.paused_at = now_iso()
        state.touch()
        await self._persist(state, required_for=state.current_node)

        logger.info(f"⏸ Paused execution {state.execution_id}: {state.paused_reason}")
        if self.event_bus is not None:
            await self.event_bus.emit_execution_paused(
                state.execution_id,
                state.graph.graph_id,
                state.paused_at_node,
                reason=state.paused_reason or "manual_pause",
            )

    @staticmethod
    def _mark_cancelled(state: ExecutionState, reason: str) -> None:
        state.status = ExecutionStatus.CANCELLED
        state.cancelled_at = now_iso()
        state.cancelled_reason = reason
        state.current_node = None
        state.touch()

    async def _finish_cancelled(self, active: _ActiveExecution) -> None:
        state = active.state
        self._mark_cancelled(state, active.cancel_reason or "cancelled")
        logger.info(f"■ Execution {state.execution_id} cancelled: {state.cancelled_reason}")
        await self._persist(state)
        await self._emit(EventType.EXECUTION_CANCELLED, state, reason=state.cancelled_reason)

    async def _finalize(self, state: ExecutionState) -> None:
        if state.status != ExecutionStatus.FAILED_QUALITY:
            state.status = ExecutionStatus.FAILED if state.failed_nodes else ExecutionStatus.COMPLETED
        state.current_node = None

        safety = state.config.safety_requirements
        if safety.enabled and safety.output_validation is not None:
            await self._sanitize_results(state)
        state.touch()

        await self._persist(state)
        if state.status == ExecutionStatus.COMPLETED:
            logger.info(f"✓ Execution {state.execution_id} completed")
            await self._emit(
                EventType.EXECUTION_COMPLETED,
                state,
                output=state.result_values(),
                quality_score=state.quality_score,
            )
        else:
            logger.warning(
                f"✗ Execution {state.execution_id} ended with status {state.status} "
                f"(failed nodes: {state.failed_nodes})"
            )
            await self._emit(
                EventType.EXECUTION_FAILED,
                state,
                status=state.status,
                failed_nodes=list(state.failed_nodes),
            )

        if safety.audit_logging:
            await self._emit(
                EventType.EXECUTION_AUDIT,
                state,
                action="execute_intent_graph",
                status=state.status,
                quality_score=state.quality_score,
                compliance_standards=list(safety.compliance_standards),
            )

    async def _sanitize_results(self, state: ExecutionState) -> None:
        output = state.result_values()
        try:
            sanitized = await self.safety_validator.sanitize_output(
                output, state.config.safety_requirements
            )
        except Exception:
            logger.exception("Output sanitization failed; keeping original results")
            return
        for node_id, value in sanitized.items():
            result = state.results.get(node_id)
            if result is not None and result.success:
                state.results[node_id] = result.model_copy(update={"result": value})

    # === QUALITY LOOP ===

    async def _quality_loop_continues(self, active: _ActiveExecution) -> bool:
        """
        Check quality after a finished pass and prepare a rerun if warranted.

        Returns True when another pass should run.
        """
        state = active.state
        requirements = state.config.quality_requirements
        if not requirements.enabled:
            return False

        verdict = await self._check_quality(state)
        if is_effectively_acceptable(verdict, requirements):
            return False
        if requirements.rerun_strategy == RerunStrategy.NONE:
            logger.info(
                f"Quality {verdict.quality_score:.2f} below threshold; rerun disabled, "
                "accepting result"
            )
            return False

        plan = plan_rerun(verdict, requirements, state.graph, active.scheduler.downstream_closure)
        if plan.is_rerun and state.attempt_count < requirements.max_rerun_attempts:
            state.attempt_count += 1
            state.discard(plan.nodes)
            logger.info(
                f"↻ Quality rerun {state.attempt_count}/{requirements.max_rerun_attempts} "
                f"({plan.strategy}, {len(plan.nodes)} node(s))"
            )
            await self._emit(
                EventType.RERUN_STARTED,
                state,
                attempt=state.attempt_count,
                strategy=plan.strategy,
                nodes=sorted(plan.nodes),
            )
            await self._snapshot(state)
            return True

        state.status = ExecutionStatus.FAILED_QUALITY
        state.error = (
            f"Quality score {verdict.quality_score:.2f} not acceptable after "
            f"{state.attempt_count + 1} pass(es)"
        )
        return False

    async def _check_quality(self, state: ExecutionState) -> QualityVerdict:
        requirements = state.config.quality_requirements
        request = QualityRequest.from_state(state, QualityCriteria.from_requirements(requirements))
        try:
            verdict = await self.quality_gate.evaluate(request)
        except Exception as e:
            logger.exception("Quality gate failed")
            verdict = QualityVerdict.gate_error(e)

        state.quality_score = verdict.quality_score
        state.quality_report = verdict.model_dump(mode="json")
        state.touch()
        logger.info(
            f"Quality check: score={verdict.quality_score:.2f} "
            f"acceptable={verdict.is_acceptable} rerun_required={verdict.rerun_required}"
        )
        await self._emit(
            EventType.QUALITY_CHECKED,
            state,
            quality_score=verdict.quality_score,
            is_acceptable=verdict.is_acceptable,
            rerun_required=verdict.rerun_required,
            attempt=state.attempt_count,
        )
        return verdict

    # === PERSISTENCE AND EVENTS ===

    async def _persist(self, state: ExecutionState, required_for: str | None = None) -> None:
        """
        Write a snapshot.

        Best-effort unless ``required_for`` names the node being paused at,
        in which case a failed write aborts the pause.
        """
        try:
            await self.state_store.put(state.execution_id, state)
        except Exception as e:
            if required_for is None and state.status not in (
                ExecutionStatus.PAUSED,
                ExecutionStatus.PAUSED_FOR_APPROVAL,
            ):
                logger.warning(f"Failed to persist execution {state.execution_id}: {e}")
                return
            state.status = ExecutionStatus.FAILED
            state.error = f"Could not persist state before pausing: {e}"
            raise PersistenceRequiredForPauseFailed(state.execution_id, required_for) from e

    async def _snapshot(self, state: ExecutionState) -> None:
        """Incremental snapshot, only when the execution asked for them."""
        if state.config.store_state:
            await self._persist(state)

    async def _emit(
        self,
        event_type: EventType,
        state: ExecutionState,
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.emit(
            event_type,
            state.execution_id,
            graph_id=state.graph.graph_id,
            node_id=node_id,
            **data,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
