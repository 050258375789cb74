"""
Node Executor - Runs one node's agent call with timeout and retry.

``execute`` never raises for node-level problems: timeouts, transport
failures and agent errors all end up in the returned NodeResult. The only
exception that escapes is ``asyncio.CancelledError``, so cancelling the
surrounding task still works.

Retries apply to transient failures only:
- the attempt outlived ``timeout_ms``
- the invoker raised AgentUnavailableError or a connection-level OSError
- the agent answered ``success=False`` with ``retryable=True``
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from intent_router.agents.protocol import AgentInvoker, AgentRequest
from intent_router.errors import AgentError
from intent_router.observability.logging import set_trace_context, trace_context
from intent_router.schemas.execution import ErrorKind, NodeResult, now_iso
from intent_router.schemas.graph import BackoffStrategy, NodeSpec, RetryPolicy

logger = logging.getLogger(__name__)

# (node_id, attempt that failed, max_attempts, error)
RetryCallback = Callable[[str, int, int, str], Awaitable[None]]


def resolve_retry_policy(*candidates: RetryPolicy | None) -> RetryPolicy:
    """First policy that is set wins; no retry when none is."""
    for policy in candidates:
        if policy is not None:
            return policy
    return RetryPolicy(max_attempts=1)


def compute_backoff_ms(
    attempt: int,
    strategy: BackoffStrategy,
    base_delay_ms: int,
    max_delay_ms: int,
) -> int:
    """
    Delay before the next attempt, after ``attempt`` failed (1-based).

    linear: attempt * base -> 1s, 2s, 3s...
    exponential: base * 2^(attempt-1) -> 1s, 2s, 4s...
    """
    if strategy == BackoffStrategy.LINEAR:
        delay = attempt * base_delay_ms
    else:
        delay = base_delay_ms * (2 ** (attempt - 1))
    return min(delay, max_delay_ms)


class NodeExecutor:
    """Invokes agents on behalf of nodes."""

    def __init__(
        self,
        invoker: AgentInvoker,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30_000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_retry: RetryCallback | None = None,
    ):
        """
        Args:
            invoker: Transport used for every attempt
            base_delay_ms: Backoff base
            max_delay_ms: Upper bound for a single backoff delay
            sleep: Awaitable sleep, injectable so tests need not wait
            on_retry: Called before each backoff sleep
        """
        self.invoker = invoker
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep
        self._on_retry = on_retry

    async def execute(
        self,
        node: NodeSpec,
        resolved_input: dict[str, Any],
        retry_policy: RetryPolicy | None = None,
        timeout_ms: int | None = None,
    ) -> NodeResult:
        """
        Run the node's agent call, retrying transient failures.

        Args:
            node: Node to run
            resolved_input: Input after ``${...}`` substitution
            retry_policy: Effective policy (node override already applied)
            timeout_ms: Per-attempt timeout; None means wait indefinitely
        """
        previous_context = trace_context.get()
        set_trace_context(node_id=node.id)
        try:
            return await self._execute(node, resolved_input, retry_policy, timeout_ms)
        finally:
            trace_context.set(previous_context)

    async def _execute(
        self,
        node: NodeSpec,
        resolved_input: dict[str, Any],
        retry_policy: RetryPolicy | None,
        timeout_ms: int | None,
    ) -> NodeResult:
        policy = retry_policy or RetryPolicy(max_attempts=1)
        max_attempts = policy.max_attempts
        timeout = timeout_ms / 1000 if timeout_ms else None
        request = AgentRequest(
            agent=node.agent,
            tool=node.tool,
            input=resolved_input,
            node_id=node.id,
        )

        started_at = now_iso()
        start = time.monotonic()
        error = "Unknown error"
        error_kind = ErrorKind.AGENT_ERROR
        attempt = 0

        while attempt < max_attempts:
            attempt += 1
            retryable = False
            try:
                response = await asyncio.wait_for(self.invoker.invoke(request), timeout=timeout)
            except TimeoutError:
                error = f"Agent '{node.agent}' timed out after {timeout_ms}ms"
                error_kind = ErrorKind.TIMEOUT
                retryable = True
            except AgentError as e:
                error = str(e) or type(e).__name__
                error_kind = ErrorKind.AGENT_ERROR
                retryable = e.retryable
            except OSError as e:
                error = f"Connection error: {e}"
                error_kind = ErrorKind.AGENT_ERROR
                retryable = True
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                error_kind = ErrorKind.AGENT_ERROR
                logger.exception(f"Agent '{node.agent}' raised while running node '{node.id}'")
            else:
                if response.success:
                    latency_ms = int((time.monotonic() - start) * 1000)
                    logger.info(
                        f"✓ Node '{node.id}' succeeded (attempt {attempt}/{max_attempts})",
                        extra={"latency_ms": latency_ms, "attempt": attempt},
                    )
                    return NodeResult(
                        node_id=node.id,
                        success=True,
                        result=response.result,
                        execution_time_ms=latency_ms,
                        attempts=attempt,
                        started_at=started_at,
                    )
                error = response.error or "Agent reported failure"
                error_kind = ErrorKind.AGENT_ERROR
                retryable = response.retryable

            if not retryable or attempt >= max_attempts:
                break

            delay_ms = compute_backoff_ms(
                attempt, policy.backoff, self.base_delay_ms, self.max_delay_ms
            )
            logger.warning(
                f"↻ Node '{node.id}' attempt {attempt}/{max_attempts} failed: {error}. "
                f"Retrying in {delay_ms}ms",
                extra={"attempt": attempt},
            )
            if self._on_retry is not None:
                await self._on_retry(node.id, attempt, max_attempts, error)
            await self._sleep(delay_ms / 1000)

        latency_ms = int((time.monotonic() - start) * 1000)
        logger.error(
            f"✗ Node '{node.id}' failed after {attempt} attempt(s): {error}",
            extra={"latency_ms": latency_ms, "attempt": attempt},
        )
        return NodeResult(
            node_id=node.id,
            success=False,
            error=error,
            error_kind=error_kind,
            execution_time_ms=latency_ms,
            attempts=attempt,
            started_at=started_at,
        )
