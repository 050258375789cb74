"""
Event Bus - Execution lifecycle notifications.

The engine publishes an ExecutionEvent at every state transition it makes
(start, node dispatch and outcome, retry, pause/resume, quality check,
terminal status). Callers subscribe to drive progress UIs, page an operator
when an approval is pending, or keep an audit trail. Subscribers observe
only: they never receive engine state and cannot change an execution.
"""

import asyncio
import logging
import uuid
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events the engine publishes."""

    # Execution lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"
    EXECUTION_CANCELLED = "execution_cancelled"
    EXECUTION_AUDIT = "execution_audit"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_RETRY = "node_retry"

    # Quality loop
    QUALITY_CHECKED = "quality_checked"
    RERUN_STARTED = "rerun_started"


@dataclass
class ExecutionEvent:
    """One transition of one execution."""

    type: EventType
    execution_id: str
    graph_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "graph_id": self.graph_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[ExecutionEvent], Awaitable[None]]


@dataclass
class Subscription:
    """Handler plus the events it wants."""

    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    execution_id: str | None = None
    node_id: str | None = None

    def wants(self, event: ExecutionEvent) -> bool:
        return (
            event.type in self.event_types
            and self.execution_id in (None, event.execution_id)
            and self.node_id in (None, event.node_id)
        )


class EventBus:
    """
    Async pub/sub for ExecutionEvents.

    ``publish`` returns once every matching handler has finished. At most
    ``max_concurrent_handlers`` handlers run at the same time; a handler that
    raises is logged and the others still run.

    Example:
        bus = EventBus()

        async def page_operator(event: ExecutionEvent):
            await pager.send(event.data["approval_request"])

        bus.subscribe([EventType.EXECUTION_PAUSED], page_operator)
        engine = ExecutionEngine(invoker, event_bus=bus)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[ExecutionEvent] = deque(maxlen=max_history)
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)

    # === SUBSCRIPTIONS ===

    def subscribe(
        self,
        event_types: Iterable[EventType],
        handler: EventHandler,
        filter_execution: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Register ``handler`` for ``event_types``.

        Args:
            event_types: Event types to deliver
            handler: Async callable receiving the event
            filter_execution: Deliver only events of this execution
            filter_node: Deliver only events about this node

        Returns:
            Subscription id for ``unsubscribe``
        """
        subscription = Subscription(
            id=f"sub_{uuid.uuid4().hex[:12]}",
            event_types=frozenset(event_types),
            handler=handler,
            execution_id=filter_execution,
            node_id=filter_node,
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug(
            f"Subscription {subscription.id} added for "
            f"{sorted(t.value for t in subscription.event_types)}"
        )
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Drop a subscription. Returns False when the id is unknown."""
        removed = self._subscriptions.pop(subscription_id, None) is not None
        if removed:
            logger.debug(f"Subscription {subscription_id} dropped")
        return removed

    # === PUBLISHING ===

    async def publish(self, event: ExecutionEvent) -> None:
        self._history.append(event)
        targets = [s for s in self._subscriptions.values() if s.wants(event)]
        if targets:
            await asyncio.gather(*(self._deliver(s, event) for s in targets))

    async def _deliver(self, subscription: Subscription, event: ExecutionEvent) -> None:
        async with self._handler_slots:
            try:
                await subscription.handler(event)
            except Exception:
                logger.exception(
                    f"Subscriber {subscription.id} failed on {event.type} "
                    f"for execution {event.execution_id}"
                )

    async def emit(
        self,
        event_type: EventType,
        execution_id: str,
        graph_id: str | None = None,
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        """Build and publish an event in one call."""
        await self.publish(
            ExecutionEvent(
                type=event_type,
                execution_id=execution_id,
                graph_id=graph_id,
                node_id=node_id,
                data=data,
            )
        )

    async def emit_node_retry(
        self,
        execution_id: str,
        node_id: str,
        attempt: int,
        max_attempts: int,
        error: str,
    ) -> None:
        await self.emit(
            EventType.NODE_RETRY,
            execution_id,
            node_id=node_id,
            attempt=attempt,
            max_attempts=max_attempts,
            error=error,
        )

    async def emit_execution_paused(
        self,
        execution_id: str,
        graph_id: str,
        node_id: str | None,
        reason: str,
        approval_request: dict[str, Any] | None = None,
    ) -> None:
        """Pause event; ``approval_request`` is set for approval pauses."""
        await self.emit(
            EventType.EXECUTION_PAUSED,
            execution_id,
            graph_id=graph_id,
            node_id=node_id,
            reason=reason,
            approval_request=approval_request,
        )

    # === HISTORY ===

    def get_history(
        self,
        event_type: EventType | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[ExecutionEvent]:
        """Recorded events, newest first."""
        matches: list[ExecutionEvent] = []
        for event in reversed(self._history):
            if event_type is not None and event.type != event_type:
                continue
            if execution_id is not None and event.execution_id != execution_id:
                continue
            matches.append(event)
            if len(matches) >= limit:
                break
        return matches

    def get_stats(self) -> dict[str, Any]:
        counts = Counter(event.type.value for event in self._history)
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(counts),
        }

    async def wait_for(
        self,
        event_type: EventType,
        execution_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionEvent | None:
        """
        Wait for the next matching event.

        Returns None when ``timeout`` seconds pass first.
        """
        loop = asyncio.get_running_loop()
        arrived: asyncio.Future[ExecutionEvent] = loop.create_future()

        async def capture(event: ExecutionEvent) -> None:
            if not arrived.done():
                arrived.set_result(event)

        sub_id = self.subscribe([event_type], capture, execution_id, node_id)
        try:
            return await asyncio.wait_for(arrived, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
