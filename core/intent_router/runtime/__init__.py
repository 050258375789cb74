"""Runtime services shared by executions."""

from intent_router.runtime.event_bus import EventBus, EventType, ExecutionEvent

__all__ = ["EventBus", "EventType", "ExecutionEvent"]
