"""Shared fixtures for engine-level tests."""

import inspect
from typing import Any

import pytest

from intent_router.agents.protocol import AgentRequest, AgentResponse
from intent_router.graph.engine import ExecutionEngine
from intent_router.observability.logging import clear_trace_context
from intent_router.runtime.event_bus import EventBus
from intent_router.storage.state_store import InMemoryStateStore


class RecordingAgent:
    """
    Invoker that records every call and plays per-node behaviours.

    A behaviour is a value to return as the result, an AgentResponse, an
    exception to raise, or a (sync or async) callable taking the request.
    Nodes without a behaviour return ``{"node": <node_id>}``.
    """

    def __init__(self):
        self.behaviours: dict[str, Any] = {}
        self.calls: list[str] = []
        self.inputs: dict[str, dict] = {}

    def count(self, node_id: str) -> int:
        return self.calls.count(node_id)

    async def invoke(self, request: AgentRequest) -> AgentResponse:
        self.calls.append(request.node_id)
        self.inputs[request.node_id] = request.input

        if request.node_id not in self.behaviours:
            return AgentResponse.ok({"node": request.node_id})

        outcome = self.behaviours[request.node_id]
        if callable(outcome):
            outcome = outcome(request)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, AgentResponse):
            return outcome
        return AgentResponse.ok(outcome)


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def agent() -> RecordingAgent:
    return RecordingAgent()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def engine(agent, store, bus) -> ExecutionEngine:
    return ExecutionEngine(agent, state_store=store, event_bus=bus, sleep=no_sleep)
