"""Agent invocation contract.

The engine never talks to a transport directly; every node call goes through
an ``AgentInvoker``. Invokers either return an ``AgentResponse`` or raise one
of the ``AgentError`` subclasses from ``intent_router.errors``.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class AgentRequest:
    """One call to one agent tool."""

    agent: str
    tool: str
    input: dict[str, Any] = field(default_factory=dict)
    node_id: str | None = None


@dataclass
class AgentResponse:
    """What an agent returned."""

    success: bool
    result: Any = None
    error: str | None = None
    retryable: bool = False  # Only consulted when success is False

    @classmethod
    def ok(cls, result: Any) -> "AgentResponse":
        return cls(success=True, result=result)

    @classmethod
    def fail(cls, error: str, retryable: bool = False) -> "AgentResponse":
        return cls(success=False, error=error, retryable=retryable)


@runtime_checkable
class AgentInvoker(Protocol):
    """Anything that can execute an AgentRequest."""

    async def invoke(self, request: AgentRequest) -> AgentResponse: ...
