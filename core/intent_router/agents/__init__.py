"""Agent transports: the invoker contract, name-based routing and HTTP."""

from intent_router.agents.http_client import HttpAgentInvoker
from intent_router.agents.protocol import AgentInvoker, AgentRequest, AgentResponse
from intent_router.agents.registry import AgentHandler, AgentRegistry

__all__ = [
    "AgentHandler",
    "AgentInvoker",
    "AgentRegistry",
    "AgentRequest",
    "AgentResponse",
    "HttpAgentInvoker",
]
