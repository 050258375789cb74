"""Route agent requests by agent name."""

import inspect
import logging
from collections.abc import Callable
from typing import Any

from intent_router.agents.protocol import AgentInvoker, AgentRequest, AgentResponse
from intent_router.errors import AgentValidationError

logger = logging.getLogger(__name__)

# A plain handler receives (tool, input) and returns the result value.
# It may be sync or async.
AgentHandler = Callable[[str, dict[str, Any]], Any]


class AgentRegistry:
    """
    Dispatches each request to the invoker registered for its agent.

    Example:
        registry = AgentRegistry(fallback=HttpAgentInvoker.from_config())
        registry.register("calculator", lambda tool, data: {"sum": sum(data["values"])})
        registry.register_invoker("search", SearchInvoker())
    """

    def __init__(self, fallback: AgentInvoker | None = None):
        self._invokers: dict[str, AgentInvoker] = {}
        self._handlers: dict[str, AgentHandler] = {}
        self.fallback = fallback

    def register(self, agent: str, handler: AgentHandler) -> None:
        """Register a plain function as an agent."""
        self._handlers[agent] = handler
        self._invokers.pop(agent, None)
        logger.debug(f"Registered handler for agent '{agent}'")

    def register_invoker(self, agent: str, invoker: AgentInvoker) -> None:
        self._invokers[agent] = invoker
        self._handlers.pop(agent, None)
        logger.debug(f"Registered invoker for agent '{agent}'")

    def has_agent(self, agent: str) -> bool:
        return agent in self._invokers or agent in self._handlers

    @property
    def agents(self) -> list[str]:
        return sorted({*self._invokers, *self._handlers})

    async def invoke(self, request: AgentRequest) -> AgentResponse:
        invoker = self._invokers.get(request.agent)
        if invoker is not None:
            return await invoker.invoke(request)

        handler = self._handlers.get(request.agent)
        if handler is not None:
            result = handler(request.tool, request.input)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, AgentResponse):
                return result
            return AgentResponse.ok(result)

        if self.fallback is not None:
            return await self.fallback.invoke(request)

        raise AgentValidationError(f"No agent registered under '{request.agent}'")
