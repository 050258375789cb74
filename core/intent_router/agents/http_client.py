"""HTTP transport for agents declared in gaff.json.

One pooled ``httpx.AsyncClient`` is kept per agent endpoint and reused for
every call, so connection setup is paid once per agent rather than once per
node.

Wire format:
    POST {endpoint}/{tool}
    {"tool": "<tool>", "input": {...}}

A JSON reply of the form ``{"success": bool, "result": ..., "error": ...}``
is taken at face value; any other 2xx body is treated as the result itself.
"""

import logging
from typing import Any

import httpx

from intent_router.agents.protocol import AgentRequest, AgentResponse
from intent_router.config import AgentDefinition, load_agent_definitions
from intent_router.errors import AgentUnavailableError, AgentValidationError

logger = logging.getLogger(__name__)


class HttpAgentInvoker:
    """
    Calls agents over HTTP.

    Status mapping:
        timeouts, transport errors, 5xx, 429 -> AgentUnavailableError (retryable)
        other 4xx                            -> AgentValidationError
        ``success: false`` in the body       -> failed, non-retryable response
    """

    def __init__(
        self,
        agents: dict[str, AgentDefinition],
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            agents: Agent definitions keyed by agent name
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.agents = agents
        self._transport = transport
        self._clients: dict[str, httpx.AsyncClient] = {}

    @classmethod
    def from_config(cls, path: str | None = None, **kwargs: Any) -> "HttpAgentInvoker":
        """Build an invoker from gaff.json (``GAFF_CONFIG_PATH`` when no path is given)."""
        return cls(load_agent_definitions(path), **kwargs)

    def _client_for(self, definition: AgentDefinition) -> httpx.AsyncClient:
        endpoint = definition.endpoint
        if not endpoint:
            raise AgentValidationError(f"Agent '{definition.name}' has no endpoint configured")

        client = self._clients.get(endpoint)
        if client is None:
            headers = {"Content-Type": "application/json", **definition.headers}
            api_key = definition.api_key
            if api_key:
                headers.setdefault("Authorization", f"Bearer {api_key}")
            client = httpx.AsyncClient(
                base_url=endpoint.rstrip("/"),
                headers=headers,
                timeout=definition.timeout_ms / 1000,
                transport=self._transport,
            )
            self._clients[endpoint] = client
            logger.debug(f"Opened HTTP client for agent '{definition.name}' at {endpoint}")
        return client

    async def invoke(self, request: AgentRequest) -> AgentResponse:
        definition = self.agents.get(request.agent)
        if definition is None:
            raise AgentValidationError(f"Agent '{request.agent}' is not defined in gaff.json")
        if definition.type not in ("api", "http"):
            raise AgentValidationError(
                f"Agent '{request.agent}' has unsupported type '{definition.type}'"
            )

        client = self._client_for(definition)
        try:
            response = await client.post(
                f"/{request.tool}",
                json={"tool": request.tool, "input": request.input},
            )
        except httpx.TimeoutException as e:
            raise AgentUnavailableError(f"Agent '{request.agent}' timed out: {e}") from e
        except httpx.TransportError as e:
            raise AgentUnavailableError(f"Agent '{request.agent}' unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise AgentUnavailableError(
                f"Agent '{request.agent}' returned HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise AgentValidationError(
                f"Agent '{request.agent}' rejected request: HTTP {response.status_code} "
                f"{response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError:
            return AgentResponse.ok(response.text)

        if isinstance(body, dict) and isinstance(body.get("success"), bool):
            if body["success"]:
                return AgentResponse.ok(body.get("result"))
            return AgentResponse.fail(body.get("error") or "Agent reported failure")
        return AgentResponse.ok(body)

    async def aclose(self) -> None:
        """Close every pooled client."""
        for endpoint, client in list(self._clients.items()):
            await client.aclose()
            logger.debug(f"Closed HTTP client for {endpoint}")
        self._clients.clear()

    async def __aenter__(self) -> "HttpAgentInvoker":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
