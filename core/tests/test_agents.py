"""
Tests for agent transports: the name-based registry and the HTTP invoker.

HTTP tests use httpx.MockTransport, so no sockets are opened.
"""

import json

import httpx
import pytest

from intent_router.agents.http_client import HttpAgentInvoker
from intent_router.agents.protocol import AgentRequest, AgentResponse
from intent_router.agents.registry import AgentRegistry
from intent_router.config import AgentDefinition
from intent_router.errors import AgentUnavailableError, AgentValidationError
from intent_router.graph.engine import ExecutionEngine
from intent_router.schemas.execution import ExecutionStatus

# === HELPER FUNCTIONS ===


def definitions(**overrides) -> dict[str, AgentDefinition]:
    search = AgentDefinition(
        name="search",
        endpoint="http://search.local/api/",
        timeout_ms=5000,
        api_key_env_var="SEARCH_API_KEY",
        **overrides,
    )
    return {"search": search}


def request(tool: str = "query", **input) -> AgentRequest:
    return AgentRequest(agent="search", tool=tool, input=input, node_id="n1")


class Recorder:
    """MockTransport handler replaying canned responses and keeping requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, req: httpx.Request) -> httpx.Response:
        self.requests.append(req)
        outcome = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def invoker_for(recorder: Recorder, **overrides) -> HttpAgentInvoker:
    return HttpAgentInvoker(definitions(**overrides), transport=httpx.MockTransport(recorder))


# === HTTP INVOKER ===


class TestHttpAgentInvoker:
    @pytest.mark.asyncio
    async def test_posts_tool_and_input(self, monkeypatch):
        monkeypatch.setenv("SEARCH_API_KEY", "sk-test")
        recorder = Recorder(httpx.Response(200, json={"success": True, "result": {"hits": 2}}))

        async with invoker_for(recorder) as invoker:
            response = await invoker.invoke(request(q="python"))

        assert response.success
        assert response.result == {"hits": 2}
        sent = recorder.requests[0]
        assert sent.method == "POST"
        assert sent.url.path == "/api/query"
        assert json.loads(sent.content) == {"tool": "query", "input": {"q": "python"}}
        assert sent.headers["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_no_auth_header_without_key(self, monkeypatch):
        monkeypatch.delenv("SEARCH_API_KEY", raising=False)
        recorder = Recorder(httpx.Response(200, json={"success": True, "result": 1}))

        async with invoker_for(recorder) as invoker:
            await invoker.invoke(request())

        assert "Authorization" not in recorder.requests[0].headers

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 503, 429])
    async def test_server_errors_are_unavailable(self, status):
        async with invoker_for(Recorder(httpx.Response(status))) as invoker:
            with pytest.raises(AgentUnavailableError):
                await invoker.invoke(request())

    @pytest.mark.asyncio
    async def test_client_error_is_validation(self):
        recorder = Recorder(httpx.Response(400, text="missing field q"))

        async with invoker_for(recorder) as invoker:
            with pytest.raises(AgentValidationError, match="missing field q"):
                await invoker.invoke(request())

    @pytest.mark.asyncio
    async def test_reported_failure_is_not_retryable(self):
        recorder = Recorder(httpx.Response(200, json={"success": False, "error": "no index"}))

        async with invoker_for(recorder) as invoker:
            response = await invoker.invoke(request())

        assert not response.success
        assert response.error == "no index"
        assert not response.retryable

    @pytest.mark.asyncio
    async def test_plain_json_and_text_bodies(self):
        recorder = Recorder(
            httpx.Response(200, json=[1, 2, 3]),
            httpx.Response(200, text="plain answer"),
        )

        async with invoker_for(recorder) as invoker:
            as_json = await invoker.invoke(request())
            as_text = await invoker.invoke(request())

        assert as_json.result == [1, 2, 3]
        assert as_text.result == "plain answer"

    @pytest.mark.asyncio
    async def test_connect_error_is_unavailable(self):
        recorder = Recorder(httpx.ConnectError("connection refused"))

        async with invoker_for(recorder) as invoker:
            with pytest.raises(AgentUnavailableError, match="unreachable"):
                await invoker.invoke(request())

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        recorder = Recorder(httpx.ReadTimeout("slow"))

        async with invoker_for(recorder) as invoker:
            with pytest.raises(AgentUnavailableError, match="timed out"):
                await invoker.invoke(request())

    @pytest.mark.asyncio
    async def test_unknown_agent(self):
        invoker = HttpAgentInvoker({})
        with pytest.raises(AgentValidationError, match="not defined"):
            await invoker.invoke(request())

    @pytest.mark.asyncio
    async def test_missing_endpoint(self):
        invoker = HttpAgentInvoker({"search": AgentDefinition(name="search")})
        with pytest.raises(AgentValidationError, match="no endpoint"):
            await invoker.invoke(request())

    @pytest.mark.asyncio
    async def test_client_is_reused_per_endpoint(self):
        recorder = Recorder(httpx.Response(200, json={"success": True, "result": None}))
        invoker = invoker_for(recorder)

        await invoker.invoke(request())
        await invoker.invoke(request("images"))
        assert len(invoker._clients) == 1

        await invoker.aclose()
        assert invoker._clients == {}

    def test_from_config(self, tmp_path):
        config = tmp_path / "gaff.json"
        config.write_text(
            json.dumps(
                {
                    "agents": {
                        "search": {
                            "type": "api",
                            "endpoint": "http://search.local",
                            "timeout_ms": 1500,
                        }
                    }
                }
            )
        )

        invoker = HttpAgentInvoker.from_config(str(config))

        assert invoker.agents["search"].endpoint == "http://search.local"
        assert invoker.agents["search"].timeout_ms == 1500


@pytest.mark.asyncio
async def test_engine_retries_unavailable_http_agent(store):
    recorder = Recorder(
        httpx.Response(503),
        httpx.Response(200, json={"success": True, "result": {"hits": 1}}),
    )
    invoker = invoker_for(recorder)

    async def instant(seconds: float) -> None:
        return None

    engine = ExecutionEngine(invoker, state_store=store, sleep=instant)
    graph = {
        "graph_id": "lookup",
        "nodes": [
            {
                "id": "find",
                "agent": "search",
                "tool": "query",
                "input": {"q": "${topic}"},
                "retry_policy": {"max_attempts": 3, "backoff": "linear"},
            }
        ],
    }

    result = await engine.execute_graph(graph, context={"topic": "dags"})
    await invoker.aclose()

    assert result.status == ExecutionStatus.COMPLETED
    assert result.results["find"].attempts == 2
    assert result.results["find"].result == {"hits": 1}
    assert json.loads(recorder.requests[1].content)["input"] == {"q": "dags"}


# === REGISTRY ===


class TestAgentRegistry:
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        registry = AgentRegistry()

        async def lookup(tool, data):
            return {"tool": tool, "id": data["id"]}

        registry.register("calculator", lambda tool, data: sum(data["values"]))
        registry.register("db", lookup)

        summed = await registry.invoke(AgentRequest("calculator", "add", {"values": [1, 2]}))
        fetched = await registry.invoke(AgentRequest("db", "get", {"id": 7}))

        assert summed.result == 3
        assert fetched.result == {"tool": "get", "id": 7}
        assert registry.agents == ["calculator", "db"]

    @pytest.mark.asyncio
    async def test_handler_may_return_response(self):
        registry = AgentRegistry()
        registry.register("strict", lambda tool, data: AgentResponse.fail("nope"))

        response = await registry.invoke(AgentRequest("strict", "run"))

        assert not response.success
        assert response.error == "nope"

    @pytest.mark.asyncio
    async def test_registered_invoker_and_fallback(self):
        class Echo:
            async def invoke(self, req):
                return AgentResponse.ok(f"{req.agent}:{req.tool}")

        registry = AgentRegistry(fallback=Echo())
        registry.register_invoker("search", Echo())

        direct = await registry.invoke(AgentRequest("search", "query"))
        fallback = await registry.invoke(AgentRequest("elsewhere", "run"))

        assert direct.result == "search:query"
        assert fallback.result == "elsewhere:run"
        assert registry.has_agent("search")
        assert not registry.has_agent("elsewhere")

    @pytest.mark.asyncio
    async def test_unknown_agent_without_fallback(self):
        with pytest.raises(AgentValidationError):
            await AgentRegistry().invoke(AgentRequest("ghost", "run"))
