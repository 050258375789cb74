"""Tests for the execution state stores."""

import json
from pathlib import Path

import pytest

from intent_router.agents.registry import AgentRegistry
from intent_router.errors import ExecutionNotFoundError, StateStoreError
from intent_router.graph.engine import ExecutionEngine
from intent_router.schemas.execution import ExecutionState, ExecutionStatus, NodeResult
from intent_router.schemas.graph import IntentGraph
from intent_router.storage.state_store import FileStateStore, InMemoryStateStore
from intent_router.utils.io import atomic_write

# === HELPER FUNCTIONS ===


def create_test_state(
    execution_id: str = "exec_1",
    status: ExecutionStatus = ExecutionStatus.RUNNING,
) -> ExecutionState:
    graph = IntentGraph.model_validate(
        {
            "graph_id": "g1",
            "nodes": [
                {"id": "a", "agent": "worker", "tool": "run"},
                {"id": "gate", "agent": "hitl", "dependencies": ["a"], "default_next": "b"},
                {"id": "b", "agent": "worker", "tool": "run"},
            ],
            "edges": [{"from": "a", "to": "b", "condition": "on_success"}],
        }
    )
    state = ExecutionState(execution_id=execution_id, graph=graph, status=status)
    state.context["user"] = "u1"
    state.record(NodeResult(node_id="a", success=True, result={"rows": 3}, attempts=1))
    return state


# === IN-MEMORY STORE ===


class TestInMemoryStateStore:
    @pytest.mark.asyncio
    async def test_put_and_get(self):
        store = InMemoryStateStore()
        state = create_test_state()

        await store.put(state.execution_id, state)
        loaded = await store.get(state.execution_id)

        assert loaded is not None
        assert loaded.execution_id == "exec_1"
        assert loaded.completed_nodes == ["a"]
        assert loaded.results["a"].result == {"rows": 3}
        assert loaded.graph.get_node("gate").kind == "approval"

    @pytest.mark.asyncio
    async def test_snapshot_is_isolated_from_later_mutation(self):
        store = InMemoryStateStore()
        state = create_test_state()
        await store.put(state.execution_id, state)

        state.context["user"] = "changed"
        state.status = ExecutionStatus.FAILED

        loaded = await store.get(state.execution_id)
        assert loaded.context["user"] == "u1"
        assert loaded.status == ExecutionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_missing_returns_none(self):
        assert await InMemoryStateStore().get("nope") is None

    @pytest.mark.asyncio
    async def test_delete_and_list(self):
        store = InMemoryStateStore()
        await store.put("exec_1", create_test_state("exec_1"))
        await store.put("exec_2", create_test_state("exec_2"))

        assert sorted(await store.list_ids()) == ["exec_1", "exec_2"]
        assert await store.delete("exec_1") is True
        assert await store.delete("exec_1") is False
        assert await store.list_ids() == ["exec_2"]


# === FILE STORE ===


class TestFileStateStore:
    @pytest.mark.asyncio
    async def test_put_writes_json_file(self, tmp_path: Path):
        store = FileStateStore(tmp_path)
        state = create_test_state()

        await store.put(state.execution_id, state)

        path = tmp_path / "executions" / "exec_1.json"
        assert path.exists()
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["execution_id"] == "exec_1"
        assert data["graph"]["edges"][0]["from"] == "a"
        assert data["graph"]["edges"][0]["to"] == "b"

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path: Path):
        store = FileStateStore(str(tmp_path))
        state = create_test_state(status=ExecutionStatus.PAUSED_FOR_APPROVAL)
        state.paused_at_node = "gate"

        await store.put(state.execution_id, state)
        loaded = await store.get(state.execution_id)

        assert loaded.status == ExecutionStatus.PAUSED_FOR_APPROVAL
        assert loaded.paused_at_node == "gate"
        assert loaded.graph.edges[0].source == "a"

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(self, tmp_path: Path):
        store = FileStateStore(tmp_path)
        state = create_test_state()

        await store.put(state.execution_id, state)
        state.status = ExecutionStatus.COMPLETED
        await store.put(state.execution_id, state)

        files = sorted(p.name for p in (tmp_path / "executions").iterdir())
        assert files == ["exec_1.json"]
        assert (await store.get("exec_1")).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_returns_none(self, tmp_path: Path):
        assert await FileStateStore(tmp_path).get("exec_unknown") is None

    @pytest.mark.asyncio
    async def test_rejects_path_like_ids(self, tmp_path: Path):
        store = FileStateStore(tmp_path)

        assert await store.get("../escape") is None
        with pytest.raises(StateStoreError):
            await store.put("../escape", create_test_state())
        with pytest.raises(StateStoreError):
            await store.delete("../escape")
        assert not (tmp_path / "escape.json").exists()

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_raises_state_store_error(self, tmp_path: Path):
        store = FileStateStore(tmp_path)
        (tmp_path / "executions").mkdir()
        (tmp_path / "executions" / "exec_bad.json").write_text("{not json")

        with pytest.raises(StateStoreError, match="exec_bad"):
            await store.get("exec_bad")

    @pytest.mark.asyncio
    async def test_engine_lookups_surface_store_errors(self, tmp_path: Path):
        store = FileStateStore(tmp_path)
        engine = ExecutionEngine(AgentRegistry(), state_store=store)
        (tmp_path / "executions").mkdir()
        (tmp_path / "executions" / "exec_bad.json").write_text('{"execution_id": 1}')

        with pytest.raises(ExecutionNotFoundError):
            await engine.get_execution_status("../escape")
        with pytest.raises(ExecutionNotFoundError):
            await engine.resume_execution("../escape", approved=True)
        with pytest.raises(StateStoreError):
            await engine.cancel_execution("exec_bad")

    @pytest.mark.asyncio
    async def test_write_failure_raises_state_store_error(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = FileStateStore(blocker)

        with pytest.raises(StateStoreError):
            await store.put("exec_1", create_test_state())

    @pytest.mark.asyncio
    async def test_list_executions_filters_by_status(self, tmp_path: Path):
        store = FileStateStore(tmp_path)
        await store.put("exec_1", create_test_state("exec_1", ExecutionStatus.COMPLETED))
        await store.put("exec_2", create_test_state("exec_2", ExecutionStatus.PAUSED))
        (tmp_path / "executions" / "corrupt.json").write_text("{not json")

        everything = await store.list_executions()
        paused = await store.list_executions(status=ExecutionStatus.PAUSED)

        assert sorted(s.execution_id for s in everything) == ["exec_1", "exec_2"]
        assert [s.execution_id for s in paused] == ["exec_2"]

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path: Path):
        store = FileStateStore(tmp_path)
        await store.put("exec_1", create_test_state())

        assert await store.delete("exec_1") is True
        assert await store.delete("exec_1") is False
        assert await store.get("exec_1") is None


# === ATOMIC WRITE ===


class TestAtomicWrite:
    def test_replaces_target(self, tmp_path: Path):
        target = tmp_path / "state.json"
        target.write_text("old")

        with atomic_write(target) as f:
            f.write("new")

        assert target.read_text() == "new"

    def test_failed_write_keeps_previous_content(self, tmp_path: Path):
        target = tmp_path / "state.json"
        target.write_text("old")

        with pytest.raises(RuntimeError):
            with atomic_write(target) as f:
                f.write("partial")
                raise RuntimeError("crash")

        assert target.read_text() == "old"
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
