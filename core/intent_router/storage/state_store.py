"""
Execution State Store - Persisted snapshots of ExecutionState, keyed by id.

The store is a recovery aid, not the source of truth while an execution is
running: the engine owns the in-memory state and writes snapshots into the
store. Stores must tolerate concurrent writes for different execution ids;
writes for the same id are serialized by the engine.

Directory structure (FileStateStore):
    {base_path}/
        executions/
            {execution_id}.json     # Full ExecutionState JSON
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from intent_router.errors import StateStoreError
from intent_router.schemas.execution import ExecutionState, ExecutionStatus
from intent_router.utils.io import atomic_write

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.\-]+$")


@runtime_checkable
class ExecutionStateStore(Protocol):
    """Key-value persistence for execution state."""

    async def put(self, execution_id: str, state: ExecutionState) -> None:
        """Persist a snapshot. Raises StateStoreError on failure."""
        ...

    async def get(self, execution_id: str) -> ExecutionState | None:
        """Load a snapshot, or None if the id is unknown."""
        ...


class InMemoryStateStore:
    """
    Process-local store, mostly for tests and single-process services.

    Snapshots are stored as JSON so later mutation of the engine's state
    object never leaks into the stored copy.
    """

    def __init__(self):
        self._data: dict[str, str] = {}

    async def put(self, execution_id: str, state: ExecutionState) -> None:
        self._data[execution_id] = state.model_dump_json(by_alias=True)

    async def get(self, execution_id: str) -> ExecutionState | None:
        raw = self._data.get(execution_id)
        if raw is None:
            return None
        return ExecutionState.model_validate_json(raw)

    async def delete(self, execution_id: str) -> bool:
        return self._data.pop(execution_id, None) is not None

    async def list_ids(self) -> list[str]:
        return list(self._data)


class FileStateStore:
    """
    One JSON file per execution with atomic writes.

    Uses temp file + rename so a crash mid-write leaves the previous
    snapshot intact.
    """

    def __init__(self, base_path: Path | str):
        """
        Args:
            base_path: Storage root (e.g., ~/.intent-router)
        """
        self.base_path = Path(base_path)
        self.executions_dir = self.base_path / "executions"

    def get_state_path(self, execution_id: str) -> Path:
        if not _SAFE_ID.match(execution_id):
            raise StateStoreError(f"Invalid execution id: {execution_id!r}")
        return self.executions_dir / f"{execution_id}.json"

    async def put(self, execution_id: str, state: ExecutionState) -> None:
        state_path = self.get_state_path(execution_id)
        payload = state.model_dump_json(indent=2, by_alias=True)

        def _write():
            state_path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(state_path) as f:
                f.write(payload)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StateStoreError(f"Failed to write state for {execution_id}: {e}") from e
        logger.debug(f"Wrote state for execution {execution_id}")

    async def get(self, execution_id: str) -> ExecutionState | None:
        # No snapshot can ever be stored under an unsafe id
        if not _SAFE_ID.match(execution_id):
            return None
        state_path = self.get_state_path(execution_id)

        def _read() -> ExecutionState | None:
            if not state_path.exists():
                return None
            return ExecutionState.model_validate_json(state_path.read_text(encoding="utf-8"))

        try:
            return await asyncio.to_thread(_read)
        except (OSError, ValidationError) as e:
            raise StateStoreError(f"Failed to load state for {execution_id}: {e}") from e

    async def delete(self, execution_id: str) -> bool:
        state_path = self.get_state_path(execution_id)

        def _delete() -> bool:
            if not state_path.exists():
                return False
            state_path.unlink()
            logger.info(f"Deleted state for execution {execution_id}")
            return True

        return await asyncio.to_thread(_delete)

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        limit: int = 100,
    ) -> list[ExecutionState]:
        """List persisted executions, most recently updated first."""

        def _scan() -> list[ExecutionState]:
            states: list[ExecutionState] = []
            if not self.executions_dir.exists():
                return states

            for state_path in self.executions_dir.glob("*.json"):
                try:
                    state = ExecutionState.model_validate_json(
                        state_path.read_text(encoding="utf-8")
                    )
                except Exception as e:
                    logger.warning(f"Failed to load {state_path}: {e}")
                    continue
                if status and state.status != status:
                    continue
                states.append(state)

            states.sort(key=lambda s: s.updated_at, reverse=True)
            return states[:limit]

        return await asyncio.to_thread(_scan)
