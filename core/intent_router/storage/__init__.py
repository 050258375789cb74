"""Execution state persistence."""

from intent_router.storage.state_store import (
    ExecutionStateStore,
    FileStateStore,
    InMemoryStateStore,
)

__all__ = ["ExecutionStateStore", "InMemoryStateStore", "FileStateStore"]
