"""Task orchestration engine: state model, persistence, readiness and lifecycle.

:class:`~task_orchestrator.engine.engine.Orchestrator` is the entry point for
every mutation; the remaining modules are its building blocks.
"""

from __future__ import annotations

from .model import (
    AgentAssignment,
    Complexity,
    DispatchResult,
    ErrorKind,
    HistoryAction,
    HistoryEntry,
    OrchestratorState,
    SprintInfo,
    Task,
    TaskStatus,
    TestStatus,
    ValidationResult,
)
from .store import (
    ConcurrentModificationError,
    FileStateStore,
    InMemoryStateStore,
    SnapshotCorruptError,
    SnapshotError,
    StateStore,
)

__all__ = [
    "AgentAssignment",
    "Complexity",
    "ConcurrentModificationError",
    "DispatchResult",
    "ErrorKind",
    "FileStateStore",
    "HistoryAction",
    "HistoryEntry",
    "InMemoryStateStore",
    "OrchestratorState",
    "SnapshotCorruptError",
    "SnapshotError",
    "SprintInfo",
    "StateStore",
    "Task",
    "TaskStatus",
    "TestStatus",
    "ValidationResult",
]
