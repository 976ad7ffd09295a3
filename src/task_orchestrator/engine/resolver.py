"""Readiness resolution over the task dependency graph.

A ``pending`` task becomes ``ready`` once every id in its ``dependencies``
names a task that is ``complete``.  Unknown dependency ids never count as
complete.  No other status is ever touched here.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from loguru import logger

from .model import OrchestratorState, Task, TaskStatus


def build_dependents_index(tasks: Iterable[Task]) -> dict[str, list[str]]:
    """Return the reverse adjacency list ``{task_id: [ids that depend on it]}``."""
    index: dict[str, list[str]] = defaultdict(list)
    for task in tasks:
        for dep_id in task.dependencies:
            if task.id not in index[dep_id]:
                index[dep_id].append(task.id)
    return dict(index)


def dependencies_complete(state: OrchestratorState, task: Task) -> bool:
    for dep_id in task.dependencies:
        dep = state.tasks.get(dep_id)
        if dep is None or dep.status != TaskStatus.COMPLETE:
            return False
    return True


def unmet_dependencies(state: OrchestratorState, task: Task) -> list[str]:
    unmet: list[str] = []
    for dep_id in task.dependencies:
        dep = state.tasks.get(dep_id)
        if dep is None or dep.status != TaskStatus.COMPLETE:
            unmet.append(dep_id)
    return unmet


class ReadinessResolver:
    """Promote pending tasks to ready, re-checking only what can have changed.

    The reverse-dependency index is built once from the task set; the graph
    shape is fixed after seeding, so it never needs rebuilding.
    """

    def __init__(self, state: OrchestratorState) -> None:
        self._state = state
        self._dependents = build_dependents_index(state.tasks.values())

    def dependents_of(self, task_id: str) -> list[str]:
        return list(self._dependents.get(task_id, []))

    def resolve_task(self, task_id: str) -> bool:
        """Re-check a single task; return True if it was promoted."""
        task = self._state.tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        if not dependencies_complete(self._state, task):
            return False
        task.status = TaskStatus.READY
        logger.debug("Task {} is ready", task.id)
        return True

    def resolve_dependents(self, task_id: str) -> list[str]:
        """Re-check the direct dependents of *task_id*; return promoted ids."""
        return [dep_id for dep_id in self.dependents_of(task_id) if self.resolve_task(dep_id)]

    def resolve_all(self) -> list[str]:
        """Full pass over every task; return promoted ids in task order."""
        return [task_id for task_id in list(self._state.tasks) if self.resolve_task(task_id)]
