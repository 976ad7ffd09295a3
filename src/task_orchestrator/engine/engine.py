"""Orchestrator: the lifecycle controller for the task graph.

This is the only place task status changes.  Each command validates the
requested move against :data:`_VALID_TRANSITIONS`, mutates the in-memory
:class:`OrchestratorState`, re-resolves readiness where the move can unblock
work, appends to the history log and saves the full snapshot.  Business-rule
violations come back as structured results; storage failures raise.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Union

from loguru import logger

from ..catalogue import Catalogue, CatalogueError, load_catalogue, seed_state
from ..config import OrchestratorSettings
from ..constants import (
    DEFAULT_EXPORT_LIMIT,
    DEFAULT_HISTORY_MAX_ENTRIES,
    DEFAULT_HISTORY_RETAIN_ENTRIES,
    DEFAULT_PROMPTS_DIR,
)
from ..utils import _hours_between, _now
from . import queries
from .agents import AgentRegistry
from .history import HistoryLog
from .model import (
    DispatchResult,
    ErrorKind,
    HistoryAction,
    HistoryEntry,
    OrchestratorState,
    Task,
    TaskStatus,
    TestStatus,
    ValidationResult,
)
from .resolver import ReadinessResolver, unmet_dependencies
from .store import FileStateStore, SnapshotCorruptError, StateStore


# ---------------------------------------------------------------------------
# Valid status transitions (reset to pending is allowed from anywhere)
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.READY, TaskStatus.FAILED},
    TaskStatus.READY: {TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {TaskStatus.REVIEW, TaskStatus.COMPLETE, TaskStatus.FAILED},
    TaskStatus.REVIEW: {TaskStatus.COMPLETE, TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.BLOCKED: {TaskStatus.FAILED},
    TaskStatus.FAILED: {TaskStatus.FAILED},
    TaskStatus.COMPLETE: set(),
}

_REJECTION_PHRASES: dict[TaskStatus, str] = {
    TaskStatus.IN_PROGRESS: "is not ready",
    TaskStatus.REVIEW: "is not in progress",
    TaskStatus.COMPLETE: "is not in progress",
    TaskStatus.FAILED: "is already complete",
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    if target == TaskStatus.PENDING:
        return True
    return target in _VALID_TRANSITIONS.get(current, set())


CatalogueSource = Union[Catalogue, Path, Callable[[], Catalogue], None]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    """Own one :class:`OrchestratorState` and every mutation applied to it.

    Parameters
    ----------
    store:
        Snapshot persistence; :class:`FileStateStore` in production,
        :class:`InMemoryStateStore` in tests.
    catalogue:
        Seed for a project with no snapshot yet: a parsed :class:`Catalogue`,
        a path to the catalogue YAML, or a zero-argument loader.  Only read
        when the store is empty.
    prompts_dir:
        Directory joined with each task's ``prompt_file``.
    """

    def __init__(
        self,
        store: StateStore,
        catalogue: CatalogueSource = None,
        *,
        prompts_dir: Path | str = DEFAULT_PROMPTS_DIR,
        project_path: str = "",
        history_max_entries: int = DEFAULT_HISTORY_MAX_ENTRIES,
        history_retain_entries: int = DEFAULT_HISTORY_RETAIN_ENTRIES,
        history_sink_path: Optional[Path] = None,
        clock_ms: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.prompts_dir = Path(prompts_dir)
        self.project_path = project_path
        self._catalogue = catalogue
        self._history_max_entries = history_max_entries
        self._history_retain_entries = min(history_retain_entries, history_max_entries)
        self._history_sink_path = history_sink_path
        self._clock_ms = clock_ms
        self._state: Optional[OrchestratorState] = None
        self._history: Optional[HistoryLog] = None
        self._agents: Optional[AgentRegistry] = None
        self._resolver: Optional[ReadinessResolver] = None

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings) -> "Orchestrator":
        store = FileStateStore(
            settings.state_dir,
            save_retries=settings.save_retries,
            retry_backoff_seconds=settings.retry_backoff_seconds,
        )
        return cls(
            store,
            settings.catalogue_path,
            prompts_dir=settings.prompts_dir,
            project_path=str(settings.project_dir),
            history_max_entries=settings.history_max_entries,
            history_retain_entries=settings.history_retain_entries,
            history_sink_path=settings.history_sink_path,
        )

    # ------------------------------------------------------------------
    # State lifecycle
    # ------------------------------------------------------------------

    def _ensure_loaded(self) -> OrchestratorState:
        if self._state is None:
            self.initialize()
        assert self._state is not None
        return self._state

    @property
    def state(self) -> OrchestratorState:
        return self._ensure_loaded()

    @property
    def history(self) -> HistoryLog:
        self._ensure_loaded()
        assert self._history is not None
        return self._history

    @property
    def agents(self) -> AgentRegistry:
        self._ensure_loaded()
        assert self._agents is not None
        return self._agents

    def _load_catalogue(self) -> Catalogue:
        source = self._catalogue
        if source is None:
            raise CatalogueError("no snapshot found and no catalogue configured")
        if isinstance(source, Catalogue):
            return source
        if isinstance(source, Path):
            return load_catalogue(source)
        return source()

    def _attach(self, state: OrchestratorState) -> None:
        self._state = state
        self._history = HistoryLog(
            state.history,
            max_entries=self._history_max_entries,
            retain_entries=self._history_retain_entries,
            sink_path=self._history_sink_path,
        )
        if self._clock_ms is not None:
            self._agents = AgentRegistry(state.agents, clock_ms=self._clock_ms)
        else:
            self._agents = AgentRegistry(state.agents)
        self._resolver = ReadinessResolver(state)

    def initialize(self, recover_from_backup: bool = False) -> OrchestratorState:
        """Load the snapshot, or seed a fresh state from the catalogue.

        A corrupt snapshot raises :class:`SnapshotCorruptError` unless
        *recover_from_backup* is set and the backup is readable, in which
        case the backup becomes the live snapshot.
        """
        try:
            state = self.store.load()
        except SnapshotCorruptError as exc:
            if not recover_from_backup:
                raise
            backup = self.store.load_backup()
            if backup is None:
                raise
            logger.warning(
                "Snapshot is corrupt ({}); restoring revision {} from backup", exc, backup.revision
            )
            self._attach(backup)
            assert self._resolver is not None
            self._resolver.resolve_all()
            self.store.save(backup, overwrite=True)
            return backup

        if state is None:
            catalogue = self._load_catalogue()
            state = seed_state(catalogue, self.project_path)
            self._attach(state)
            assert self._resolver is not None
            promoted = self._resolver.resolve_all()
            self.store.save(state)
            logger.info(
                "Seeded {} tasks from catalogue ({} ready)", len(state.tasks), len(promoted)
            )
            return state

        self._attach(state)
        assert self._resolver is not None
        promoted = self._resolver.resolve_all()
        if promoted:
            logger.info("Promoted {} task(s) to ready on load", len(promoted))
            self.store.save(state)
        return state

    def reload(self) -> OrchestratorState:
        """Drop the in-memory state and read the snapshot again."""
        self._drop_state()
        return self.initialize()

    def refresh(self) -> bool:
        """Reload if another writer saved since this state was read."""
        if self._state is None:
            return False
        stored = self.store.stored_revision()
        if stored is None or stored == self._state.revision:
            return False
        logger.info("Snapshot moved from revision {} to {}; reloading", self._state.revision, stored)
        self.reload()
        return True

    def _drop_state(self) -> None:
        self._state = None
        self._history = None
        self._agents = None
        self._resolver = None

    def _persist(self) -> None:
        """Save the snapshot, then write its new history entries to the sink.

        A failed save drops the in-memory mutation; the next access reads the
        stored snapshot again.
        """
        state = self._ensure_loaded()
        assert self._history is not None
        try:
            self.store.save(state)
        except BaseException:
            self._history.discard()
            self._drop_state()
            raise
        self._history.flush()

    # ------------------------------------------------------------------
    # Transition guard
    # ------------------------------------------------------------------

    def _check_transition(
        self,
        task_id: str,
        target: TaskStatus,
        allowed_from: Optional[set[TaskStatus]] = None,
    ) -> tuple[Optional[Task], Optional[ValidationResult]]:
        task = self.state.tasks.get(task_id)
        if task is None:
            logger.warning("Rejected {} for unknown task {}", target.value, task_id)
            return None, ValidationResult.rejected(ErrorKind.NOT_FOUND, f"Task {task_id} not found")
        permitted = can_transition(task.status, target)
        if allowed_from is not None:
            permitted = permitted and task.status in allowed_from
        if not permitted:
            phrase = _REJECTION_PHRASES.get(target, f"cannot move to {target.value}")
            message = f"Task {task_id} {phrase} (status: {task.status.value})"
            logger.warning(message)
            return task, ValidationResult.rejected(ErrorKind.INVALID_STATE, message)
        return task, None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def dispatch_task(self, task_id: str, agent_id: Optional[str] = None) -> DispatchResult:
        task, rejection = self._check_transition(
            task_id, TaskStatus.IN_PROGRESS, allowed_from={TaskStatus.READY}
        )
        if rejection is not None:
            return DispatchResult(
                success=False,
                task_id=task_id,
                error=rejection.errors[0],
                error_kind=rejection.error_kind,
            )
        assert task is not None

        agent_id = agent_id or self.agents.generate_agent_id(task.agent_track)
        existing = self.agents.get(agent_id)
        if existing is not None and existing.current_task and existing.current_task != task.id:
            logger.warning(
                "Agent {} still holds {}; reassigning it to {}", agent_id, existing.current_task, task.id
            )

        task.status = TaskStatus.IN_PROGRESS
        task.assigned_to = agent_id
        task.started_at = _now()
        task.completed_at = None
        self.agents.record_dispatch(agent_id, task.agent_track, task.id)
        self.history.append(HistoryAction.DISPATCH, task.id, agent_id)
        self._persist()

        logger.info("Dispatched {} to {}", task.id, agent_id)
        return DispatchResult(
            success=True,
            task_id=task.id,
            agent_id=agent_id,
            prompt_path=queries.prompt_path(self.prompts_dir, task),
        )

    def complete_task(self, task_id: str, notes: Optional[str] = None) -> ValidationResult:
        task, rejection = self._check_transition(task_id, TaskStatus.COMPLETE)
        if rejection is not None:
            return rejection
        assert task is not None

        now = _now()
        agent_id = task.assigned_to
        task.status = TaskStatus.COMPLETE
        task.completed_at = now
        task.test_status = TestStatus.PASSING
        task.actual_hours = _hours_between(task.started_at, now)
        task.assigned_to = None
        if notes:
            task.notes.append(notes)

        self.agents.record_completion(agent_id, task.id)
        self.history.append(HistoryAction.COMPLETE, task.id, agent_id, notes)
        assert self._resolver is not None
        promoted = self._resolver.resolve_dependents(task.id)
        self._persist()

        if promoted:
            logger.info("Completed {}; now ready: {}", task.id, ", ".join(promoted))
        else:
            logger.info("Completed {}", task.id)
        return ValidationResult(valid=True, promoted=list(promoted))

    def submit_for_review(self, task_id: str, notes: Optional[str] = None) -> ValidationResult:
        task, rejection = self._check_transition(
            task_id, TaskStatus.REVIEW, allowed_from={TaskStatus.IN_PROGRESS}
        )
        if rejection is not None:
            return rejection
        assert task is not None

        task.status = TaskStatus.REVIEW
        if notes:
            task.notes.append(notes)
        self.agents.touch(task.assigned_to)
        self.history.append(HistoryAction.REVIEW, task.id, task.assigned_to, notes)
        self._persist()
        logger.info("Task {} submitted for review", task.id)
        return ValidationResult.ok()

    def request_changes(self, task_id: str, notes: Optional[str] = None) -> ValidationResult:
        """Send a task under review back to ``in_progress`` with its agent."""
        task, rejection = self._check_transition(
            task_id, TaskStatus.IN_PROGRESS, allowed_from={TaskStatus.REVIEW}
        )
        if rejection is not None:
            return rejection
        assert task is not None

        task.status = TaskStatus.IN_PROGRESS
        if notes:
            task.notes.append(notes)
        self.agents.touch(task.assigned_to)
        details = f"changes requested: {notes}" if notes else "changes requested"
        self.history.append(HistoryAction.REVIEW, task.id, task.assigned_to, details)
        self._persist()
        logger.info("Task {} returned to in_progress", task.id)
        return ValidationResult.ok()

    def fail_task(self, task_id: str, reason: str) -> ValidationResult:
        task, rejection = self._check_transition(task_id, TaskStatus.FAILED)
        if rejection is not None:
            return rejection
        assert task is not None

        agent_id = task.assigned_to
        task.status = TaskStatus.FAILED
        task.assigned_to = None
        task.notes.append(f"FAILED: {reason}")
        self.agents.touch(agent_id)
        self.history.append(HistoryAction.FAIL, task.id, agent_id, reason)
        self._persist()

        warnings = [
            f"Agent {holder} still lists {task.id} as its current task"
            for holder in self.agents.holders_of(task.id)
        ]
        logger.warning("Task {} failed: {}", task.id, reason)
        return ValidationResult.ok(warnings)

    def reset_task(self, task_id: str) -> ValidationResult:
        task = self.state.tasks.get(task_id)
        if task is None:
            logger.warning("Rejected reset for unknown task {}", task_id)
            return ValidationResult.rejected(ErrorKind.NOT_FOUND, f"Task {task_id} not found")

        previous = task.status
        task.status = TaskStatus.PENDING
        task.test_status = TestStatus.NOT_WRITTEN
        task.assigned_to = None
        task.started_at = None
        task.completed_at = None
        task.actual_hours = None
        for holder in self.agents.holders_of(task.id):
            self.agents.release(holder, task.id)

        self.history.append(HistoryAction.RESET, task.id)
        assert self._resolver is not None
        ready = self._resolver.resolve_task(task.id)
        self._persist()

        logger.info("Reset {} ({} -> {})", task.id, previous.value, task.status.value)
        return ValidationResult(valid=True, promoted=[task.id] if ready else [])

    def add_note(self, task_id: str, text: str) -> ValidationResult:
        task = self.state.tasks.get(task_id)
        if task is None:
            return ValidationResult.rejected(ErrorKind.NOT_FOUND, f"Task {task_id} not found")
        task.notes.append(text)
        self.history.append(HistoryAction.NOTE, task.id, task.assigned_to, text)
        self._persist()
        logger.debug("Added note to {}", task.id)
        return ValidationResult.ok()

    def set_test_status(self, task_id: str, test_status: TestStatus | str) -> ValidationResult:
        task = self.state.tasks.get(task_id)
        if task is None:
            return ValidationResult.rejected(ErrorKind.NOT_FOUND, f"Task {task_id} not found")
        try:
            task.test_status = TestStatus(test_status)
        except ValueError:
            return ValidationResult.rejected(
                ErrorKind.INVALID_STATE, f"Unknown test status {test_status!r}"
            )
        self._persist()
        return ValidationResult.ok()

    def set_current_sprint(self, sprint: int) -> ValidationResult:
        if sprint < 0:
            return ValidationResult.rejected(ErrorKind.INVALID_STATE, "Sprint must be non-negative")
        warnings: list[str] = []
        if sprint not in self.state.sprint_numbers():
            warnings.append(f"Sprint {sprint} has no tasks")
        self.state.current_sprint = sprint
        self._persist()
        logger.info("Current sprint set to {}", sprint)
        return ValidationResult.ok(warnings)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.state.tasks.get(task_id)

    def unmet_dependencies(self, task_id: str) -> list[str]:
        task = self.state.tasks.get(task_id)
        if task is None:
            return []
        return unmet_dependencies(self.state, task)

    def prompt_path(self, task_id: str) -> Optional[str]:
        task = self.state.tasks.get(task_id)
        if task is None:
            return None
        return queries.prompt_path(self.prompts_dir, task)

    def read_prompt(self, task_id: str) -> Optional[str]:
        """Return the prompt file's text, or None if the task or file is missing."""
        path = self.prompt_path(task_id)
        if path is None:
            return None
        try:
            return Path(path).read_text(encoding="utf-8")
        except OSError:
            return None

    def sprint_status(self, sprint: int) -> queries.SprintStatus:
        return queries.sprint_status(self.state, sprint)

    def all_sprint_status(self) -> list[queries.SprintStatus]:
        return queries.all_sprint_status(self.state)

    def next_ready_tasks(self, limit: int) -> list[Task]:
        return queries.next_ready_tasks(self.state, limit)

    def overall_stats(self) -> queries.OverallStats:
        return queries.overall_stats(self.state)

    def parallel_execution_plan(self, sprint: Optional[int] = None) -> list[queries.TrackPlan]:
        return queries.parallel_execution_plan(self.state, sprint)

    def recent_history(self, limit: int) -> list[HistoryEntry]:
        return queries.recent_history(self.state, limit)

    def export_dispatch_summary(self, limit: int = DEFAULT_EXPORT_LIMIT) -> str:
        return queries.export_dispatch_summary(self.state, limit)
