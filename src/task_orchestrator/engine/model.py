"""State model for the task orchestration engine.

Defines the task node, the per-worker assignment record, the immutable
history entry and the ``OrchestratorState`` aggregate root, together with
the structured results returned by lifecycle operations.  Every model is a
dataclass that serializes to plain dicts for YAML persistence; timestamps are
aware ``datetime`` objects in memory and ISO-8601 strings on disk.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..constants import SCHEMA_VERSION
from ..utils import _format_iso, _now, _parse_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    PENDING = "pending"  # Not started, dependencies outstanding
    READY = "ready"  # Dependencies met, can be dispatched
    IN_PROGRESS = "in_progress"
    REVIEW = "review"  # Work finished, awaiting verification
    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"


class TestStatus(str, Enum):
    """Secondary quality signal; never consulted by transition guards."""

    __test__ = False  # keep pytest from collecting this enum

    NOT_WRITTEN = "not_written"
    FAILING = "failing"  # RED
    PASSING = "passing"  # GREEN


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class HistoryAction(str, Enum):
    DISPATCH = "dispatch"
    COMPLETE = "complete"
    FAIL = "fail"
    RESET = "reset"
    NOTE = "note"
    REVIEW = "review"


class ErrorKind(str, Enum):
    """Category of an expected business-rule violation."""

    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"


def _enum(enum_cls: type[Enum], raw: Any, default: Enum) -> Any:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """One node of the dependency graph plus its runtime tracking fields."""

    id: str
    name: str = ""
    sprint: int = 0
    agent_track: str = ""

    status: TaskStatus = TaskStatus.PENDING
    test_status: TestStatus = TestStatus.NOT_WRITTEN
    complexity: Complexity = Complexity.MEDIUM
    estimated_hours: float = 0.0

    dependencies: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)  # documentation only
    tags: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    spec_references: list[str] = field(default_factory=list)
    prompt_file: str = ""

    # Runtime tracking
    assigned_to: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_hours: Optional[float] = None
    notes: list[str] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "sprint": self.sprint,
            "agent_track": self.agent_track,
            "status": self.status.value,
            "test_status": self.test_status.value,
            "complexity": self.complexity.value,
            "estimated_hours": self.estimated_hours,
            "dependencies": list(self.dependencies),
            "blocks": list(self.blocks),
            "tags": list(self.tags),
            "acceptance_criteria": list(self.acceptance_criteria),
            "spec_references": list(self.spec_references),
            "prompt_file": self.prompt_file,
            "assigned_to": self.assigned_to,
            "started_at": _format_iso(self.started_at),
            "completed_at": _format_iso(self.completed_at),
            "actual_hours": self.actual_hours,
            "notes": list(self.notes),
            "artifacts": list(self.artifacts),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict, coercing enums gracefully."""
        actual = data.get("actual_hours")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            sprint=int(data.get("sprint") or 0),
            agent_track=str(data.get("agent_track") or ""),
            status=_enum(TaskStatus, data.get("status"), TaskStatus.PENDING),
            test_status=_enum(TestStatus, data.get("test_status"), TestStatus.NOT_WRITTEN),
            complexity=_enum(Complexity, data.get("complexity"), Complexity.MEDIUM),
            estimated_hours=float(data.get("estimated_hours") or 0),
            dependencies=[str(d) for d in data.get("dependencies") or []],
            blocks=[str(b) for b in data.get("blocks") or []],
            tags=list(data.get("tags") or []),
            acceptance_criteria=list(data.get("acceptance_criteria") or []),
            spec_references=list(data.get("spec_references") or []),
            prompt_file=str(data.get("prompt_file") or ""),
            assigned_to=data.get("assigned_to"),
            started_at=_parse_iso(data.get("started_at")),
            completed_at=_parse_iso(data.get("completed_at")),
            actual_hours=float(actual) if actual is not None else None,
            notes=list(data.get("notes") or []),
            artifacts=list(data.get("artifacts") or []),
        )


# ---------------------------------------------------------------------------
# Agent assignment
# ---------------------------------------------------------------------------

@dataclass
class AgentAssignment:
    agent_id: str
    agent_track: str = ""
    current_task: Optional[str] = None
    completed_tasks: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    last_activity_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "agent_track": self.agent_track,
            "current_task": self.current_task,
            "completed_tasks": list(self.completed_tasks),
            "started_at": _format_iso(self.started_at),
            "last_activity_at": _format_iso(self.last_activity_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentAssignment":
        return cls(
            agent_id=str(data["agent_id"]),
            agent_track=str(data.get("agent_track") or ""),
            current_task=data.get("current_task"),
            completed_tasks=list(data.get("completed_tasks") or []),
            started_at=_parse_iso(data.get("started_at")) or _now(),
            last_activity_at=_parse_iso(data.get("last_activity_at")) or _now(),
        )


# ---------------------------------------------------------------------------
# History entry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HistoryEntry:
    timestamp: datetime
    action: HistoryAction
    task_id: str
    agent_id: Optional[str] = None
    details: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": _format_iso(self.timestamp),
            "action": self.action.value,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryEntry":
        return cls(
            timestamp=_parse_iso(data.get("timestamp")) or _now(),
            action=_enum(HistoryAction, data.get("action"), HistoryAction.NOTE),
            task_id=str(data.get("task_id") or ""),
            agent_id=data.get("agent_id"),
            details=data.get("details"),
        )


# ---------------------------------------------------------------------------
# Sprint metadata
# ---------------------------------------------------------------------------

@dataclass
class SprintInfo:
    """Display metadata for a sprint: its name and the label of each track."""

    name: str = ""
    tracks: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "tracks": dict(self.tracks)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SprintInfo":
        tracks = data.get("tracks") or {}
        return cls(
            name=str(data.get("name") or ""),
            tracks={str(k): str(v) for k, v in tracks.items()},
        )


# ---------------------------------------------------------------------------
# Aggregate root
# ---------------------------------------------------------------------------

@dataclass
class OrchestratorState:
    tasks: dict[str, Task] = field(default_factory=dict)
    agents: dict[str, AgentAssignment] = field(default_factory=dict)
    history: list[HistoryEntry] = field(default_factory=list)
    current_sprint: int = 0
    last_updated: datetime = field(default_factory=_now)
    sprints: dict[int, SprintInfo] = field(default_factory=dict)
    project_path: str = ""
    schema_version: int = SCHEMA_VERSION
    revision: int = 0

    def body_dict(self) -> dict[str, Any]:
        """Serialize everything except the envelope fields (version, revision, checksum)."""
        return {
            "project_path": self.project_path,
            "current_sprint": self.current_sprint,
            "last_updated": _format_iso(self.last_updated),
            "sprints": {int(k): v.to_dict() for k, v in sorted(self.sprints.items())},
            "tasks": [t.to_dict() for t in self.tasks.values()],
            "agents": [a.to_dict() for a in self.agents.values()],
            "history": [h.to_dict() for h in self.history],
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "schema_version": self.schema_version,
            "revision": self.revision,
        }
        data.update(self.body_dict())
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestratorState":
        tasks = [Task.from_dict(t) for t in data.get("tasks") or [] if isinstance(t, dict)]
        agents = [AgentAssignment.from_dict(a) for a in data.get("agents") or [] if isinstance(a, dict)]
        history = [HistoryEntry.from_dict(h) for h in data.get("history") or [] if isinstance(h, dict)]
        sprints = data.get("sprints") or {}
        return cls(
            tasks={t.id: t for t in tasks},
            agents={a.agent_id: a for a in agents},
            history=history,
            current_sprint=int(data.get("current_sprint") or 0),
            last_updated=_parse_iso(data.get("last_updated")) or _now(),
            sprints={int(k): SprintInfo.from_dict(v or {}) for k, v in sprints.items()},
            project_path=str(data.get("project_path") or ""),
            schema_version=int(data.get("schema_version") or SCHEMA_VERSION),
            revision=int(data.get("revision") or 0),
        )

    def sprint_numbers(self) -> list[int]:
        return sorted({t.sprint for t in self.tasks.values()} | set(self.sprints))


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

@dataclass
class DispatchResult:
    success: bool
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    prompt_path: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "prompt_path": self.prompt_path,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    promoted: list[str] = field(default_factory=list)  # tasks this command made ready

    @classmethod
    def ok(cls, warnings: Optional[list[str]] = None) -> "ValidationResult":
        return cls(valid=True, warnings=list(warnings or []))

    @classmethod
    def rejected(cls, kind: ErrorKind, message: str) -> "ValidationResult":
        return cls(valid=False, errors=[message], error_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "promoted": list(self.promoted),
        }
