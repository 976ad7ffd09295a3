"""Read-only aggregation over an :class:`OrchestratorState`.

Nothing here mutates the state; every function may be called at any time.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from ..constants import DEFAULT_EXPORT_LIMIT
from ..utils import _round_half_up
from .model import HistoryEntry, OrchestratorState, Task, TaskStatus


@dataclass
class SprintStatus:
    sprint: int
    name: str
    total_tasks: int
    completed: int
    in_progress: int
    review: int
    ready: int
    blocked: int
    pending: int
    failed: int
    percent_complete: int
    estimated_hours_remaining: float
    can_start: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class OverallStats:
    total_tasks: int
    completed: int
    in_progress: int
    review: int
    ready: int
    pending: int
    blocked: int
    failed: int
    percent_complete: int
    estimated_hours_total: float
    estimated_hours_remaining: float
    actual_hours_spent: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TrackPlan:
    agent_track: str
    label: str
    tasks: list[Task]

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_track": self.agent_track,
            "label": self.label,
            "tasks": [t.to_dict() for t in self.tasks],
        }


def _percent(done: int, total: int) -> int:
    if total == 0:
        return 0
    return _round_half_up(done * 100 / total)


def _count(tasks: list[Task], status: TaskStatus) -> int:
    return sum(1 for t in tasks if t.status == status)


def _hours_remaining(tasks: list[Task]) -> float:
    return sum(t.estimated_hours for t in tasks if t.status != TaskStatus.COMPLETE)


def sprint_name(state: OrchestratorState, sprint: int) -> str:
    info = state.sprints.get(sprint)
    if info is not None and info.name:
        return info.name
    return f"Sprint {sprint}"


def track_label(state: OrchestratorState, sprint: int, agent_track: str) -> str:
    info = state.sprints.get(sprint)
    if info is not None:
        return info.tracks.get(agent_track, "")
    return ""


def sprint_status(state: OrchestratorState, sprint: int) -> SprintStatus:
    tasks = [t for t in state.tasks.values() if t.sprint == sprint]
    completed = _count(tasks, TaskStatus.COMPLETE)
    can_start = True
    if sprint > 0:
        # Vacuously true when the previous sprint has no tasks.
        can_start = all(
            t.status == TaskStatus.COMPLETE for t in state.tasks.values() if t.sprint == sprint - 1
        )
    return SprintStatus(
        sprint=sprint,
        name=sprint_name(state, sprint),
        total_tasks=len(tasks),
        completed=completed,
        in_progress=_count(tasks, TaskStatus.IN_PROGRESS),
        review=_count(tasks, TaskStatus.REVIEW),
        ready=_count(tasks, TaskStatus.READY),
        blocked=_count(tasks, TaskStatus.BLOCKED),
        pending=_count(tasks, TaskStatus.PENDING),
        failed=_count(tasks, TaskStatus.FAILED),
        percent_complete=_percent(completed, len(tasks)),
        estimated_hours_remaining=_hours_remaining(tasks),
        can_start=can_start,
    )


def all_sprint_status(state: OrchestratorState) -> list[SprintStatus]:
    return [sprint_status(state, s) for s in state.sprint_numbers()]


def next_ready_tasks(state: OrchestratorState, limit: int) -> list[Task]:
    """Ready tasks ordered by ``(sprint, agent_track, id)``, at most *limit*."""
    if limit < 1:
        return []
    ready = [t for t in state.tasks.values() if t.status == TaskStatus.READY]
    ready.sort(key=lambda t: (t.sprint, t.agent_track, t.id))
    return ready[:limit]


def overall_stats(state: OrchestratorState) -> OverallStats:
    tasks = list(state.tasks.values())
    completed = [t for t in tasks if t.status == TaskStatus.COMPLETE]
    return OverallStats(
        total_tasks=len(tasks),
        completed=len(completed),
        in_progress=_count(tasks, TaskStatus.IN_PROGRESS),
        review=_count(tasks, TaskStatus.REVIEW),
        ready=_count(tasks, TaskStatus.READY),
        pending=_count(tasks, TaskStatus.PENDING),
        blocked=_count(tasks, TaskStatus.BLOCKED),
        failed=_count(tasks, TaskStatus.FAILED),
        percent_complete=_percent(len(completed), len(tasks)),
        estimated_hours_total=sum(t.estimated_hours for t in tasks),
        estimated_hours_remaining=_hours_remaining(tasks),
        actual_hours_spent=sum(t.actual_hours or 0.0 for t in completed),
    )


def parallel_execution_plan(state: OrchestratorState, sprint: Optional[int] = None) -> list[TrackPlan]:
    """Group a sprint's tasks by agent track; tracks and tasks sorted by id.

    Defaults to ``state.current_sprint``.
    """
    if sprint is None:
        sprint = state.current_sprint
    groups: dict[str, list[Task]] = {}
    for task in state.tasks.values():
        if task.sprint == sprint:
            groups.setdefault(task.agent_track, []).append(task)
    return [
        TrackPlan(
            agent_track=track,
            label=track_label(state, sprint, track),
            tasks=sorted(groups[track], key=lambda t: t.id),
        )
        for track in sorted(groups)
    ]


def recent_history(state: OrchestratorState, limit: int) -> list[HistoryEntry]:
    if limit < 1:
        return []
    return list(state.history[-limit:])


def prompt_path(prompts_dir: Path | str, task: Task) -> str:
    """Join the prompts directory and the task's prompt file verbatim."""
    return str(Path(prompts_dir) / task.prompt_file)


def _fmt_hours(value: float) -> str:
    return f"{value:g}"


def export_dispatch_summary(state: OrchestratorState, limit: int = DEFAULT_EXPORT_LIMIT) -> str:
    """Render the next ready tasks as a Markdown digest."""
    lines = ["# Ready Tasks for Dispatch", ""]
    for task in next_ready_tasks(state, limit):
        lines.extend(
            [
                f"## {task.id}: {task.name}",
                f"**Sprint:** {task.sprint} | **Agent:** {task.agent_track} "
                f"| **Complexity:** {task.complexity.value}",
                f"**Estimated Hours:** {_fmt_hours(task.estimated_hours)}",
                f"**Prompt File:** {task.prompt_file}",
                "",
                "### Dependencies",
                ", ".join(task.dependencies) if task.dependencies else "None",
                "",
                "---",
                "",
            ]
        )
    return "\n".join(lines)
