"""Render orchestrator views as terminal text with rich.

Each function records into its own ``Console`` and returns the exported
text, so callers decide where it goes.
"""

from __future__ import annotations

import io
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from .engine.model import AgentAssignment, HistoryAction, HistoryEntry, Task, TaskStatus, ValidationResult
from .engine.queries import OverallStats, SprintStatus, TrackPlan

_WIDTH = 100

_STATUS_STYLES = {
    TaskStatus.PENDING: "[dim]○ pending[/dim]",
    TaskStatus.READY: "[blue]◉ ready[/blue]",
    TaskStatus.IN_PROGRESS: "[yellow]⟳ in progress[/yellow]",
    TaskStatus.REVIEW: "[magenta]◎ review[/magenta]",
    TaskStatus.COMPLETE: "[green]✓ complete[/green]",
    TaskStatus.BLOCKED: "[red]■ blocked[/red]",
    TaskStatus.FAILED: "[red]✗ failed[/red]",
}

_ACTION_ICONS = {
    HistoryAction.DISPATCH: "[cyan]→[/cyan]",
    HistoryAction.COMPLETE: "[green]✓[/green]",
    HistoryAction.FAIL: "[red]✗[/red]",
    HistoryAction.RESET: "[yellow]↺[/yellow]",
    HistoryAction.NOTE: "[dim]✎[/dim]",
    HistoryAction.REVIEW: "[magenta]◎[/magenta]",
}


def _console() -> Console:
    return Console(file=io.StringIO(), record=True, width=_WIDTH, highlight=False)


def progress_bar(percent: int, width: int = 30) -> str:
    filled = max(0, min(width, round(width * percent / 100)))
    return "[" + "█" * filled + "░" * (width - filled) + "]"


def status_label(status: TaskStatus) -> str:
    return _STATUS_STYLES.get(status, status.value)


def render_overview(
    stats: OverallStats,
    sprints: list[SprintStatus],
    current_sprint: int,
    active: Optional[list[AgentAssignment]] = None,
) -> str:
    console = _console()
    console.print("\n[bold]Overall Progress[/bold]")
    console.print(f"  {escape(progress_bar(stats.percent_complete))} {stats.percent_complete}%")
    line = (
        f"  [green]{stats.completed} completed[/green] | "
        f"[yellow]{stats.in_progress} in progress[/yellow] | "
        f"[magenta]{stats.review} in review[/magenta] | "
        f"[blue]{stats.ready} ready[/blue] | "
        f"[dim]{stats.pending} pending[/dim]"
    )
    if stats.failed:
        line += f" | [red]{stats.failed} failed[/red]"
    console.print(line)
    console.print(
        f"  Est. hours remaining: [cyan]{stats.estimated_hours_remaining:.1f}h[/cyan]"
        f" / {stats.estimated_hours_total:g}h total"
        f" ({stats.actual_hours_spent:.1f}h spent)"
    )
    if active:
        held = ", ".join(f"[cyan]{escape(a.agent_id)}[/cyan] → {a.current_task}" for a in active)
        console.print(f"  Active agents: {held}")

    table = Table(title="Sprints", show_header=True)
    table.add_column("Sprint", style="bold")
    table.add_column("Name")
    table.add_column("Progress")
    table.add_column("Done", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Hours left", justify="right")
    table.add_column("State")
    for s in sprints:
        if s.total_tasks and s.completed == s.total_tasks:
            state = "[green]done[/green]"
        elif s.can_start:
            state = "[cyan]open[/cyan]"
        else:
            state = "[dim]locked[/dim]"
        marker = "*" if s.sprint == current_sprint else ""
        table.add_row(
            f"{s.sprint}{marker}",
            escape(s.name),
            f"{s.percent_complete}%",
            str(s.completed),
            str(s.total_tasks),
            f"{s.estimated_hours_remaining:.1f}",
            state,
        )
    console.print(table)
    return console.export_text()


def render_sprint(status: SprintStatus, plan: list[TrackPlan]) -> str:
    console = _console()
    console.print(f"\n[bold]Sprint {status.sprint}: {escape(status.name)}[/bold]")
    console.print(f"  {escape(progress_bar(status.percent_complete))} {status.percent_complete}%")
    console.print(
        f"  {status.completed} done | {status.in_progress} in progress | {status.review} in review"
        f" | {status.ready} ready | {status.pending} pending | {status.failed} failed"
    )
    if status.estimated_hours_remaining > 0:
        console.print(f"  Hours remaining: [cyan]{status.estimated_hours_remaining:.1f}h[/cyan]")
    if not status.can_start:
        console.print(f"  [dim]Locked until sprint {status.sprint - 1} is complete[/dim]")
    for track in plan:
        label = f" - {escape(track.label)}" if track.label else ""
        console.print(f"  [dim]{escape(track.agent_track)}{label}[/dim]")
    return console.export_text()


def render_task_list(tasks: list[Task], title: str) -> str:
    console = _console()
    if not tasks:
        console.print(f"[dim]{escape(title)}: none[/dim]")
        return console.export_text()
    table = Table(title=title, show_header=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Sprint", justify="right")
    table.add_column("Track")
    table.add_column("Complexity")
    table.add_column("Hours", justify="right")
    table.add_column("Dependencies")
    for task in tasks:
        table.add_row(
            task.id,
            escape(task.name),
            str(task.sprint),
            escape(task.agent_track),
            task.complexity.value,
            f"{task.estimated_hours:g}",
            ", ".join(task.dependencies) or "None",
        )
    console.print(table)
    return console.export_text()


def render_task(task: Task, prompt_path: Optional[str] = None, unmet: Optional[list[str]] = None) -> str:
    console = _console()
    console.print(f"\n[bold]{task.id}[/bold] [cyan]{escape(task.name)}[/cyan]")
    console.print(f"  Status: {status_label(task.status)} | Tests: {task.test_status.value}")
    console.print(
        f"  Sprint: {task.sprint} | Agent: {escape(task.agent_track)} | "
        f"{task.complexity.value.upper()} | ~{task.estimated_hours:g}h"
    )
    console.print(f"  Dependencies: {', '.join(task.dependencies) or 'None'}")
    if unmet:
        console.print(f"  [yellow]Waiting on: {', '.join(unmet)}[/yellow]")
    console.print(f"  Blocks: {', '.join(task.blocks) or 'None'}")
    if task.assigned_to:
        console.print(f"  Assigned to: {escape(task.assigned_to)}")
    if prompt_path:
        console.print(f"  Prompt: {escape(prompt_path)}")
    for note in task.notes:
        console.print(f"  [dim]- {escape(note)}[/dim]")
    return console.export_text()


def render_history(entries: list[HistoryEntry]) -> str:
    console = _console()
    if not entries:
        console.print("[dim]No history yet[/dim]")
        return console.export_text()
    for entry in entries:
        stamp = entry.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        icon = _ACTION_ICONS.get(entry.action, "•")
        agent = f" [dim]→ {escape(entry.agent_id)}[/dim]" if entry.agent_id else ""
        console.print(f"[dim]{stamp}[/dim] {icon} [bold]{entry.task_id}[/bold] [dim]{entry.action.value}[/dim]{agent}")
        if entry.details:
            console.print(f"    [dim]{escape(entry.details)}[/dim]")
    return console.export_text()


def render_plan(status: SprintStatus, plan: list[TrackPlan]) -> str:
    console = _console()
    tree = Tree(f"[bold]Parallel Execution Plan - Sprint {status.sprint}: {escape(status.name)}[/bold]")
    for track in plan:
        label = f" ({escape(track.label)})" if track.label else ""
        branch = tree.add(f"[cyan]Agent {escape(track.agent_track)}[/cyan]{label}")
        for task in track.tasks:
            branch.add(f"{status_label(task.status)}  {task.id} {escape(task.name)}")
    console.print(tree)
    return console.export_text()


def render_validation(result: ValidationResult) -> str:
    console = _console()
    for error in result.errors:
        console.print(f"[red]✗ {escape(error)}[/red]")
    for warning in result.warnings:
        console.print(f"[yellow]! {escape(warning)}[/yellow]")
    if result.valid:
        console.print("[green]Catalogue is valid[/green]")
    return console.export_text()
