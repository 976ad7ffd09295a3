from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from . import render
from .catalogue import CatalogueError, load_catalogue, validate_catalogue
from .config import OrchestratorSettings, load_settings
from .constants import DEFAULT_EXPORT_LIMIT, DEFAULT_HISTORY_LIMIT, DEFAULT_NEXT_LIMIT
from .engine.engine import Orchestrator
from .engine.model import ValidationResult
from .engine.store import SnapshotError


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _settings(args: argparse.Namespace) -> OrchestratorSettings:
    settings, err = load_settings(args.project_dir, catalogue=args.catalogue, log_level=args.log_level)
    _configure_logging(settings.log_level)
    if err:
        logger.warning("Ignoring unreadable config: {}", err)
    return settings


def _ctx(args: argparse.Namespace) -> Orchestrator:
    orchestrator = Orchestrator.from_settings(_settings(args))
    orchestrator.initialize(recover_from_backup=args.recover)
    return orchestrator


def _emit(args: argparse.Namespace, payload: Any, text: str) -> None:
    if args.json:
        sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")
    else:
        sys.stdout.write(text)


def _report(result: ValidationResult, success: str) -> int:
    if not result.valid:
        sys.stderr.write("; ".join(result.errors) + "\n")
        return 1
    for warning in result.warnings:
        sys.stderr.write(f"warning: {warning}\n")
    sys.stdout.write(success + "\n")
    return 0


# ---------------------------------------------------------------------------
# Query commands
# ---------------------------------------------------------------------------

def _status(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    if args.sprint is not None:
        status = orchestrator.sprint_status(args.sprint)
        plan = orchestrator.parallel_execution_plan(args.sprint)
        _emit(args, status.to_dict(), render.render_sprint(status, plan))
        return 0
    stats = orchestrator.overall_stats()
    sprints = orchestrator.all_sprint_status()
    active = orchestrator.agents.busy()
    text = render.render_overview(stats, sprints, orchestrator.state.current_sprint, active)
    if args.all:
        for s in sprints:
            text += render.render_sprint(s, orchestrator.parallel_execution_plan(s.sprint))
    payload = {
        "overall": stats.to_dict(),
        "current_sprint": orchestrator.state.current_sprint,
        "sprints": [s.to_dict() for s in sprints],
        "active_agents": [a.to_dict() for a in active],
    }
    _emit(args, payload, text)
    return 0


def _next(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    tasks = orchestrator.next_ready_tasks(args.limit)
    _emit(args, {"tasks": [t.to_dict() for t in tasks]}, render.render_task_list(tasks, "Ready to dispatch"))
    return 0


def _show(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    task = orchestrator.get_task(args.task_id)
    if task is None:
        sys.stderr.write(f"Task {args.task_id} not found\n")
        return 1
    prompt = orchestrator.prompt_path(task.id)
    unmet = orchestrator.unmet_dependencies(task.id)
    _emit(args, {"task": task.to_dict(), "prompt_path": prompt}, render.render_task(task, prompt, unmet))
    return 0


def _history(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    if args.all and orchestrator.history.sink_path is not None:
        entries = orchestrator.history.read_sink()
    elif args.all:
        entries = list(orchestrator.state.history)
    else:
        entries = orchestrator.recent_history(args.limit)
    _emit(args, {"history": [e.to_dict() for e in entries]}, render.render_history(entries))
    return 0


def _plan(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    sprint = orchestrator.state.current_sprint if args.sprint is None else args.sprint
    status = orchestrator.sprint_status(sprint)
    plan = orchestrator.parallel_execution_plan(sprint)
    payload = {"sprint": sprint, "tracks": [p.to_dict() for p in plan]}
    _emit(args, payload, render.render_plan(status, plan))
    return 0


def _prompt(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    task = orchestrator.get_task(args.task_id)
    if task is None:
        sys.stderr.write(f"Task {args.task_id} not found\n")
        return 1
    content = orchestrator.read_prompt(task.id)
    if content is None:
        sys.stderr.write(f"Prompt file not found for {task.id}: {orchestrator.prompt_path(task.id)}\n")
        return 1
    if args.output:
        Path(args.output).write_text(content, encoding="utf-8")
        sys.stdout.write(f"Prompt written to {args.output}\n")
        return 0
    sys.stdout.write(content if content.endswith("\n") else content + "\n")
    return 0


def _export(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    content = orchestrator.export_dispatch_summary(args.limit)
    if args.output:
        Path(args.output).write_text(content, encoding="utf-8")
        sys.stdout.write(f"Exported to {args.output}\n")
        return 0
    sys.stdout.write(content)
    return 0


def _validate(args: argparse.Namespace) -> int:
    settings = _settings(args)
    catalogue = load_catalogue(settings.catalogue_path)
    result = validate_catalogue(catalogue)
    _emit(args, result.to_dict(), render.render_validation(result))
    return 0 if result.valid else 1


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _dispatch(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    result = orchestrator.dispatch_task(args.task_id, args.agent)
    if not result.success:
        sys.stderr.write(f"{result.error}\n")
        return 1
    if args.json:
        sys.stdout.write(json.dumps(result.to_dict(), indent=2) + "\n")
        return 0
    sys.stdout.write(
        f"Task {result.task_id} dispatched to {result.agent_id}\n"
        f"Prompt: {result.prompt_path}\n"
        f"When complete: task-orchestrator complete {result.task_id}\n"
        f"If blocked: task-orchestrator fail {result.task_id} --reason \"...\"\n"
    )
    return 0


def _complete(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    result = orchestrator.complete_task(args.task_id, args.notes)
    rc = _report(result, f"Task {args.task_id} marked complete")
    if rc == 0 and result.promoted:
        sys.stdout.write("Now ready: " + ", ".join(result.promoted) + "\n")
    return rc


def _review(args: argparse.Namespace) -> int:
    result = _ctx(args).submit_for_review(args.task_id, args.notes)
    return _report(result, f"Task {args.task_id} submitted for review")


def _rework(args: argparse.Namespace) -> int:
    result = _ctx(args).request_changes(args.task_id, args.notes)
    return _report(result, f"Task {args.task_id} returned to in progress")


def _fail(args: argparse.Namespace) -> int:
    result = _ctx(args).fail_task(args.task_id, args.reason)
    return _report(result, f"Task {args.task_id} marked as failed: {args.reason}")


def _reset(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    result = orchestrator.reset_task(args.task_id)
    task = orchestrator.get_task(args.task_id)
    status = task.status.value if task else "pending"
    return _report(result, f"Task {args.task_id} reset ({status})")


def _note(args: argparse.Namespace) -> int:
    result = _ctx(args).add_note(args.task_id, args.text)
    return _report(result, f"Note added to {args.task_id}")


def _tests(args: argparse.Namespace) -> int:
    result = _ctx(args).set_test_status(args.task_id, args.test_status)
    return _report(result, f"Task {args.task_id} tests: {args.test_status}")


def _sprint(args: argparse.Namespace) -> int:
    result = _ctx(args).set_current_sprint(args.sprint)
    return _report(result, f"Current sprint set to {args.sprint}")


def _serve(args: argparse.Namespace) -> int:
    try:
        import uvicorn

        from .server import create_app
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'task-orchestrator[server]'\n")
        return 1
    settings = _settings(args)
    app = create_app(project_dir=settings.project_dir)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-orchestrator",
        description="Dependency-aware task dispatch for parallel build agents",
    )
    parser.add_argument("--project-dir", default=None, help="Project directory (default: $TASK_ORCHESTRATOR_ROOT or cwd)")
    parser.add_argument("--catalogue", default=None, help="Task catalogue YAML (overrides config)")
    parser.add_argument("--log-level", default=None, help="Log level (overrides config and environment)")
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON")
    parser.add_argument("--recover", action="store_true", help="Restore from state.yaml.bak if the snapshot is corrupt")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Show overall and per-sprint progress")
    status.add_argument("--sprint", type=int, default=None)
    status.add_argument("--all", action="store_true", help="Include per-sprint detail")
    status.set_defaults(func=_status)

    nxt = subparsers.add_parser("next", help="List tasks ready to dispatch")
    nxt.add_argument("-n", "--limit", type=int, default=DEFAULT_NEXT_LIMIT)
    nxt.set_defaults(func=_next)

    show = subparsers.add_parser("show", help="Show one task")
    show.add_argument("task_id")
    show.set_defaults(func=_show)

    dispatch = subparsers.add_parser("dispatch", help="Dispatch a ready task to an agent")
    dispatch.add_argument("task_id")
    dispatch.add_argument("--agent", default=None, help="Agent id (default: generated from the track)")
    dispatch.set_defaults(func=_dispatch)

    complete = subparsers.add_parser("complete", help="Mark a task complete")
    complete.add_argument("task_id")
    complete.add_argument("--notes", default=None)
    complete.set_defaults(func=_complete)

    review = subparsers.add_parser("review", help="Submit an in-progress task for review")
    review.add_argument("task_id")
    review.add_argument("--notes", default=None)
    review.set_defaults(func=_review)

    rework = subparsers.add_parser("rework", help="Send a task under review back to in progress")
    rework.add_argument("task_id")
    rework.add_argument("--notes", default=None)
    rework.set_defaults(func=_rework)

    fail = subparsers.add_parser("fail", help="Mark a task as failed")
    fail.add_argument("task_id")
    fail.add_argument("--reason", required=True)
    fail.set_defaults(func=_fail)

    reset = subparsers.add_parser("reset", help="Return a task to pending")
    reset.add_argument("task_id")
    reset.set_defaults(func=_reset)

    note = subparsers.add_parser("note", help="Append a note to a task")
    note.add_argument("task_id")
    note.add_argument("text")
    note.set_defaults(func=_note)

    tests = subparsers.add_parser("tests", help="Record a task's test status")
    tests.add_argument("task_id")
    tests.add_argument("test_status", choices=["not_written", "failing", "passing"])
    tests.set_defaults(func=_tests)

    prompt = subparsers.add_parser("prompt", help="Print a task's prompt file")
    prompt.add_argument("task_id")
    prompt.add_argument("-o", "--output", default=None)
    prompt.set_defaults(func=_prompt)

    export = subparsers.add_parser("export", help="Export ready tasks as Markdown")
    export.add_argument("-o", "--output", default=None)
    export.add_argument("-n", "--limit", type=int, default=DEFAULT_EXPORT_LIMIT)
    export.set_defaults(func=_export)

    history = subparsers.add_parser("history", help="Show recent lifecycle history")
    history.add_argument("-n", "--limit", type=int, default=DEFAULT_HISTORY_LIMIT)
    history.add_argument("--all", action="store_true", help="Read the full append-only log, not only the retained entries")
    history.set_defaults(func=_history)

    plan = subparsers.add_parser("plan", help="Show the parallel execution plan for a sprint")
    plan.add_argument("--sprint", type=int, default=None)
    plan.set_defaults(func=_plan)

    sprint = subparsers.add_parser("sprint", help="Set the current sprint")
    sprint.add_argument("sprint", type=int)
    sprint.set_defaults(func=_sprint)

    validate = subparsers.add_parser("validate", help="Check the task catalogue")
    validate.set_defaults(func=_validate)

    server = subparsers.add_parser("serve", help="Start the HTTP API")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=8000, type=int)
    server.set_defaults(func=_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except (CatalogueError, SnapshotError) as exc:
        sys.stderr.write(f"{exc}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
