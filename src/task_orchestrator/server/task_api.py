"""Task orchestration API endpoints.

A FastAPI router over the orchestrator's query and command operations,
mounted under ``/api/tasks`` by :func:`~task_orchestrator.server.api.create_app`.
Business-rule rejections map to HTTP errors: ``not_found`` to 404 and
``invalid_state`` to 409.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from ..constants import DEFAULT_EXPORT_LIMIT, DEFAULT_HISTORY_LIMIT, DEFAULT_NEXT_LIMIT
from ..engine.engine import Orchestrator
from ..engine.model import ErrorKind, TestStatus, ValidationResult
from ..engine.store import ConcurrentModificationError


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class DispatchRequest(BaseModel):
    agent_id: Optional[str] = None


class NotesRequest(BaseModel):
    notes: Optional[str] = None


class FailRequest(BaseModel):
    reason: str = Field(min_length=1)


class NoteRequest(BaseModel):
    text: str = Field(min_length=1)


class UpdateTestStatusRequest(BaseModel):
    test_status: TestStatus


class CurrentSprintRequest(BaseModel):
    sprint: int = Field(ge=0)


class TaskResponse(BaseModel):
    task: dict[str, Any]


class TaskListResponse(BaseModel):
    tasks: list[dict[str, Any]]
    total: int


class CommandResponse(BaseModel):
    task: Optional[dict[str, Any]] = None
    warnings: list[str] = Field(default_factory=list)
    promoted: list[str] = Field(default_factory=list)


_STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_STATE: 409,
}


def _raise_for(kind: Optional[ErrorKind], message: Optional[str]) -> None:
    raise HTTPException(status_code=_STATUS_CODES.get(kind, 400), detail=message)


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_task_router(get_orchestrator: Callable[[Optional[str]], Orchestrator]) -> APIRouter:
    """Create the task API router.

    Parameters
    ----------
    get_orchestrator:
        A callable ``(project_dir_param: str | None) -> Orchestrator`` that
        resolves the orchestrator for the current request's project directory.
    """
    router = APIRouter(prefix="/api/tasks", tags=["tasks"])

    def _run(orchestrator: Orchestrator, command: Callable[[], ValidationResult], task_id: Optional[str]) -> CommandResponse:
        try:
            result = command()
        except ConcurrentModificationError as exc:
            logger.warning("Snapshot changed underneath the server: {}", exc)
            orchestrator.reload()
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not result.valid:
            _raise_for(result.error_kind, "; ".join(result.errors))
        task = orchestrator.get_task(task_id) if task_id else None
        return CommandResponse(
            task=task.to_dict() if task else None,
            warnings=result.warnings,
            promoted=result.promoted,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @router.get("", response_model=TaskListResponse)
    async def list_tasks(
        project_dir: Optional[str] = Query(None),
        sprint: Optional[int] = Query(None),
        status: Optional[str] = Query(None),
    ) -> TaskListResponse:
        orchestrator = get_orchestrator(project_dir)
        tasks = list(orchestrator.state.tasks.values())
        if sprint is not None:
            tasks = [t for t in tasks if t.sprint == sprint]
        if status:
            tasks = [t for t in tasks if t.status.value == status]
        data = [t.to_dict() for t in tasks]
        return TaskListResponse(tasks=data, total=len(data))

    @router.get("/next", response_model=TaskListResponse)
    async def next_tasks(
        project_dir: Optional[str] = Query(None),
        limit: int = Query(DEFAULT_NEXT_LIMIT, ge=1),
    ) -> TaskListResponse:
        orchestrator = get_orchestrator(project_dir)
        data = [t.to_dict() for t in orchestrator.next_ready_tasks(limit)]
        return TaskListResponse(tasks=data, total=len(data))

    @router.get("/stats")
    async def overall_stats(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        return get_orchestrator(project_dir).overall_stats().to_dict()

    @router.get("/sprints")
    async def all_sprints(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        orchestrator = get_orchestrator(project_dir)
        return {
            "current_sprint": orchestrator.state.current_sprint,
            "sprints": [s.to_dict() for s in orchestrator.all_sprint_status()],
        }

    @router.put("/sprints/current", response_model=CommandResponse)
    async def set_current_sprint(
        body: CurrentSprintRequest,
        project_dir: Optional[str] = Query(None),
    ) -> CommandResponse:
        orchestrator = get_orchestrator(project_dir)
        return _run(orchestrator, lambda: orchestrator.set_current_sprint(body.sprint), None)

    @router.get("/sprints/{sprint}")
    async def sprint_status(sprint: int, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        return get_orchestrator(project_dir).sprint_status(sprint).to_dict()

    @router.get("/plan")
    async def execution_plan(
        project_dir: Optional[str] = Query(None),
        sprint: Optional[int] = Query(None),
    ) -> dict[str, Any]:
        orchestrator = get_orchestrator(project_dir)
        effective = orchestrator.state.current_sprint if sprint is None else sprint
        return {
            "sprint": effective,
            "tracks": [p.to_dict() for p in orchestrator.parallel_execution_plan(effective)],
        }

    @router.get("/history")
    async def recent_history(
        project_dir: Optional[str] = Query(None),
        limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1),
    ) -> dict[str, Any]:
        entries = get_orchestrator(project_dir).recent_history(limit)
        return {"history": [e.to_dict() for e in entries]}

    @router.get("/export")
    async def export_summary(
        project_dir: Optional[str] = Query(None),
        limit: int = Query(DEFAULT_EXPORT_LIMIT, ge=1),
    ) -> dict[str, str]:
        return {"markdown": get_orchestrator(project_dir).export_dispatch_summary(limit)}

    @router.get("/{task_id}", response_model=TaskResponse)
    async def get_task(task_id: str, project_dir: Optional[str] = Query(None)) -> TaskResponse:
        task = get_orchestrator(project_dir).get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return TaskResponse(task=task.to_dict())

    @router.get("/{task_id}/prompt")
    async def get_prompt_path(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, str]:
        path = get_orchestrator(project_dir).prompt_path(task_id)
        if path is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return {"task_id": task_id, "prompt_path": path}

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @router.post("/{task_id}/dispatch")
    async def dispatch_task(
        task_id: str,
        body: Optional[DispatchRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        orchestrator = get_orchestrator(project_dir)
        try:
            result = orchestrator.dispatch_task(task_id, body.agent_id if body else None)
        except ConcurrentModificationError as exc:
            logger.warning("Snapshot changed underneath the server: {}", exc)
            orchestrator.reload()
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not result.success:
            _raise_for(result.error_kind, result.error)
        return result.to_dict()

    @router.post("/{task_id}/complete", response_model=CommandResponse)
    async def complete_task(
        task_id: str,
        body: Optional[NotesRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> CommandResponse:
        orchestrator = get_orchestrator(project_dir)
        return _run(orchestrator, lambda: orchestrator.complete_task(task_id, body.notes if body else None), task_id)

    @router.post("/{task_id}/review", response_model=CommandResponse)
    async def submit_for_review(
        task_id: str,
        body: Optional[NotesRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> CommandResponse:
        orchestrator = get_orchestrator(project_dir)
        return _run(orchestrator, lambda: orchestrator.submit_for_review(task_id, body.notes if body else None), task_id)

    @router.post("/{task_id}/rework", response_model=CommandResponse)
    async def request_changes(
        task_id: str,
        body: Optional[NotesRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> CommandResponse:
        orchestrator = get_orchestrator(project_dir)
        return _run(orchestrator, lambda: orchestrator.request_changes(task_id, body.notes if body else None), task_id)

    @router.post("/{task_id}/fail", response_model=CommandResponse)
    async def fail_task(
        task_id: str,
        body: FailRequest,
        project_dir: Optional[str] = Query(None),
    ) -> CommandResponse:
        orchestrator = get_orchestrator(project_dir)
        return _run(orchestrator, lambda: orchestrator.fail_task(task_id, body.reason), task_id)

    @router.post("/{task_id}/reset", response_model=CommandResponse)
    async def reset_task(task_id: str, project_dir: Optional[str] = Query(None)) -> CommandResponse:
        orchestrator = get_orchestrator(project_dir)
        return _run(orchestrator, lambda: orchestrator.reset_task(task_id), task_id)

    @router.post("/{task_id}/notes", response_model=CommandResponse)
    async def add_note(
        task_id: str,
        body: NoteRequest,
        project_dir: Optional[str] = Query(None),
    ) -> CommandResponse:
        orchestrator = get_orchestrator(project_dir)
        return _run(orchestrator, lambda: orchestrator.add_note(task_id, body.text), task_id)

    @router.put("/{task_id}/test-status", response_model=CommandResponse)
    async def set_test_status(
        task_id: str,
        body: UpdateTestStatusRequest,
        project_dir: Optional[str] = Query(None),
    ) -> CommandResponse:
        orchestrator = get_orchestrator(project_dir)
        return _run(orchestrator, lambda: orchestrator.set_test_status(task_id, body.test_status), task_id)

    return router
