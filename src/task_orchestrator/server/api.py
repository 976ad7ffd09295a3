"""FastAPI application exposing the task orchestrator over HTTP."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from ..config import load_settings
from ..engine.engine import Orchestrator
from .task_api import create_task_router


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
    orchestrator: Optional[Orchestrator] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        project_dir: Default project directory.
        enable_cors: Whether to enable CORS.
        orchestrator: Pre-built orchestrator served for every request; the
            ``project_dir`` query parameter is ignored when set.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Task Orchestrator",
        description="Dependency-aware task dispatch for parallel build agents",
        version="0.1.0",
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir
    app.state.orchestrators = {}

    def _get_orchestrator(project_dir_param: Optional[str] = None) -> Orchestrator:
        if orchestrator is not None:
            orchestrator.refresh()
            return orchestrator
        raw = project_dir_param or app.state.default_project_dir
        settings, err = load_settings(raw)
        if err:
            logger.warning("Ignoring unreadable config: {}", err)
        key = str(settings.project_dir)
        cached = app.state.orchestrators.get(key)
        if cached is None:
            cached = Orchestrator.from_settings(settings)
            app.state.orchestrators[key] = cached
        else:
            # The CLI or another server may have saved since the last request.
            cached.refresh()
        return cached

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Task Orchestrator",
            "version": "0.1.0",
            "status": "running",
        }

    app.include_router(create_task_router(_get_orchestrator))
    return app
