"""Provide the public `task_orchestrator` package exports."""

from __future__ import annotations

from .catalogue import Catalogue, CatalogueError, TaskDefinition, load_catalogue, validate_catalogue
from .config import OrchestratorSettings, load_settings
from .engine.engine import Orchestrator

__all__ = [
    "Catalogue",
    "CatalogueError",
    "Orchestrator",
    "OrchestratorSettings",
    "TaskDefinition",
    "load_catalogue",
    "load_settings",
    "validate_catalogue",
]
