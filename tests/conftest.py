from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from task_orchestrator.catalogue import Catalogue, parse_catalogue
from task_orchestrator.engine.engine import Orchestrator
from task_orchestrator.engine.store import InMemoryStateStore

CATALOGUE_DATA = {
    "sprints": {
        0: {"name": "Foundation", "tracks": {"A": "Core Packages", "B": "Database Schema"}},
        1: {"name": "Integration", "tracks": {"A": "Services", "B": "Storage"}},
    },
    "tasks": [
        {
            "id": "S0-A1",
            "name": "Initialize monorepo",
            "sprint": 0,
            "agent_track": "A",
            "complexity": "medium",
            "estimated_hours": 3,
            "blocks": ["S0-A2"],
            "prompt_file": "sprint-0/S0-A1.md",
        },
        {
            "id": "S0-A2",
            "name": "Shared config package",
            "sprint": 0,
            "agent_track": "A",
            "complexity": "low",
            "estimated_hours": 2,
            "dependencies": ["S0-A1"],
            "blocks": ["S1-A1"],
            "prompt_file": "sprint-0/S0-A2.md",
        },
        {
            "id": "S0-B1",
            "name": "Schema migrations",
            "sprint": 0,
            "agent_track": "B",
            "complexity": "high",
            "estimated_hours": 4,
            "blocks": ["S1-A1", "S1-B1"],
            "prompt_file": "sprint-0/S0-B1.md",
        },
        {
            "id": "S1-A1",
            "name": "Service layer",
            "sprint": 1,
            "agent_track": "A",
            "estimated_hours": 5,
            "dependencies": ["S0-A2", "S0-B1"],
            "prompt_file": "sprint-1/S1-A1.md",
        },
        {
            "id": "S1-B1",
            "name": "Storage adapters",
            "sprint": 1,
            "agent_track": "B",
            "estimated_hours": 1.5,
            "dependencies": ["S0-B1"],
            "prompt_file": "sprint-1/S1-B1.md",
        },
    ],
}


@pytest.fixture
def catalogue() -> Catalogue:
    return parse_catalogue(CATALOGUE_DATA)


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def orchestrator(store: InMemoryStateStore, catalogue: Catalogue) -> Orchestrator:
    orch = Orchestrator(store, catalogue, prompts_dir="docs/prompts", clock_ms=lambda: 1000)
    orch.initialize()
    return orch


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A project with a catalogue and one prompt file on disk."""
    state_dir = tmp_path / ".task_orchestrator"
    state_dir.mkdir()
    (state_dir / "catalogue.yaml").write_text(yaml.safe_dump(CATALOGUE_DATA, sort_keys=False), encoding="utf-8")
    prompt = tmp_path / "docs" / "prompts" / "sprint-0" / "S0-A1.md"
    prompt.parent.mkdir(parents=True)
    prompt.write_text("# S0-A1\nScaffold the monorepo.\n", encoding="utf-8")
    return tmp_path
