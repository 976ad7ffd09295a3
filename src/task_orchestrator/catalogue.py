"""Load the static task catalogue and seed a fresh orchestrator state.

The catalogue is a YAML document::

    sprints:
      0:
        name: Foundation
        tracks: {A: Repository & Core Packages, B: Database Schema}
    tasks:
      - id: S0-A1
        name: Initialize Monorepo Structure
        sprint: 0
        agent_track: A
        complexity: medium
        estimated_hours: 3
        dependencies: []
        blocks: [S0-A2]
        tags: [infrastructure]
        prompt_file: sprint-0/S0-A1-monorepo-scaffold.md

Task order in the file is preserved.  Seeding does not validate the graph;
:func:`validate_catalogue` reports problems for callers that want to check.
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .engine.model import (
    Complexity,
    OrchestratorState,
    SprintInfo,
    Task,
    TaskStatus,
    TestStatus,
    ValidationResult,
)

# camelCase spellings accepted for definitions exported from other tooling
_ALIASES = {
    "agent": "agent_track",
    "agentTrack": "agent_track",
    "estimatedHours": "estimated_hours",
    "estimatedEffort": "estimated_hours",
    "promptFile": "prompt_file",
    "acceptanceCriteria": "acceptance_criteria",
    "specReferences": "spec_references",
}


class CatalogueError(ValueError):
    """The catalogue document is missing or structurally unusable."""


@dataclass(frozen=True)
class TaskDefinition:
    id: str
    name: str = ""
    sprint: int = 0
    agent_track: str = ""
    complexity: Complexity = Complexity.MEDIUM
    estimated_hours: float = 0.0
    dependencies: tuple[str, ...] = ()
    blocks: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    spec_references: tuple[str, ...] = ()
    prompt_file: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskDefinition":
        d = {_ALIASES.get(k, k): v for k, v in data.items()}
        if not d.get("id"):
            raise CatalogueError(f"task definition without an id: {data!r}")
        try:
            complexity = Complexity(str(d.get("complexity") or "medium"))
        except ValueError as exc:
            raise CatalogueError(f"{d['id']}: unknown complexity {d.get('complexity')!r}") from exc
        try:
            sprint = int(d.get("sprint") or 0)
            hours = float(d.get("estimated_hours") or 0)
        except (TypeError, ValueError) as exc:
            raise CatalogueError(f"{d['id']}: {exc}") from exc
        if sprint < 0:
            raise CatalogueError(f"{d['id']}: sprint must be non-negative")
        return cls(
            id=str(d["id"]),
            name=str(d.get("name") or ""),
            sprint=sprint,
            agent_track=str(d.get("agent_track") or ""),
            complexity=complexity,
            estimated_hours=hours,
            dependencies=tuple(str(x) for x in d.get("dependencies") or ()),
            blocks=tuple(str(x) for x in d.get("blocks") or ()),
            tags=tuple(str(x) for x in d.get("tags") or ()),
            acceptance_criteria=tuple(str(x) for x in d.get("acceptance_criteria") or ()),
            spec_references=tuple(str(x) for x in d.get("spec_references") or ()),
            prompt_file=str(d.get("prompt_file") or ""),
        )

    def to_task(self) -> Task:
        return Task(
            id=self.id,
            name=self.name,
            sprint=self.sprint,
            agent_track=self.agent_track,
            status=TaskStatus.PENDING,
            test_status=TestStatus.NOT_WRITTEN,
            complexity=self.complexity,
            estimated_hours=self.estimated_hours,
            dependencies=list(self.dependencies),
            blocks=list(self.blocks),
            tags=list(self.tags),
            acceptance_criteria=list(self.acceptance_criteria),
            spec_references=list(self.spec_references),
            prompt_file=self.prompt_file,
        )


@dataclass(frozen=True)
class Catalogue:
    definitions: tuple[TaskDefinition, ...] = ()
    sprints: dict[int, SprintInfo] = field(default_factory=dict)


def parse_catalogue(data: Any) -> Catalogue:
    if not isinstance(data, dict):
        raise CatalogueError("catalogue must be a mapping with a 'tasks' list")
    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list):
        raise CatalogueError("catalogue 'tasks' must be a list")
    definitions = []
    for item in raw_tasks:
        if not isinstance(item, dict):
            raise CatalogueError(f"task definition must be a mapping, got {type(item).__name__}")
        definitions.append(TaskDefinition.from_dict(item))
    raw_sprints = data.get("sprints") or {}
    if not isinstance(raw_sprints, dict):
        raise CatalogueError("catalogue 'sprints' must be a mapping")
    sprints = {}
    for key, value in raw_sprints.items():
        try:
            number = int(key)
        except (TypeError, ValueError) as exc:
            raise CatalogueError(f"sprint key must be an integer, got {key!r}") from exc
        if isinstance(value, str):
            value = {"name": value}
        value = value or {}
        if not isinstance(value, dict) or not isinstance(value.get("tracks") or {}, dict):
            raise CatalogueError(f"sprint {number}: expected a name or a mapping with a 'tracks' mapping")
        sprints[number] = SprintInfo.from_dict(value)
    return Catalogue(definitions=tuple(definitions), sprints=sprints)


def load_catalogue(path: Path) -> Catalogue:
    if not path.exists():
        raise CatalogueError(f"catalogue not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise CatalogueError(f"{path.name}: YAMLError: {exc}") from exc
    return parse_catalogue(data)


def seed_state(catalogue: Catalogue, project_path: str = "") -> OrchestratorState:
    """Build a fresh state with every task ``pending`` / ``not_written``.

    Readiness is left to the caller's first resolver pass.
    """
    tasks: dict[str, Task] = {}
    for definition in catalogue.definitions:
        tasks[definition.id] = definition.to_task()
    return OrchestratorState(
        tasks=tasks,
        sprints=dict(catalogue.sprints),
        project_path=project_path,
        current_sprint=min((d.sprint for d in catalogue.definitions), default=0),
    )


def find_cycle(definitions: list[TaskDefinition] | tuple[TaskDefinition, ...]) -> Optional[list[str]]:
    """Return the ids left over after Kahn's algorithm, or None for a DAG."""
    known = {d.id for d in definitions}
    in_degree: dict[str, int] = {d.id: 0 for d in definitions}
    adj: dict[str, list[str]] = defaultdict(list)
    for d in definitions:
        for dep_id in d.dependencies:
            if dep_id in known:
                adj[dep_id].append(d.id)
                in_degree[d.id] += 1
    queue: deque[str] = deque(tid for tid, deg in in_degree.items() if deg == 0)
    while queue:
        tid = queue.popleft()
        for neighbor in adj.get(tid, []):
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)
    remaining = sorted(tid for tid, deg in in_degree.items() if deg > 0)
    return remaining or None


def validate_catalogue(catalogue: Catalogue) -> ValidationResult:
    """Check the catalogue without changing it.

    Errors: duplicate ids, unknown dependency ids, self-dependencies.
    Warnings: dependency cycles, ``blocks`` entries that disagree with
    ``dependencies`` in either direction, unknown ``blocks`` ids.
    """
    errors: list[str] = []
    warnings: list[str] = []
    seen: set[str] = set()
    for d in catalogue.definitions:
        if d.id in seen:
            errors.append(f"duplicate task id '{d.id}'")
        seen.add(d.id)

    by_id = {d.id: d for d in catalogue.definitions}
    for d in catalogue.definitions:
        for dep_id in d.dependencies:
            if dep_id == d.id:
                errors.append(f"'{d.id}' depends on itself")
            elif dep_id not in by_id:
                errors.append(f"'{d.id}' depends on unknown task '{dep_id}'")
            elif d.id not in by_id[dep_id].blocks:
                warnings.append(f"'{dep_id}' does not list '{d.id}' in blocks")
        for blocked_id in d.blocks:
            blocked = by_id.get(blocked_id)
            if blocked is None:
                warnings.append(f"'{d.id}' blocks unknown task '{blocked_id}'")
            elif d.id not in blocked.dependencies:
                warnings.append(f"'{d.id}' lists '{blocked_id}' in blocks but '{blocked_id}' does not depend on it")

    cycle = find_cycle(catalogue.definitions)
    if cycle:
        warnings.append(f"dependency cycle among: {', '.join(cycle)}")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
