"""Load optional orchestrator configuration from `.task_orchestrator/config.yaml`."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CATALOGUE_FILE,
    CONFIG_FILE,
    DEFAULT_HISTORY_MAX_ENTRIES,
    DEFAULT_HISTORY_RETAIN_ENTRIES,
    DEFAULT_PROMPTS_DIR,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    DEFAULT_SAVE_RETRIES,
    HISTORY_SINK_FILE,
    LOG_LEVEL_ENV_VAR,
    ROOT_ENV_VAR,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error

VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def load_orchestrator_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional orchestrator config file.

    Args:
        project_dir: Project root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if not path.exists():
        return {}, None
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _get_int(config: dict[str, Any], *keys: str, default: int, minimum: int = 0) -> int:
    raw = _get_nested(config, *keys)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < minimum:
        return default
    return raw


def _get_float(config: dict[str, Any], *keys: str, default: float) -> float:
    raw = _get_nested(config, *keys)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw < 0:
        return default
    return float(raw)


def get_log_level(config: dict[str, Any]) -> str | None:
    """Return the configured log level, or None if unset or not a loguru level."""
    raw = config.get("log_level")
    if isinstance(raw, str) and raw.upper() in VALID_LOG_LEVELS:
        return raw.upper()
    return None


def resolve_project_dir(project_dir: Optional[str | Path] = None) -> Path:
    """``--project-dir`` wins, then ``$TASK_ORCHESTRATOR_ROOT``, then the cwd."""
    if project_dir:
        return Path(project_dir).resolve()
    env_root = os.environ.get(ROOT_ENV_VAR)
    if env_root:
        return Path(env_root).resolve()
    return Path.cwd().resolve()


@dataclass(frozen=True)
class OrchestratorSettings:
    project_dir: Path
    catalogue_path: Path
    prompts_dir: Path
    history_max_entries: int = DEFAULT_HISTORY_MAX_ENTRIES
    history_retain_entries: int = DEFAULT_HISTORY_RETAIN_ENTRIES
    history_sink: bool = True
    save_retries: int = DEFAULT_SAVE_RETRIES
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    log_level: str = "INFO"

    @property
    def state_dir(self) -> Path:
        return self.project_dir / STATE_DIR_NAME

    @property
    def history_sink_path(self) -> Optional[Path]:
        return self.state_dir / HISTORY_SINK_FILE if self.history_sink else None


def build_settings(
    project_dir: Path,
    config: dict[str, Any],
    *,
    catalogue: Optional[str | Path] = None,
    log_level: Optional[str] = None,
) -> OrchestratorSettings:
    """Resolve a config mapping into settings; explicit arguments win over the file."""

    def _under_root(value: str | Path) -> Path:
        path = Path(value)
        return path if path.is_absolute() else project_dir / path

    catalogue_raw = catalogue or config.get("catalogue") or Path(STATE_DIR_NAME) / CATALOGUE_FILE
    prompts_raw = config.get("prompts_dir") or DEFAULT_PROMPTS_DIR

    max_entries = _get_int(config, "history", "max_entries", default=DEFAULT_HISTORY_MAX_ENTRIES, minimum=1)
    retain = _get_int(config, "history", "retain_entries", default=max_entries, minimum=1)
    sink = _get_nested(config, "history", "sink")

    level = (
        (log_level.upper() if log_level else None)
        or (os.environ.get(LOG_LEVEL_ENV_VAR) or "").upper()
        or get_log_level(config)
        or "INFO"
    )
    if level not in VALID_LOG_LEVELS:
        level = "INFO"

    return OrchestratorSettings(
        project_dir=project_dir,
        catalogue_path=_under_root(catalogue_raw),
        prompts_dir=_under_root(prompts_raw),
        history_max_entries=max_entries,
        history_retain_entries=min(retain, max_entries),
        history_sink=sink if isinstance(sink, bool) else True,
        save_retries=_get_int(config, "persistence", "save_retries", default=DEFAULT_SAVE_RETRIES),
        retry_backoff_seconds=_get_float(
            config, "persistence", "retry_backoff_seconds", default=DEFAULT_RETRY_BACKOFF_SECONDS
        ),
        log_level=level,
    )


def load_settings(
    project_dir: Optional[str | Path] = None,
    *,
    catalogue: Optional[str | Path] = None,
    log_level: Optional[str] = None,
) -> tuple[OrchestratorSettings, str | None]:
    """Resolve the project root, read its config file and build settings.

    A damaged config file is reported through the error slot; defaults are
    used in its place.
    """
    root = resolve_project_dir(project_dir)
    config, err = load_orchestrator_config(root)
    return build_settings(root, config, catalogue=catalogue, log_level=log_level), err
