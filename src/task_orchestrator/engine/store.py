"""Snapshot persistence for :class:`OrchestratorState`.

The whole state is one YAML document (``state.yaml``) inside the project's
``.task_orchestrator/`` directory, overwritten on every mutation.  Writes go
through a file lock and a write-tmp-then-rename, the previous snapshot is kept
as ``state.yaml.bak``, and each document carries a schema version, a revision
stamp and a checksum over its body.

A missing snapshot is not an error (``load`` returns ``None``); a snapshot that
cannot be trusted raises :class:`SnapshotCorruptError`.
"""

from __future__ import annotations

import copy
import hashlib
import json
import shutil
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from ..constants import (
    BACKUP_SUFFIX,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    DEFAULT_SAVE_RETRIES,
    LOCK_FILE,
    SCHEMA_VERSION,
    STATE_FILE,
)
from ..io_utils import FileLock, _atomic_write_yaml
from ..utils import _now
from .model import OrchestratorState

_ENVELOPE_KEYS = ("schema_version", "revision", "checksum")


class SnapshotError(Exception):
    """Base class for snapshot persistence failures."""


class SnapshotCorruptError(SnapshotError):
    """The persisted snapshot exists but cannot be trusted."""


class ConcurrentModificationError(SnapshotError):
    """Another writer saved the snapshot since it was loaded."""


def compute_checksum(body: dict[str, Any]) -> str:
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _decode_snapshot(raw: Any, source: str) -> OrchestratorState:
    if not isinstance(raw, dict):
        raise SnapshotCorruptError(f"{source}: expected a mapping, got {type(raw).__name__}")
    version = raw.get("schema_version")
    if version != SCHEMA_VERSION:
        raise SnapshotCorruptError(
            f"{source}: unsupported schema_version {version!r} (expected {SCHEMA_VERSION})"
        )
    body = {k: v for k, v in raw.items() if k not in _ENVELOPE_KEYS}
    expected = raw.get("checksum")
    if expected is not None and compute_checksum(body) != expected:
        raise SnapshotCorruptError(f"{source}: checksum mismatch")
    try:
        return OrchestratorState.from_dict(raw)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise SnapshotCorruptError(f"{source}: {exc.__class__.__name__}: {exc}") from exc


def _encode_snapshot(state: OrchestratorState) -> dict[str, Any]:
    body = state.body_dict()
    payload: dict[str, Any] = {
        "schema_version": state.schema_version,
        "revision": state.revision,
        "checksum": compute_checksum(body),
    }
    payload.update(body)
    return payload


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class StateStore(ABC):
    @abstractmethod
    def load(self) -> Optional[OrchestratorState]:
        """Return the persisted state, ``None`` if there is none yet."""
        raise NotImplementedError

    @abstractmethod
    def save(self, state: OrchestratorState, *, overwrite: bool = False) -> None:
        """Persist *state*, bumping ``state.revision`` on success.

        Raises :class:`ConcurrentModificationError` if the stored revision no
        longer matches ``state.revision``, unless *overwrite* is set.
        """
        raise NotImplementedError

    def load_backup(self) -> Optional[OrchestratorState]:
        return None

    def stored_revision(self) -> Optional[int]:
        """Revision of the persisted snapshot, ``None`` when unknown."""
        return None


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryStateStore(StateStore):
    """Keeps the encoded snapshot in memory; saves are copied, never shared."""

    def __init__(self, initial: Optional[OrchestratorState] = None) -> None:
        self._payload: Optional[dict[str, Any]] = None
        self.save_count = 0
        if initial is not None:
            self._payload = _encode_snapshot(initial)

    def load(self) -> Optional[OrchestratorState]:
        if self._payload is None:
            return None
        return _decode_snapshot(copy.deepcopy(self._payload), "memory")

    def save(self, state: OrchestratorState, *, overwrite: bool = False) -> None:
        stored = self._payload.get("revision", 0) if self._payload is not None else None
        if not overwrite and stored is not None and stored != state.revision:
            raise ConcurrentModificationError(
                f"snapshot revision is {stored}, expected {state.revision}"
            )
        state.revision += 1
        state.last_updated = _now()
        self._payload = _encode_snapshot(state)
        self.save_count += 1

    def stored_revision(self) -> Optional[int]:
        if self._payload is None:
            return None
        return int(self._payload.get("revision", 0))

    @property
    def payload(self) -> Optional[dict[str, Any]]:
        return copy.deepcopy(self._payload)


# ---------------------------------------------------------------------------
# File implementation
# ---------------------------------------------------------------------------

class FileStateStore(StateStore):
    """File-backed snapshot store.

    Parameters
    ----------
    state_dir:
        Path to the ``.task_orchestrator/`` directory for the project.
    save_retries:
        Extra attempts after a failed write (``OSError`` only).
    retry_backoff_seconds:
        Fixed pause between write attempts.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        save_retries: int = DEFAULT_SAVE_RETRIES,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
    ) -> None:
        self._state_dir = state_dir
        self.path = state_dir / STATE_FILE
        self.backup_path = state_dir / (STATE_FILE + BACKUP_SUFFIX)
        self._lock = FileLock(state_dir / LOCK_FILE)
        self.save_retries = max(0, save_retries)
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)

    # -- internal helpers ---------------------------------------------------

    @staticmethod
    def _read(path: Path) -> OrchestratorState:
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise SnapshotCorruptError(f"{path.name}: YAMLError: {exc}") from exc
        return _decode_snapshot(raw, path.name)

    def _stored_revision(self) -> Optional[int]:
        """Revision currently on disk; ``None`` when missing or unreadable."""
        if not self.path.exists():
            return None
        try:
            raw = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError:
            return None
        if not isinstance(raw, dict):
            return None
        try:
            return int(raw.get("revision") or 0)
        except (TypeError, ValueError):
            return None

    def _write(self, payload: dict[str, Any], *, backup: bool) -> None:
        attempts = self.save_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                if backup and self.path.exists():
                    shutil.copyfile(self.path, self.backup_path)
                _atomic_write_yaml(self.path, payload)
                return
            except OSError as exc:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "Snapshot write failed (attempt {}/{}): {}; retrying in {}s",
                    attempt,
                    attempts,
                    exc,
                    self.retry_backoff_seconds,
                )
                time.sleep(self.retry_backoff_seconds)

    # -- public API ---------------------------------------------------------

    def load(self) -> Optional[OrchestratorState]:
        with self._lock:
            if not self.path.exists():
                return None
            return self._read(self.path)

    def stored_revision(self) -> Optional[int]:
        with self._lock:
            return self._stored_revision()

    def load_backup(self) -> Optional[OrchestratorState]:
        with self._lock:
            if not self.backup_path.exists():
                return None
            return self._read(self.backup_path)

    def save(self, state: OrchestratorState, *, overwrite: bool = False) -> None:
        with self._lock:
            stored = self._stored_revision()
            if not overwrite and stored is not None and stored != state.revision:
                raise ConcurrentModificationError(
                    f"{self.path.name} is at revision {stored}, expected {state.revision}"
                )
            previous_revision, previous_updated = state.revision, state.last_updated
            state.revision += 1
            state.last_updated = _now()
            try:
                # A damaged file must never replace a good backup.
                self._write(_encode_snapshot(state), backup=stored is not None and not overwrite)
            except BaseException:
                state.revision, state.last_updated = previous_revision, previous_updated
                raise
        logger.debug("Saved snapshot revision {} to {}", state.revision, self.path)
