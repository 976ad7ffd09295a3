"""Bounded history log with an optional append-only JSONL sink."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from ..constants import DEFAULT_HISTORY_MAX_ENTRIES, DEFAULT_HISTORY_RETAIN_ENTRIES
from ..io_utils import _append_jsonl, _read_jsonl
from ..utils import _now
from .model import HistoryAction, HistoryEntry


class HistoryLog:
    """Append-only record of lifecycle transitions over a caller-owned list.

    The list is capped at ``max_entries``.  Once an append pushes it past the
    cap, only the newest ``retain_entries`` are kept: ``retain == max`` gives a
    sliding window, a smaller value reproduces a hard-cliff truncation.
    When ``sink_path`` is set, every entry is also appended to that file,
    which is never truncated.  Sink writes wait for :meth:`flush`, which the
    orchestrator calls only once the snapshot holding the entries is saved.
    """

    def __init__(
        self,
        entries: list[HistoryEntry],
        *,
        max_entries: int = DEFAULT_HISTORY_MAX_ENTRIES,
        retain_entries: int = DEFAULT_HISTORY_RETAIN_ENTRIES,
        sink_path: Optional[Path] = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if not 1 <= retain_entries <= max_entries:
            raise ValueError("retain_entries must be between 1 and max_entries")
        self.entries = entries
        self.max_entries = max_entries
        self.retain_entries = retain_entries
        self.sink_path = sink_path
        self._pending: list[HistoryEntry] = []
        self._trim()

    def __len__(self) -> int:
        return len(self.entries)

    def append(
        self,
        action: HistoryAction,
        task_id: str,
        agent_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            timestamp=_now(),
            action=action,
            task_id=task_id,
            agent_id=agent_id,
            details=details,
        )
        self.entries.append(entry)
        self._trim()
        if self.sink_path is not None:
            self._pending.append(entry)
        return entry

    def flush(self) -> int:
        """Write pending entries to the sink; returns how many were written."""
        pending, self._pending = self._pending, []
        for entry in pending:
            self._emit(entry)
        return len(pending)

    def discard(self) -> None:
        self._pending.clear()

    def recent(self, limit: int) -> list[HistoryEntry]:
        """Return the last *limit* entries, most recent last."""
        if limit < 1:
            return []
        return list(self.entries[-limit:])

    def read_sink(self, limit: Optional[int] = None) -> list[HistoryEntry]:
        if self.sink_path is None:
            return []
        return [HistoryEntry.from_dict(d) for d in _read_jsonl(self.sink_path, limit)]

    def _trim(self) -> None:
        if len(self.entries) > self.max_entries:
            dropped = len(self.entries) - self.retain_entries
            del self.entries[:dropped]
            logger.debug("History log trimmed: dropped {} oldest entries", dropped)

    def _emit(self, entry: HistoryEntry) -> None:
        if self.sink_path is None:
            return
        try:
            _append_jsonl(self.sink_path, entry.to_dict())
        except OSError:
            logger.exception("Failed to append history entry for {}", entry.task_id)
