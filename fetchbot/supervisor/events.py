"""Supervisor event log: append-only NDJSON record of restart decisions.

Every supervisor component writes here. One JSON object per line; lines are
never rewritten or removed (rotation belongs to the host). The parent
directory is created on demand.
"""

from __future__ import annotations

import datetime as dt
import json
import os
from pathlib import Path
from typing import Any, Callable, Optional

from fetchbot.logging_config import get_logger
from fetchbot.supervisor.errors import EventLogError
from fetchbot.supervisor.models import LogEntry, MemorySnapshot
from fetchbot.supervisor.process_stats import sample_memory, uptime_seconds

logger = get_logger(__name__)


class EventLogger:
    """Appends structured supervisor events to a newline-delimited JSON file."""

    def __init__(
        self,
        path: Path,
        sampler: Callable[[], MemorySnapshot] = sample_memory,
        uptime: Callable[[], float] = uptime_seconds,
    ) -> None:
        self._path = Path(path)
        self._sampler = sampler
        self._uptime = uptime

    @property
    def path(self) -> Path:
        return self._path

    def _entry(self, event_type: str, data: Any) -> LogEntry:
        return LogEntry(
            timestamp=dt.datetime.now(dt.UTC).isoformat(),
            type=str(event_type),
            data=data,
            pid=os.getpid(),
            uptime=self._uptime(),
            memory=self._sampler(),
        )

    def write(self, event_type: str, data: Any = None) -> LogEntry:
        """Append an event, raising ``EventLogError`` if it cannot be written."""
        try:
            entry = self._entry(event_type, data)
            line = json.dumps(entry.to_dict(), ensure_ascii=False, default=str)
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except Exception as exc:
            raise EventLogError(f"cannot write {event_type} event to {self._path}: {exc}") from exc
        return entry

    def log(self, event_type: str, data: Any = None) -> bool:
        """Append an event (best-effort). Returns False if the write failed."""
        try:
            self.write(event_type, data)
            return True
        except EventLogError as exc:
            logger.error("event_log_write_failed", event_type=str(event_type), error=str(exc))
            return False

    def read_recent(self, limit: int = 50, event_type: Optional[str] = None) -> list[dict[str, Any]]:
        """Read the most recent events, skipping lines that are not valid JSON."""
        if not self._path.exists():
            return []
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            logger.warning("event_log_read_failed", path=str(self._path), error=str(exc))
            return []

        entries = []
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if event_type and entry.get("type") != event_type:
                continue
            entries.append(entry)
        return entries[-limit:] if limit > 0 else entries
