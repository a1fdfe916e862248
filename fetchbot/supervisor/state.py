"""Restart state persistence.

The state file carries the restart count across process relaunches. Writes
go to a sibling ``.tmp`` file that is then renamed over the real one, so an
interrupted save never leaves a truncated document behind. Counts only
survive within a calendar day: a state saved on an earlier date loads as a
zero count.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import os
from pathlib import Path
from typing import Callable, Optional

from fetchbot.logging_config import get_logger
from fetchbot.supervisor.errors import StatePersistenceError
from fetchbot.supervisor.models import RestartState

logger = get_logger(__name__)


def local_now() -> dt.datetime:
    """Timezone-aware current local time."""
    return dt.datetime.now().astimezone()


class StateStore:
    """Loads and saves ``RestartState`` plus the pid file."""

    def __init__(
        self,
        state_file: Path,
        pid_file: Path,
        now: Callable[[], dt.datetime] = local_now,
    ) -> None:
        self._state_file = Path(state_file)
        self._pid_file = Path(pid_file)
        self._now = now

    @property
    def state_file(self) -> Path:
        return self._state_file

    @property
    def pid_file(self) -> Path:
        return self._pid_file

    def now(self) -> dt.datetime:
        return self._now()

    # ── State file ────────────────────────────────────────────────────

    def save(self, state: RestartState) -> None:
        """Persist the state atomically and record the current pid."""
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._state_file.with_suffix(self._state_file.suffix + ".tmp")
            tmp.write_text(json.dumps(state.to_dict(), indent=2), encoding="utf-8")
            tmp.replace(self._state_file)

            self._pid_file.parent.mkdir(parents=True, exist_ok=True)
            self._pid_file.write_text(str(os.getpid()), encoding="utf-8")
        except OSError as exc:
            logger.warning("restart_state_save_failed", path=str(self._state_file), error=str(exc))
            raise StatePersistenceError(f"cannot save restart state: {exc}") from exc

    def load_raw(self) -> Optional[RestartState]:
        """Read the state file as stored, without the daily reset."""
        try:
            data = json.loads(self._state_file.read_text(encoding="utf-8"))
            return RestartState.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("restart_state_unreadable", path=str(self._state_file), error=str(exc))
            return None

    def load(self) -> Optional[RestartState]:
        """Load the persisted state, resetting counters saved on another day."""
        state = self.load_raw()
        if state is None:
            return None
        if not self.same_day(state.saved_at):
            logger.info("restart_state_new_day", saved_at=state.saved_at.isoformat())
            return dataclasses.replace(state, restart_count=0, last_restart_ms=0)
        return state

    def same_day(self, saved_at: Optional[dt.datetime]) -> bool:
        """True if ``saved_at`` falls on today's local calendar date."""
        if saved_at is None:
            return False
        today = self._now()
        if saved_at.tzinfo is not None and today.tzinfo is not None:
            saved_at = saved_at.astimezone(today.tzinfo)
        return saved_at.date() == today.date()

    def clear(self) -> bool:
        """Delete the state file. Returns True if a file was removed."""
        try:
            self._state_file.unlink()
            return True
        except FileNotFoundError:
            return False

    # ── Pid file ──────────────────────────────────────────────────────

    def read_pid(self) -> Optional[int]:
        try:
            return int(self._pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def remove_pid(self) -> None:
        """Delete the pid file (best-effort)."""
        try:
            self._pid_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("pid_file_remove_failed", path=str(self._pid_file), error=str(exc))
