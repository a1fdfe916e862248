"""Emergency cleanup run on the way to a restart.

Each step is isolated: a failing step is logged and the next one still
runs. Temp-file removal lists the known directories explicitly and removes
every matching entry on its own, with its own timeout, so a single stuck or
failing path cannot hold up the others.
"""

from __future__ import annotations

import asyncio
import fnmatch
import gc
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Protocol

from fetchbot.logging_config import get_logger

logger = get_logger(__name__)


class ClearableCache(Protocol):
    def clear(self) -> None: ...


@dataclass
class CleanupReport:
    """What an emergency cleanup pass managed to do."""
    gc_collected: int = 0
    caches_cleared: int = 0
    removed: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "gcCollected": self.gc_collected,
            "cachesCleared": self.caches_cleared,
            "removed": self.removed,
            "failures": self.failures,
        }


def _split_target(target: str) -> tuple[Path, str]:
    path = Path(target)
    return path.parent, path.name or "*"


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


class CleanupManager:
    """Best-effort reclamation of memory and temp files before exit."""

    def __init__(self, targets: Iterable[str] = (), timeout: float = 5.0) -> None:
        self._targets = tuple(targets)
        self._timeout = timeout
        self._caches: list[ClearableCache] = []

    @property
    def targets(self) -> tuple[str, ...]:
        return self._targets

    def register_cache(self, cache: ClearableCache) -> None:
        """Register an in-memory cache to be cleared during emergency cleanup."""
        if not any(c is cache for c in self._caches):
            self._caches.append(cache)

    def unregister_cache(self, cache: ClearableCache) -> None:
        self._caches = [c for c in self._caches if c is not cache]

    async def run_emergency_cleanup(self) -> CleanupReport:
        """Run every cleanup step. Never raises."""
        report = CleanupReport()

        try:
            report.gc_collected = gc.collect()
        except Exception as exc:
            logger.warning("cleanup_gc_failed", error=str(exc))
            report.failures.append(f"gc: {exc}")

        for cache in list(self._caches):
            try:
                cache.clear()
                report.caches_cleared += 1
            except Exception as exc:
                logger.warning("cleanup_cache_clear_failed", cache=type(cache).__name__, error=str(exc))
                report.failures.append(f"cache {type(cache).__name__}: {exc}")

        for target in self._targets:
            await self._clean_target(target, report)

        logger.info("emergency_cleanup_done", **report.to_dict())
        return report

    def _matches(self, directory: Path, pattern: str) -> list[Path]:
        try:
            entries = list(directory.iterdir())
        except FileNotFoundError:
            return []
        return sorted(p for p in entries if fnmatch.fnmatch(p.name, pattern))

    async def _clean_target(self, target: str, report: CleanupReport) -> None:
        directory, pattern = _split_target(target)
        try:
            matches = self._matches(directory, pattern)
        except OSError as exc:
            logger.warning("cleanup_list_failed", directory=str(directory), error=str(exc))
            report.failures.append(f"{directory}: {exc}")
            return

        for path in matches:
            try:
                await asyncio.wait_for(asyncio.to_thread(_remove_path, path), timeout=self._timeout)
                report.removed.append(str(path))
            except FileNotFoundError:
                continue
            except TimeoutError:
                logger.warning("cleanup_remove_timeout", path=str(path), timeout=self._timeout)
                report.failures.append(f"{path}: timed out")
            except Exception as exc:
                logger.warning("cleanup_remove_failed", path=str(path), error=str(exc))
                report.failures.append(f"{path}: {exc}")
