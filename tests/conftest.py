"""Shared test fixtures and configuration."""

from __future__ import annotations

import datetime as dt
import json
import os
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable
from unittest.mock import MagicMock

import pytest

os.environ.setdefault("FETCHBOT_ENV", "test")
os.environ.setdefault("FETCHBOT_LOG_LEVEL", "WARNING")

from fetchbot.supervisor.models import MemorySnapshot, SupervisorConfig
from fetchbot.supervisor.restarter import AutoRestarter
from fetchbot.supervisor.state import StateStore

NOW = dt.datetime(2026, 3, 14, 12, 0, 0, tzinfo=dt.timezone.utc)
NOW_MS = int(NOW.timestamp() * 1000)


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, ms: int) -> None:
        self.ms = ms

    def __call__(self) -> int:
        return self.ms

    def advance(self, ms: int) -> None:
        self.ms += ms


class FakeSampler:
    """Memory sampler returning a configurable heap reading."""

    def __init__(self, heap_used: int = 100) -> None:
        self.heap_used = heap_used

    def __call__(self) -> MemorySnapshot:
        return MemorySnapshot(heap_used=self.heap_used, heap_total=self.heap_used * 2,
                              rss=self.heap_used, external=1)


def read_events(path: Path) -> list[dict[str, Any]]:
    """Parse every line of an NDJSON event log."""
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def event_types(path: Path) -> list[str]:
    return [entry["type"] for entry in read_events(path)]


@pytest.fixture
def config(tmp_path: Path) -> SupervisorConfig:
    """Supervisor config rooted in tmp_path, with no pre-exit delays."""
    return SupervisorConfig(
        max_restarts=5,
        cooldown_ms=30_000,
        memory_warn_mb=512,
        memory_critical_mb=1024,
        memory_sample_interval_ms=60_000,
        state_file=tmp_path / "data" / "restart-state.json",
        pid_file=tmp_path / "data" / "fetchbot.pid",
        log_file=tmp_path / "logs" / "auto-restart.log",
        cleanup_targets=(str(tmp_path / "tmp" / "fetchbot-*"),),
        cleanup_timeout_s=1.0,
        restart_exit_delay_s=0,
        shutdown_exit_delay_s=0,
        force_exit_delay_s=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW_MS)


@pytest.fixture
def sampler() -> FakeSampler:
    return FakeSampler()


@pytest.fixture
def exit_func() -> MagicMock:
    return MagicMock(name="exit")


@pytest.fixture
def store(config: SupervisorConfig) -> StateStore:
    return StateStore(config.state_file, config.pid_file, now=lambda: NOW)


@pytest.fixture
def make_supervisor(
    config: SupervisorConfig,
    clock: FakeClock,
    sampler: FakeSampler,
    exit_func: MagicMock,
    store: StateStore,
) -> Callable[..., AutoRestarter]:
    """Factory for supervisors wired to fakes; keyword args override config fields."""

    def factory(**overrides: Any) -> AutoRestarter:
        cfg = replace(config, **overrides)
        return AutoRestarter(
            cfg,
            store=store,
            sampler=sampler,
            uptime=lambda: 42.0,
            clock=clock,
            exit_func=exit_func,
        )

    return factory
