"""Tests for the auto-restarter restart policy."""

from __future__ import annotations

import asyncio
import errno
import json
import os
import signal
import time
from unittest.mock import MagicMock, patch

import pytest

from fetchbot.config import Settings
from fetchbot.supervisor.errors import StatePersistenceError
from fetchbot.supervisor.models import RestartState
from fetchbot.supervisor.restarter import AutoRestarter, SupervisorState
from tests.conftest import NOW, NOW_MS, event_types, read_events


def _enospc() -> OSError:
    return OSError(errno.ENOSPC, "No space left on device")


def _seed(store, count: int, last_restart_ms: int) -> None:
    store.save(RestartState(restart_count=count, last_restart_ms=last_restart_ms, saved_at=NOW, pid=999))


# ── Latch ─────────────────────────────────────────────────────────────

class TestSupervisorState:
    """Tests for the one-way shutdown latch."""

    def test_latch_claimed_once(self) -> None:
        state = SupervisorState()
        assert not state.is_shutting_down
        assert state.try_begin_shutdown()
        assert state.is_shutting_down
        assert not state.try_begin_shutdown()
        assert state.is_shutting_down


# ── Restart sequence ──────────────────────────────────────────────────

class TestRequestRestart:
    """Tests for AutoRestarter.request_restart."""

    @pytest.mark.asyncio
    async def test_critical_error_restarts_with_exit_zero(self, make_supervisor, config, exit_func) -> None:
        """ENOSPC with cooldown elapsed: count 0 -> 1, restart_initiated, exit 0."""
        sup = make_supervisor()
        await sup.shutdown.handle_error("uncaught_exception", _enospc())

        assert sup.state.restart_count == 1
        assert sup.state.last_restart_ms == NOW_MS
        assert sup.state.is_shutting_down
        exit_func.assert_called_once_with(0)

        types = event_types(config.log_file)
        assert types == ["critical_error", "restart_initiated", "restart_handoff"]
        initiated = read_events(config.log_file)[1]["data"]
        assert initiated["count"] == 1
        assert initiated["maxRestarts"] == 5
        assert "ENOSPC" in initiated["reason"]

    @pytest.mark.asyncio
    async def test_restart_persists_state(self, make_supervisor, config, store) -> None:
        sup = make_supervisor()
        await sup.request_restart("test")

        data = json.loads(config.state_file.read_text())
        assert data["restartCount"] == 1
        assert data["lastRestart"] == NOW_MS
        assert data["timestamp"] == NOW.isoformat()
        assert store.read_pid() is not None

    @pytest.mark.asyncio
    async def test_restart_runs_cleanup_before_save(self, make_supervisor) -> None:
        sup = make_supervisor()
        order: list[str] = []

        async def cleanup() -> None:
            order.append("cleanup")

        def save(state: RestartState) -> None:
            order.append("save")

        with patch.object(sup.cleanup, "run_emergency_cleanup", side_effect=cleanup), \
             patch.object(sup.store, "save", side_effect=save):
            await sup.request_restart("order check")

        assert order == ["cleanup", "save"]

    @pytest.mark.asyncio
    async def test_limit_reached_exits_with_one(self, make_supervisor, config, store, exit_func) -> None:
        """Five restarts already recorded today: a sixth critical error ends the process."""
        _seed(store, count=5, last_restart_ms=NOW_MS - 3_600_000)
        sup = make_supervisor()
        sup._load_state()
        assert sup.state.restart_count == 5

        await sup.shutdown.handle_error("uncaught_exception", _enospc())

        assert sup.state.restart_count == 5
        assert sup.state.last_restart_ms == NOW_MS - 3_600_000
        exit_func.assert_called_once_with(1)
        types = event_types(config.log_file)
        assert "restart_limit" in types
        assert "restart_initiated" not in types
        shutdown = [e for e in read_events(config.log_file) if e["type"] == "graceful_shutdown"]
        assert shutdown[0]["data"] == "MAX_RESTARTS_REACHED"

    @pytest.mark.asyncio
    async def test_count_never_exceeds_limit(self, make_supervisor, store, exit_func) -> None:
        _seed(store, count=2, last_restart_ms=0)
        sup = make_supervisor(max_restarts=2)
        sup._load_state()
        await sup.request_restart("again")
        assert sup.state.restart_count == 2
        exit_func.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_zero_limit_never_restarts(self, make_supervisor, exit_func) -> None:
        sup = make_supervisor(max_restarts=0)
        await sup.request_restart("anything")
        assert sup.state.restart_count == 0
        exit_func.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_cooldown_blocks_without_mutation(self, make_supervisor, config, store, exit_func) -> None:
        """A request inside the cooldown window is logged and changes nothing."""
        _seed(store, count=1, last_restart_ms=NOW_MS - 5_000)
        sup = make_supervisor()
        sup._load_state()

        await sup.request_restart("flapping ECONNRESET")

        assert sup.state.restart_count == 1
        assert sup.state.last_restart_ms == NOW_MS - 5_000
        assert not sup.state.is_shutting_down
        exit_func.assert_not_called()
        blocked = [e for e in read_events(config.log_file) if e["type"] == "restart_blocked"]
        assert len(blocked) == 1
        assert "flapping ECONNRESET" in blocked[0]["data"]

    @pytest.mark.asyncio
    async def test_cooldown_elapsed_allows_restart(self, make_supervisor, store, clock, exit_func) -> None:
        _seed(store, count=1, last_restart_ms=NOW_MS - 5_000)
        sup = make_supervisor()
        sup._load_state()

        await sup.request_restart("first")
        exit_func.assert_not_called()

        clock.advance(30_000)
        await sup.request_restart("second")
        assert sup.state.restart_count == 2
        exit_func.assert_called_once_with(0)

    @pytest.mark.asyncio
    async def test_cooldown_checked_before_limit(self, make_supervisor, config, store, exit_func) -> None:
        _seed(store, count=5, last_restart_ms=NOW_MS - 1_000)
        sup = make_supervisor()
        sup._load_state()
        await sup.request_restart("storm")
        exit_func.assert_not_called()
        assert event_types(config.log_file)[-1] == "restart_blocked"


# ── Latch behaviour ───────────────────────────────────────────────────

class TestShutdownLatch:
    """Once shutting down, every further request is a no-op."""

    @pytest.mark.asyncio
    async def test_second_request_is_noop(self, make_supervisor, config, clock, exit_func) -> None:
        sup = make_supervisor()
        await sup.request_restart("first")
        before = event_types(config.log_file)

        clock.advance(3_600_000)
        await sup.request_restart("second")
        await sup.shutdown.graceful_shutdown("SIGTERM")

        assert event_types(config.log_file) == before
        assert sup.state.restart_count == 1
        exit_func.assert_called_once_with(0)

    @pytest.mark.asyncio
    async def test_concurrent_triggers_run_one_sequence(self, make_supervisor, config, exit_func) -> None:
        """Signal, memory breach and uncaught error racing: only the first sequence runs."""
        sup = make_supervisor(restart_exit_delay_s=0.05, shutdown_exit_delay_s=0.05)
        await asyncio.gather(
            sup.request_restart("Critical memory usage: 1100MB"),
            sup.shutdown.graceful_shutdown("SIGTERM"),
            sup.shutdown.handle_error("unhandled_task_exception", _enospc()),
        )

        exit_func.assert_called_once_with(0)
        types = event_types(config.log_file)
        assert types.count("restart_initiated") == 1
        assert "graceful_shutdown" not in types
        assert sup.state.restart_count == 1

    @pytest.mark.asyncio
    async def test_stop_disables_restarts(self, make_supervisor, config, exit_func) -> None:
        sup = make_supervisor()
        await sup.stop()
        await sup.request_restart("after stop")
        exit_func.assert_not_called()
        assert event_types(config.log_file) == ["auto_restart_stopped"]

    @pytest.mark.asyncio
    async def test_stop_restores_default_signal_handling(self, make_supervisor, exit_func) -> None:
        """After stop a signal reaches its default action instead of the latched handler."""
        sup = make_supervisor()
        sup.install()
        await sup.start()
        await sup.stop()

        assert not sup.shutdown.installed
        assert signal.getsignal(signal.SIGTERM) == signal.SIG_DFL
        with pytest.raises(KeyboardInterrupt):
            os.kill(os.getpid(), signal.SIGINT)
            time.sleep(1)
        exit_func.assert_not_called()


# ── Failure fallbacks ─────────────────────────────────────────────────

class TestRestartFailures:
    """The sequence must end the process even when its own bookkeeping fails."""

    @pytest.mark.asyncio
    async def test_save_failure_forces_exit_one(self, make_supervisor, config, exit_func) -> None:
        sup = make_supervisor()
        with patch.object(sup.store, "save", side_effect=StatePersistenceError("disk full")):
            await sup.request_restart("ENOSPC")
        exit_func.assert_called_once_with(1)
        types = event_types(config.log_file)
        assert types == ["restart_initiated", "force_restart"]

    @pytest.mark.asyncio
    async def test_cleanup_failure_forces_exit_one(self, make_supervisor, exit_func) -> None:
        sup = make_supervisor()
        with patch.object(sup.cleanup, "run_emergency_cleanup", side_effect=RuntimeError("boom")):
            await sup.request_restart("ENOMEM")
        exit_func.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_force_restart_survives_broken_log_and_store(self, make_supervisor, exit_func) -> None:
        sup = make_supervisor()
        with patch.object(sup.events, "write", side_effect=OSError("log gone")), \
             patch.object(sup.store, "save", side_effect=StatePersistenceError("store gone")):
            await sup.force_restart("operator")
        exit_func.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_force_restart_noop_when_shutting_down(self, make_supervisor, exit_func) -> None:
        sup = make_supervisor()
        sup.state.try_begin_shutdown()
        await sup.force_restart("late")
        exit_func.assert_not_called()


# ── Lifecycle ─────────────────────────────────────────────────────────

class TestLifecycle:
    """Tests for start/stop, manual restarts and stats."""

    @pytest.mark.asyncio
    async def test_start_fresh(self, make_supervisor, config) -> None:
        sup = make_supervisor()
        await sup.start()
        try:
            assert sup.memory_monitor.is_running
        finally:
            await sup.memory_monitor.stop()
        entries = read_events(config.log_file)
        assert [e["type"] for e in entries] == ["auto_restart_started"]
        assert entries[0]["data"]["restartCount"] == 0
        assert entries[0]["data"]["maxRestarts"] == 5

    @pytest.mark.asyncio
    async def test_start_loads_same_day_state(self, make_supervisor, config, store) -> None:
        _seed(store, count=3, last_restart_ms=NOW_MS - 120_000)
        sup = make_supervisor()
        await sup.start()
        await sup.memory_monitor.stop()

        assert sup.state.restart_count == 3
        assert sup.state.last_restart_ms == NOW_MS - 120_000
        loaded = [e for e in read_events(config.log_file) if e["type"] == "state_loaded"]
        assert loaded[0]["data"] == {"previousRestarts": 3, "previousPid": 999}

    @pytest.mark.asyncio
    async def test_start_with_malformed_state(self, make_supervisor, config) -> None:
        config.state_file.parent.mkdir(parents=True)
        config.state_file.write_text("garbage{")
        sup = make_supervisor()
        await sup.start()
        await sup.memory_monitor.stop()
        assert sup.state.restart_count == 0
        assert "state_loaded" not in event_types(config.log_file)

    @pytest.mark.asyncio
    async def test_start_logs_restart_success_after_relaunch(self, config, store, sampler, clock, exit_func) -> None:
        sup = AutoRestarter(config, store=store, sampler=sampler, clock=clock, exit_func=exit_func,
                            restarted=True, previous_restart_count="2")
        await sup.start()
        await sup.memory_monitor.stop()
        success = [e for e in read_events(config.log_file) if e["type"] == "restart_success"]
        assert success[0]["data"] == {"previousRestartCount": "2"}

    @pytest.mark.asyncio
    async def test_start_never_raises(self, make_supervisor) -> None:
        sup = make_supervisor()
        with patch.object(sup.store, "load", side_effect=RuntimeError("corrupt fs")):
            await sup.start()
        assert not sup.memory_monitor.is_running

    @pytest.mark.asyncio
    async def test_manual_restart(self, make_supervisor, config, exit_func) -> None:
        sup = make_supervisor()
        await sup.manual_restart()
        types = event_types(config.log_file)
        assert types[:2] == ["manual_restart", "restart_initiated"]
        exit_func.assert_called_once_with(0)

    def test_get_stats(self, make_supervisor) -> None:
        sup = make_supervisor()
        stats = sup.get_stats()
        assert stats["restartCount"] == 0
        assert stats["maxRestarts"] == 5
        assert stats["isShuttingDown"] is False
        assert stats["uptime"] == 42.0
        assert stats["memoryUsage"]["heapUsed"] == 100

    def test_from_settings(self, tmp_path) -> None:
        settings = Settings(
            restart_max_restarts=3,
            restart_cooldown_ms=1000,
            restart_state_file=str(tmp_path / "state.json"),
            fetchbot_restarted=True,
            fetchbot_restart_count="4",
            _env_file=None,
        )
        sup = AutoRestarter.from_settings(settings, exit_func=MagicMock())
        assert sup.config.max_restarts == 3
        assert sup.config.cooldown_ms == 1000
        assert sup.store.state_file == tmp_path / "state.json"
        assert sup._restarted is True
        assert sup._previous_restart_count == "4"
