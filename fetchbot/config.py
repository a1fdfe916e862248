"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from fetchbot.supervisor.models import SupervisorConfig


class Settings(BaseSettings):
    """Application-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    fetchbot_env: str = "development"
    fetchbot_log_level: str = "INFO"
    fetchbot_app: str = ""

    # ── Relaunch markers (set by the process manager) ────────────────
    fetchbot_restarted: bool = False
    fetchbot_restart_count: str = ""

    # ── Restart policy ───────────────────────────────────────────────
    restart_max_restarts: int = Field(default=5, ge=0)
    restart_cooldown_ms: int = Field(default=30_000, ge=0)
    restart_critical_patterns: str = "ENOSPC,ENOMEM,EMFILE,ECONNRESET,MemoryError"

    # ── Memory monitor ───────────────────────────────────────────────
    memory_warn_mb: int = Field(default=512, gt=0)
    memory_critical_mb: int = Field(default=1024, gt=0)
    memory_sample_interval_ms: int = Field(default=60_000, gt=0)

    # ── Files ────────────────────────────────────────────────────────
    restart_state_file: str = "data/restart-state.json"
    restart_pid_file: str = "data/fetchbot.pid"
    restart_log_file: str = "logs/auto-restart.log"

    # ── Emergency cleanup ────────────────────────────────────────────
    cleanup_targets: str = "/tmp/fetchbot-*,temp/*"
    cleanup_timeout_s: float = Field(default=5.0, gt=0)

    @field_validator("fetchbot_log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def critical_patterns(self) -> list[str]:
        """Parse comma-separated critical error patterns."""
        return [p.strip() for p in self.restart_critical_patterns.split(",") if p.strip()]

    @property
    def cleanup_target_list(self) -> list[str]:
        """Parse comma-separated cleanup globs."""
        return [t.strip() for t in self.cleanup_targets.split(",") if t.strip()]

    @property
    def previous_restart_count(self) -> str:
        """Restart count handed over by the previous process, if any."""
        return self.fetchbot_restart_count or "unknown"

    def supervisor_config(self) -> SupervisorConfig:
        """Build the immutable supervisor configuration for this run."""
        from fetchbot.supervisor.models import SupervisorConfig

        return SupervisorConfig(
            max_restarts=self.restart_max_restarts,
            cooldown_ms=self.restart_cooldown_ms,
            critical_error_patterns=frozenset(self.critical_patterns),
            memory_warn_mb=self.memory_warn_mb,
            memory_critical_mb=self.memory_critical_mb,
            memory_sample_interval_ms=self.memory_sample_interval_ms,
            state_file=Path(self.restart_state_file),
            pid_file=Path(self.restart_pid_file),
            log_file=Path(self.restart_log_file),
            cleanup_targets=tuple(self.cleanup_target_list),
            cleanup_timeout_s=self.cleanup_timeout_s,
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
