"""
Centralized settings for flowsync.

Manifesto:
    Poll intervals, buffer caps and debounce windows are tuning knobs, not
    constants. One validated, cached settings object resolves them from
    ``FLOWSYNC_*`` environment variables and ``.env`` files so every
    component agrees on the same values.

Components accept explicit keyword arguments and fall back to
:func:`get_settings` when an argument is omitted.

Examples:
    >>> from flowsync.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.completion_poll_interval
    2.0

    Override via environment::

        FLOWSYNC_COMPLETION_TIMEOUT=3600
        FLOWSYNC_OPERATION_LOG_MAX_LINES=2000

Tags:
    flowsync, configuration, settings, pydantic
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlowSyncSettings(BaseSettings):
    """Orchestration core configuration (``FLOWSYNC_*`` environment variables)."""

    model_config = SettingsConfigDict(
        env_prefix="FLOWSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Completion tracking ──────────────────────────────────────
    completion_poll_interval: float = Field(default=2.0, gt=0)
    completion_poll_error_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed status queries treated as implicit completion",
    )
    completion_timeout: float | None = Field(
        default=None,
        description="Hard upper bound on a terminal-status wait (None = unbounded)",
    )

    # ── Log delivery ─────────────────────────────────────────────
    log_poll_interval: float = Field(default=0.5, gt=0, description="Coarse backlog poll")
    log_recovery_interval: float = Field(default=2.0, gt=0, description="Sequenced catch-up poll")
    stream_log_max_lines: int = Field(default=1000, ge=1)
    operation_log_max_lines: int = Field(default=500, ge=1)
    backlog_tail_lines: int = Field(default=5, ge=1)
    preview_lines: int = Field(default=3, ge=1)
    backlog_channel: bool = Field(
        default=False,
        description="Also poll the engine's unsequenced backlog for each running unit",
    )

    # ── Store ────────────────────────────────────────────────────
    autosave_delay: float = Field(default=0.5, ge=0)
    temp_unit_prefix: str = Field(default="__temp_")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator("completion_timeout")
    @classmethod
    def _positive_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("completion_timeout must be positive or None")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return value


_settings: FlowSyncSettings | None = None


def get_settings(*, _force_reload: bool = False) -> FlowSyncSettings:
    """Load, validate and cache the process-wide settings."""
    global _settings
    if _settings is None or _force_reload:
        _settings = FlowSyncSettings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (next :func:`get_settings` re-reads the env)."""
    global _settings
    _settings = None


__all__ = ["FlowSyncSettings", "get_settings", "reset_settings"]
