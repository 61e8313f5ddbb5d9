"""Tests for core.settings module.

Covers:
- FlowSyncSettings defaults
- FLOWSYNC_* environment overrides
- Validation of out-of-range values
- get_settings() caching and reset
"""

import pytest
from pydantic import ValidationError

from flowsync.core.settings import FlowSyncSettings, get_settings, reset_settings


class TestDefaults:
    def test_completion_defaults(self):
        s = FlowSyncSettings()
        assert s.completion_poll_interval == 2.0
        assert s.completion_poll_error_threshold == 3
        assert s.completion_timeout is None

    def test_log_defaults(self):
        s = FlowSyncSettings()
        assert s.log_poll_interval == 0.5
        assert s.log_recovery_interval == 2.0
        assert s.stream_log_max_lines == 1000
        assert s.operation_log_max_lines == 500
        assert s.backlog_tail_lines == 5
        assert s.preview_lines == 3
        assert s.backlog_channel is False

    def test_store_defaults(self):
        s = FlowSyncSettings()
        assert s.autosave_delay == 0.5
        assert s.temp_unit_prefix == "__temp_"
        assert s.log_level == "INFO"
        assert s.log_format == "console"


class TestEnvOverride:
    def test_timeout_from_env(self, monkeypatch):
        monkeypatch.setenv("FLOWSYNC_COMPLETION_TIMEOUT", "3600")
        assert FlowSyncSettings().completion_timeout == 3600.0

    def test_log_cap_from_env(self, monkeypatch):
        monkeypatch.setenv("FLOWSYNC_OPERATION_LOG_MAX_LINES", "2000")
        assert FlowSyncSettings().operation_log_max_lines == 2000

    def test_unprefixed_ignored(self, monkeypatch):
        monkeypatch.setenv("COMPLETION_POLL_INTERVAL", "9")
        assert FlowSyncSettings().completion_poll_interval == 2.0


class TestValidation:
    def test_negative_timeout_rejected(self):
        with pytest.raises(ValidationError):
            FlowSyncSettings(completion_timeout=-1)

    def test_zero_threshold_rejected(self):
        with pytest.raises(ValidationError):
            FlowSyncSettings(completion_poll_error_threshold=0)

    def test_unknown_log_format_rejected(self):
        with pytest.raises(ValidationError):
            FlowSyncSettings(log_format="xml")


class TestGetSettings:
    def test_cached(self):
        assert get_settings() is get_settings()

    def test_reset_rereads_env(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("FLOWSYNC_PREVIEW_LINES", "7")
        reset_settings()
        second = get_settings()
        assert second is not first
        assert second.preview_lines == 7

    def test_force_reload(self):
        first = get_settings()
        assert get_settings(_force_reload=True) is not first
