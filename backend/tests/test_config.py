"""Tests for livesync configuration loading and validation."""
import pytest
from pydantic import ValidationError

from livesync import config as config_module
from livesync.config import (
    AppConfig,
    RealtimeSettings,
    ReconciliationSettings,
    ReconnectSettings,
    TypingSettings,
    get_config,
    load_config,
    reset_config,
)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


class TestDefaults:
    def test_reconnect_defaults(self):
        cfg = ReconnectSettings()
        assert (cfg.base_delay_ms, cfg.max_delay_ms, cfg.max_attempts) == (1000, 30000, 5)

    def test_realtime_defaults(self):
        cfg = RealtimeSettings()
        assert cfg.connect_timeout_seconds == 10.0
        assert cfg.max_channels == 100

    def test_typing_ttl_default(self):
        assert TypingSettings().ttl_seconds == 3.0

    def test_app_config_sections(self):
        cfg = AppConfig()
        assert cfg.reconciliation.match_window_seconds == 30.0
        assert cfg.secrets.backend.api_key is None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_cap_below_base_rejected(self):
        with pytest.raises(ValidationError):
            ReconnectSettings(base_delay_ms=5000, max_delay_ms=1000)

    @pytest.mark.parametrize("field", ["base_delay_ms", "max_delay_ms", "max_attempts"])
    def test_non_positive_reconnect_values_rejected(self, field):
        with pytest.raises(ValidationError):
            ReconnectSettings(**{field: 0})

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValidationError):
            RealtimeSettings(connect_timeout_seconds=0)

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            TypingSettings(ttl_seconds=-1)

    @pytest.mark.parametrize("field", ["staged_event_limit", "notification_limit"])
    def test_non_positive_reconciliation_limits_rejected(self, field):
        with pytest.raises(ValidationError):
            ReconciliationSettings(**{field: 0})


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoading:
    def test_load_settings_and_secrets(self, tmp_path):
        settings = tmp_path / "livesync.settings.yaml"
        settings.write_text(
            "logging:\n"
            "  level: debug\n"
            "realtime:\n"
            "  url: ws://feed.test/socket\n"
            "  reconnect:\n"
            "    max_attempts: 8\n"
        )
        (tmp_path / "livesync.secrets.yaml").write_text(
            "backend:\n"
            "  api_key: anon\n"
            "  user_id: u-1\n"
        )

        cfg = load_config(settings)

        assert cfg.logging.level == "debug"
        assert cfg.realtime.url == "ws://feed.test/socket"
        assert cfg.realtime.reconnect.max_attempts == 8
        assert cfg.realtime.reconnect.base_delay_ms == 1000
        assert cfg.secrets.backend.api_key == "anon"
        assert cfg.secrets.backend.user_id == "u-1"

    def test_missing_files_fall_back_to_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "absent.yaml", tmp_path / "absent.secrets.yaml")
        assert cfg == AppConfig()

    def test_get_config_is_cached(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config_module, "SETTINGS_FILE", tmp_path / "livesync.settings.yaml")
        reset_config()
        try:
            first = get_config()
            assert get_config() is first
            reset_config()
            assert get_config() is not first
        finally:
            reset_config()
