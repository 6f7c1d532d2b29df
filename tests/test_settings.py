"""Tests for the YAML settings loader."""
from pathlib import Path

import pytest

from config.settings import Settings, load_settings, settings_from_dict
from models.schemas import ActivityPattern


class TestSettingsFromDict:
    def test_empty_mapping_gives_defaults(self):
        settings = settings_from_dict({})
        assert settings == Settings()
        assert settings.queue.backend == "memory"
        assert settings.time.business_hours.days_of_week == [1, 2, 3, 4, 5]

    def test_sections_override_defaults(self):
        settings = settings_from_dict({
            "queue": {"backend": "redis", "poll_interval_seconds": 5, "unknown_key": "ignored"},
            "rate_limit": {"hourly_limit": 20},
            "behavior": {"pattern": "conservative"},
            "automation": {"grace_period_minutes": 5},
        })
        assert settings.queue.backend == "redis"
        assert settings.queue.poll_interval_seconds == 5
        assert settings.rate_limit.hourly_limit == 20
        assert settings.rate_limit.daily_limit == 500
        assert settings.behavior.pattern == ActivityPattern.CONSERVATIVE
        assert settings.automation.grace_period_minutes == 5

    def test_time_zone_flows_into_windows(self):
        settings = settings_from_dict({"time": {
            "timezone": "Asia/Karachi",
            "business_hours": {"start_time": "08:00", "end_time": "20:00"},
            "rate_limiting": {
                "inherit_business_hours": False,
                "custom_business_hours": {"start_time": "10:00", "end_time": "12:00"},
            },
        }})
        assert settings.time.business_hours.timezone == "Asia/Karachi"
        assert settings.time.business_hours.start_time == "08:00"
        custom = settings.time.rate_limiting.custom_business_hours
        assert custom.timezone == "Asia/Karachi"
        assert settings.time.rate_limiting.inherit_business_hours is False
        assert settings.time.human_behavior.custom_business_hours is None

    def test_env_vars_substituted(self, monkeypatch):
        monkeypatch.setenv("GATEWAY_TOKEN", "s3cret")
        settings = settings_from_dict({"channel": {"token": "${GATEWAY_TOKEN}", "base_url": "${UNSET_VAR_X}"}})
        assert settings.channel.token == "s3cret"
        assert settings.channel.base_url == "${UNSET_VAR_X}"

    def test_invalid_window_rejected(self):
        with pytest.raises(ValueError):
            settings_from_dict({"time": {"business_hours": {"start_time": "9am"}}})

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValueError):
            settings_from_dict({"time": {"timezone": "Not/AZone"}})


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.app_name == "NotifyPace"

    def test_reads_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("app_name: Campus Alerts\nduplicates:\n  daily_cap: 4\n")
        settings = load_settings(str(path))
        assert settings.app_name == "Campus Alerts"
        assert settings.duplicates.daily_cap == 4

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("debug: true\n")
        monkeypatch.setenv("NOTIFYPACE_CONFIG", str(path))
        assert load_settings().debug is True

    def test_shipped_settings_file_loads(self):
        path = Path(__file__).parent.parent / "config" / "settings.yaml"
        settings = load_settings(str(path))
        assert settings.automation.grace_period_minutes >= 0
        assert settings.time.business_hours.start_minutes < settings.time.business_hours.end_minutes
