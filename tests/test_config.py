from pathlib import Path
import json

import pytest

from qr_wifi.config import (
    DEFAULT_ENGINE_SETTINGS,
    ConfigManager,
    EngineSettings,
    apply_environment,
    load_settings,
)


def test_default_settings_match_association_limits():
    settings = EngineSettings()
    assert settings.max_association_retries == 5
    assert settings.max_scan_retries == 3
    assert settings.initial_backoff == 0.5
    assert settings.jitter_ratio == 0.3
    assert settings.scan_retry_step == 0.2
    assert settings.permission_timeout == 10.0
    assert settings.resume_delay == 0.5
    assert settings.open_settings_on_denied is True


def test_settings_coerce_and_validate_values():
    settings = EngineSettings(
        max_association_retries="3",
        initial_backoff="0.25",
        open_settings_on_denied="no",
        interface="  wlan0 ",
        extra_retryable_codes=["42"],
        extra_retryable_domains=[" org.example ", ""],
    )
    assert settings.max_association_retries == 3
    assert settings.initial_backoff == 0.25
    assert settings.open_settings_on_denied is False
    assert settings.interface == "wlan0"
    assert settings.extra_retryable_codes == (42,)
    assert settings.extra_retryable_domains == ("org.example",)


@pytest.mark.parametrize(
    "changes",
    [
        {"max_association_retries": 0},
        {"max_scan_retries": True},
        {"initial_backoff": -1},
        {"jitter_ratio": 1.0},
        {"permission_timeout": float("nan")},
        {"open_settings_on_denied": "maybe"},
        {"extra_retryable_codes": ["abc"]},
    ],
)
def test_invalid_settings_rejected(changes):
    with pytest.raises(ValueError):
        EngineSettings(**changes)


def test_config_manager_defaults_when_missing(tmp_path: Path):
    manager = ConfigManager(tmp_path / "config.json")
    assert manager.get_settings() == DEFAULT_ENGINE_SETTINGS


def test_update_settings_persists(tmp_path: Path):
    config_file = tmp_path / "nested" / "config.json"
    manager = ConfigManager(config_file)
    updated = manager.update_settings({"max_association_retries": 7, "extra_retryable_codes": [9]})
    assert updated.max_association_retries == 7
    assert updated.extra_retryable_codes == (9,)
    payload = json.loads(config_file.read_text(encoding="utf-8"))
    assert payload["engine"]["max_association_retries"] == 7
    reloaded = ConfigManager(config_file)
    assert reloaded.get_settings() == updated


def test_update_settings_rejects_invalid_values(tmp_path: Path):
    manager = ConfigManager(tmp_path / "config.json")
    with pytest.raises(ValueError):
        manager.update_settings({"jitter_ratio": 5})
    with pytest.raises(ValueError):
        manager.update_settings({"extra_retryable_domains": "not-a-list"})
    assert manager.get_settings() == DEFAULT_ENGINE_SETTINGS


def test_update_settings_ignores_unknown_keys(tmp_path: Path):
    manager = ConfigManager(tmp_path / "config.json")
    updated = manager.update_settings({"unknown": 1, "resume_delay": 1.5})
    assert updated.resume_delay == 1.5


def test_malformed_config_falls_back_to_defaults(tmp_path: Path):
    config_file = tmp_path / "config.json"
    config_file.write_text("{not json", encoding="utf-8")
    assert ConfigManager(config_file).get_settings() == DEFAULT_ENGINE_SETTINGS

    config_file.write_text(json.dumps({"engine": {"max_scan_retries": 0}}), encoding="utf-8")
    assert ConfigManager(config_file).get_settings() == DEFAULT_ENGINE_SETTINGS


def test_environment_overrides_settings():
    settings = apply_environment(
        DEFAULT_ENGINE_SETTINGS,
        {
            "QRWIFI_MAX_RETRIES": "2",
            "QRWIFI_PERMISSION_TIMEOUT": "3.5",
            "QRWIFI_INTERFACE": "wlp2s0",
            "QRWIFI_OPEN_SETTINGS": "false",
        },
    )
    assert settings.max_association_retries == 2
    assert settings.permission_timeout == 3.5
    assert settings.interface == "wlp2s0"
    assert settings.open_settings_on_denied is False


def test_invalid_environment_values_are_ignored(caplog: pytest.LogCaptureFixture):
    with caplog.at_level("WARNING"):
        settings = apply_environment(
            DEFAULT_ENGINE_SETTINGS,
            {"QRWIFI_MAX_RETRIES": "lots", "QRWIFI_RESUME_DELAY": "2"},
        )
    assert settings.max_association_retries == 5
    assert settings.resume_delay == 2.0
    assert "QRWIFI_MAX_RETRIES" in caplog.text


def test_load_settings_combines_file_and_environment(tmp_path: Path):
    config_file = tmp_path / "config.json"
    ConfigManager(config_file).update_settings({"max_scan_retries": 4})
    settings = load_settings(config_file, environ={"QRWIFI_INITIAL_BACKOFF": "0.1"})
    assert settings.max_scan_retries == 4
    assert settings.initial_backoff == 0.1
    assert load_settings(environ={}) == DEFAULT_ENGINE_SETTINGS
