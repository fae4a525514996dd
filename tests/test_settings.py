"""Tests for the settings manager and the env > settings > default lookup"""
import importlib
import json

import config
from settings import Setting, SettingsManager


def test_setting_conversion():
    interval = Setting("Interval", int, 5, min_val=1, max_val=60)
    assert interval.validate_and_convert("10") == 10
    assert interval.validate_and_convert(0) == 1
    assert interval.validate_and_convert(500) == 60
    assert interval.validate_and_convert("soon") == 5
    assert interval.validate_and_convert(None) == 5

    flag = Setting("Flag", bool, False)
    assert flag.validate_and_convert("yes") is True
    assert flag.validate_and_convert("off") is False

    provider = Setting("Provider", str, "audd", options=["audd", "acrcloud"])
    assert provider.validate_and_convert("acrcloud") == "acrcloud"
    assert provider.validate_and_convert("shazam") == "audd"


def test_defaults_without_file(tmp_path):
    manager = SettingsManager(tmp_path / "settings.json")

    assert manager.get("recognition.provider") == "audd"
    assert manager.get("recognition.interval_minutes") == 5
    assert manager.get("recognition.snippet_seconds") is None
    assert manager.get("osc.address_prefix") == "/vjsync"
    assert manager.get("unknown.key", "fallback") == "fallback"


def test_load_validates_saved_values(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({
        "recognition.interval_minutes": "2",
        "osc.port": 99999,
        "llm.provider": "mystery",
        "custom.flag": True,
    }), encoding="utf-8")

    manager = SettingsManager(path)

    assert manager.get("recognition.interval_minutes") == 2
    assert manager.get("osc.port") == 65535
    assert manager.get("llm.provider") == "none"
    assert manager.get("custom.flag") is True


def test_set_and_save_round_trip(tmp_path):
    path = tmp_path / "nested" / "settings.json"
    manager = SettingsManager(path)

    assert manager.set("recognition.provider", "acrcloud") is True
    assert manager.set("osc.host", "192.168.1.255") is False
    assert manager.set("not.a.setting", 1) is False
    manager.save_to_config()

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved["recognition.provider"] == "acrcloud"
    assert SettingsManager(path).get("osc.host") == "192.168.1.255"
    assert not list(path.parent.glob("*.tmp"))


def test_corrupted_file_is_backed_up_and_reset(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("{not valid json", encoding="utf-8")

    manager = SettingsManager(path)

    assert manager.get("recognition.provider") == "audd"
    assert (tmp_path / "settings.json.corrupted").read_text(encoding="utf-8") == "{not valid json"
    assert json.loads(path.read_text(encoding="utf-8"))["osc.port"] == 9000


def test_reset_to_defaults(tmp_path):
    path = tmp_path / "settings.json"
    manager = SettingsManager(path)
    manager.set("osc.port", 7000)
    manager.save_to_config()

    manager.reset_to_defaults()

    assert manager.get("osc.port") == 9000
    assert not path.exists()


def test_get_all_groups_by_category(tmp_path):
    groups = SettingsManager(tmp_path / "settings.json").get_all()

    assert set(groups) == {"Debug", "Recognition", "Prompts", "OSC"}
    assert groups["OSC"]["osc.port"]["value"] == 9000
    assert groups["Recognition"]["recognition.provider"]["options"] == ["audd", "acrcloud"]


def test_conf_prefers_environment(monkeypatch):
    monkeypatch.setenv("OSC_HOST", "10.1.1.1")
    assert config.conf("osc.host") == "10.1.1.1"

    monkeypatch.delenv("OSC_HOST")
    monkeypatch.setattr(config.settings, "get", lambda key: None)
    assert config.conf("osc.host", "fallback") == "fallback"


def test_llm_credentials_read_from_environment(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "gsk-123")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    assert config.get_llm_credentials("groq").api_key == "gsk-123"
    assert not config.get_llm_credentials("gemini").is_valid()
    assert not config.get_llm_credentials("none").is_valid()


def test_orchestrator_config_uses_provider_snippet_default(monkeypatch):
    monkeypatch.setitem(config.RECOGNITION, "provider", "acrcloud")
    monkeypatch.setitem(config.RECOGNITION, "snippet_seconds", None)
    monkeypatch.setitem(config.RECOGNITION, "interval_minutes", 2)

    cfg = config.build_orchestrator_config()

    assert cfg.interval_seconds == 120
    assert cfg.snippet_seconds == 12.0

    monkeypatch.setitem(config.RECOGNITION, "snippet_seconds", "9")
    assert config.build_orchestrator_config().snippet_seconds == 9.0


def test_device_id_from_environment_is_an_int(monkeypatch):
    monkeypatch.setenv("RECOGNITION_DEVICE_ID", "3")
    try:
        importlib.reload(config)
        assert config.RECOGNITION["device_id"] == 3

        monkeypatch.setenv("RECOGNITION_DEVICE_ID", "  ")
        importlib.reload(config)
        assert config.RECOGNITION["device_id"] is None
    finally:
        monkeypatch.delenv("RECOGNITION_DEVICE_ID")
        importlib.reload(config)


def test_as_int_or_none():
    assert config._as_int_or_none(None) is None
    assert config._as_int_or_none("") is None
    assert config._as_int_or_none(" 2 ") == 2
    assert config._as_int_or_none(4) == 4
