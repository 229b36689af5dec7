"""Tests for settings loading: defaults, YAML overlay, environment overrides."""

from pathlib import Path

import pytest

from backbone.settings import get_default_settings, get_setting, load_settings, reload_settings


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    reload_settings()
    yield
    reload_settings()


def test_defaults_without_config_file(tmp_path: Path) -> None:
    settings = load_settings(tmp_path)
    assert settings["event_bus"]["max_attempts"] == 3
    assert settings["event_bus"]["base_delay"] == 0.5
    assert settings["dead_letter"]["max_retry_count"] == 10
    assert settings["cache"]["backend"] == "memory"


def test_yaml_overlay_is_deep_merged(tmp_path: Path) -> None:
    (tmp_path / "settings.yaml").write_text(
        "event_bus:\n  max_attempts: 5\ncache:\n  backend: redis\n  namespace: app\n",
        encoding="utf-8",
    )
    settings = load_settings(tmp_path)
    assert settings["event_bus"]["max_attempts"] == 5
    # untouched siblings keep their defaults
    assert settings["event_bus"]["handler_timeout"] == 30.0
    assert settings["cache"]["backend"] == "redis"
    assert settings["cache"]["namespace"] == "app"
    assert settings["cache"]["redis_url"] == "redis://localhost:6379/0"


def test_invalid_yaml_falls_back_to_defaults(tmp_path: Path) -> None:
    (tmp_path / "settings.yaml").write_text("event_bus: [unclosed\n", encoding="utf-8")
    assert load_settings(tmp_path)["event_bus"]["max_attempts"] == 3


def test_redis_url_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://cache:6380/2")
    assert load_settings(tmp_path)["cache"]["redis_url"] == "redis://cache:6380/2"


def test_cached_until_reload(tmp_path: Path) -> None:
    first = load_settings(tmp_path)
    (tmp_path / "settings.yaml").write_text("event_bus:\n  max_attempts: 7\n", encoding="utf-8")
    assert load_settings(tmp_path) is first

    reload_settings()
    assert load_settings(tmp_path)["event_bus"]["max_attempts"] == 7


def test_defaults_are_copies() -> None:
    settings = get_default_settings()
    settings["event_bus"]["max_attempts"] = 99
    assert get_default_settings()["event_bus"]["max_attempts"] == 3


def test_get_setting_dot_path() -> None:
    settings = get_default_settings()
    assert get_setting(settings, "dead_letter.busy_timeout") == 5000
    assert get_setting(settings, "dead_letter.missing", "x") == "x"
    assert get_setting(settings, "event_bus.max_attempts.deeper") is None
