from __future__ import annotations

from dynamic_charting.config import AnalyticsSettings, as_dict, get_config
from dynamic_charting.env import env_name, get_env


def test_defaults_without_config_file():
    config = get_config()
    assert config.timezone == "UTC"
    assert config.analytics == AnalyticsSettings()
    assert config.log_level == "INFO"
    assert as_dict()["source"] == "defaults"


def test_toml_config_is_loaded_and_coerced(tmp_path, monkeypatch):
    config_file = tmp_path / "charting.toml"
    config_file.write_text(
        """
timezone = "America/Toronto"
log_level = "debug"

[analytics]
entry_limit = 50
include_partial = "yes"
auto_recalculate = false
""",
        encoding="utf-8",
    )
    monkeypatch.setenv("DYNAMIC_CHARTING_CONFIG", str(config_file))
    get_config.cache_clear()

    config = get_config()
    assert config.timezone == "America/Toronto"
    assert config.tzinfo.key == "America/Toronto"
    assert config.log_level == "DEBUG"
    assert config.analytics == AnalyticsSettings(entry_limit=50, include_partial=True, auto_recalculate=False)
    assert as_dict()["source"] == str(config_file)


def test_invalid_values_fall_back_to_defaults(tmp_path, monkeypatch):
    config_file = tmp_path / "charting.toml"
    config_file.write_text(
        'timezone = "Mars/Olympus"\nlog_level = "LOUD"\n[analytics]\nentry_limit = -3\n',
        encoding="utf-8",
    )
    monkeypatch.setenv("DYNAMIC_CHARTING_CONFIG", str(config_file))
    get_config.cache_clear()

    config = get_config()
    assert config.timezone == "UTC"
    assert config.log_level == "INFO"
    assert config.analytics.entry_limit == 500


def test_env_reads_prefixed_names(monkeypatch):
    assert env_name("DB_FILE") == "DYNAMIC_CHARTING_DB_FILE"
    monkeypatch.setenv("DYNAMIC_CHARTING_FLAVOUR", "  mint ")
    assert get_env("FLAVOUR") == "mint"
    monkeypatch.setenv("DYNAMIC_CHARTING_FLAVOUR", "   ")
    assert get_env("FLAVOUR", "fallback") == "fallback"
    assert get_env("MISSING") is None
