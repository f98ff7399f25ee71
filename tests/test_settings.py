#!/usr/bin/env python3
# -*- coding: utf-8 -*-
'''配置加载测试：YAML 默认值与环境变量覆盖.'''

import pytest

from config import settings as settings_module
from config.settings import Settings, get_settings, reload_settings

ENV_KEYS = [
    "GOVBUDGET_CONFIG",
    "VALIDATION_TOLERANCE",
    "YOY_THRESHOLD",
    "ARCHIVE_FUZZY_THRESHOLD",
    "PREFLIGHT_MAX_BLANK_PAGES",
    "PREFLIGHT_MAX_INTERIOR_BLANK_PAGES",
    "MAPPING_RULES_DIR",
    "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(settings_module, "_settings", None)


class TestSettings:

    def test_bundled_defaults(self):
        settings = Settings()
        validation = settings.to_validation_config()
        assert validation.tolerance == 0.01
        assert validation.yoy_threshold == 0.5

        archive = settings.to_archive_config()
        assert archive.scale_conflict_ranges == [(9000.0, 11000.0), (900.0, 1100.0)]
        assert archive.fuzzy_label_threshold == 88

        preflight = settings.to_preflight_config()
        assert preflight.max_blank_pages == 1
        assert preflight.max_interior_blank_pages == 1
        assert settings.get_rules_dir() is None

    def test_yaml_file_and_missing_sections(self, tmp_path):
        path = tmp_path / "app.yaml"
        path.write_text(
            "validation:\n"
            "  tolerance: 0.5\n"
            "  rule_tolerances:\n"
            "    ARCHIVE.BALANCE_FISCAL_GRANT: 0.05\n",
            encoding="utf-8",
        )
        settings = Settings(str(path))
        validation = settings.to_validation_config()
        assert validation.tolerance == 0.5
        assert validation.tolerance_for("ARCHIVE.BALANCE_FISCAL_GRANT") == 0.05
        assert settings.to_preflight_config().min_chars_non_blank == 24
        assert settings.get_logging_config() == {}

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("VALIDATION_TOLERANCE", "0.05")
        monkeypatch.setenv("PREFLIGHT_MAX_BLANK_PAGES", "3")
        monkeypatch.setenv("PREFLIGHT_MAX_INTERIOR_BLANK_PAGES", "2")
        monkeypatch.setenv("MAPPING_RULES_DIR", "/opt/rules")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        settings = Settings()
        assert settings.to_validation_config().tolerance == 0.05
        assert settings.to_preflight_config().max_blank_pages == 3
        assert settings.to_preflight_config().max_interior_blank_pages == 2
        assert settings.get_rules_dir() == "/opt/rules"
        assert settings.get_logging_config()["level"] == "DEBUG"

    @pytest.mark.parametrize("raw, expected", [("true", True), ("False", False), ("7", 7), ("0.5", 0.5), ("abc", "abc")])
    def test_env_value_conversion(self, raw, expected):
        assert Settings()._convert_env_value(raw) == expected

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("archive:\n  fuzzy_label_threshold: 75\n", encoding="utf-8")
        monkeypatch.setenv("GOVBUDGET_CONFIG", str(path))
        assert Settings().to_archive_config().fuzzy_label_threshold == 75

    def test_singleton_and_reload(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("YOY_THRESHOLD", "0.3")
        reloaded = reload_settings()
        assert reloaded is not first
        assert reloaded.to_validation_config().yoy_threshold == 0.3
