"""
配置加载器
支持从 YAML 文件和环境变量加载配置
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from schemas.facts import ArchiveConfig, PreflightConfig, ValidationConfig


class Settings:
    """配置管理器"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._get_default_config_path()
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _get_default_config_path(self) -> str:
        """获取默认配置文件路径"""
        env_path = os.getenv("GOVBUDGET_CONFIG")
        if env_path:
            return env_path
        return str(Path(__file__).parent / "app.yaml")

    def _load_config(self):
        """加载配置"""
        # 1. 加载YAML配置
        if os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                self._config = yaml.safe_load(f) or {}

        # 2. 环境变量覆盖
        self._load_env_overrides()

    def _load_env_overrides(self):
        """加载环境变量覆盖"""
        env_mappings = {
            # 校验
            "VALIDATION_TOLERANCE": ("validation", "tolerance"),
            "YOY_THRESHOLD": ("validation", "yoy_threshold"),
            # 历史档案自动抽取
            "ARCHIVE_YUAN_THRESHOLD": ("archive", "yuan_magnitude_threshold"),
            "ARCHIVE_FUZZY_THRESHOLD": ("archive", "fuzzy_label_threshold"),
            # PDF 预检
            "PREFLIGHT_SIZE_TOLERANCE": ("preflight", "size_tolerance"),
            "PREFLIGHT_MAX_BLANK_PAGES": ("preflight", "max_blank_pages"),
            "PREFLIGHT_MAX_INTERIOR_BLANK_PAGES": ("preflight", "max_interior_blank_pages"),
            "PREFLIGHT_MIN_CHARS": ("preflight", "min_chars_non_blank"),
            # 映射表
            "MAPPING_RULES_DIR": ("mapping", "rules_dir"),
            # 日志配置
            "LOG_LEVEL": ("logging", "level"),
            "LOG_FILE": ("logging", "file"),
        }

        for env_key, (section, key) in env_mappings.items():
            env_value = os.getenv(env_key)
            if env_value is not None:
                if section not in self._config or self._config[section] is None:
                    self._config[section] = {}

                # 类型转换
                self._config[section][key] = self._convert_env_value(env_value)

    def _convert_env_value(self, value: str) -> Any:
        """转换环境变量值"""
        # 布尔值
        if value.lower() in ("true", "false"):
            return value.lower() == "true"

        # 数字
        try:
            if "." in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        # 字符串
        return value

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """获取配置值"""
        return (self._config.get(section) or {}).get(key, default)

    def get_section(self, section: str) -> Dict[str, Any]:
        """获取配置段"""
        return dict(self._config.get(section) or {})

    def to_validation_config(self) -> ValidationConfig:
        """转换为校验配置"""
        section = self.get_section("validation")
        return ValidationConfig(
            tolerance=section.get("tolerance", 0.01),
            rule_tolerances=section.get("rule_tolerances") or {},
            yoy_threshold=section.get("yoy_threshold", 0.5),
        )

    def to_archive_config(self) -> ArchiveConfig:
        """转换为历史档案抽取配置"""
        section = self.get_section("archive")
        ranges = section.get("scale_conflict_ranges") or [[9000, 11000], [900, 1100]]
        return ArchiveConfig(
            yuan_magnitude_threshold=section.get("yuan_magnitude_threshold", 100000),
            unit_scan_rows=section.get("unit_scan_rows", 20),
            marker_scan_rows=section.get("marker_scan_rows", 28),
            scale_conflict_ranges=[(float(low), float(high)) for low, high in ranges],
            fuzzy_label_threshold=section.get("fuzzy_label_threshold", 88),
        )

    def to_preflight_config(self) -> PreflightConfig:
        """转换为 PDF 预检配置"""
        section = self.get_section("preflight")
        return PreflightConfig(
            page_width=section.get("page_width", 841.68),
            page_height=section.get("page_height", 595.44),
            size_tolerance=section.get("size_tolerance", 1.2),
            max_blank_pages=section.get("max_blank_pages", 1),
            max_interior_blank_pages=section.get("max_interior_blank_pages", 1),
            min_chars_non_blank=section.get("min_chars_non_blank", 24),
        )

    def get_rules_dir(self) -> Optional[str]:
        """获取映射表目录，未配置时返回 None"""
        return self.get("mapping", "rules_dir") or None

    def get_logging_config(self) -> Dict[str, Any]:
        """获取日志配置"""
        return self.get_section("logging")


# 全局配置实例
_settings = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """重新加载配置"""
    global _settings
    _settings = None
    return get_settings()
