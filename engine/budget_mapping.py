"""
预算映射表加载
从 rules/ 目录读取单位/部门口径 YAML 映射，校验为 NumericRule / TextRule
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import TypeAdapter, ValidationError

from schemas.facts import Caliber, MappingRule, NumericRule, TextRule

logger = logging.getLogger(__name__)

DEFAULT_RULES_DIR = Path(__file__).resolve().parents[1] / "rules"

MAPPING_FILES = {
    Caliber.UNIT: "budget_mapping_unit.yaml",
    Caliber.DEPARTMENT: "budget_mapping_department.yaml",
}

_rules_adapter = TypeAdapter(List[MappingRule])


@dataclass
class BudgetMapping:
    """某一口径的有序规则表（只读）"""
    caliber: Caliber
    version: str
    rules: List[Union[NumericRule, TextRule]] = field(default_factory=list)

    @property
    def keys(self) -> List[str]:
        """去重后的事实键（保持首次出现顺序）"""
        return list(dict.fromkeys(rule.key for rule in self.rules))

    @property
    def numeric_keys(self) -> List[str]:
        return list(dict.fromkeys(rule.key for rule in self.rules if not rule.is_text))

    @property
    def required_keys(self) -> List[str]:
        """至少有一个非可选变体的数值键"""
        return list(dict.fromkeys(
            rule.key for rule in self.rules if not rule.is_text and not rule.optional
        ))

    def rules_for(self, key: str) -> List[Union[NumericRule, TextRule]]:
        return [rule for rule in self.rules if rule.key == key]


class BudgetMappingLoader:
    """映射表加载器，按口径缓存"""

    def __init__(self, rules_dir: Optional[Union[str, Path]] = None):
        self.rules_dir = Path(rules_dir) if rules_dir else DEFAULT_RULES_DIR
        self._cache: Dict[Caliber, BudgetMapping] = {}

    def load(self, caliber: Union[Caliber, str]) -> BudgetMapping:
        try:
            caliber = Caliber(caliber)
        except ValueError:
            raise ValueError(f"Unknown caliber: {caliber!r}") from None

        if caliber in self._cache:
            return self._cache[caliber]

        path = self.rules_dir / MAPPING_FILES[caliber]
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        entries = []
        for entry in data.get("rules") or []:
            entry = dict(entry)
            entry.setdefault("type", "numeric")
            entries.append(entry)

        try:
            rules = _rules_adapter.validate_python(entries)
        except ValidationError as e:
            raise ValueError(f"Invalid mapping file {path}: {e}") from e

        mapping = BudgetMapping(caliber=caliber, version=str(data.get("version", "")), rules=rules)
        self._cache[caliber] = mapping
        logger.info(f"映射表已加载: caliber={caliber.value} rules={len(rules)} file={path.name}")
        return mapping

    def clear_cache(self):
        self._cache.clear()


# 全局加载器实例
_loader_instance = None


def get_mapping_loader() -> BudgetMappingLoader:
    """获取全局映射表加载器（目录取自配置 mapping.rules_dir）"""
    global _loader_instance
    if _loader_instance is None:
        from config.settings import get_settings

        _loader_instance = BudgetMappingLoader(get_settings().get_rules_dir())
    return _loader_instance


def get_mapping(caliber: Union[Caliber, str] = Caliber.UNIT) -> BudgetMapping:
    """便捷函数：获取某一口径的映射表"""
    return get_mapping_loader().load(caliber)


def history_actual_keys(mapping: Optional[BudgetMapping] = None) -> List[str]:
    """历史实际数允许的键：单位口径映射表中的数值键"""
    mapping = mapping or get_mapping(Caliber.UNIT)
    return mapping.numeric_keys


def required_history_keys(mapping: Optional[BudgetMapping] = None) -> List[str]:
    """覆盖率校验使用的必填键"""
    mapping = mapping or get_mapping(Caliber.UNIT)
    return mapping.required_keys
