"""
单元格数值规范化
支持千分位、括号负数、百分号以及 元/千元/万元 单位换算
"""

import logging
import math
import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from schemas.facts import ValueType

logger = logging.getLogger(__name__)

# 单位优先级：先匹配长单位
UNIT_MULTIPLIERS = (
    ("万元", 10000),
    ("千元", 1000),
)


class NumberNormalizer:
    """单元格取值规范化器，不抛异常，空值/无法解析返回 None"""

    def __init__(self):
        self._compile_patterns()

    def _compile_patterns(self):
        """编译常用正则表达式"""
        # 百分号与空白
        self.percent_space_pattern = re.compile(r"[%％\s]")
        # 千分位（中英文逗号）
        self.separator_pattern = re.compile(r"[,，]")
        # 单位词
        self.unit_word_pattern = re.compile(r"万元|千元|元")
        # 十进制数
        self.decimal_pattern = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

    def detect_unit_multiplier(self, text: str = "", number_format: Optional[str] = None) -> int:
        """文本与数字格式合并查找单位，任一处出现即生效"""
        unit_text = f"{text or ''}{number_format or ''}"
        for unit, multiplier in UNIT_MULTIPLIERS:
            if unit in unit_text:
                return multiplier
        return 1

    def normalize(self, raw_value: Any, number_format: Optional[str] = None) -> Optional[float]:
        """
        规范化单元格取值

        Args:
            raw_value: 单元格原始值（字符串/数字/日期）
            number_format: 单元格显示格式

        Returns:
            有符号十进制数值，空或无法解析返回 None
        """
        if raw_value is None or raw_value == "":
            return None

        if isinstance(raw_value, bool):
            return None

        if isinstance(raw_value, (int, float, Decimal)):
            number = float(raw_value)
            if not math.isfinite(number):
                return None
            return number * self.detect_unit_multiplier("", number_format)

        if isinstance(raw_value, (datetime, date, time)):
            return None

        text = str(raw_value).strip()
        if not text:
            return None

        negative = False
        if text.startswith("(") and text.endswith(")"):
            negative = True
            text = text[1:-1]

        multiplier = self.detect_unit_multiplier(text, number_format)
        is_percent = "%" in text or "％" in text

        text = self.percent_space_pattern.sub("", text)
        text = self.separator_pattern.sub("", text)
        text = self.unit_word_pattern.sub("", text)

        if not self.decimal_pattern.match(text):
            return None

        try:
            parsed = Decimal(text)
        except InvalidOperation:
            logger.debug(f"数值解析失败: {raw_value!r}")
            return None

        result = float(parsed) * multiplier
        if is_percent:
            result = result / 100
        if negative:
            result = -result
        return result

    def value_type(self, value: Any) -> ValueType:
        """单元格取值分类"""
        if value is None:
            return ValueType.EMPTY
        if isinstance(value, (datetime, date, time)):
            return ValueType.DATE
        if isinstance(value, bool):
            return ValueType.BOOLEAN
        if isinstance(value, (int, float, Decimal)):
            return ValueType.NUMBER
        if isinstance(value, str) and value.startswith("="):
            return ValueType.FORMULA
        return ValueType.STRING


def normalize_cell_text(value: Any) -> str:
    """单元格文本：None -> ''，其余去首尾空白"""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


# 全局规范化器实例
_normalizer_instance = None


def get_normalizer() -> NumberNormalizer:
    """获取全局规范化器实例"""
    global _normalizer_instance
    if _normalizer_instance is None:
        _normalizer_instance = NumberNormalizer()
    return _normalizer_instance


def normalize_number(raw_value: Any, number_format: Optional[str] = None) -> Optional[float]:
    """便捷函数：规范化数值"""
    return get_normalizer().normalize(raw_value, number_format)


def get_value_type(value: Any) -> ValueType:
    """便捷函数：取值分类"""
    return get_normalizer().value_type(value)
