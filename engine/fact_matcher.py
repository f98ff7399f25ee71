# engine/fact_matcher.py
"""历史档案标签 → 事实键
精确别名表优先，其次按关键词规则（越具体越靠前），最后 rapidfuzz 模糊兜底。"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from rapidfuzz import fuzz, process

logger = logging.getLogger(__name__)


# 精确别名（规范化后的文本 → 事实键）
EXACT_ALIAS_MAP: Dict[str, str] = {
    "收入合计": "budget_revenue_total",
    "收入总计": "budget_revenue_total",
    "本年收入": "budget_revenue_total",
    "预算收入合计": "budget_revenue_total",
    "财政拨款收入": "budget_revenue_fiscal",
    "事业收入": "budget_revenue_business",
    "事业单位经营收入": "budget_revenue_operation",
    "经营收入": "budget_revenue_operation",
    "其他收入": "budget_revenue_other",

    "支出合计": "budget_expenditure_total",
    "支出总计": "budget_expenditure_total",
    "本年支出": "budget_expenditure_total",
    "预算支出合计": "budget_expenditure_total",
    "基本支出": "budget_expenditure_basic",
    "项目支出": "budget_expenditure_project",

    "财政拨款收入合计": "fiscal_grant_revenue_total",
    "财政拨款支出合计": "fiscal_grant_expenditure_total",
    "一般公共预算财政拨款支出": "fiscal_grant_expenditure_general",
    "政府性基金预算财政拨款支出": "fiscal_grant_expenditure_gov_fund",
    "国有资本经营预算财政拨款支出": "fiscal_grant_expenditure_capital",

    "三公经费合计": "three_public_total",
    "三公经费": "three_public_total",
    "因公出国费": "three_public_outbound",
    "因公出国境费": "three_public_outbound",
    "公务用车购置及运行费": "three_public_vehicle_total",
    "公务用车购置和运行费": "three_public_vehicle_total",
    "公务用车购置费": "three_public_vehicle_purchase",
    "公务用车运行费": "three_public_vehicle_operation",
    "公务接待费": "three_public_reception",
    "机关运行经费预算数": "operation_fund",
    "机关运行经费": "operation_fund",

    # 英文字段名
    "totalincome": "budget_revenue_total",
    "fiscalappropriationincome": "budget_revenue_fiscal",
    "businessincome": "budget_revenue_business",
    "operationincome": "budget_revenue_operation",
    "otherincome": "budget_revenue_other",
    "totalexpenditure": "budget_expenditure_total",
    "basicexpenditure": "budget_expenditure_basic",
    "projectexpenditure": "budget_expenditure_project",
    "threepublictotal": "three_public_total",
    "outboundexpense": "three_public_outbound",
    "vehiclepurchaseoperation": "three_public_vehicle_total",
    "vehiclepurchase": "three_public_vehicle_purchase",
    "vehicleoperation": "three_public_vehicle_operation",
    "receptionexpense": "three_public_reception",
    "operationfund": "operation_fund",
}


@dataclass
class KeywordRule:
    """关键词规则：all_of 全部包含，any_of 至少一个，none_of 均不包含"""
    key: str
    all_of: List[str]
    any_of: List[str] = field(default_factory=list)
    none_of: List[str] = field(default_factory=list)

    def test(self, text: str) -> bool:
        if not all(word in text for word in self.all_of):
            return False
        if self.any_of and not any(word in text for word in self.any_of):
            return False
        return not any(word in text for word in self.none_of)


# 顺序即优先级
KEYWORD_RULES = [
    KeywordRule("three_public_total", ["三公", "合计"]),
    KeywordRule("three_public_outbound", ["因公出国"]),
    KeywordRule("three_public_vehicle_total", ["公务用车"], any_of=["购置及运行", "购置和运行"]),
    KeywordRule("three_public_vehicle_purchase", ["公务用车", "购置费"], none_of=["运行"]),
    KeywordRule("three_public_vehicle_operation", ["公务用车", "运行费"]),
    KeywordRule("three_public_reception", ["公务接待"]),
    KeywordRule("operation_fund", ["机关运行经费"]),

    KeywordRule("fiscal_grant_expenditure_capital", ["国有资本经营预算", "财政拨款", "支出"]),
    KeywordRule("fiscal_grant_expenditure_gov_fund", ["政府性基金预算", "财政拨款", "支出"]),
    KeywordRule("fiscal_grant_expenditure_general", ["一般公共预算", "财政拨款", "支出"]),
    KeywordRule("fiscal_grant_expenditure_total", ["财政拨款", "支出", "合计"]),
    KeywordRule("fiscal_grant_revenue_total", ["财政拨款", "收入", "合计"]),

    KeywordRule("budget_expenditure_project", ["项目支出"]),
    KeywordRule("budget_expenditure_basic", ["基本支出"]),
    KeywordRule("budget_expenditure_total", ["支出"], any_of=["总计", "合计", "本年支出"]),

    KeywordRule("budget_revenue_fiscal", ["财政拨款收入"]),
    KeywordRule("budget_revenue_business", ["事业收入"]),
    KeywordRule("budget_revenue_operation", ["经营收入"]),
    KeywordRule("budget_revenue_other", ["其他收入"]),
    KeywordRule("budget_revenue_total", ["收入"], any_of=["总计", "合计", "本年收入"]),
]

MATCH_EXACT = "exact"
MATCH_KEYWORD = "keyword"
MATCH_FUZZY = "fuzzy"


@dataclass
class LabelMatch:
    """标签匹配结果"""
    key: str
    method: str
    score: float = 100.0


class FactLabelMatcher:
    """档案标签匹配器"""

    def __init__(self, fuzzy_threshold: float = 88.0):
        self.fuzzy_threshold = fuzzy_threshold
        self._compile_patterns()

    def _compile_patterns(self):
        """编译常用正则表达式"""
        self.quote_pattern = re.compile(r"[“”\"'`]")
        self.bracket_pattern = re.compile(r"[（(].*?[)）]")
        self.punct_pattern = re.compile(r"[,:;，。；：、]")
        self.space_pattern = re.compile(r"\s+")
        self.unit_pattern = re.compile(r"万元|万|元")
        # 标签内嵌 4 位以上数字（如“九、住房保障支出 9,364,732”）
        self.noise_pattern = re.compile(r"\d{4,}")

    def normalize_label(self, label) -> str:
        """小写、去引号、去括号片段、去标点与空白、去单位词"""
        text = str(label or "").lower().strip()
        text = self.quote_pattern.sub("", text)
        text = self.bracket_pattern.sub("", text)
        text = self.punct_pattern.sub("", text)
        text = self.space_pattern.sub("", text)
        return self.unit_pattern.sub("", text)

    def is_noise_label(self, label) -> bool:
        """携带金额的标签视为噪声"""
        return bool(self.noise_pattern.search(str(label or "").replace(",", "").replace("，", "")))

    def match(self, label) -> Optional[LabelMatch]:
        """
        标签匹配

        Returns:
            LabelMatch 或 None（无法识别 / 噪声标签）
        """
        if self.is_noise_label(label):
            return None

        normalized = self.normalize_label(label)
        if not normalized:
            return None

        if normalized in EXACT_ALIAS_MAP:
            return LabelMatch(EXACT_ALIAS_MAP[normalized], MATCH_EXACT)

        for rule in KEYWORD_RULES:
            if rule.test(normalized):
                return LabelMatch(rule.key, MATCH_KEYWORD)

        best = self._fuzzy_lookup(normalized)
        if best is not None:
            alias, score = best
            logger.debug(f"标签模糊匹配: {label!r} -> {alias} ({score:.1f})")
            return LabelMatch(EXACT_ALIAS_MAP[alias], MATCH_FUZZY, score)
        return None

    def _fuzzy_lookup(self, normalized: str) -> Optional[Tuple[str, float]]:
        result = process.extractOne(
            normalized,
            list(EXACT_ALIAS_MAP.keys()),
            scorer=fuzz.ratio,
            score_cutoff=self.fuzzy_threshold,
        )
        if result is None:
            return None
        alias, score, _ = result
        return alias, score

    def resolve(self, label) -> Optional[str]:
        found = self.match(label)
        return found.key if found else None


# 全局匹配器实例
_matcher_instance = None


def get_fact_matcher() -> FactLabelMatcher:
    """获取全局匹配器实例（阈值取自配置 archive.fuzzy_label_threshold）"""
    global _matcher_instance
    if _matcher_instance is None:
        from config.settings import get_settings

        _matcher_instance = FactLabelMatcher(get_settings().to_archive_config().fuzzy_label_threshold)
    return _matcher_instance


def resolve_history_actual_key(label) -> Optional[str]:
    """便捷函数：标签 → 事实键"""
    return get_fact_matcher().resolve(label)
