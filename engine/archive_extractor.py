"""
历史档案表格事实自动抽取
对 PDF 捕获的松散二维表快照做标记词识别、单位推断与定位读数，输出以万元计的事实。
结果置信度低于工作簿解析，仅作为人工录入的交叉核对来源。
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from schemas.facts import ArchiveConfig, ArchiveTable

logger = logging.getLogger(__name__)

# 标记词
UNIT = "单位"
YUAN = "元"
QIANYUAN = "千元"
WANYUAN = "万元"
THIS_YEAR_REVENUE = "本年收入"
THIS_YEAR_EXPENDITURE = "本年支出"
REVENUE_TOTAL = "收入总计"
EXPENDITURE_TOTAL = "支出总计"
FISCAL_REVENUE = "财政拨款收入"
BUSINESS_REVENUE = "事业收入"
OPERATION_REVENUE = "事业单位经营收入"
OTHER_REVENUE = "其他收入"
FISCAL_EXPENDITURE = "财政拨款支出"
THREE_PUBLIC = "三公"
OUTBOUND = "因公出国"
RECEPTION = "公务接待费"
VEHICLE = "公务用车"
OPERATION_FUND = "机关运行经费"
VEHICLE_SUB_HEADERS = ("小计", "购置费", "运行费")

# 表类别
BUDGET_SUMMARY = "budget_summary"
INCOME_SUMMARY = "income_summary"
EXPENDITURE_SUMMARY = "expenditure_summary"
FISCAL_GRANT_SUMMARY = "fiscal_grant_summary"
THREE_PUBLIC_TABLE = "three_public"

# 未声明单位时各类表的惯用单位
TABLE_DEFAULT_UNIT = {
    BUDGET_SUMMARY: "yuan",
    INCOME_SUMMARY: "yuan",
    EXPENDITURE_SUMMARY: "yuan",
    FISCAL_GRANT_SUMMARY: "yuan",
    "general_budget": "yuan",
    "gov_fund_budget": "yuan",
    "capital_budget": "yuan",
    "basic_expenditure": "yuan",
    THREE_PUBLIC_TABLE: "wanyuan",
}

UNIT_TO_SCALE_WANYUAN = {
    "yuan": 1 / 10000,
    "qianyuan": 0.1,
    "wanyuan": 1.0,
}

NUMBER_PATTERN = re.compile(r"^[-+]?\d+(\.\d+)?$")
PAREN_NEGATIVE_PATTERN = re.compile(r"^\((.+)\)$")
CLASS_CODE_PATTERN = re.compile(r"^\d{3}$")
DIGITS_PATTERN = re.compile(r"^\d+$")
COMPACT_PATTERN = re.compile(r"[\s　]+")

Rows = List[List[Any]]


@dataclass(frozen=True)
class TableProfile:
    """表类别的标记词画像"""
    category: str
    markers: Tuple[str, ...]
    required_markers: Tuple[str, ...] = ()
    min_score: int = 2


TABLE_PROFILES = (
    TableProfile(BUDGET_SUMMARY, (THIS_YEAR_REVENUE, THIS_YEAR_EXPENDITURE, REVENUE_TOTAL, EXPENDITURE_TOTAL)),
    TableProfile(INCOME_SUMMARY, (THIS_YEAR_REVENUE, FISCAL_REVENUE, OTHER_REVENUE)),
    TableProfile(EXPENDITURE_SUMMARY, (THIS_YEAR_EXPENDITURE, EXPENDITURE_TOTAL)),
    TableProfile(FISCAL_GRANT_SUMMARY, (FISCAL_REVENUE, FISCAL_EXPENDITURE, EXPENDITURE_TOTAL)),
    TableProfile(
        THREE_PUBLIC_TABLE,
        (THREE_PUBLIC, OUTBOUND, RECEPTION, VEHICLE),
        required_markers=(OUTBOUND, RECEPTION),
    ),
)

THREE_PUBLIC_KEYS = (
    "three_public_total",
    "three_public_outbound",
    "three_public_reception",
    "three_public_vehicle_total",
    "three_public_vehicle_purchase",
    "three_public_vehicle_operation",
    "operation_fund",
)

REVENUE_PART_KEYS = (
    "budget_revenue_fiscal",
    "budget_revenue_business",
    "budget_revenue_operation",
    "budget_revenue_other",
)


def parse_number(value: Any) -> Optional[float]:
    """表格数值：去千分位与空白，括号为负，'-' 与非数字返回 None"""
    if value is None or isinstance(value, bool):
        return None
    raw = re.sub(r"\s+", "", str(value).replace(",", "")).strip()
    if not raw or raw == "-":
        return None

    paren = PAREN_NEGATIVE_PATTERN.match(raw)
    normalized = f"-{paren.group(1)}" if paren else raw
    if not NUMBER_PATTERN.match(normalized):
        return None
    number = float(normalized)
    return number if math.isfinite(number) else None


def compact_text(value: Any) -> str:
    return COMPACT_PATTERN.sub("", str(value or "")).strip()


def row_to_text(row: Sequence[Any]) -> str:
    if not isinstance(row, (list, tuple)):
        return ""
    return "".join(compact_text(cell) for cell in row)


def rows_to_text(rows: Rows, max_rows: int = 12) -> str:
    return "".join(row_to_text(row) for row in (rows or [])[:max_rows])


def find_row(rows: Rows, include: Union[str, Sequence[str]], exclude: Sequence[str] = ()) -> Optional[List[Any]]:
    """首个同时包含全部 include 且不含任何 exclude 的行"""
    include = [include] if isinstance(include, str) else list(include)
    for row in rows or []:
        text = row_to_text(row)
        if not text:
            continue
        if all(token in text for token in include) and not any(token in text for token in exclude):
            return row
    return None


def read_value(row: Optional[Sequence[Any]], index: int, scale: float, fallback_zero: bool = False) -> Optional[float]:
    """读取行内第 index 列；行存在但无数值时 fallback_zero 返回 0"""
    if row is None:
        return None
    parsed = parse_number(row[index]) if index < len(row) else None
    if parsed is None:
        return 0.0 if fallback_zero else None
    return parsed * scale


def is_top_level_category_row(row: Sequence[Any]) -> bool:
    """类级汇总行：首列三位类编码，次列为非数字的科目名称"""
    if not isinstance(row, (list, tuple)) or len(row) < 4:
        return False
    first = compact_text(row[0])
    second = compact_text(row[1])
    if not CLASS_CODE_PATTERN.match(first):
        return False
    if not second:
        return False
    return not DIGITS_PATTERN.match(second)


def sum_by_index(rows: Rows, index: int, scale: float) -> float:
    total = 0.0
    for row in rows:
        parsed = parse_number(row[index]) if index < len(row) else None
        if parsed is not None:
            total += parsed * scale
    return total


def round_wanyuan(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return round(number, 2)


def merge_if_missing(target: Dict[str, float], patch: Dict[str, Optional[float]]) -> None:
    """按键合并：先到先得"""
    for key, value in patch.items():
        if value is None or (isinstance(value, float) and math.isnan(value)):
            continue
        if target.get(key) is None:
            target[key] = value


@dataclass
class ScaleDecision:
    """单位判定结果（scale 为折算到万元的系数）"""
    scale: float
    source: str


class ArchiveFactExtractor:
    """历史档案表格事实抽取器"""

    def __init__(self, config: Optional[ArchiveConfig] = None):
        self.config = config or ArchiveConfig()

    # ------------------------------------------------------------------
    # 单位推断
    # ------------------------------------------------------------------

    def detect_declared_unit(self, rows: Rows) -> Optional[str]:
        """在含“单位”的单元格中查找单位声明"""
        candidates = []
        for row in (rows or [])[: self.config.unit_scan_rows]:
            if not isinstance(row, (list, tuple)):
                continue
            for cell in row:
                text = re.sub(r"\s+", "", str(cell or ""))
                if text and UNIT in text:
                    candidates.append(text)

        if not candidates:
            return None
        merged = "|".join(candidates)
        if WANYUAN in merged:
            return "wanyuan"
        if QIANYUAN in merged:
            return "qianyuan"
        if YUAN in merged:
            return "yuan"
        return None

    def _unit_words_scale(self, rows: Rows) -> Optional[float]:
        text = rows_to_text(rows, 12)
        if not text:
            return None
        if WANYUAN in text:
            return UNIT_TO_SCALE_WANYUAN["wanyuan"]
        if QIANYUAN in text:
            return UNIT_TO_SCALE_WANYUAN["qianyuan"]
        if YUAN in text:
            return UNIT_TO_SCALE_WANYUAN["yuan"]
        return None

    def _magnitude_scale(self, rows: Rows) -> Optional[float]:
        """无单位标注时，大额整数几乎总是“元”"""
        values = [
            abs(parsed)
            for row in (rows or [])[:80]
            if isinstance(row, (list, tuple))
            for parsed in map(parse_number, row)
            if parsed is not None
        ]
        if not values:
            return None
        if max(values) >= self.config.yuan_magnitude_threshold:
            return UNIT_TO_SCALE_WANYUAN["yuan"]
        return UNIT_TO_SCALE_WANYUAN["wanyuan"]

    def detect_scale(self, rows: Rows, category: str) -> ScaleDecision:
        """
        单位判定表（按顺序，首个有结论者生效）：
        单位声明 → 表类别惯用单位 → 前 12 行单位词 → 数值量级 → 默认万元
        """
        decisions: Tuple[Tuple[str, Callable[[], Optional[float]]], ...] = (
            ("declared_unit", lambda: UNIT_TO_SCALE_WANYUAN.get(self.detect_declared_unit(rows))),
            ("table_default", lambda: UNIT_TO_SCALE_WANYUAN.get(TABLE_DEFAULT_UNIT.get(category))),
            ("unit_words", lambda: self._unit_words_scale(rows)),
            ("magnitude", lambda: self._magnitude_scale(rows)),
        )
        for source, decide in decisions:
            scale = decide()
            if scale is not None:
                return ScaleDecision(scale=scale, source=source)
        return ScaleDecision(scale=1.0, source="default")

    # ------------------------------------------------------------------
    # 表定位
    # ------------------------------------------------------------------

    def resolve_table_rows(self, tables: List[ArchiveTable], profile: TableProfile) -> Rows:
        """标记词得分最高的表；无达标者时按 table_key 回退"""
        best_rows: Rows = []
        best_score = 0
        for table in tables:
            rows = table.data_json
            if not rows:
                continue
            text = rows_to_text(rows, self.config.marker_scan_rows)
            if not all(marker in text for marker in profile.required_markers):
                continue
            score = sum(1 for marker in profile.markers if marker in text)
            if score > best_score:
                best_score = score
                best_rows = rows

        if best_score >= profile.min_score:
            return best_rows

        for table in tables:
            if table.table_key == profile.category and table.data_json:
                return table.data_json
        return []

    # ------------------------------------------------------------------
    # 各类表读数
    # ------------------------------------------------------------------

    def extract_budget_summary(self, rows: Rows) -> Dict[str, Optional[float]]:
        scale = self.detect_scale(rows, BUDGET_SUMMARY).scale

        revenue_total_row = find_row(rows, REVENUE_TOTAL)
        expenditure_total_row = find_row(rows, EXPENDITURE_TOTAL)
        fiscal_row = find_row(rows, FISCAL_REVENUE)
        business_row = find_row(rows, [BUSINESS_REVENUE], [OPERATION_REVENUE])
        operation_row = find_row(rows, OPERATION_REVENUE)
        other_row = find_row(rows, OTHER_REVENUE)

        return {
            "budget_revenue_total": read_value(revenue_total_row, 1, scale),
            "budget_revenue_fiscal": read_value(fiscal_row, 1, scale, True),
            "budget_revenue_business": read_value(business_row, 1, scale, True),
            "budget_revenue_operation": read_value(operation_row, 1, scale, True),
            "budget_revenue_other": read_value(other_row, 1, scale, True),
            "budget_expenditure_total": read_value(expenditure_total_row, 3, scale),
        }

    def extract_income_summary(self, rows: Rows) -> Dict[str, Optional[float]]:
        scale = self.detect_scale(rows, INCOME_SUMMARY).scale
        data_rows = [row for row in rows if is_top_level_category_row(row)]
        if not data_rows:
            return {}
        return {
            "budget_revenue_total": sum_by_index(data_rows, 2, scale),
            "budget_revenue_fiscal": sum_by_index(data_rows, 3, scale),
            "budget_revenue_business": sum_by_index(data_rows, 4, scale),
            "budget_revenue_operation": sum_by_index(data_rows, 5, scale),
            "budget_revenue_other": sum_by_index(data_rows, 6, scale),
        }

    def extract_expenditure_summary(self, rows: Rows) -> Dict[str, Optional[float]]:
        scale = self.detect_scale(rows, EXPENDITURE_SUMMARY).scale
        data_rows = [row for row in rows if is_top_level_category_row(row)]
        if not data_rows:
            return {}
        return {
            "budget_expenditure_total": sum_by_index(data_rows, 2, scale),
            "budget_expenditure_basic": sum_by_index(data_rows, 3, scale),
            "budget_expenditure_project": sum_by_index(data_rows, 4, scale),
        }

    def extract_fiscal_grant_summary(self, rows: Rows) -> Dict[str, Optional[float]]:
        scale = self.detect_scale(rows, FISCAL_GRANT_SUMMARY).scale
        total_row = find_row(rows, EXPENDITURE_TOTAL) or find_row(rows, REVENUE_TOTAL)
        return {
            "fiscal_grant_revenue_total": read_value(total_row, 1, scale),
            "fiscal_grant_expenditure_total": read_value(total_row, 3, scale),
            "fiscal_grant_expenditure_general": read_value(total_row, 4, scale, True),
            "fiscal_grant_expenditure_gov_fund": read_value(total_row, 5, scale, True),
            "fiscal_grant_expenditure_capital": read_value(total_row, 6, scale, True),
        }

    def extract_three_public(self, rows: Rows) -> Dict[str, Optional[float]]:
        """
        “三公”经费表：取最后一个含 ≥2 个数值的行

        标准版式 7 列：合计/出国/接待/公务用车小计/购置/运行/机关运行经费（6 列无机关运行经费）；
        稀疏版式 3 列或 2 列按表头标签区分含义。
        """
        scale = self.detect_scale(rows, THREE_PUBLIC_TABLE).scale
        text = rows_to_text(rows, 20)
        has_operation_fund = OPERATION_FUND in text
        has_outbound = OUTBOUND in text
        has_reception = RECEPTION in text
        has_vehicle_sub_headers = any(token in text for token in VEHICLE_SUB_HEADERS)

        data_row = None
        for row in reversed(rows or []):
            if isinstance(row, (list, tuple)) and sum(1 for cell in row if parse_number(cell) is not None) >= 2:
                data_row = row
                break
        if data_row is None:
            return {}

        nums = [parsed * scale for parsed in map(parse_number, data_row) if parsed is not None]
        result: Dict[str, Optional[float]] = dict.fromkeys(THREE_PUBLIC_KEYS)
        result["three_public_total"] = nums[0]

        if len(nums) >= 6:
            for key, value in zip(THREE_PUBLIC_KEYS[1:6], nums[1:6]):
                result[key] = value
            if len(nums) >= 7:
                result["operation_fund"] = nums[6]
            return result

        if len(nums) == 3:
            if has_outbound and has_reception:
                result["three_public_reception"] = nums[1]
                result["three_public_outbound"] = 0.0
            elif has_reception:
                result["three_public_reception"] = nums[1]
            elif has_outbound:
                result["three_public_outbound"] = nums[1]

            operation_fund_by_magnitude = abs(nums[2]) > max(abs(nums[0]), abs(nums[1])) * 5
            if has_operation_fund or (has_vehicle_sub_headers and operation_fund_by_magnitude):
                result["operation_fund"] = nums[2]
            return result

        if len(nums) == 2:
            if has_operation_fund:
                result["operation_fund"] = nums[1]
            elif has_reception:
                result["three_public_reception"] = nums[1]
            elif has_outbound:
                result["three_public_outbound"] = nums[1]
        return result

    # ------------------------------------------------------------------
    # 汇总
    # ------------------------------------------------------------------

    def extract(self, tables: Iterable[Union[ArchiveTable, Dict[str, Any]]]) -> Dict[str, float]:
        """
        抽取事实

        Args:
            tables: [{table_key, data_json}]，data_json 可为 JSON 字符串

        Returns:
            {事实键: 万元数值（两位小数）}
        """
        tables = [
            table if isinstance(table, ArchiveTable) else ArchiveTable.model_validate(table)
            for table in tables or []
        ]

        extractors = {
            BUDGET_SUMMARY: self.extract_budget_summary,
            INCOME_SUMMARY: self.extract_income_summary,
            EXPENDITURE_SUMMARY: self.extract_expenditure_summary,
            FISCAL_GRANT_SUMMARY: self.extract_fiscal_grant_summary,
            THREE_PUBLIC_TABLE: self.extract_three_public,
        }

        merged: Dict[str, float] = {}
        for profile in TABLE_PROFILES:
            rows = self.resolve_table_rows(tables, profile)
            if not rows:
                continue
            merge_if_missing(merged, extractors[profile.category](rows))

        normalized = {}
        for key, value in merged.items():
            fixed = round_wanyuan(value)
            if fixed is not None:
                normalized[key] = fixed

        self._derive_totals(normalized)
        logger.info(f"档案事实抽取完成: tables={len(tables)} facts={len(normalized)}")
        return normalized

    def _derive_totals(self, facts: Dict[str, float]) -> None:
        """缺失合计项的推导"""
        if facts.get("budget_revenue_total") is None:
            parts = [facts[key] for key in REVENUE_PART_KEYS if facts.get(key) is not None]
            if parts:
                facts["budget_revenue_total"] = round_wanyuan(sum(parts))

        if facts.get("fiscal_grant_revenue_total") is None and facts.get("budget_revenue_fiscal") is not None:
            facts["fiscal_grant_revenue_total"] = facts["budget_revenue_fiscal"]

        if facts.get("fiscal_grant_expenditure_total") is None and facts.get("budget_expenditure_total") is not None:
            facts["fiscal_grant_expenditure_total"] = facts["budget_expenditure_total"]

        if (facts.get("fiscal_grant_expenditure_general") is None
                and facts.get("fiscal_grant_expenditure_total") is not None):
            facts["fiscal_grant_expenditure_general"] = facts["fiscal_grant_expenditure_total"]


def extract_history_facts(
    tables: Iterable[Union[ArchiveTable, Dict[str, Any]]],
    config: Optional[ArchiveConfig] = None,
) -> Dict[str, float]:
    """便捷函数：从表格快照抽取事实"""
    return ArchiveFactExtractor(config).extract(tables)
