"""
公式重算
仅识别 SUM(参数/区域) 与 A+B / A-B 链式加减，纠正缓存值陈旧或为 0 的公式单元格。
公式之间的引用以显式依赖图求值，环路中的单元格跳过（保留缓存值）。
"""

import logging
import math
import re
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any, Dict, List, Optional, Tuple

from openpyxl.utils.cell import column_index_from_string, coordinate_from_string, get_column_letter

from engine.workbook import CellRecord, SheetGrid

logger = logging.getLogger(__name__)

CELL_KEY_PATTERN = re.compile(r"^[A-Z]{1,3}[0-9]+$")
COLUMN_KEY_PATTERN = re.compile(r"^[A-Z]{1,3}$")
ROW_KEY_PATTERN = re.compile(r"^[0-9]+$")
NUMERIC_PATTERN = re.compile(r"^[-+]?\d+(?:\.\d+)?$")
SUM_HEAD_PATTERN = re.compile(r"^SUM\s*\(", re.IGNORECASE)
ADD_SUB_EXPR_PATTERN = re.compile(r"^[A-Z0-9$.]+(?:\s*[+-]\s*[A-Z0-9$.]+)+$", re.IGNORECASE)

DEFAULT_DECIMALS = 2

Term = Tuple[int, Any]  # (符号, 数值 或 单元格地址)


@dataclass
class ParsedFormula:
    """可求值的公式：带符号的项列表"""
    address: str
    terms: List[Term] = field(default_factory=list)

    @property
    def references(self) -> List[str]:
        return [operand for _, operand in self.terms if isinstance(operand, str)]


@dataclass
class RecalcSummary:
    """单张工作表重算结果"""
    sheet_name: str
    recalculated: List[str] = field(default_factory=list)
    unsupported: List[str] = field(default_factory=list)
    cyclic: List[str] = field(default_factory=list)
    preserved: List[str] = field(default_factory=list)  # 缓存值为文本，不覆盖


def parse_numeric_like(value: Any) -> float:
    """操作数取值：无法识别一律按 0"""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        cleaned = value.replace(",", "").strip()
        if not cleaned:
            return 0.0
        try:
            number = float(cleaned)
        except ValueError:
            return 0.0
        return number if math.isfinite(number) else 0.0
    return 0.0


def is_text_value(value: Any) -> bool:
    """非空且不可解析为数值的文本"""
    if not isinstance(value, str):
        return False
    cleaned = value.replace(",", "").strip()
    if not cleaned:
        return False
    try:
        float(cleaned)
    except ValueError:
        return True
    return False


def split_args(args_text: str) -> List[str]:
    """按顶层逗号/分号切分 SUM 参数"""
    result = []
    current = ""
    depth = 0
    for ch in args_text:
        if ch == "(":
            depth += 1
        if ch == ")":
            depth = max(depth - 1, 0)
        if ch in ",;" and depth == 0:
            result.append(current.strip())
            current = ""
            continue
        current += ch
    if current.strip():
        result.append(current.strip())
    return result


def _split_address(address: str) -> Tuple[int, int]:
    column_letter, row = coordinate_from_string(address)
    return row, column_index_from_string(column_letter)


def resolve_ref_token(token: str, formula_address: str) -> Optional[str]:
    """引用解析：去 $；仅列号取公式所在行，仅行号取公式所在列"""
    normalized = str(token or "").replace("$", "").strip().upper()
    if not normalized:
        return None
    if CELL_KEY_PATTERN.match(normalized):
        return normalized
    row, column = _split_address(formula_address)
    if COLUMN_KEY_PATTERN.match(normalized):
        return f"{normalized}{row}"
    if ROW_KEY_PATTERN.match(normalized):
        return f"{get_column_letter(column)}{normalized}"
    return None


def _expand_range(start: str, end: str) -> List[str]:
    start_row, start_col = _split_address(start)
    end_row, end_col = _split_address(end)
    addresses = []
    for row in range(min(start_row, end_row), max(start_row, end_row) + 1):
        for col in range(min(start_col, end_col), max(start_col, end_col) + 1):
            addresses.append(f"{get_column_letter(col)}{row}")
    return addresses


def _sum_body(body: str) -> Optional[str]:
    """SUM( ... ) 整体包裹时返回括号内参数文本；括号不配对或右括号后仍有内容返回 None"""
    head = SUM_HEAD_PATTERN.match(body)
    if not head:
        return None
    depth = 1
    for index in range(head.end(), len(body)):
        ch = body[index]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return body[head.end():index] if index == len(body) - 1 else None
    return None


def _sum_terms(args_text: str, address: str) -> Optional[List[Term]]:
    """SUM 参数仅允许本表单元格、区域与常数，任一参数无法解析即视为不支持"""
    terms: List[Term] = []
    for arg in split_args(args_text):
        if not arg:
            continue
        if ":" in arg:
            start_token, end_token = arg.split(":", 1)
            start = resolve_ref_token(start_token, address)
            end = resolve_ref_token(end_token, address)
            if not start or not end:
                return None
            terms.extend((1, ref) for ref in _expand_range(start, end))
            continue
        if NUMERIC_PATTERN.match(arg):
            terms.append((1, float(arg)))
            continue
        ref = resolve_ref_token(arg, address)
        if not ref:
            return None
        terms.append((1, ref))
    return terms or None


def parse_formula(formula: str, address: str) -> Optional[ParsedFormula]:
    """解析受支持的公式形态，不支持返回 None"""
    body = str(formula or "").strip().lstrip("=").strip()
    if not body:
        return None

    parsed = ParsedFormula(address=address)

    if SUM_HEAD_PATTERN.match(body):
        args_text = _sum_body(body)
        terms = _sum_terms(args_text, address) if args_text is not None else None
        if terms is None:
            return None
        parsed.terms = terms
        return parsed

    if NUMERIC_PATTERN.match(body):
        parsed.terms.append((1, float(body)))
        return parsed

    direct_ref = resolve_ref_token(body, address)
    if direct_ref:
        parsed.terms.append((1, direct_ref))
        return parsed

    if ADD_SUB_EXPR_PATTERN.match(body):
        sign = 1
        for token in re.split(r"([+-])", re.sub(r"\s+", "", body)):
            if not token:
                continue
            if token in "+-":
                sign = -1 if token == "-" else 1
                continue
            if NUMERIC_PATTERN.match(token):
                parsed.terms.append((sign, float(token)))
                continue
            ref = resolve_ref_token(token, address)
            if not ref:
                return None
            parsed.terms.append((sign, ref))
        return parsed

    return None


def format_decimals(number_format: Optional[str]) -> Optional[int]:
    """显示格式隐含的小数位，General/空返回 None"""
    if not number_format or number_format.lower() == "general":
        return None
    section = number_format.split(";")[0]
    section = re.sub(r'"[^"]*"|\[[^\]]*\]', "", section)
    if "." not in section:
        return 0 if re.search(r"[0#]", section) else None
    decimals = re.match(r"[0#]*", section.split(".", 1)[1])
    return len(decimals.group(0)) if decimals else 0


def format_display(value: float, number_format: Optional[str]) -> str:
    """按显示格式输出文本（千分位/小数位/百分比）"""
    decimals = format_decimals(number_format)
    if decimals is None:
        if float(value).is_integer():
            return str(int(value))
        return repr(round(value, 10))

    section = (number_format or "").split(";")[0]
    percent = "%" in section
    shown = value * 100 if percent else value
    pattern = f"{{:{',' if ',' in section else ''}.{decimals}f}}"
    text = pattern.format(shown)
    return f"{text}%" if percent else text


def normalize_computed(value: float, number_format: Optional[str]) -> float:
    """去除浮点误差：按显示格式小数位取整，至少保留两位"""
    if not math.isfinite(value):
        return 0.0
    decimals = max(format_decimals(number_format) or 0, DEFAULT_DECIMALS)
    rounded = round(value, decimals)
    return 0.0 if abs(rounded) < 1e-12 else rounded


class FormulaRecalculator:
    """单张工作表的公式重算器"""

    def __init__(self, sheet: SheetGrid):
        self.sheet = sheet
        self.values: Dict[str, float] = {}

    def _cell(self, address: str) -> CellRecord:
        row, column = _split_address(address)
        return self.sheet.get(row, column)

    def _operand_value(self, address: str) -> float:
        if address in self.values:
            return self.values[address]
        return parse_numeric_like(self._cell(address).value)

    def recalculate(self) -> RecalcSummary:
        summary = RecalcSummary(sheet_name=self.sheet.name)
        formula_cells = {record.address: record for record in self.sheet.formula_cells()}
        if not formula_cells:
            return summary

        parsed: Dict[str, ParsedFormula] = {}
        for address, record in formula_cells.items():
            formula = parse_formula(record.formula, address)
            if formula is None:
                summary.unsupported.append(address)
                continue
            parsed[address] = formula

        graph = {
            address: {ref for ref in formula.references if ref in parsed}
            for address, formula in parsed.items()
        }
        order = self._resolve_order(graph, summary)

        for address in order:
            record = formula_cells[address]
            if is_text_value(record.value):
                summary.preserved.append(address)
                continue
            total = 0.0
            for sign, operand in parsed[address].terms:
                value = self._operand_value(operand) if isinstance(operand, str) else operand
                total += sign * value
            value = normalize_computed(total, record.number_format)
            record.value = value
            record.display = format_display(value, record.number_format)
            self.values[address] = value
            summary.recalculated.append(address)

        if summary.cyclic:
            logger.warning(f"公式存在循环引用，已跳过: sheet={self.sheet.name} cells={summary.cyclic}")
        return summary

    def _resolve_order(self, graph: Dict[str, set], summary: RecalcSummary) -> List[str]:
        """拓扑排序；环路中的单元格移出依赖图并保留缓存值"""
        graph = {node: set(deps) for node, deps in graph.items()}
        while True:
            try:
                return list(TopologicalSorter(graph).static_order())
            except CycleError as error:
                cycle = set(error.args[1])
                summary.cyclic.extend(sorted(cycle - set(summary.cyclic)))
                for node in cycle:
                    graph.pop(node, None)
                for deps in graph.values():
                    deps -= cycle


def recalculate_sheet(sheet: SheetGrid) -> RecalcSummary:
    """便捷函数：重算单张工作表"""
    return FormulaRecalculator(sheet).recalculate()
