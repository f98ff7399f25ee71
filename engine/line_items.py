"""
功能分类科目明细抽取
解析 类/款/项 三级编码表，父级名称行可省略，叶子行输出金额、名称与编码。
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from engine.anchor_resolver import primitive_value
from engine.number_normalizer import normalize_cell_text, normalize_number
from engine.workbook import SheetGrid, WorkbookGrid
from schemas.facts import Fact, TextFact

logger = logging.getLogger(__name__)

# 部门口径优先
LINE_ITEM_SHEETS = (
    "3.21部门一般公共预算支出功能分类预算表",
    "2.20单位一般公共预算拨款表",
)

HEADER_MARKER = "功能分类科目编码"
DEFAULT_HEADER_ROW = 7

DIGITS_PATTERN = re.compile(r"^\d+$")


@dataclass
class ColumnLayout:
    """列位置（从 1 开始）"""
    class_code: int = 1
    type_code: int = 2
    item_code: int = 3
    name: int = 4
    total: int = 5
    basic: int = 6
    project: int = 7


@dataclass
class LineItemResult:
    sheet_name: Optional[str] = None
    facts: List[Fact] = field(default_factory=list)
    texts: List[TextFact] = field(default_factory=list)


def pick_line_item_sheet(workbook: WorkbookGrid) -> Optional[SheetGrid]:
    for name in LINE_ITEM_SHEETS:
        sheet = workbook.get_sheet(name)
        if sheet is not None:
            return sheet
    return None


def _cell_text(sheet: SheetGrid, row: int, column: int) -> str:
    return normalize_cell_text(primitive_value(sheet.get(row, column)))


def _cell_number(sheet: SheetGrid, row: int, column: int) -> Optional[float]:
    record = sheet.get(row, column)
    return normalize_number(primitive_value(record), record.number_format)


def find_header_row(sheet: SheetGrid) -> int:
    """首个包含“功能分类科目编码”的行，找不到时默认第 7 行"""
    for record in sheet.iter_cells():
        if HEADER_MARKER in normalize_cell_text(primitive_value(record)):
            return record.row
    return DEFAULT_HEADER_ROW


def detect_layout(sheet: SheetGrid, header_row: int) -> ColumnLayout:
    """按表头文字覆盖默认列位置"""
    layout = ColumnLayout()
    for column in range(1, sheet.max_column + 1):
        text = _cell_text(sheet, header_row, column)
        if not text:
            continue
        if text == "类":
            layout.class_code = column
        if text == "款":
            layout.type_code = column
        if text == "项":
            layout.item_code = column
        if "科目名称" in text:
            layout.name = column
        if text == "合计":
            layout.total = column
        if "基本支出" in text:
            layout.basic = column
        if "项目支出" in text:
            layout.project = column
    return layout


def _row_amount(sheet: SheetGrid, row: int, layout: ColumnLayout) -> float:
    """合计列优先，合计为空或 0 时取 基本支出 + 项目支出"""
    amount = _cell_number(sheet, row, layout.total)
    if not amount:
        basic = _cell_number(sheet, row, layout.basic) or 0
        project = _cell_number(sheet, row, layout.project) or 0
        amount = basic + project
    return amount


def extract_line_items(workbook: WorkbookGrid) -> LineItemResult:
    """
    抽取功能分类科目明细

    Returns:
        LineItemResult: amount_line_item_<code> 数值事实，
        name_/code_line_item_<code>、name_class_<类>、name_type_<类款> 文本事实
    """
    sheet = pick_line_item_sheet(workbook)
    if sheet is None:
        return LineItemResult()

    result = LineItemResult(sheet_name=sheet.name)
    header_row = find_header_row(sheet)
    layout = detect_layout(sheet, header_row)

    class_names: Dict[str, str] = {}
    type_names: Dict[str, str] = {}
    skipped: List[Tuple[int, str]] = []

    for row in range(header_row + 1, sheet.row_count + 1):
        class_code = _cell_text(sheet, row, layout.class_code)
        type_code = _cell_text(sheet, row, layout.type_code)
        item_code = _cell_text(sheet, row, layout.item_code)
        name = _cell_text(sheet, row, layout.name)

        if not class_code:
            continue

        if not type_code and not item_code:
            if name and class_code not in class_names:
                class_names[class_code] = name
            continue

        if type_code and not item_code:
            type_key = f"{class_code}{type_code}"
            if name and type_key not in type_names:
                type_names[type_key] = name
            continue

        if not item_code:
            continue

        code = "".join(part for part in (class_code, type_code, item_code) if part)
        if not DIGITS_PATTERN.match(code):
            skipped.append((row, code))
            continue

        amount = _row_amount(sheet, row, layout)
        if not amount:
            continue

        item_key = f"line_item_{code}"
        result.facts.append(Fact(key=f"amount_{item_key}", value_numeric=amount))
        result.texts.append(TextFact(key=f"name_{item_key}", value_text=name))
        result.texts.append(TextFact(key=f"code_{item_key}", value_text=code))

    for code, name in class_names.items():
        result.texts.append(TextFact(key=f"name_class_{code}", value_text=name))
    for code, name in type_names.items():
        result.texts.append(TextFact(key=f"name_type_{code}", value_text=name))

    if skipped:
        logger.debug(f"科目编码非纯数字，已跳过: sheet={sheet.name} rows={skipped}")
    logger.info(
        f"科目明细抽取完成: sheet={sheet.name} items={len(result.facts)} "
        f"classes={len(class_names)} types={len(type_names)}"
    )
    return result
