"""
锚点定位
按行优先扫描工作表，精确匹配去空白后的单元格文本，支持第N次/最后一次出现。
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from openpyxl.cell.rich_text import CellRichText

from engine.number_normalizer import normalize_cell_text
from engine.workbook import CellRecord, SheetGrid

logger = logging.getLogger(__name__)

FIRST_OCCURRENCE = 1
LAST_OCCURRENCE = -1


def primitive_value(record: CellRecord):
    """解包单元格取值（公式结果 / 富文本 / 纯文本）"""
    value = record.value
    if isinstance(value, CellRichText):
        return str(value)
    return value


def find_cell_by_text(
    sheet: SheetGrid, target_text: str, occurrence: int = FIRST_OCCURRENCE
) -> Optional[CellRecord]:
    """
    查找文本等于 target_text 的单元格

    Args:
        sheet: 工作表
        target_text: 目标标签
        occurrence: 1 为首次，N 为第 N 次，-1 为最后一次

    Returns:
        匹配的单元格，未找到返回 None（不是错误）
    """
    target = normalize_cell_text(target_text)
    if not target:
        return None

    found = None
    match_count = 0
    for record in sheet.iter_cells():
        if normalize_cell_text(primitive_value(record)) != target:
            continue
        match_count += 1
        if occurrence == LAST_OCCURRENCE:
            found = record
        elif match_count == occurrence:
            return record
    return found


def find_first_label(
    sheet: SheetGrid, labels: Sequence[str], occurrence: int = FIRST_OCCURRENCE
) -> Tuple[Optional[CellRecord], Optional[str]]:
    """依次尝试主标签与别名，返回 (单元格, 命中的标签)"""
    for label in labels:
        if not label:
            continue
        record = find_cell_by_text(sheet, label, occurrence)
        if record is not None:
            return record, label
    return None, None


@dataclass(frozen=True)
class AnchorIntersection:
    """行锚点 × 列锚点交叉定位结果"""
    row_anchor: Optional[CellRecord]
    col_anchor: Optional[CellRecord]
    row_label: Optional[str] = None
    col_label: Optional[str] = None
    row_offset: int = 0
    col_offset: int = 0

    @property
    def resolved(self) -> bool:
        return self.row_anchor is not None and self.col_anchor is not None

    @property
    def target(self) -> Optional[Tuple[int, int]]:
        if not self.resolved:
            return None
        return (
            self.row_anchor.row + self.row_offset,
            self.col_anchor.column + self.col_offset,
        )


def resolve_intersection(
    sheet: SheetGrid,
    row_labels: Sequence[str],
    col_labels: Sequence[str],
    row_index: int = FIRST_OCCURRENCE,
    col_index: int = FIRST_OCCURRENCE,
    row_offset: int = 0,
    col_offset: int = 0,
) -> AnchorIntersection:
    """行、列锚点各自独立解析（各带别名与序号），再计算目标坐标"""
    row_anchor, row_label = find_first_label(sheet, row_labels, row_index)
    col_anchor, col_label = find_first_label(sheet, col_labels, col_index)
    if row_anchor is None or col_anchor is None:
        logger.debug(
            f"锚点未解析: sheet={sheet.name} row={list(row_labels)} col={list(col_labels)}"
        )
    return AnchorIntersection(
        row_anchor=row_anchor,
        col_anchor=col_anchor,
        row_label=row_label,
        col_label=col_label,
        row_offset=row_offset,
        col_offset=col_offset,
    )
