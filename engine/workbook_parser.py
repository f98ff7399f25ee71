"""
预算工作簿解析器
按映射表逐条执行规则：定位工作表 → 行/列锚点交叉 → 数值规范化 → 求和回退 → 证据记录。
同一 key 的多个规则变体按顺序尝试，首个成功者生效（文本规则除外）。
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from engine.anchor_resolver import find_cell_by_text, primitive_value, resolve_intersection
from engine.budget_mapping import BudgetMapping, get_mapping
from engine.errors import ExtractionError, ExtractionErrorType
from engine.formula_recalculator import recalculate_sheet
from engine.line_items import extract_line_items
from engine.number_normalizer import get_value_type, normalize_cell_text, normalize_number
from engine.workbook import CellRecord, SheetGrid, WorkbookGrid, WorkbookSource, load_workbook_grid
from schemas.facts import (
    Caliber,
    Fact,
    NumericRule,
    ParsedCell,
    ParseResult,
    TextFact,
    TextRule,
    TextStrategy,
)
from services.structured_logging import (
    LoggingContextManager,
    ProcessingStage,
    get_business_logger,
)

logger = logging.getLogger(__name__)


@dataclass
class ParseState:
    """一次解析过程的累加器"""
    facts: Dict[str, Fact] = field(default_factory=dict)
    texts: List[TextFact] = field(default_factory=list)
    parsed_cells: Dict[str, ParsedCell] = field(default_factory=dict)

    def collect(self, sheet_name: str, record: CellRecord, anchor: str) -> ParsedCell:
        """登记证据单元格，同一 sheet+address 只记录一次"""
        cell_key = f"{sheet_name}::{record.address}"
        if cell_key in self.parsed_cells:
            return self.parsed_cells[cell_key]

        value = primitive_value(record)
        entry = ParsedCell(
            sheet_name=sheet_name,
            cell_address=record.address,
            anchor=anchor,
            raw_value=None if value is None else str(value),
            normalized_value=normalize_cell_text(value),
            value_type=get_value_type(value),
            number_format=record.number_format,
        )
        self.parsed_cells[cell_key] = entry
        return entry

    def to_result(self) -> ParseResult:
        return ParseResult(
            parsed_cells=list(self.parsed_cells.values()),
            facts=list(self.facts.values()),
            texts=list(self.texts),
        )


def extract_sheet_text(sheet: SheetGrid, strategy: TextStrategy) -> str:
    """叙述性工作表文本：all_content 拼接全部（多行时跳过首行标题），first_cell 取首个非空"""
    if strategy == TextStrategy.FIRST_CELL:
        for record in sheet.iter_cells():
            text = normalize_cell_text(primitive_value(record))
            if text:
                return text
        return ""

    skip_header = sheet.row_count > 1
    lines = []
    for record in sheet.iter_cells():
        if skip_header and record.row == 1:
            continue
        text = normalize_cell_text(primitive_value(record))
        if text:
            lines.append(text)
    return "\n".join(lines)


def _cell_number(record: CellRecord) -> Optional[float]:
    return normalize_number(primitive_value(record), record.number_format)


class BudgetWorkbookParser:
    """映射表解释器"""

    def __init__(self, mapping: BudgetMapping):
        self.mapping = mapping

    def resolve_sheet(self, workbook: WorkbookGrid, rule: Union[NumericRule, TextRule]) -> Optional[SheetGrid]:
        """先按主名称，再按别名顺序查找工作表"""
        for name in rule.sheet_candidates:
            sheet = workbook.get_sheet(name)
            if sheet is not None:
                return sheet
        return None

    def parse(self, workbook: WorkbookGrid) -> ParseResult:
        state = ParseState()
        for rule in self.mapping.rules:
            self.apply_rule(rule, workbook, state)
        return state.to_result()

    def apply_rule(self, rule: Union[NumericRule, TextRule], workbook: WorkbookGrid, state: ParseState) -> None:
        if rule.key in state.facts and not rule.is_text:
            return

        sheet = self.resolve_sheet(workbook, rule)
        if sheet is None:
            if rule.is_text or rule.optional:
                return
            raise ExtractionError(
                error_type=ExtractionErrorType.MISSING_SHEET,
                message=(
                    f'找不到必须的工作表: "{rule.sheet}" (或其别名)。\n\n'
                    f'您的Excel文件中包含的工作表: {", ".join(workbook.sheet_names)}'
                ),
                rule_key=rule.key,
                details={
                    "evidence": {
                        "sheet_name": rule.sheet,
                        "available_sheets": workbook.sheet_names,
                    }
                },
            )

        if rule.is_text:
            text = extract_sheet_text(sheet, rule.strategy)
            if text:
                state.texts.append(TextFact(key=rule.key, value_text=text))
            return

        fact = self.extract_numeric(rule, sheet, state)
        if fact is not None:
            state.facts[rule.key] = fact

    def extract_numeric(self, rule: NumericRule, sheet: SheetGrid, state: ParseState) -> Optional[Fact]:
        intersection = resolve_intersection(
            sheet,
            rule.row_labels,
            rule.col_labels,
            row_index=rule.row_anchor_index,
            col_index=rule.col_anchor_index,
            row_offset=rule.row_offset,
            col_offset=rule.col_offset,
        )
        if not intersection.resolved:
            if rule.optional:
                return None
            raise ExtractionError(
                error_type=ExtractionErrorType.MISSING_ANCHOR,
                message=(
                    f'Sheet "{sheet.name}" formatting incorrect. Could not find anchor: '
                    f'Row="{rule.row_anchor}" (or aliases), Col="{rule.col_anchor}" (or aliases)'
                ),
                rule_key=rule.key,
                details={
                    "evidence": {
                        "sheet_name": sheet.name,
                        "row_anchor": rule.row_anchor,
                        "col_anchor": rule.col_anchor,
                    }
                },
            )

        target_row, target_col = intersection.target
        target = sheet.get(target_row, target_col)
        target_entry = state.collect(sheet.name, target, f"row:{rule.row_anchor}|col:{rule.col_anchor}")
        row_entry = state.collect(sheet.name, intersection.row_anchor, f"row_anchor:{rule.row_anchor}")
        col_entry = state.collect(sheet.name, intersection.col_anchor, f"col_anchor:{rule.col_anchor}")

        value = _cell_number(target)
        extra_evidence: List[ParsedCell] = []

        # 合计单元格为空或为 0 时，按组成项求和
        if not value and rule.sum_cols:
            value = 0.0
            for header in rule.sum_cols:
                header_cell = find_cell_by_text(sheet, header)
                if header_cell is None:
                    continue
                component = sheet.get(target_row, header_cell.column)
                component_value = _cell_number(component)
                if component_value is not None:
                    value += component_value
                extra_evidence.append(state.collect(sheet.name, component, f"sum_col:{header}"))

        if not value and rule.sum_rows:
            value = 0.0
            for header in rule.sum_rows:
                header_cell = find_cell_by_text(sheet, header)
                if header_cell is None:
                    continue
                component = sheet.get(header_cell.row, intersection.col_anchor.column)
                component_value = _cell_number(component)
                if component_value is not None:
                    value += component_value
                extra_evidence.append(state.collect(sheet.name, component, f"sum_row:{header}"))

        if value is None:
            if rule.optional:
                return None
            raise ExtractionError(
                error_type=ExtractionErrorType.MISSING_VALUE,
                message=f"Required cell is empty for {rule.key}",
                rule_key=rule.key,
                details={
                    "evidence": {
                        "sheet_name": sheet.name,
                        "cell_address": target.address,
                    }
                },
            )

        return Fact(
            key=rule.key,
            value_numeric=value,
            evidence_cells=[target_entry, row_entry, col_entry, *extra_evidence],
        )


def recalculate_workbook(workbook: WorkbookGrid) -> int:
    """逐表重算公式，返回重算的单元格数"""
    total = 0
    for sheet in workbook.sheets.values():
        total += len(recalculate_sheet(sheet).recalculated)
    return total


def parse_workbook(workbook: WorkbookGrid, mapping: BudgetMapping) -> ParseResult:
    """对已加载的工作簿执行映射表，并追加科目明细"""
    result = BudgetWorkbookParser(mapping).parse(workbook)
    line_items = extract_line_items(workbook)
    result.facts.extend(line_items.facts)
    result.texts.extend(line_items.texts)
    return result


def parse_budget_workbook(
    source: WorkbookSource,
    caliber: Union[Caliber, str] = Caliber.UNIT,
    filename: Optional[str] = None,
    mapping: Optional[BudgetMapping] = None,
    job_id: Optional[str] = None,
) -> ParseResult:
    """
    解析预算工作簿

    Args:
        source: 文件路径或字节内容
        caliber: 口径（unit / department），决定使用的映射表
        filename: 原始文件名
        mapping: 显式指定映射表（优先于 caliber）
        job_id: 日志上下文中的任务标识（如上传 ID）

    Returns:
        ParseResult

    Raises:
        ExtractionError: 工作簿无法打开，或必填规则失败
    """
    mapping = mapping or get_mapping(caliber)
    business_logger = get_business_logger()

    with LoggingContextManager(job_id, ProcessingStage.WORKBOOK_LOADING) as context:
        try:
            workbook = load_workbook_grid(source, filename)

            business_logger.log_stage_start(ProcessingStage.FORMULA_RECALC)
            recalculated = recalculate_workbook(workbook)
            if recalculated:
                logger.debug(f"公式重算单元格数: {recalculated}")

            business_logger.log_stage_start(ProcessingStage.WORKBOOK_PARSING)
            result = parse_workbook(workbook, mapping)
        except ExtractionError as e:
            business_logger.log_error_with_context(
                f"工作簿解析失败: {e.message}", e, extra_data={"rule": e.rule_key}
            )
            raise

        business_logger.log_parse_summary(
            sheet_count=len(workbook.sheets),
            rules_total=len(mapping.rules),
            facts_count=len(result.facts),
            texts_count=len(result.texts),
            parsed_cells=len(result.parsed_cells),
            duration_ms=context.duration_ms,
        )
    return result
