"""
工作簿加载
主引擎 openpyxl（缓存值 + 公式文本），无法打开时回退 pandas + calamine（Rust 解析器）只读读取。
两种引擎统一输出 WorkbookGrid / SheetGrid / CellRecord。
"""

import io
import logging
from dataclasses import dataclass, field
from itertools import combinations
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
from zipfile import BadZipFile

import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException

from engine.errors import ExtractionError, ExtractionErrorType

logger = logging.getLogger(__name__)

OLE2_MAGIC = bytes.fromhex("D0CF11E0A1B11AE1")

ENGINE_OPENPYXL = "openpyxl"
ENGINE_PANDAS = "pandas"

WorkbookSource = Union[str, Path, bytes]


@dataclass
class CellRecord:
    """引擎无关的单元格记录（行列均从 1 开始）"""
    row: int
    column: int
    value: Any = None
    number_format: Optional[str] = None
    formula: Optional[str] = None
    display: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{get_column_letter(self.column)}{self.row}"

    @property
    def is_empty(self) -> bool:
        return self.value is None or self.value == ""


@dataclass
class SheetGrid:
    """单张工作表"""
    name: str
    cells: Dict[Tuple[int, int], CellRecord] = field(default_factory=dict)

    def put(self, record: CellRecord) -> CellRecord:
        self.cells[(record.row, record.column)] = record
        return record

    def get(self, row: int, column: int) -> CellRecord:
        """读取单元格，不存在时返回空记录（不写入）"""
        record = self.cells.get((row, column))
        if record is None:
            return CellRecord(row=row, column=column)
        return record

    def iter_cells(self) -> Iterator[CellRecord]:
        """行优先遍历非空单元格"""
        for key in sorted(self.cells):
            record = self.cells[key]
            if record.value is not None:
                yield record

    def iter_rows(self) -> Iterator[Tuple[int, List[CellRecord]]]:
        """按行分组遍历非空单元格"""
        current_row = None
        bucket: List[CellRecord] = []
        for record in self.iter_cells():
            if record.row != current_row:
                if bucket:
                    yield current_row, bucket
                current_row = record.row
                bucket = []
            bucket.append(record)
        if bucket:
            yield current_row, bucket

    def formula_cells(self) -> List[CellRecord]:
        return [self.cells[key] for key in sorted(self.cells) if self.cells[key].formula]

    @property
    def row_count(self) -> int:
        rows = [row for (row, _), record in self.cells.items() if record.value is not None]
        return max(rows) if rows else 0

    @property
    def max_column(self) -> int:
        columns = [col for (_, col), record in self.cells.items() if record.value is not None]
        return max(columns) if columns else 0


@dataclass
class WorkbookGrid:
    """已加载的工作簿"""
    sheets: Dict[str, SheetGrid]
    engine: str = ENGINE_OPENPYXL
    source_name: Optional[str] = None

    @property
    def sheet_names(self) -> List[str]:
        return list(self.sheets.keys())

    def get_sheet(self, name: str) -> Optional[SheetGrid]:
        return self.sheets.get(name)


def _source_name(source: WorkbookSource, filename: Optional[str]) -> str:
    if filename:
        return filename
    if isinstance(source, (str, Path)):
        return str(source)
    return ""


def _read_head(source: WorkbookSource) -> bytes:
    if isinstance(source, bytes):
        return source[:8]
    try:
        with open(source, "rb") as handle:
            return handle.read(8)
    except OSError:
        return b""


def ensure_modern_workbook(source: WorkbookSource, filename: Optional[str] = None) -> None:
    """拒绝旧版二进制 .xls（扩展名或 OLE2 文件头）"""
    name = _source_name(source, filename)
    if Path(name).suffix.lower() == ".xls" or _read_head(source) == OLE2_MAGIC:
        raise ExtractionError(
            error_type=ExtractionErrorType.INVALID_FILE_TYPE,
            message="Legacy .xls files are not supported. Please upload .xlsx files.",
            details={"evidence": {"file_name": name}},
        )


def _as_stream(source: WorkbookSource):
    if isinstance(source, bytes):
        return io.BytesIO(source)
    return str(source)


def _check_merged_ranges(sheet_name: str, merged_ranges) -> None:
    """重叠的合并区域无法定位锚点"""
    ranges = list(merged_ranges)
    for first, second in combinations(ranges, 2):
        overlap = not (
            first.max_row < second.min_row
            or second.max_row < first.min_row
            or first.max_col < second.min_col
            or second.max_col < first.min_col
        )
        if overlap:
            raise ExtractionError(
                error_type=ExtractionErrorType.UNSUPPORTED_WORKBOOK_LAYOUT,
                message="Workbook contains unsupported merged-cell layout",
                details={
                    "evidence": {
                        "sheet_name": sheet_name,
                        "ranges": [first.coord, second.coord],
                    }
                },
            )


def _load_with_openpyxl(source: WorkbookSource) -> WorkbookGrid:
    values_book = load_workbook(_as_stream(source), data_only=True)
    formula_book = load_workbook(_as_stream(source), data_only=False)

    sheets: Dict[str, SheetGrid] = {}
    for worksheet in values_book.worksheets:
        _check_merged_ranges(worksheet.title, worksheet.merged_cells.ranges)
        formula_sheet = formula_book[worksheet.title]
        grid = SheetGrid(name=worksheet.title)

        for row in formula_sheet.iter_rows():
            for cell in row:
                raw = cell.value
                if raw is None:
                    continue
                formula = None
                if cell.data_type == "f" or (isinstance(raw, str) and raw.startswith("=")):
                    formula = str(raw).lstrip("=")
                cached = worksheet.cell(row=cell.row, column=cell.column).value
                grid.put(CellRecord(
                    row=cell.row,
                    column=cell.column,
                    value=cached if formula else raw,
                    number_format=cell.number_format,
                    formula=formula,
                ))
        sheets[worksheet.title] = grid

    values_book.close()
    formula_book.close()
    return WorkbookGrid(sheets=sheets, engine=ENGINE_OPENPYXL)


def _plain_value(value: Any) -> Any:
    if value is None or value == "":
        return None
    if hasattr(value, "item"):
        value = value.item()
    if isinstance(value, float) and value != value:
        return None
    return value


def _load_with_pandas(source: WorkbookSource) -> WorkbookGrid:
    frames = pd.read_excel(
        _as_stream(source),
        sheet_name=None,
        header=None,
        keep_default_na=False,
        engine="calamine",
    )
    sheets: Dict[str, SheetGrid] = {}
    for sheet_name, frame in frames.items():
        grid = SheetGrid(name=str(sheet_name))
        for row_index, row in enumerate(frame.itertuples(index=False), start=1):
            for col_index, value in enumerate(row, start=1):
                value = _plain_value(value)
                if value is None:
                    continue
                grid.put(CellRecord(row=row_index, column=col_index, value=value))
        sheets[grid.name] = grid
    return WorkbookGrid(sheets=sheets, engine=ENGINE_PANDAS)


def load_workbook_grid(source: WorkbookSource, filename: Optional[str] = None) -> WorkbookGrid:
    """
    打开工作簿

    Args:
        source: 文件路径或字节内容
        filename: 原始文件名（字节输入时用于扩展名判断）

    Returns:
        WorkbookGrid
    """
    ensure_modern_workbook(source, filename)
    name = _source_name(source, filename)

    try:
        grid = _load_with_openpyxl(source)
    except ExtractionError:
        raise
    except (BadZipFile, InvalidFileException, KeyError, ValueError, TypeError, OSError) as primary_error:
        logger.warning(f"openpyxl 无法打开工作簿 {name or '<bytes>'}，回退 calamine 引擎: {primary_error}")
        try:
            grid = _load_with_pandas(source)
        except Exception as fallback_error:
            raise ExtractionError(
                error_type=ExtractionErrorType.UNREADABLE_WORKBOOK,
                message="Workbook could not be opened by any spreadsheet engine",
                details={
                    "evidence": {
                        "file_name": name,
                        "primary_error": str(primary_error),
                        "fallback_error": str(fallback_error),
                    }
                },
            ) from fallback_error

    grid.source_name = name
    logger.info(f"工作簿已加载: {name or '<bytes>'} engine={grid.engine} sheets={len(grid.sheets)}")
    return grid


def grid_from_rows(name: str, rows: List[List[Any]]) -> SheetGrid:
    """由二维数组构造工作表（行列从 1 开始），供快照与测试使用"""
    grid = SheetGrid(name=name)
    for row_index, row in enumerate(rows, start=1):
        for col_index, value in enumerate(row, start=1):
            if value is None or value == "":
                continue
            grid.put(CellRecord(row=row_index, column=col_index, value=value))
    return grid
