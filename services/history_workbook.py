"""
历史实际数导入模板解析
模板：history 工作表（缺省取第一张），首行表头 unit_code / year / key / value_wanyuan / note
"""

import io
import logging
import re
from pathlib import Path
from typing import Any, Iterable, Optional, Union
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from engine.budget_mapping import history_actual_keys
from engine.errors import ExtractionError, ExtractionErrorType
from engine.workbook import ensure_modern_workbook
from schemas.facts import HistoryImportError, HistoryImportResult, HistoryImportRow

logger = logging.getLogger(__name__)

HISTORY_SHEET_NAME = "history"
REQUIRED_HEADERS = ["unit_code", "year", "key", "value_wanyuan"]
MIN_YEAR = 1900
MAX_YEAR = 2100

_separator_pattern = re.compile(r"[,，\s]")


def normalize_header(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def parse_template_number(raw_value: Any) -> Optional[float]:
    """模板数值：允许千分位逗号与空白，无法解析返回 None"""
    if raw_value is None or raw_value == "" or isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, (int, float)):
        return float(raw_value)
    text = _separator_pattern.sub("", str(raw_value))
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def parse_year(raw_value: Any) -> Optional[int]:
    number = parse_template_number(raw_value)
    if number is None or not float(number).is_integer():
        return None
    year = int(number)
    if year < MIN_YEAR or year > MAX_YEAR:
        return None
    return year


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_history_workbook(
    source: Union[str, Path, bytes],
    allowed_keys: Optional[Iterable[str]] = None,
) -> HistoryImportResult:
    """
    解析历史实际数导入工作簿

    Args:
        source: 文件路径或字节内容
        allowed_keys: 允许导入的事实键，缺省取单位口径映射表的数值键

    Returns:
        HistoryImportResult，逐行错误不抛出

    Raises:
        ExtractionError: 旧版 .xls（INVALID_FILE_TYPE）、无法打开（UNREADABLE_WORKBOOK）、
            表头缺失（INVALID_TEMPLATE）或工作簿为空（MISSING_SHEET）
    """
    allowed = set(allowed_keys) if allowed_keys is not None else set(history_actual_keys())

    ensure_modern_workbook(source)
    stream = io.BytesIO(source) if isinstance(source, bytes) else str(source)
    try:
        workbook = load_workbook(stream, data_only=True)
    except (BadZipFile, InvalidFileException, KeyError, ValueError, TypeError, OSError) as e:
        raise ExtractionError(
            error_type=ExtractionErrorType.UNREADABLE_WORKBOOK,
            message="History workbook could not be opened",
            details={"evidence": {"file_name": "" if isinstance(source, bytes) else str(source), "primary_error": str(e)}},
        ) from e
    try:
        if HISTORY_SHEET_NAME in workbook.sheetnames:
            sheet = workbook[HISTORY_SHEET_NAME]
        elif workbook.worksheets:
            sheet = workbook.worksheets[0]
        else:
            raise ExtractionError(
                error_type=ExtractionErrorType.MISSING_SHEET,
                message="History sheet not found",
            )

        rows = sheet.iter_rows(values_only=True)
        header_values = next(rows, ()) or ()
        headers = {}
        for index, value in enumerate(header_values):
            header = normalize_header(value)
            if header and header not in headers:
                headers[header] = index

        missing_headers = [header for header in REQUIRED_HEADERS if header not in headers]
        if missing_headers:
            raise ExtractionError(
                error_type=ExtractionErrorType.INVALID_TEMPLATE,
                message="Missing required headers",
                details={"missing_headers": missing_headers},
            )

        def cell(values, header):
            index = headers.get(header)
            if index is None or index >= len(values):
                return None
            return values[index]

        result = HistoryImportResult(sheet_name=sheet.title)
        for row_number, values in enumerate(rows, start=2):
            if all(value is None or value == "" for value in values):
                continue

            unit_code = _text(cell(values, "unit_code"))
            year_raw = cell(values, "year")
            key = _text(cell(values, "key"))
            value_raw = cell(values, "value_wanyuan")
            note_raw = cell(values, "note")
            note = None if note_raw is None else str(note_raw).strip()

            if not unit_code or year_raw in (None, "") or not key:
                result.errors.append(HistoryImportError(
                    row=row_number,
                    code="MISSING_REQUIRED",
                    message="Required fields are missing",
                    details={"unit_code": unit_code or None, "year": year_raw or None, "key": key or None},
                ))
                continue

            year = parse_year(year_raw)
            if year is None:
                result.errors.append(HistoryImportError(
                    row=row_number,
                    code="INVALID_YEAR",
                    message="Year must be a 4-digit number",
                    details={"year": year_raw},
                ))
                continue

            if key not in allowed:
                result.errors.append(HistoryImportError(
                    row=row_number,
                    code="INVALID_KEY",
                    message="Key is not allowed",
                    details={"key": key},
                ))
                continue

            value = parse_template_number(value_raw)
            if value is None:
                result.errors.append(HistoryImportError(
                    row=row_number,
                    code="INVALID_VALUE",
                    message="Value must be numeric",
                    details={"value": value_raw},
                ))
                continue

            result.rows.append(HistoryImportRow(
                unit_code=unit_code,
                year=year,
                key=key,
                value_wanyuan=value,
                note=note,
                row_number=row_number,
            ))
    finally:
        workbook.close()

    logger.info(f"历史数导入解析完成: sheet={result.sheet_name} 有效行={len(result.rows)} 错误行={len(result.errors)}")
    return result
