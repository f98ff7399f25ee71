#!/usr/bin/env python3
# -*- coding: utf-8 -*-
'''工作簿加载测试.'''

from zipfile import BadZipFile

import pytest
from openpyxl.worksheet.cell_range import CellRange

from engine import workbook as workbook_module
from engine.errors import ExtractionError, ExtractionErrorType
from engine.workbook import (
    ENGINE_OPENPYXL,
    ENGINE_PANDAS,
    OLE2_MAGIC,
    _check_merged_ranges,
    _load_with_pandas,
    ensure_modern_workbook,
    load_workbook_grid,
)


class TestWorkbookLoading:

    def test_load_values_formats_and_formulas(self, workbook_factory):
        path = workbook_factory(
            {"预算汇总": [["项目", "预算数"], ["财政拨款", 12.5], ["事业收入", 7.5], ["合计", "=SUM(B2:B3)"]]},
            number_formats={"预算汇总": {"B2": "#,##0.00"}},
        )
        grid = load_workbook_grid(path)
        assert grid.engine == ENGINE_OPENPYXL
        assert grid.sheet_names == ["预算汇总"]

        sheet = grid.get_sheet("预算汇总")
        assert sheet.get(2, 2).value == 12.5
        assert sheet.get(2, 2).number_format == "#,##0.00"
        assert sheet.get(4, 2).formula == "SUM(B2:B3)"
        assert sheet.get(4, 2).address == "B4"

    def test_load_from_bytes(self, workbook_factory):
        path = workbook_factory({"表": [["收入合计", 1]]})
        grid = load_workbook_grid(path.read_bytes(), filename="upload.xlsx")
        assert grid.source_name == "upload.xlsx"
        assert grid.get_sheet("表").get(1, 2).value == 1

    @pytest.mark.parametrize("filename", ["budget.xls", "BUDGET.XLS"])
    def test_legacy_extension_is_rejected(self, filename):
        with pytest.raises(ExtractionError) as exc_info:
            ensure_modern_workbook(b"PK\x03\x04", filename)
        assert exc_info.value.error_type == ExtractionErrorType.INVALID_FILE_TYPE
        assert exc_info.value.status_code == 400

    def test_legacy_magic_bytes_are_rejected(self):
        with pytest.raises(ExtractionError) as exc_info:
            load_workbook_grid(OLE2_MAGIC + b"\x00" * 64, filename="renamed.xlsx")
        assert exc_info.value.code == "INVALID_FILE_TYPE"

    def test_unreadable_workbook(self):
        with pytest.raises(ExtractionError) as exc_info:
            load_workbook_grid(b"definitely not a spreadsheet", filename="broken.xlsx")
        error = exc_info.value
        assert error.error_type == ExtractionErrorType.UNREADABLE_WORKBOOK
        assert error.aborts_workbook
        assert "primary_error" in error.evidence

    def test_overlapping_merged_ranges(self):
        with pytest.raises(ExtractionError) as exc_info:
            _check_merged_ranges("表", [CellRange("A1:B2"), CellRange("B2:C3")])
        assert exc_info.value.error_type == ExtractionErrorType.UNSUPPORTED_WORKBOOK_LAYOUT
        assert exc_info.value.evidence["ranges"] == ["A1:B2", "B2:C3"]

    def test_disjoint_merged_ranges_are_accepted(self):
        _check_merged_ranges("表", [CellRange("A1:B1"), CellRange("A2:B2")])

    def test_pandas_engine_reads_values(self, workbook_factory):
        path = workbook_factory({"表": [["收入合计", 10], [None, 20]]})
        grid = _load_with_pandas(path)
        assert grid.engine == ENGINE_PANDAS
        sheet = grid.get_sheet("表")
        assert sheet.get(1, 1).value == "收入合计"
        assert sheet.get(2, 2).value == 20
        assert sheet.get(2, 1).is_empty

    def test_fallback_engine_rescues_primary_failure(self, workbook_factory, monkeypatch):
        path = workbook_factory({"表": [["收入合计", 10], ["支出合计", 8]]})

        def reject(_source):
            raise BadZipFile("primary engine rejected the file")

        monkeypatch.setattr(workbook_module, "_load_with_openpyxl", reject)
        grid = load_workbook_grid(path)
        assert grid.engine == ENGINE_PANDAS
        assert grid.source_name == str(path)
        sheet = grid.get_sheet("表")
        assert sheet.get(1, 2).value == 10
        assert sheet.get(2, 1).value == "支出合计"
