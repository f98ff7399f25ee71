#!/usr/bin/env python3
# -*- coding: utf-8 -*-
'''功能分类科目明细测试.'''

from engine.line_items import DEFAULT_HEADER_ROW, detect_layout, extract_line_items, find_header_row
from engine.workbook import WorkbookGrid, grid_from_rows

DEPARTMENT_SHEET = "3.21部门一般公共预算支出功能分类预算表"
UNIT_SHEET = "2.20单位一般公共预算拨款表"


def _workbook(name, rows):
    return WorkbookGrid(sheets={name: grid_from_rows(name, rows)})


class TestLineItems:

    def setup_method(self):
        self.rows = [
            ["部门一般公共预算支出功能分类预算表"],
            ["功能分类科目编码", None, None, "科目名称", "合计", "基本支出", "项目支出"],
            ["类", "款", "项", None, None, None, None],
            ["201", None, None, "一般公共服务支出", 120, 100, 20],
            ["201", "03", None, "政府办公厅（室）及相关机构事务", 120, 100, 20],
            ["201", "03", "01", "行政运行", 100, 100, None],
            ["201", "03", "02", "一般行政管理事务", 0, None, 20],
            ["201", "03", "9X", "格式错误", 5, None, None],
            ["208", "05", "05", "机关事业单位基本养老保险缴费支出", None, None, None],
            ["201", None, None, "重复类名", None, None, None],
        ]

    def test_leaf_items_with_hierarchy_names(self):
        result = extract_line_items(_workbook(DEPARTMENT_SHEET, self.rows))
        facts = {fact.key: fact.value_numeric for fact in result.facts}
        texts = {text.key: text.value_text for text in result.texts}

        assert result.sheet_name == DEPARTMENT_SHEET
        assert facts == {"amount_line_item_2010301": 100, "amount_line_item_2010302": 20}
        assert texts["name_line_item_2010301"] == "行政运行"
        assert texts["code_line_item_2010302"] == "2010302"
        assert texts["name_class_201"] == "一般公共服务支出"
        assert texts["name_type_20103"] == "政府办公厅（室）及相关机构事务"

    def test_non_digit_codes_are_discarded(self):
        result = extract_line_items(_workbook(DEPARTMENT_SHEET, self.rows))
        assert not any("9X" in fact.key for fact in result.facts)

    def test_department_sheet_is_preferred(self):
        workbook = WorkbookGrid(sheets={
            UNIT_SHEET: grid_from_rows(UNIT_SHEET, self.rows),
            DEPARTMENT_SHEET: grid_from_rows(DEPARTMENT_SHEET, self.rows[:2]),
        })
        result = extract_line_items(workbook)
        assert result.sheet_name == DEPARTMENT_SHEET
        assert result.facts == []

    def test_no_line_item_sheet(self):
        result = extract_line_items(_workbook("其他", [["a"]]))
        assert result.sheet_name is None
        assert result.facts == [] and result.texts == []

    def test_header_defaults_and_layout_override(self):
        sheet = grid_from_rows("表", [["x"]])
        assert find_header_row(sheet) == DEFAULT_HEADER_ROW

        sheet = grid_from_rows("表", [["科目名称", "项", "款", "类", "合计"]])
        layout = detect_layout(sheet, 1)
        assert (layout.name, layout.item_code, layout.type_code, layout.class_code, layout.total) == (1, 2, 3, 4, 5)
