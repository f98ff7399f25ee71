#!/usr/bin/env python3
# -*- coding: utf-8 -*-
'''历史档案表格事实抽取测试.'''

import json

import pytest

from engine.archive_extractor import (
    BUDGET_SUMMARY,
    ArchiveFactExtractor,
    extract_history_facts,
    is_top_level_category_row,
    parse_number,
)
from schemas.facts import ArchiveConfig


def _budget_summary_rows(with_unit_marker=True):
    rows = [
        ["本年收入", "", "本年支出", ""],
        ["一、财政拨款收入", "189,767,551", "一、一般公共服务支出", "189,767,551"],
        ["收入总计", "189,767,551", "支出总计", "189,767,551"],
    ]
    if with_unit_marker:
        rows.insert(0, ["编制单位：示例单位", "单位：元", "", ""])
    return rows


class TestParseHelpers:

    @pytest.mark.parametrize(
        "raw, expected",
        [("1,234.5", 1234.5), ("(12)", -12), (" 7 ", 7), ("-", None), ("", None), ("abc", None), (None, None)],
    )
    def test_parse_number(self, raw, expected):
        assert parse_number(raw) == expected

    def test_top_level_category_row(self):
        assert is_top_level_category_row(["201", "一般公共服务支出", "1", "1"])
        assert not is_top_level_category_row(["20101", "人大事务", "1", "1"])
        assert not is_top_level_category_row(["201", "01", "1", "1"])
        assert not is_top_level_category_row(["201", "一般公共服务支出"])


class TestScaleDetection:

    def setup_method(self):
        self.extractor = ArchiveFactExtractor(ArchiveConfig())

    def test_declared_unit_wins(self):
        rows = [["单位：万元"], ["收入总计", "189767551"]]
        decision = self.extractor.detect_scale(rows, BUDGET_SUMMARY)
        assert decision.source == "declared_unit"
        assert decision.scale == 1.0

    def test_table_default_unit(self):
        decision = self.extractor.detect_scale([["收入总计", "12"]], BUDGET_SUMMARY)
        assert decision.source == "table_default"
        assert decision.scale == pytest.approx(1 / 10000)

    @pytest.mark.parametrize("value, expected_scale", [("189767551", 1 / 10000), ("5000", 1.0)])
    def test_magnitude_heuristic(self, value, expected_scale):
        decision = self.extractor.detect_scale([["合计", value]], "unknown_table")
        assert decision.source == "magnitude"
        assert decision.scale == pytest.approx(expected_scale)

    def test_default_scale_without_numbers(self):
        decision = self.extractor.detect_scale([["说明"]], "unknown_table")
        assert decision.source == "default"
        assert decision.scale == 1.0


class TestArchiveFactExtractor:

    @pytest.mark.parametrize("with_unit_marker", [True, False])
    def test_budget_summary_in_yuan(self, with_unit_marker):
        facts = extract_history_facts([
            {"table_key": "budget_summary", "data_json": _budget_summary_rows(with_unit_marker)},
        ])
        assert facts["budget_revenue_total"] == 18976.76
        assert facts["budget_revenue_fiscal"] == 18976.76
        assert facts["budget_expenditure_total"] == 18976.76

    def test_category_is_detected_from_markers_not_table_key(self):
        facts = extract_history_facts([
            {"table_key": "legacy_table_7", "data_json": json.dumps(_budget_summary_rows(), ensure_ascii=False)},
        ])
        assert facts["budget_revenue_total"] == 18976.76

    def test_income_summary_sums_top_level_rows(self):
        rows = [
            ["单位：万元"],
            ["本年收入", "财政拨款收入", "其他收入"],
            ["科目编码", "科目名称", "合计", "财政拨款收入", "事业收入", "事业单位经营收入", "其他收入"],
            ["201", "一般公共服务支出", "0.3", "0.3", "0", "0", "0"],
            ["20101", "人大事务", "0.3", "0.3", "0", "0", "0"],
            ["205", "教育支出", "0.2", "0.1", "0", "0", "0.1"],
        ]
        facts = extract_history_facts([{"table_key": "income_summary", "data_json": rows}])
        assert facts["budget_revenue_total"] == 0.5
        assert facts["budget_revenue_fiscal"] == 0.4
        assert facts["budget_revenue_other"] == 0.1
        assert facts["fiscal_grant_revenue_total"] == 0.4

    def test_three_public_standard_layout(self):
        rows = [
            ["单位：万元"],
            ["“三公”经费合计", "因公出国（境）费", "公务接待费", "公务用车购置及运行费", "", "", "机关运行经费"],
            ["", "", "", "小计", "购置费", "运行费", ""],
            ["12.5", "0", "2.5", "10", "0", "10", "464.64"],
        ]
        facts = extract_history_facts([{"table_key": "three_public", "data_json": rows}])
        assert facts["three_public_total"] == 12.5
        assert facts["three_public_outbound"] == 0
        assert facts["three_public_reception"] == 2.5
        assert facts["three_public_vehicle_total"] == 10
        assert facts["three_public_vehicle_operation"] == 10
        assert facts["operation_fund"] == 464.64

    def test_three_public_sparse_layout(self):
        rows = [
            ["单位：万元"],
            ["合计", "公务接待费", "公务用车购置及运行费"],
            ["小计", "", "购置费", "运行费"],
            ["0.95", "0.95", "229.43"],
        ]
        facts = extract_history_facts([{"table_key": "three_public", "data_json": rows}])
        assert facts["three_public_total"] == 0.95
        assert facts["three_public_reception"] == 0.95
        assert facts["operation_fund"] == 229.43
        assert "three_public_outbound" not in facts

    def test_revenue_totals_are_derived_from_parts(self):
        summary = [
            ["单位：万元"],
            ["本年收入", "", "本年支出", ""],
            ["财政拨款收入", "80", "", ""],
            ["事业收入", "20", "", ""],
        ]
        facts = extract_history_facts([{"table_key": "budget_summary", "data_json": summary}])
        assert facts["budget_revenue_total"] == 100
        assert facts["fiscal_grant_revenue_total"] == 80
        assert "fiscal_grant_expenditure_total" not in facts

    def test_expenditure_totals_are_derived(self):
        rows = [
            ["单位：万元"],
            ["本年支出", "支出总计"],
            ["科目编码", "科目名称", "合计", "基本支出", "项目支出"],
            ["201", "一般公共服务支出", "100", "60", "40"],
        ]
        facts = extract_history_facts([{"table_key": "expenditure_summary", "data_json": rows}])
        assert facts["budget_expenditure_total"] == 100
        assert facts["budget_expenditure_basic"] == 60
        assert facts["budget_expenditure_project"] == 40
        assert facts["fiscal_grant_expenditure_total"] == 100
        assert facts["fiscal_grant_expenditure_general"] == 100

    def test_empty_and_malformed_tables(self):
        assert extract_history_facts([]) == {}
        assert extract_history_facts([{"table_key": "budget_summary", "data_json": ""}]) == {}
        assert extract_history_facts([{"table_key": "x", "data_json": [["无关内容"], "not-a-row"]}]) == {}
