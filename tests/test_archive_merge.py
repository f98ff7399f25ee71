#!/usr/bin/env python3
# -*- coding: utf-8 -*-
'''历史档案预览合并测试.'''

import pytest

from engine.fact_matcher import FactLabelMatcher
from schemas.facts import ArchiveConfig, ArchivePreviewField, Confidence, ManualArchiveItem, ReportStage
from services.archive_merge import (
    RULE_MANUAL_CONFLICT,
    RULE_UNMATCHED_LABEL,
    SOURCE_AGREE,
    SOURCE_AUTO,
    SOURCE_AUTO_SCALE,
    SOURCE_CONFLICT,
    SOURCE_MANUAL,
    ArchivePreviewMerger,
    is_scale_mismatch,
    promote_confirmed_fields,
)


class TestScaleMismatch:

    @pytest.mark.parametrize(
        "manual, auto, expected",
        [(900000, 90, True), (90000, 90, True), (95, 90, False), (1, 0, False), (-900000, 90, True)],
    )
    def test_ranges(self, manual, auto, expected):
        assert is_scale_mismatch(manual, auto, ArchiveConfig().scale_conflict_ranges) is expected


class TestArchivePreviewMerger:

    def setup_method(self):
        self.merger = ArchivePreviewMerger(config=ArchiveConfig(), tolerance=0.01, matcher=FactLabelMatcher())

    def test_scale_mismatch_keeps_auto_value(self):
        preview = self.merger.build(
            "B1",
            [{"key": "budget_revenue_total", "value": 900000}],
            {"budget_revenue_total": 90},
        )
        field = preview.field_map()["budget_revenue_total"]
        assert field.normalized_value == 90
        assert field.manual_skipped is True
        assert field.match_source == SOURCE_AUTO_SCALE
        assert field.confidence == Confidence.MEDIUM
        assert not any(issue.rule_id == RULE_MANUAL_CONFLICT for issue in preview.issues)

    def test_noise_labels_are_ignored(self):
        preview = self.merger.build("B1", [{"label": "九、住房保障支出 9,364,732", "value": 9364732}], {})
        assert preview.fields == []
        assert preview.issues == []

    def test_agreeing_values_are_confirmed(self):
        preview = self.merger.build(
            "B1",
            [ManualArchiveItem(key="收入合计", value="100")],
            {"budget_revenue_total": "100.005"},
        )
        field = preview.field_map()["budget_revenue_total"]
        assert field.confidence == Confidence.HIGH
        assert field.match_source == SOURCE_AGREE
        assert field.confirmed is True
        assert field.raw_label == "收入合计"
        assert field.raw_value == "100"

    def test_conflict_prefers_manual_and_reports(self):
        preview = self.merger.build(
            "B1",
            [{"key": "budget_expenditure_total", "value": 120}],
            {"budget_expenditure_total": 100},
        )
        field = preview.field_map()["budget_expenditure_total"]
        assert field.normalized_value == 120
        assert field.confidence == Confidence.LOW
        assert field.match_source == SOURCE_CONFLICT

        assert len(preview.issues) == 1
        issue = preview.issues[0]
        assert issue.rule_id == RULE_MANUAL_CONFLICT
        assert issue.level.value == "WARN"
        assert issue.evidence["diff"] == pytest.approx(20)

    def test_unrecognized_label(self):
        preview = self.merger.build("B1", [{"label": "备注说明", "value": "12"}], {})
        assert len(preview.fields) == 1
        field = preview.fields[0]
        assert field.key is None
        assert field.confidence == Confidence.UNRECOGNIZED
        assert field.normalized_value == 12
        assert [issue.rule_id for issue in preview.issues] == [RULE_UNMATCHED_LABEL]

    def test_single_source_fields_and_order(self):
        preview = self.merger.build(
            "B1",
            [
                {"key": "operation_fund", "value": 5},
                {"key": "operation_fund", "value": 6},
                {"key": "公务接待费", "value": ""},
            ],
            {"three_public_total": 12.5, "budget_revenue_other": None},
        )
        assert [field.key for field in preview.fields] == ["operation_fund", "three_public_total"]

        manual_only, auto_only = preview.fields
        assert manual_only.normalized_value == 5
        assert (manual_only.confidence, manual_only.match_source) == (Confidence.MEDIUM, SOURCE_MANUAL)
        assert (auto_only.confidence, auto_only.match_source) == (Confidence.MEDIUM, SOURCE_AUTO)
        assert auto_only.raw_label is None


class TestPromoteConfirmedFields:

    def test_only_confirmed_fields_are_promoted(self):
        merger = ArchivePreviewMerger(config=ArchiveConfig(), matcher=FactLabelMatcher())
        preview = merger.build(
            "B9",
            [{"key": "budget_revenue_total", "value": 100}, {"key": "budget_expenditure_total", "value": 80}],
            {"budget_revenue_total": 100, "budget_expenditure_total": 90},
        )
        preview.fields.append(ArchivePreviewField(
            batch_id="B9", key="operation_fund", normalized_value=3, corrected_value=4, confirmed=True,
        ))

        actuals = promote_confirmed_fields(preview, "U001", "2024")
        assert [(actual.key, actual.value_numeric) for actual in actuals] == [
            ("budget_revenue_total", 100),
            ("operation_fund", 4),
        ]
        assert all(actual.stage == ReportStage.FINAL for actual in actuals)
        assert all(actual.year == 2024 for actual in actuals)
        assert all(actual.source_preview_batch_id == "B9" for actual in actuals)
