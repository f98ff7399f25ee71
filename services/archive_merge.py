"""
历史档案预览合并
人工录入项与自动抽取事实按键合并，生成待确认的预览字段与提示问题。
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from engine.fact_matcher import FactLabelMatcher, get_fact_matcher
from schemas.facts import (
    ArchiveConfig,
    ArchivePreview,
    ArchivePreviewField,
    Confidence,
    HistoricalActual,
    IssueLevel,
    ManualArchiveItem,
    ReportStage,
    ValidationIssue,
    to_numeric,
)
from services.structured_logging import LoggingContextManager, ProcessingStage

logger = logging.getLogger(__name__)

SOURCE_AGREE = "MANUAL+AUTO_AGREE"
SOURCE_AUTO_SCALE = "AUTO_SCALE_PREFERRED"
SOURCE_CONFLICT = "MANUAL_CONFLICT"
SOURCE_MANUAL = "MANUAL"
SOURCE_AUTO = "AUTO"

RULE_UNMATCHED_LABEL = "ARCHIVE.UNMATCHED_LABEL"
RULE_MANUAL_CONFLICT = "ARCHIVE.MANUAL_CONFLICT"

KNOWN_FACT_KEYS = frozenset(
    [
        "budget_revenue_total",
        "budget_revenue_fiscal",
        "budget_revenue_business",
        "budget_revenue_operation",
        "budget_revenue_other",
        "budget_expenditure_total",
        "budget_expenditure_basic",
        "budget_expenditure_project",
        "fiscal_grant_revenue_total",
        "fiscal_grant_expenditure_total",
        "fiscal_grant_expenditure_general",
        "fiscal_grant_expenditure_gov_fund",
        "fiscal_grant_expenditure_capital",
        "three_public_total",
        "three_public_outbound",
        "three_public_vehicle_total",
        "three_public_vehicle_purchase",
        "three_public_vehicle_operation",
        "three_public_reception",
        "operation_fund",
    ]
)


def _format_raw(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def is_scale_mismatch(manual: float, auto: float, ranges: Iterable[Tuple[float, float]]) -> bool:
    """人工值 / 自动值落在万倍或千倍区间内，视为单位口径不一致"""
    if auto == 0:
        return False
    ratio = abs(manual / auto)
    return any(low <= ratio <= high for low, high in ranges)


def effective_value(field: ArchivePreviewField) -> Optional[float]:
    """修正值优先，否则取规范化值"""
    return field.effective_value


class ArchivePreviewMerger:
    """人工 + 自动 双通道合并"""

    def __init__(
        self,
        config: Optional[ArchiveConfig] = None,
        tolerance: float = 0.01,
        matcher: Optional[FactLabelMatcher] = None,
    ):
        self.config = config or ArchiveConfig()
        self.tolerance = tolerance
        self.matcher = matcher

    def _matcher(self) -> FactLabelMatcher:
        if self.matcher is None:
            self.matcher = get_fact_matcher()
        return self.matcher

    def resolve_item_key(self, item: ManualArchiveItem) -> Optional[str]:
        if item.key and item.key in KNOWN_FACT_KEYS:
            return item.key
        return self._matcher().resolve(item.display_label)

    def collect_manual(
        self, batch_id: str, items: Iterable[ManualArchiveItem]
    ) -> Tuple[Dict[str, Tuple[float, Optional[str], str]], List[ArchivePreviewField], List[ValidationIssue]]:
        """人工录入项 → {key: (数值, 原始值, 原始标签)}，同时收集未识别字段"""
        manual: Dict[str, Tuple[float, Optional[str], str]] = {}
        unrecognized: List[ArchivePreviewField] = []
        issues: List[ValidationIssue] = []

        for item in items:
            label = item.display_label
            if not label:
                continue

            key = self.resolve_item_key(item)
            if key is None:
                if self._matcher().is_noise_label(label):
                    logger.debug(f"忽略带金额的噪声标签: {label}")
                    continue
                unrecognized.append(ArchivePreviewField(
                    batch_id=batch_id,
                    raw_label=label,
                    raw_value=_format_raw(item.value),
                    normalized_value=to_numeric(item.value),
                    confidence=Confidence.UNRECOGNIZED,
                ))
                issues.append(ValidationIssue(
                    rule_id=RULE_UNMATCHED_LABEL,
                    level=IssueLevel.WARN,
                    message=f"无法识别的字段标签：{label}",
                    evidence={"label": label, "value": _format_raw(item.value)},
                ))
                continue

            value = to_numeric(item.value)
            if value is None or key in manual:
                continue
            manual[key] = (value, _format_raw(item.value), label)

        return manual, unrecognized, issues

    def merge_field(
        self,
        batch_id: str,
        key: str,
        manual: Optional[Tuple[float, Optional[str], str]],
        auto_value: Optional[float],
    ) -> Tuple[ArchivePreviewField, Optional[ValidationIssue]]:
        if manual is None:
            return ArchivePreviewField(
                batch_id=batch_id,
                key=key,
                raw_value=_format_raw(auto_value),
                normalized_value=auto_value,
                confidence=Confidence.MEDIUM,
                match_source=SOURCE_AUTO,
            ), None

        manual_value, raw_value, label = manual
        base = {"batch_id": batch_id, "key": key, "raw_label": label, "raw_value": raw_value}

        if auto_value is None:
            return ArchivePreviewField(
                **base,
                normalized_value=manual_value,
                confidence=Confidence.MEDIUM,
                match_source=SOURCE_MANUAL,
            ), None

        if abs(manual_value - auto_value) <= self.tolerance:
            return ArchivePreviewField(
                **base,
                normalized_value=manual_value,
                confidence=Confidence.HIGH,
                match_source=SOURCE_AGREE,
                confirmed=True,
            ), None

        if is_scale_mismatch(manual_value, auto_value, self.config.scale_conflict_ranges):
            logger.info(f"人工值疑似单位不一致，保留自动抽取值: {key} manual={manual_value} auto={auto_value}")
            return ArchivePreviewField(
                **base,
                normalized_value=auto_value,
                confidence=Confidence.MEDIUM,
                match_source=SOURCE_AUTO_SCALE,
                manual_skipped=True,
            ), None

        issue = ValidationIssue(
            rule_id=RULE_MANUAL_CONFLICT,
            level=IssueLevel.WARN,
            message=f"{key} 人工录入值与自动抽取值不一致",
            evidence={"key": key, "manual": manual_value, "auto": auto_value, "diff": abs(manual_value - auto_value)},
        )
        return ArchivePreviewField(
            **base,
            normalized_value=manual_value,
            confidence=Confidence.LOW,
            match_source=SOURCE_CONFLICT,
        ), issue

    def build(
        self,
        batch_id: str,
        manual_items: Iterable[Union[ManualArchiveItem, Mapping[str, Any]]],
        auto_facts: Optional[Mapping[str, Any]] = None,
    ) -> ArchivePreview:
        items = [
            item if isinstance(item, ManualArchiveItem) else ManualArchiveItem.model_validate(item)
            for item in manual_items or []
        ]
        auto = {key: to_numeric(value) for key, value in (auto_facts or {}).items()}
        auto = {key: value for key, value in auto.items() if value is not None}

        manual, unrecognized, issues = self.collect_manual(batch_id, items)

        fields: List[ArchivePreviewField] = []
        for key in list(dict.fromkeys([*manual.keys(), *auto.keys()])):
            field, issue = self.merge_field(batch_id, key, manual.get(key), auto.get(key))
            fields.append(field)
            if issue is not None:
                issues.append(issue)

        fields.extend(unrecognized)
        return ArchivePreview(batch_id=batch_id, fields=fields, issues=issues)


def build_archive_preview(
    batch_id: str,
    manual_items: Iterable[Union[ManualArchiveItem, Mapping[str, Any]]],
    auto_facts: Optional[Mapping[str, Any]] = None,
    config: Optional[ArchiveConfig] = None,
    tolerance: Optional[float] = None,
) -> ArchivePreview:
    """
    生成档案预览

    Args:
        batch_id: 预览批次号
        manual_items: [{key|label, value}]，key 可以是事实键或原始标签
        auto_facts: 自动抽取的 {key: 万元数值}
        config: 档案配置，缺省取 config/app.yaml
        tolerance: 人工值与自动值一致的容差，缺省取校验容差
    """
    if config is None or tolerance is None:
        from config.settings import get_settings

        settings = get_settings()
        config = config or settings.to_archive_config()
        if tolerance is None:
            tolerance = settings.to_validation_config().tolerance

    with LoggingContextManager(batch_id, ProcessingStage.ARCHIVE_MERGE):
        preview = ArchivePreviewMerger(config=config, tolerance=tolerance).build(batch_id, manual_items, auto_facts)
        logger.info(f"档案预览生成: 字段={len(preview.fields)} 问题={len(preview.issues)}")
    return preview


def promote_confirmed_fields(preview: ArchivePreview, unit_id: str, year: int) -> List[HistoricalActual]:
    """已确认字段 → 决算阶段历史实际数"""
    actuals = []
    for field in preview.fields:
        if not field.confirmed or not field.key:
            continue
        value = effective_value(field)
        if value is None:
            continue
        actuals.append(HistoricalActual(
            unit_id=unit_id,
            year=int(year),
            stage=ReportStage.FINAL,
            key=field.key,
            value_numeric=value,
            source_preview_batch_id=preview.batch_id,
        ))
    return actuals
