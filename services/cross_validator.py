"""
事实交叉校验
必填覆盖 → 收支平衡 → 同比异常，只产出问题列表，不抛异常、不修改事实。
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from engine.budget_mapping import required_history_keys
from schemas.facts import IssueLevel, ValidationConfig, ValidationIssue, ValidatorField
from services.history_store import HistoryActualsRepository
from services.structured_logging import LoggingContextManager, ProcessingStage, get_business_logger

logger = logging.getLogger(__name__)

RULE_REVENUE_EXPENDITURE = "ARCHIVE.BALANCE_REVENUE_EXPENDITURE"
RULE_EXPENDITURE_COMPONENTS = "ARCHIVE.BALANCE_EXPENDITURE_COMPONENTS"
RULE_FISCAL_GRANT = "ARCHIVE.BALANCE_FISCAL_GRANT"
RULE_FIELD_COVERAGE = "ARCHIVE.FIELD_COVERAGE"
RULE_YOY_ANOMALY = "ARCHIVE.YOY_ANOMALY"

MIN_YEAR = 1900

FieldInput = Union[ValidatorField, Mapping[str, Any]]


def build_value_map(fields: Iterable[FieldInput]) -> Dict[str, Optional[float]]:
    """字段列表 → {key: 生效值}，修正值优先；缺 key 或值非法的字段跳过"""
    values = {}
    for index, field in enumerate(fields or []):
        if not isinstance(field, ValidatorField):
            try:
                field = ValidatorField.model_validate(field)
            except ValidationError as e:
                logger.warning(f"校验字段格式无效，已跳过: index={index} errors={e.error_count()}")
                continue
        values[field.key] = field.effective_value
    return values


class CrossValidator:
    """交叉校验器"""

    def __init__(
        self,
        config: Optional[ValidationConfig] = None,
        repository: Optional[HistoryActualsRepository] = None,
        required_keys: Optional[List[str]] = None,
    ):
        self.config = config or ValidationConfig()
        self.repository = repository
        self._required_keys = required_keys

    @property
    def required_keys(self) -> List[str]:
        if self._required_keys is None:
            self._required_keys = required_history_keys()
        return self._required_keys

    def check_coverage(self, values: Dict[str, Optional[float]]) -> List[ValidationIssue]:
        missing = [key for key in self.required_keys if values.get(key) is None]
        if not missing:
            return []
        return [ValidationIssue(
            rule_id=RULE_FIELD_COVERAGE,
            level=IssueLevel.ERROR,
            message=f"必填字段缺失：{', '.join(missing)}",
            evidence={"missing_keys": missing},
        )]

    def check_arithmetic(self, values: Dict[str, Optional[float]]) -> List[ValidationIssue]:
        issues = []

        revenue = values.get("budget_revenue_total")
        expenditure = values.get("budget_expenditure_total")
        if revenue is not None and expenditure is not None:
            diff = abs(revenue - expenditure)
            if diff > self.config.tolerance_for(RULE_REVENUE_EXPENDITURE):
                issues.append(ValidationIssue(
                    rule_id=RULE_REVENUE_EXPENDITURE,
                    level=IssueLevel.ERROR,
                    message="收入预算合计与支出预算合计不一致",
                    evidence={
                        "budget_revenue_total": revenue,
                        "budget_expenditure_total": expenditure,
                        "diff": diff,
                    },
                ))

        basic = values.get("budget_expenditure_basic")
        project = values.get("budget_expenditure_project")
        if expenditure is not None and basic is not None and project is not None:
            components_sum = basic + project
            diff = abs(expenditure - components_sum)
            if diff > self.config.tolerance_for(RULE_EXPENDITURE_COMPONENTS):
                issues.append(ValidationIssue(
                    rule_id=RULE_EXPENDITURE_COMPONENTS,
                    level=IssueLevel.ERROR,
                    message="支出预算合计不等于基本支出与项目支出之和",
                    evidence={
                        "budget_expenditure_total": expenditure,
                        "budget_expenditure_basic": basic,
                        "budget_expenditure_project": project,
                        "components_sum": components_sum,
                        "diff": diff,
                    },
                ))

        fiscal_revenue = values.get("fiscal_grant_revenue_total")
        fiscal_expenditure = values.get("fiscal_grant_expenditure_total")
        if fiscal_revenue is not None and fiscal_expenditure is not None:
            diff = abs(fiscal_revenue - fiscal_expenditure)
            if diff > self.config.tolerance_for(RULE_FISCAL_GRANT):
                issues.append(ValidationIssue(
                    rule_id=RULE_FISCAL_GRANT,
                    level=IssueLevel.ERROR,
                    message="财政拨款收入合计与财政拨款支出合计不一致",
                    evidence={
                        "fiscal_grant_revenue_total": fiscal_revenue,
                        "fiscal_grant_expenditure_total": fiscal_expenditure,
                        "diff": diff,
                    },
                ))

        return issues

    def check_year_over_year(
        self, values: Dict[str, Optional[float]], unit_id: Optional[str], year: Any
    ) -> List[ValidationIssue]:
        try:
            prev_year = int(year) - 1
        except (TypeError, ValueError):
            return []
        if not unit_id or prev_year < MIN_YEAR or self.repository is None or not values:
            return []

        previous_values = self.repository.get_locked_final_values(unit_id, prev_year, list(values.keys()))
        threshold = self.config.yoy_threshold

        issues = []
        for key, current in values.items():
            previous = previous_values.get(key)
            if current is None or previous is None or previous == 0:
                continue
            ratio = abs((current - previous) / previous)
            if ratio > threshold:
                issues.append(ValidationIssue(
                    rule_id=RULE_YOY_ANOMALY,
                    level=IssueLevel.WARN,
                    message=f"{key} 与上一年度偏差超过 {threshold:.0%}",
                    evidence={
                        "key": key,
                        "current": current,
                        "previous": previous,
                        "ratio": round(ratio, 4),
                        "prev_year": prev_year,
                    },
                ))
        return issues

    def validate(self, fields: Iterable[FieldInput], unit_id: Optional[str] = None, year: Any = None) -> List[ValidationIssue]:
        values = build_value_map(fields)
        issues: List[ValidationIssue] = []
        issues.extend(self.check_coverage(values))
        issues.extend(self.check_arithmetic(values))
        issues.extend(self.check_year_over_year(values, unit_id, year))
        return issues


def group_issues_by_level(issues: Iterable[ValidationIssue]) -> Dict[str, List[ValidationIssue]]:
    """按级别分组：{"ERROR": [...], "WARN": [...]}"""
    grouped: Dict[str, List[ValidationIssue]] = {level.value: [] for level in IssueLevel}
    for issue in issues:
        grouped[issue.level.value].append(issue)
    return grouped


def run_validation(
    fields: Iterable[FieldInput],
    unit_id: Optional[str] = None,
    year: Any = None,
    repository: Optional[HistoryActualsRepository] = None,
    config: Optional[ValidationConfig] = None,
    required_keys: Optional[List[str]] = None,
) -> List[ValidationIssue]:
    """
    运行交叉校验

    Args:
        fields: [{key, normalized_value, corrected_value}]
        unit_id: 单位标识（同比校验用）
        year: 当前年度
        repository: 历史实际数仓储，缺省时跳过同比校验
        config: 校验配置，缺省取 config/app.yaml
        required_keys: 必填键，缺省取单位口径映射表

    Returns:
        ValidationIssue 列表
    """
    if config is None:
        from config.settings import get_settings

        config = get_settings().to_validation_config()

    validator = CrossValidator(config=config, repository=repository, required_keys=required_keys)
    with LoggingContextManager(unit_id, ProcessingStage.VALIDATION):
        issues = validator.validate(fields, unit_id, year)
        grouped = group_issues_by_level(issues)
        get_business_logger().log_validation_summary(
            error_issues=len(grouped[IssueLevel.ERROR.value]),
            warn_issues=len(grouped[IssueLevel.WARN.value]),
            extra_data={"year": year},
        )
    return issues
