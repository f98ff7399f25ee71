"""
统一数据结构定义
定义映射规则、抽取事实、校验问题、历史实际数与 PDF 预检报告的统一格式
"""

import json
import math
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Caliber(str, Enum):
    """口径：单位 / 部门"""

    UNIT = "unit"
    DEPARTMENT = "department"


class TextStrategy(str, Enum):
    """文本抽取策略"""

    ALL_CONTENT = "all_content"
    FIRST_CELL = "first_cell"


class ValueType(str, Enum):
    """单元格取值类型"""

    EMPTY = "empty"
    DATE = "date"
    NUMBER = "number"
    BOOLEAN = "boolean"
    FORMULA = "formula"
    STRING = "string"


class IssueLevel(str, Enum):
    """校验问题级别"""

    ERROR = "ERROR"
    WARN = "WARN"


class ReportStage(str, Enum):
    """报告阶段：预算 / 决算"""

    BUDGET = "BUDGET"
    FINAL = "FINAL"


class Confidence(str, Enum):
    """档案预览字段置信度"""

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNRECOGNIZED = "UNRECOGNIZED"


class FindingCode(str, Enum):
    """PDF 预检发现代码"""

    NO_PAGES = "NO_PAGES"
    PAGE_SIZE_NOT_A4 = "PAGE_SIZE_NOT_A4"
    TOO_MANY_BLANK_PAGES = "TOO_MANY_BLANK_PAGES"
    SPARSE_PAGES = "SPARSE_PAGES"
    MISSING_REQUIRED_SECTIONS = "MISSING_REQUIRED_SECTIONS"
    INTERIOR_BLANK_PAGES = "INTERIOR_BLANK_PAGES"


def to_numeric(value: Any) -> Optional[float]:
    """宽松数值转换：空串/None/非有限数 -> None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


# ---------------------------------------------------------------------------
# 映射规则
# ---------------------------------------------------------------------------


class NumericRule(BaseModel):
    """行锚点 × 列锚点交叉定位的数值规则"""

    model_config = ConfigDict(frozen=True)

    type: Literal["numeric"] = "numeric"
    key: str = Field(..., description="事实键，贯穿抽取、校验与存储")
    sheet: str = Field(..., description="目标工作表名称")
    aliases: List[str] = Field(default_factory=list, description="工作表别名")
    row_anchor: str = Field(..., description="行锚点文本")
    row_anchor_aliases: List[str] = Field(default_factory=list)
    row_anchor_index: int = Field(default=1, description="第N次出现，-1 为最后一次")
    col_anchor: str = Field(..., description="列锚点文本")
    col_anchor_aliases: List[str] = Field(default_factory=list)
    col_anchor_index: int = Field(default=1)
    row_offset: int = 0
    col_offset: int = 0
    sum_rows: Optional[List[str]] = Field(default=None, description="按行表头求和回退")
    sum_cols: Optional[List[str]] = Field(default=None, description="按列表头求和回退")
    optional: bool = False

    @property
    def is_text(self) -> bool:
        return False

    @property
    def sheet_candidates(self) -> List[str]:
        return [self.sheet, *self.aliases]

    @property
    def row_labels(self) -> List[str]:
        return [self.row_anchor, *self.row_anchor_aliases]

    @property
    def col_labels(self) -> List[str]:
        return [self.col_anchor, *self.col_anchor_aliases]


class TextRule(BaseModel):
    """叙述性工作表文本规则"""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    key: str
    sheet: str
    aliases: List[str] = Field(default_factory=list)
    strategy: TextStrategy = TextStrategy.ALL_CONTENT
    optional: bool = True

    @property
    def is_text(self) -> bool:
        return True

    @property
    def sheet_candidates(self) -> List[str]:
        return [self.sheet, *self.aliases]


MappingRule = Annotated[Union[NumericRule, TextRule], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# 抽取结果
# ---------------------------------------------------------------------------


class ParsedCell(BaseModel):
    """解析过程中触达的单元格证据（按 sheet+address 去重）"""

    model_config = ConfigDict(frozen=True)

    sheet_name: str
    cell_address: str
    anchor: str = Field(..., description="锚点描述，如 row:收入合计|col:预算数")
    raw_value: Optional[str] = None
    normalized_value: str = ""
    value_type: ValueType = ValueType.EMPTY
    number_format: Optional[str] = None


class Fact(BaseModel):
    """数值事实"""

    key: str
    value_numeric: float
    evidence_cells: List[ParsedCell] = Field(default_factory=list)


class TextFact(BaseModel):
    """文本事实"""

    key: str
    value_text: str


class ParseResult(BaseModel):
    """工作簿解析输出"""

    parsed_cells: List[ParsedCell] = Field(default_factory=list)
    facts: List[Fact] = Field(default_factory=list)
    texts: List[TextFact] = Field(default_factory=list)

    def fact_map(self) -> Dict[str, float]:
        return {fact.key: fact.value_numeric for fact in self.facts}

    def text_map(self) -> Dict[str, str]:
        return {text.key: text.value_text for text in self.texts}


# ---------------------------------------------------------------------------
# 校验
# ---------------------------------------------------------------------------


class ValidationIssue(BaseModel):
    """校验问题，只描述不修改事实"""

    rule_id: str
    level: IssueLevel
    message: str
    evidence: Optional[Dict[str, Any]] = None


class ValidatorField(BaseModel):
    """校验输入字段：修正值优先于规范化值"""

    key: str
    normalized_value: Optional[float] = None
    corrected_value: Optional[float] = None

    @field_validator("normalized_value", "corrected_value", mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any) -> Optional[float]:
        return to_numeric(value)

    @property
    def effective_value(self) -> Optional[float]:
        if self.corrected_value is not None:
            return self.corrected_value
        return self.normalized_value


class ValidationConfig(BaseModel):
    """校验配置"""

    tolerance: float = 0.01
    rule_tolerances: Dict[str, float] = Field(default_factory=dict)
    yoy_threshold: float = 0.5

    def tolerance_for(self, rule_id: str) -> float:
        return self.rule_tolerances.get(rule_id, self.tolerance)


# ---------------------------------------------------------------------------
# 历史实际数与档案预览
# ---------------------------------------------------------------------------


class HistoricalActual(BaseModel):
    """已确认的历史实际数，(unit, year, stage, key) 唯一"""

    unit_id: str
    year: int
    stage: ReportStage = ReportStage.FINAL
    key: str
    value_numeric: float
    is_locked: bool = False
    source_batch_id: Optional[str] = None
    source_suggestion_id: Optional[str] = None
    source_preview_batch_id: Optional[str] = None

    @property
    def identity(self) -> Tuple[str, int, str, str]:
        return (self.unit_id, self.year, self.stage.value, self.key)


class ArchiveTable(BaseModel):
    """从 PDF 捕获的松散二维表快照"""

    table_key: str = ""
    data_json: List[List[Any]] = Field(default_factory=list)

    @field_validator("data_json", mode="before")
    @classmethod
    def _decode_rows(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = json.loads(value) if value.strip() else []
        if value is None:
            return []
        return [row if isinstance(row, list) else [] for row in value]


class ManualArchiveItem(BaseModel):
    """人工录入项：key 可为事实键或原始标签"""

    key: Optional[str] = None
    label: Optional[str] = None
    value: Any = None

    @property
    def display_label(self) -> str:
        return str(self.label or self.key or "").strip()


class ArchivePreviewField(BaseModel):
    """待人工确认的候选事实"""

    batch_id: str
    key: Optional[str] = None
    raw_label: Optional[str] = None
    raw_value: Optional[str] = None
    normalized_value: Optional[float] = None
    confidence: Confidence = Confidence.LOW
    match_source: Optional[str] = None
    confirmed: bool = False
    corrected_value: Optional[float] = None
    manual_skipped: bool = False

    @property
    def effective_value(self) -> Optional[float]:
        if self.corrected_value is not None:
            return self.corrected_value
        return self.normalized_value


class ArchivePreview(BaseModel):
    """档案预览批次结果"""

    batch_id: str
    fields: List[ArchivePreviewField] = Field(default_factory=list)
    issues: List[ValidationIssue] = Field(default_factory=list)

    def field_map(self) -> Dict[str, ArchivePreviewField]:
        return {field.key: field for field in self.fields if field.key}


class ArchiveConfig(BaseModel):
    """历史档案自动抽取与合并配置"""

    yuan_magnitude_threshold: float = 100000
    unit_scan_rows: int = 20
    marker_scan_rows: int = 28
    scale_conflict_ranges: List[Tuple[float, float]] = Field(
        default_factory=lambda: [(9000.0, 11000.0), (900.0, 1100.0)]
    )
    fuzzy_label_threshold: float = 88


# ---------------------------------------------------------------------------
# 历史实际数导入模板
# ---------------------------------------------------------------------------


class HistoryImportRow(BaseModel):
    unit_code: str
    year: int
    key: str
    value_wanyuan: float
    note: Optional[str] = None
    row_number: int


class HistoryImportError(BaseModel):
    row: int
    code: Literal["MISSING_REQUIRED", "INVALID_YEAR", "INVALID_KEY", "INVALID_VALUE"]
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class HistoryImportResult(BaseModel):
    sheet_name: str
    rows: List[HistoryImportRow] = Field(default_factory=list)
    errors: List[HistoryImportError] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# PDF 预检
# ---------------------------------------------------------------------------


class SparsePage(BaseModel):
    page: int
    chars: int
    sample: str = ""


class PreflightFinding(BaseModel):
    """预检发现项"""

    code: FindingCode
    message: str
    pages: Optional[List[Any]] = None
    missing: Optional[List[str]] = None


class PreflightReport(BaseModel):
    """预检报告，对外以 camelCase 输出"""

    model_config = ConfigDict(populate_by_name=True)

    page_count: int = Field(default=0, alias="pageCount")
    blank_pages: List[int] = Field(default_factory=list, alias="blankPages")
    sparse_pages: List[SparsePage] = Field(default_factory=list, alias="sparsePages")
    findings: List[PreflightFinding] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.findings

    def finding_codes(self) -> List[str]:
        return [finding.code.value for finding in self.findings]

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PreflightConfig(BaseModel):
    """PDF 预检配置（A4 横向）"""

    page_width: float = 841.68
    page_height: float = 595.44
    size_tolerance: float = 1.2
    max_blank_pages: int = 1
    max_interior_blank_pages: int = 1
    min_chars_non_blank: int = 24
