"""
抽取错误定义
统一错误类型、HTTP 状态提示与结构化证据
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ExtractionErrorType(Enum):
    """抽取错误类型"""
    MISSING_SHEET = "MISSING_SHEET"  # 必须工作表及其别名均缺失
    MISSING_ANCHOR = "MISSING_ANCHOR"  # 行/列锚点未找到
    MISSING_VALUE = "MISSING_VALUE"  # 交叉单元格为空且无求和回退
    UNSUPPORTED_WORKBOOK_LAYOUT = "UNSUPPORTED_WORKBOOK_LAYOUT"  # 合并单元格冲突
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"  # 旧版 .xls
    UNREADABLE_WORKBOOK = "UNREADABLE_WORKBOOK"  # 两种引擎均无法打开
    PDF_PREFLIGHT_FAILED = "PDF_PREFLIGHT_FAILED"
    INVALID_TEMPLATE = "INVALID_TEMPLATE"  # 历史数导入模板表头缺失


_DEFAULT_STATUS = {
    ExtractionErrorType.INVALID_FILE_TYPE: 400,
}


@dataclass
class ExtractionError(Exception):
    """抽取错误"""
    error_type: ExtractionErrorType
    message: str
    status_code: Optional[int] = None
    rule_key: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.status_code is None:
            self.status_code = _DEFAULT_STATUS.get(self.error_type, 422)
        if self.rule_key and "rule" not in self.details:
            self.details["rule"] = self.rule_key

    def __str__(self):
        return f"ExtractionError({self.error_type.value}): {self.message}"

    @property
    def code(self) -> str:
        return self.error_type.value

    @property
    def evidence(self) -> Dict[str, Any]:
        return self.details.get("evidence") or {}

    @property
    def aborts_workbook(self) -> bool:
        """整本工作簿级别的打开错误"""
        return self.error_type in {
            ExtractionErrorType.INVALID_FILE_TYPE,
            ExtractionErrorType.UNREADABLE_WORKBOOK,
            ExtractionErrorType.UNSUPPORTED_WORKBOOK_LAYOUT,
        }

    def to_payload(self) -> Dict[str, Any]:
        """渲染为 {code, message, details} 响应体"""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class PdfPreflightError(ExtractionError):
    """PDF 预检失败，details 为完整报告"""

    def __init__(self, report: Dict[str, Any], message: Optional[str] = None):
        super().__init__(
            error_type=ExtractionErrorType.PDF_PREFLIGHT_FAILED,
            message=message or "PDF preflight check failed. Please adjust layout/content and regenerate.",
            details=report,
        )

    @property
    def findings(self):
        return self.details.get("findings", [])
