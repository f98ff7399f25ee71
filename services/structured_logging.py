"""
结构化日志系统
支持 job_id、处理阶段、耗时、事实数与校验问题数等关键指标的结构化记录
"""

import json
import logging
import sys
import time
import traceback
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

# 上下文变量
current_job_id: ContextVar[Optional[str]] = ContextVar('current_job_id', default=None)
current_stage: ContextVar[Optional[str]] = ContextVar('current_stage', default=None)

ROOT_LOGGER_NAME = "govbudget"
# 各模块使用 logging.getLogger(__name__)，按包名挂载处理器
PACKAGE_LOGGER_NAMES = ("engine", "services", "config", "cli")


class ProcessingStage(Enum):
    """处理阶段"""
    UPLOAD = "upload"
    WORKBOOK_LOADING = "workbook_loading"
    FORMULA_RECALC = "formula_recalc"
    WORKBOOK_PARSING = "workbook_parsing"
    LINE_ITEMS = "line_items"
    ARCHIVE_EXTRACTION = "archive_extraction"
    ARCHIVE_MERGE = "archive_merge"
    VALIDATION = "validation"
    PDF_PREFLIGHT = "pdf_preflight"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class StructuredLogEntry:
    """结构化日志条目"""
    timestamp: str
    level: str
    message: str
    logger: Optional[str] = None
    job_id: Optional[str] = None
    stage: Optional[str] = None

    # 性能指标
    duration_ms: Optional[float] = None

    # 工作簿指标
    sheet_count: Optional[int] = None
    rules_total: Optional[int] = None
    facts_count: Optional[int] = None
    texts_count: Optional[int] = None
    parsed_cells: Optional[int] = None

    # 校验指标
    error_issues: Optional[int] = None
    warn_issues: Optional[int] = None

    # 错误信息
    error_type: Optional[str] = None
    error_code: Optional[str] = None
    error_details: Optional[str] = None
    stack_trace: Optional[str] = None

    # 额外数据
    extra_data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        data = asdict(self)
        # 移除None值
        return {k: v for k, v in data.items() if v is not None}

    def to_json(self) -> str:
        """转换为JSON字符串"""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(',', ':'), default=str)


_METRIC_FIELDS = (
    'duration_ms', 'sheet_count', 'rules_total', 'facts_count', 'texts_count',
    'parsed_cells', 'error_issues', 'warn_issues', 'error_code', 'extra_data',
)


class StructuredFormatter(logging.Formatter):
    """结构化日志格式化器（JSON Lines）"""

    def format(self, record: logging.LogRecord) -> str:
        """格式化日志记录"""
        log_entry = StructuredLogEntry(
            timestamp=datetime.fromtimestamp(record.created).isoformat(),
            level=record.levelname,
            message=record.getMessage(),
            logger=record.name,
            job_id=current_job_id.get(),
            stage=current_stage.get()
        )

        # 从record中提取额外信息
        for name in _METRIC_FIELDS:
            if hasattr(record, name):
                setattr(log_entry, name, getattr(record, name))

        # 错误信息
        if record.exc_info:
            log_entry.error_type = record.exc_info[0].__name__ if record.exc_info[0] else None
            log_entry.error_details = str(record.exc_info[1]) if record.exc_info[1] else None
            log_entry.stack_trace = ''.join(traceback.format_exception(*record.exc_info))

        return log_entry.to_json()


class BusinessLoggerAdapter(logging.LoggerAdapter):
    """业务日志适配器"""

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    def process(self, msg, kwargs):
        return msg, kwargs

    def log_stage_start(self, stage: ProcessingStage, **kwargs):
        """记录阶段开始"""
        current_stage.set(stage.value)
        self.info(f"开始 {stage.value} 阶段", extra=kwargs)

    def log_parse_summary(self, sheet_count: int, rules_total: int, facts_count: int,
                          texts_count: int, parsed_cells: int, **kwargs):
        """记录工作簿解析结果"""
        self.info(
            f"解析完成: 工作表 {sheet_count} 张, 规则 {rules_total} 条, "
            f"数值事实 {facts_count} 项, 文本 {texts_count} 项",
            extra={
                'sheet_count': sheet_count,
                'rules_total': rules_total,
                'facts_count': facts_count,
                'texts_count': texts_count,
                'parsed_cells': parsed_cells,
                **kwargs
            })

    def log_validation_summary(self, error_issues: int, warn_issues: int, **kwargs):
        """记录校验结果"""
        self.info(f"校验完成: ERROR {error_issues} 项, WARN {warn_issues} 项", extra={
            'error_issues': error_issues,
            'warn_issues': warn_issues,
            **kwargs
        })

    def log_error_with_context(self, message: str, error: Exception, **kwargs):
        """记录带上下文的错误"""
        code = getattr(error, 'code', None)
        if code:
            kwargs.setdefault('error_code', code)
        self.error(message, exc_info=(type(error), error, error.__traceback__), extra=kwargs)


class LoggingContextManager:
    """日志上下文管理器"""

    def __init__(self, job_id: Optional[str], stage: Optional[ProcessingStage] = None):
        self.job_id = job_id
        self.stage = stage.value if stage else None
        self.start_time = time.time()
        self._job_token = None
        self._stage_token = None

    def __enter__(self):
        """进入上下文"""
        if self.job_id:
            self._job_token = current_job_id.set(self.job_id)
        self._stage_token = current_stage.set(self.stage)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """退出上下文"""
        if self._job_token:
            current_job_id.reset(self._job_token)
        if self._stage_token:
            current_stage.reset(self._stage_token)

    @property
    def duration_ms(self) -> float:
        """获取耗时（毫秒）"""
        return (time.time() - self.start_time) * 1000


def setup_structured_logging(log_file: Optional[str] = None,
                             log_level: str = "INFO",
                             enable_console: bool = True) -> BusinessLoggerAdapter:
    """
    设置结构化日志

    Args:
        log_file: 日志文件路径（JSON Lines）
        log_level: 日志级别
        enable_console: 是否启用控制台输出

    Returns:
        业务日志适配器
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    handlers = []

    # 控制台使用简化格式，输出到 stderr，避免污染 CLI 的 JSON 输出
    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)8s] [%(name)s] %(message)s',
            datefmt='%H:%M:%S'
        ))
        handlers.append(console_handler)

    # 文件处理器（结构化JSON格式）
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(StructuredFormatter())
        handlers.append(file_handler)

    for name in (ROOT_LOGGER_NAME, *PACKAGE_LOGGER_NAMES):
        target = logging.getLogger(name)
        target.setLevel(level)
        # 清除现有处理器
        target.handlers.clear()
        for handler in handlers:
            target.addHandler(handler)
        target.propagate = False

    return BusinessLoggerAdapter(logging.getLogger(ROOT_LOGGER_NAME))


# 全局日志器实例
business_logger = None


def get_business_logger() -> BusinessLoggerAdapter:
    """获取全局业务日志器（未显式初始化时不挂载处理器，沿用宿主应用的日志配置）"""
    global business_logger
    if business_logger is None:
        business_logger = BusinessLoggerAdapter(logging.getLogger(ROOT_LOGGER_NAME))
    return business_logger


def configure_from_settings() -> BusinessLoggerAdapter:
    """按 config/app.yaml 的 logging 段初始化"""
    global business_logger
    from config.settings import get_settings

    config = get_settings().get_logging_config()
    business_logger = setup_structured_logging(
        log_file=config.get("file") or None,
        log_level=config.get("level", "INFO"),
        enable_console=True,
    )
    return business_logger
