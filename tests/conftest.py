"""
pytest配置文件，提供共享的测试fixtures
"""
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from openpyxl import Workbook

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from schemas.facts import HistoricalActual, ReportStage  # noqa: E402
from services.history_store import InMemoryHistoryActualsRepository  # noqa: E402
from services.pdf_preflight import PdfPageInfo  # noqa: E402

A4_WIDTH = 841.68
A4_HEIGHT = 595.44

REQUIRED_SECTION_TEXT = (
    "六、其他相关情况说明 七、项目经费情况说明 "
    "政府性基金预算支出功能分类预算表 国有资本经营预算支出功能分类预算表 "
    "“三公”经费和机关运行经费预算表"
)


def write_workbook(path: Path, sheets: Dict[str, List[List[Any]]],
                   number_formats: Optional[Dict[str, Dict[str, str]]] = None) -> Path:
    """按 {工作表: 二维数组} 写出 .xlsx；以 '=' 开头的字符串写为公式"""
    workbook = Workbook()
    workbook.remove(workbook.active)
    for sheet_name, rows in sheets.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for row in rows:
            worksheet.append(row)
        for address, number_format in (number_formats or {}).get(sheet_name, {}).items():
            worksheet[address].number_format = number_format
    workbook.save(path)
    return path


@pytest.fixture
def workbook_factory(tmp_path):
    """在 tmp_path 中生成真实工作簿"""
    counter = {"n": 0}

    def build(sheets: Dict[str, List[List[Any]]], number_formats=None, name: Optional[str] = None) -> Path:
        counter["n"] += 1
        path = tmp_path / (name or f"workbook_{counter['n']}.xlsx")
        return write_workbook(path, sheets, number_formats)

    return build


@pytest.fixture
def unit_budget_sheets() -> Dict[str, List[List[Any]]]:
    """单位口径最小可解析工作簿"""
    return {
        "预算汇总": [
            ["单位收支总表"],
            ["项目", "预算数（万元）"],
            ["收入合计", 1000],
            ["其中：财政拨款收入", 900],
            ["事业收入", 50],
            ["其他收入", 50],
            ["支出合计", 1000],
            ["基本支出", 600],
            ["项目支出", 400],
        ],
        "财政拨款收支总表": [
            ["财政拨款收支总表"],
            ["项目", "预算数（万元）", "一般公共预算"],
            ["拨款收入合计", 900],
            ["拨款支出合计", 900, 900],
        ],
    }


@pytest.fixture
def history_repository():
    """已锁定 2024 年决算数的内存仓储"""
    repository = InMemoryHistoryActualsRepository([
        HistoricalActual(unit_id="U001", year=2024, stage=ReportStage.FINAL, key="budget_revenue_total", value_numeric=50),
        HistoricalActual(unit_id="U001", year=2024, stage=ReportStage.FINAL, key="budget_expenditure_total", value_numeric=100),
    ])
    repository.lock("U001", 2024)
    return repository


def make_page(text: str = "", width: float = A4_WIDTH, height: float = A4_HEIGHT) -> PdfPageInfo:
    return PdfPageInfo(width=width, height=height, text=text)


@pytest.fixture
def fake_page_source():
    """构造可注入的 PDF 页面读取函数"""

    def build(pages: List[PdfPageInfo]):
        def source(_path):
            return list(pages)
        return source

    return build
