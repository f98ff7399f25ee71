"""
PDF 输出预检
检查页面尺寸（A4 横向）、空白/稀疏页与必备章节，发现项全部收集后统一报告。
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

import pdfplumber

from engine.errors import PdfPreflightError
from schemas.facts import FindingCode, PreflightConfig, PreflightFinding, PreflightReport, SparsePage
from services.structured_logging import LoggingContextManager, ProcessingStage

logger = logging.getLogger(__name__)

REQUIRED_TERMS = [
    ("section_7_project_expense", "七、项目经费情况说明"),
    ("section_6_other_notes", "六、其他相关情况说明"),
    ("table_gov_fund", "政府性基金预算支出功能分类预算表"),
    ("table_state_capital", "国有资本经营预算支出功能分类预算表"),
    ("table_three_public", "“三公”经费和机关运行经费预算表"),
]

SAMPLE_LENGTH = 80

_whitespace = re.compile(r"\s+")


@dataclass
class PdfPageInfo:
    """单页几何与文本"""
    width: float
    height: float
    text: str = ""


PageSource = Callable[[Union[str, Path]], Iterable[PdfPageInfo]]


def compact(text: Optional[str]) -> str:
    return _whitespace.sub("", text or "")


def read_pdf_pages(pdf_path: Union[str, Path]) -> List[PdfPageInfo]:
    """pdfplumber 读取每页尺寸与文本"""
    pages = []
    with pdfplumber.open(str(pdf_path)) as pdf:
        for page in pdf.pages:
            pages.append(PdfPageInfo(
                width=float(page.width),
                height=float(page.height),
                text=page.extract_text() or "",
            ))
    return pages


class PdfPreflightChecker:
    """PDF 预检器"""

    def __init__(self, config: Optional[PreflightConfig] = None):
        self.config = config or PreflightConfig()

    def is_a4_landscape(self, page: PdfPageInfo) -> bool:
        tolerance = self.config.size_tolerance
        return (
            abs(float(page.width or 0) - self.config.page_width) <= tolerance
            and abs(float(page.height or 0) - self.config.page_height) <= tolerance
        )

    def check(self, pages: List[PdfPageInfo]) -> PreflightReport:
        findings: List[PreflightFinding] = []

        if not pages:
            findings.append(PreflightFinding(code=FindingCode.NO_PAGES, message="PDF contains no readable pages."))

        non_a4 = [
            {"page": index, "width": page.width, "height": page.height}
            for index, page in enumerate(pages, start=1)
            if not self.is_a4_landscape(page)
        ]
        if non_a4:
            findings.append(PreflightFinding(
                code=FindingCode.PAGE_SIZE_NOT_A4,
                message="PDF page size is not A4 landscape on some pages.",
                pages=non_a4,
            ))

        blank_pages: List[int] = []
        sparse_pages: List[SparsePage] = []
        for index, page in enumerate(pages, start=1):
            text = compact(page.text)
            if not text:
                blank_pages.append(index)
            elif len(text) < self.config.min_chars_non_blank:
                sparse_pages.append(SparsePage(
                    page=index,
                    chars=len(text),
                    sample=(page.text or "").strip()[:SAMPLE_LENGTH],
                ))

        if len(blank_pages) > self.config.max_blank_pages:
            findings.append(PreflightFinding(
                code=FindingCode.TOO_MANY_BLANK_PAGES,
                message=f"Too many blank pages: {len(blank_pages)}.",
                pages=blank_pages,
            ))

        if sparse_pages:
            findings.append(PreflightFinding(
                code=FindingCode.SPARSE_PAGES,
                message="Pages with too little textual content were detected.",
                pages=[page.model_dump() for page in sparse_pages],
            ))

        full_text = compact("\n".join(page.text or "" for page in pages))
        missing = [text for _, text in REQUIRED_TERMS if compact(text) not in full_text]
        if missing:
            findings.append(PreflightFinding(
                code=FindingCode.MISSING_REQUIRED_SECTIONS,
                message="Some required sections/tables are missing in PDF text.",
                missing=missing,
            ))

        content_pages = [index for index, page in enumerate(pages, start=1) if compact(page.text)]
        interior_blank = []
        if len(content_pages) > 1:
            interior_blank = [
                number for number in range(content_pages[0] + 1, content_pages[-1])
                if not compact(pages[number - 1].text)
            ]
        if len(interior_blank) > self.config.max_interior_blank_pages:
            findings.append(PreflightFinding(
                code=FindingCode.INTERIOR_BLANK_PAGES,
                message="Blank pages were detected between content pages.",
                pages=interior_blank,
            ))

        return PreflightReport(
            page_count=len(pages),
            blank_pages=blank_pages,
            sparse_pages=sparse_pages,
            findings=findings,
        )


def run_pdf_preflight(
    pdf_path: Union[str, Path],
    config: Optional[PreflightConfig] = None,
    page_source: Optional[PageSource] = None,
) -> PreflightReport:
    """
    运行 PDF 预检，只返回报告不抛出

    Args:
        pdf_path: PDF 文件路径
        config: 预检配置，缺省取 config/app.yaml
        page_source: 页面读取函数，缺省使用 pdfplumber
    """
    if config is None:
        from config.settings import get_settings

        config = get_settings().to_preflight_config()

    reader = page_source or read_pdf_pages
    with LoggingContextManager(Path(pdf_path).name, ProcessingStage.PDF_PREFLIGHT):
        pages = list(reader(pdf_path))
        report = PdfPreflightChecker(config).check(pages)
        if report.passed:
            logger.info(f"PDF 预检通过: pages={report.page_count}")
        else:
            logger.warning(f"PDF 预检未通过: pages={report.page_count} findings={report.finding_codes()}")
    return report


def assert_pdf_preflight(
    pdf_path: Union[str, Path],
    config: Optional[PreflightConfig] = None,
    page_source: Optional[PageSource] = None,
) -> PreflightReport:
    """预检失败时抛出 PdfPreflightError（details 为完整报告）"""
    report = run_pdf_preflight(pdf_path, config=config, page_source=page_source)
    if not report.passed:
        raise PdfPreflightError(report.to_payload())
    return report
