#!/usr/bin/env python3
# -*- coding: utf-8 -*-
'''命令行入口测试.'''

import json
import logging

import pytest

from cli.main import EXIT_EXTRACTION_ERROR, EXIT_FAILED, EXIT_OK, build_parser, main
from services import pdf_preflight
from services.structured_logging import PACKAGE_LOGGER_NAMES, ROOT_LOGGER_NAME

from conftest import REQUIRED_SECTION_TEXT, make_page, write_workbook


@pytest.fixture(autouse=True)
def reset_package_loggers():
    """main() 会挂载指向被捕获 stderr 的处理器，测试后恢复"""
    yield
    for name in (ROOT_LOGGER_NAME, *PACKAGE_LOGGER_NAMES):
        target = logging.getLogger(name)
        target.handlers.clear()
        target.propagate = True


def _write_json(path, payload):
    path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    return str(path)


def _run(capsys, argv):
    code = main(argv)
    return code, json.loads(capsys.readouterr().out)


class TestCli:

    def test_parse_workbook(self, capsys, workbook_factory, unit_budget_sheets):
        path = workbook_factory(unit_budget_sheets)
        code, payload = _run(capsys, ["parse", str(path), "--caliber", "unit"])
        assert code == EXIT_OK
        facts = {fact["key"]: fact["value_numeric"] for fact in payload["facts"]}
        assert facts["budget_revenue_total"] == 1000
        assert payload["parsed_cells"]

    def test_legacy_workbook_exits_with_error_payload(self, capsys, tmp_path):
        path = tmp_path / "old.xls"
        path.write_bytes(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 32)
        code, payload = _run(capsys, ["parse", str(path)])
        assert code == EXIT_EXTRACTION_ERROR
        assert payload["code"] == "INVALID_FILE_TYPE"

    def test_extract_archive(self, capsys, tmp_path):
        tables = [{
            "table_key": "budget_summary",
            "data_json": [
                ["单位：元"],
                ["本年收入", "", "本年支出", ""],
                ["收入总计", "189,767,551", "支出总计", "189,767,551"],
            ],
        }]
        code, payload = _run(capsys, ["extract-archive", _write_json(tmp_path / "tables.json", tables)])
        assert code == EXIT_OK
        assert payload["budget_revenue_total"] == 18976.76
        assert payload["budget_expenditure_total"] == 18976.76

    def test_validate_with_history(self, capsys, tmp_path):
        fields = [
            {"key": "budget_revenue_total", "normalized_value": 120},
            {"key": "budget_expenditure_total", "normalized_value": 120},
        ]
        history = [
            {"unit_id": "U001", "year": 2024, "key": "budget_revenue_total", "value_numeric": 50, "is_locked": True},
        ]
        code, payload = _run(capsys, [
            "validate", _write_json(tmp_path / "fields.json", fields),
            "--unit-id", "U001", "--year", "2025",
            "--history", _write_json(tmp_path / "history.json", history),
        ])
        assert code == EXIT_OK
        rule_ids = [issue["rule_id"] for issue in payload]
        assert "ARCHIVE.FIELD_COVERAGE" in rule_ids
        assert "ARCHIVE.YOY_ANOMALY" in rule_ids
        assert "ARCHIVE.BALANCE_REVENUE_EXPENDITURE" not in rule_ids

    def test_import_history_reports_row_errors(self, capsys, tmp_path):
        path = write_workbook(tmp_path / "history.xlsx", {
            "history": [
                ["unit_code", "year", "key", "value_wanyuan"],
                ["U001", 2024, "budget_revenue_total", 10],
                ["U001", 2024, "budget_revenue_total", "abc"],
            ],
        })
        code, payload = _run(capsys, ["import-history", str(path)])
        assert code == EXIT_FAILED
        assert len(payload["rows"]) == 1
        assert payload["errors"][0]["code"] == "INVALID_VALUE"

    def test_import_history_missing_headers(self, capsys, tmp_path):
        path = write_workbook(tmp_path / "history.xlsx", {"history": [["unit_code"]]})
        code, payload = _run(capsys, ["import-history", str(path)])
        assert code == EXIT_EXTRACTION_ERROR
        assert payload["code"] == "INVALID_TEMPLATE"

    def test_import_history_corrupt_workbook(self, capsys, tmp_path):
        path = tmp_path / "bad.xlsx"
        path.write_bytes(b"not a zip archive")
        code, payload = _run(capsys, ["import-history", str(path)])
        assert code == EXIT_EXTRACTION_ERROR
        assert payload["code"] == "UNREADABLE_WORKBOOK"

    @pytest.mark.parametrize(
        "texts, expected_code",
        [([REQUIRED_SECTION_TEXT, REQUIRED_SECTION_TEXT], EXIT_OK), ([REQUIRED_SECTION_TEXT, "", "", REQUIRED_SECTION_TEXT], EXIT_FAILED)],
    )
    def test_preflight(self, capsys, monkeypatch, texts, expected_code):
        monkeypatch.setattr(pdf_preflight, "read_pdf_pages", lambda _path: [make_page(text) for text in texts])
        code, payload = _run(capsys, ["preflight", "report.pdf"])
        assert code == expected_code
        assert payload["pageCount"] == len(texts)

    def test_subcommand_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
