"""Command-line surface for workbook parsing, archive extraction, validation and PDF preflight."""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from engine.archive_extractor import extract_history_facts
from engine.errors import ExtractionError
from engine.workbook_parser import parse_budget_workbook
from schemas.facts import Caliber, HistoricalActual
from services.cross_validator import run_validation
from services.history_store import InMemoryHistoryActualsRepository
from services.history_workbook import parse_history_workbook
from services.pdf_preflight import run_pdf_preflight
from services.structured_logging import configure_from_settings

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_EXTRACTION_ERROR = 2


def _read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _load_repository(path: Optional[str]) -> Optional[InMemoryHistoryActualsRepository]:
    if not path:
        return None
    records = _read_json(path) or []
    return InMemoryHistoryActualsRepository(HistoricalActual.model_validate(item) for item in records)


def cmd_parse(args: argparse.Namespace) -> int:
    result = parse_budget_workbook(args.workbook, caliber=args.caliber, job_id=Path(args.workbook).name)
    _emit(result.model_dump(mode="json"))
    return EXIT_OK


def cmd_extract_archive(args: argparse.Namespace) -> int:
    tables = _read_json(args.tables)
    _emit(extract_history_facts(tables))
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    fields = _read_json(args.fields)
    issues = run_validation(
        fields,
        unit_id=args.unit_id,
        year=args.year,
        repository=_load_repository(args.history),
    )
    _emit([issue.model_dump(mode="json") for issue in issues])
    return EXIT_OK


def cmd_import_history(args: argparse.Namespace) -> int:
    result = parse_history_workbook(args.workbook)
    _emit(result.model_dump(mode="json"))
    return EXIT_OK if not result.errors else EXIT_FAILED


def cmd_preflight(args: argparse.Namespace) -> int:
    report = run_pdf_preflight(args.pdf)
    _emit(report.to_payload())
    return EXIT_OK if report.passed else EXIT_FAILED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="govbudget", description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    parse_cmd = subparsers.add_parser("parse", help="Extract facts from a budget workbook (.xlsx)")
    parse_cmd.add_argument("workbook")
    parse_cmd.add_argument(
        "--caliber",
        choices=[caliber.value for caliber in Caliber],
        default=Caliber.UNIT.value,
        help="Mapping variant to apply (default: unit)",
    )
    parse_cmd.set_defaults(handler=cmd_parse)

    archive_cmd = subparsers.add_parser("extract-archive", help="Extract facts from archived table snapshots")
    archive_cmd.add_argument("tables", help="JSON file: [{table_key, data_json}]")
    archive_cmd.set_defaults(handler=cmd_extract_archive)

    validate_cmd = subparsers.add_parser("validate", help="Cross-validate a field list")
    validate_cmd.add_argument("fields", help="JSON file: [{key, normalized_value, corrected_value}]")
    validate_cmd.add_argument("--unit-id", required=True)
    validate_cmd.add_argument("--year", required=True, type=int)
    validate_cmd.add_argument("--history", help="JSON file of historical actuals for year-over-year checks")
    validate_cmd.set_defaults(handler=cmd_validate)

    history_cmd = subparsers.add_parser("import-history", help="Parse a historical actuals import workbook")
    history_cmd.add_argument("workbook")
    history_cmd.set_defaults(handler=cmd_import_history)

    preflight_cmd = subparsers.add_parser("preflight", help="Check a rendered report PDF")
    preflight_cmd.add_argument("pdf")
    preflight_cmd.set_defaults(handler=cmd_preflight)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_from_settings()

    try:
        return args.handler(args)
    except ExtractionError as e:
        _emit(e.to_payload())
        return EXIT_EXTRACTION_ERROR


if __name__ == "__main__":
    sys.exit(main())
