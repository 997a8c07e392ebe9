"""Turns an uploaded workbook or CSV into header names and row column-maps.

Row 1 is always the header. Data rows keep their 1-based spreadsheet row
number, and rows whose cells are all blank are skipped.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd
from openpyxl import load_workbook

from excel_data.core.exceptions import (
    ExcelDataError,
    ExternalFailureError,
    InvalidArgumentError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

EXCEL_EXTENSIONS = {".xlsx", ".xlsm"}
CSV_EXTENSIONS = {".csv"}
SUPPORTED_EXTENSIONS = EXCEL_EXTENSIONS | CSV_EXTENSIONS

# A CSV file has exactly one sheet; it is stored under this name
CSV_SHEET_NAME = "Sheet1"


@dataclass
class ParsedSheet:
    sheet_name: str
    headers: List[str]
    # (row_index, column-map) for every non-blank data row
    rows: List[Tuple[int, Dict[str, str]]] = field(default_factory=list)
    skipped_rows: int = 0


def cell_to_string(value: Any) -> str:
    """Render a cell the way a user reads it in the sheet, trimmed."""
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        # 5.0 -> "5"
        if value.is_integer():
            return str(int(value))
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, (date, time)):
        return value.isoformat()
    return str(value).strip()


def build_headers(header_cells: Sequence[Any], width: int) -> List[str]:
    """Header names for columns 1..width; blanks become Column{n}, repeats get _2, _3."""
    headers: List[str] = []
    used = set()
    for col in range(1, width + 1):
        value = cell_to_string(header_cells[col - 1]) if col - 1 < len(header_cells) else ""
        base = value or f"Column{col}"
        name = base
        suffix = 1
        while name in used:
            suffix += 1
            name = f"{base}_{suffix}"
        used.add(name)
        headers.append(name)
    return headers


def rows_to_sheet(sheet_name: str, raw_rows: List[Sequence[Any]]) -> ParsedSheet:
    if not raw_rows:
        return ParsedSheet(sheet_name=sheet_name, headers=[])

    width = max(len(r) for r in raw_rows)
    headers = build_headers(raw_rows[0], width)
    parsed = ParsedSheet(sheet_name=sheet_name, headers=headers)

    for row_index, cells in enumerate(raw_rows[1:], start=2):
        values = [cell_to_string(c) for c in cells]
        values.extend([""] * (width - len(values)))
        if not any(values):
            parsed.skipped_rows += 1
            continue
        parsed.rows.append((row_index, dict(zip(headers, values))))

    return parsed


def _read_workbook_rows(file_path: Path, sheet_name: Optional[str]) -> Tuple[str, List[Tuple[Any, ...]]]:
    workbook = load_workbook(file_path, data_only=True)
    try:
        if not workbook.sheetnames:
            raise ExternalFailureError("Workbook contains no worksheets")

        if sheet_name is None:
            worksheet = workbook.worksheets[0]
        elif sheet_name in workbook.sheetnames:
            worksheet = workbook[sheet_name]
        else:
            raise NotFoundError(
                f"Sheet not found: {sheet_name}. Available sheets: {', '.join(workbook.sheetnames)}"
            )

        return worksheet.title, list(worksheet.iter_rows(min_row=1, values_only=True))
    finally:
        workbook.close()


def _read_csv_rows(file_path: Path, sheet_name: Optional[str]) -> Tuple[str, List[Tuple[Any, ...]]]:
    if sheet_name is not None and sheet_name != CSV_SHEET_NAME:
        raise NotFoundError(f"Sheet not found: {sheet_name}. Available sheets: {CSV_SHEET_NAME}")

    try:
        df = pd.read_csv(
            file_path,
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=False,
            encoding="utf-8-sig",
        )
    except pd.errors.EmptyDataError:
        return CSV_SHEET_NAME, []

    return CSV_SHEET_NAME, [tuple(r) for r in df.itertuples(index=False, name=None)]


def read_sheet(file_path: str, sheet_name: Optional[str] = None) -> ParsedSheet:
    """Parse one sheet (the first one when sheet_name is None)."""
    path = Path(file_path)
    suffix = path.suffix.lower()

    if suffix not in SUPPORTED_EXTENSIONS:
        raise InvalidArgumentError(
            f"File type not supported. Allowed: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )
    if not path.exists():
        raise ExternalFailureError(f"Physical file not found: {file_path}")

    try:
        if suffix in CSV_EXTENSIONS:
            name, raw_rows = _read_csv_rows(path, sheet_name)
        else:
            name, raw_rows = _read_workbook_rows(path, sheet_name)
    except ExcelDataError:
        raise
    except Exception as e:
        logger.error(f"Error parsing {file_path}: {e}")
        raise ExternalFailureError(f"Error parsing file: {str(e)}") from e

    parsed = rows_to_sheet(name, raw_rows)
    logger.info(
        f"Parsed sheet {name} of {path.name}: {len(parsed.headers)} columns, "
        f"{len(parsed.rows)} data rows, {parsed.skipped_rows} blank rows skipped"
    )
    return parsed


def list_sheets(file_path: str) -> List[str]:
    path = Path(file_path)
    suffix = path.suffix.lower()

    if suffix in CSV_EXTENSIONS:
        return [CSV_SHEET_NAME]
    if suffix not in EXCEL_EXTENSIONS:
        raise InvalidArgumentError(
            f"File type not supported. Allowed: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )

    try:
        workbook = load_workbook(path, read_only=True)
    except Exception as e:
        raise ExternalFailureError(f"Error parsing file: {str(e)}") from e
    try:
        return list(workbook.sheetnames)
    finally:
        workbook.close()
