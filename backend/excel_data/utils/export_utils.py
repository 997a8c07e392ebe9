import io
from typing import Dict, List, Optional, Sequence

import pandas as pd
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from excel_data.utils.timeutils import format_minutes

EXPORT_SHEET_NAME = "Data"
EMPTY_EXPORT_TEXT = "No data found"
LAST_MODIFIED_COLUMN = "Last Modified"
MAX_COLUMN_WIDTH = 60

_HEADER_FONT = Font(bold=True)
_HEADER_FILL = PatternFill(start_color="D9D9D9", end_color="D9D9D9", fill_type="solid")
_THIN = Side(style="thin")
_BORDER = Border(left=_THIN, right=_THIN, top=_THIN, bottom=_THIN)


def collect_headers(row_maps: Sequence[Dict[str, str]]) -> List[str]:
    """Union of column names, in order of first appearance."""
    headers: List[str] = []
    seen = set()
    for data in row_maps:
        for key in data:
            if key not in seen:
                seen.add(key)
                headers.append(key)
    return headers


def _unused_header(base: str, headers: Sequence[str]) -> str:
    """``base``, or ``base_2``, ``base_3``... if the sheet already has that column."""
    name = base
    suffix = 1
    while name in headers:
        suffix += 1
        name = f"{base}_{suffix}"
    return name


def modification_label(modified_date, modified_by: Optional[str]) -> str:
    if modified_date is None:
        return ""
    label = format_minutes(modified_date)
    return f"{label} ({modified_by})" if modified_by else label


def build_workbook(
    row_maps: Sequence[Dict[str, str]],
    last_modified: Optional[Sequence[str]] = None,
) -> bytes:
    """
    Render rows as an .xlsx workbook.

    :param row_maps: one column-map per row, already in output order
    :param last_modified: optional per-row labels appended as a "Last Modified" column,
        suffixed when a data column already uses that name
    :return: workbook content as bytes
    """
    output = io.BytesIO()

    if not row_maps:
        df = pd.DataFrame([[EMPTY_EXPORT_TEXT]])
        with pd.ExcelWriter(output, engine="openpyxl") as writer:
            df.to_excel(writer, index=False, header=False, sheet_name=EXPORT_SHEET_NAME)
        output.seek(0)
        return output.read()

    headers = collect_headers(row_maps)
    df = pd.DataFrame([[data.get(h, "") for h in headers] for data in row_maps], columns=headers)
    if last_modified is not None:
        df[_unused_header(LAST_MODIFIED_COLUMN, headers)] = list(last_modified)

    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name=EXPORT_SHEET_NAME)
        _style_sheet(writer.sheets[EXPORT_SHEET_NAME], df)

    output.seek(0)
    return output.read()


def _style_sheet(worksheet, df: pd.DataFrame) -> None:
    for cell in worksheet[1]:
        cell.font = _HEADER_FONT
        cell.fill = _HEADER_FILL

    for row in worksheet.iter_rows(min_row=1, max_row=len(df) + 1, max_col=len(df.columns)):
        for cell in row:
            cell.border = _BORDER

    worksheet.freeze_panes = "A2"

    for idx, column in enumerate(df.columns, start=1):
        longest = max([len(str(column))] + [len(str(v)) for v in df[column]])
        worksheet.column_dimensions[get_column_letter(idx)].width = min(longest + 2, MAX_COLUMN_WIDTH)
