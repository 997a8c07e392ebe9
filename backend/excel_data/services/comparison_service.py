"""
Cell-by-cell comparison of two row sets.

Rows are paired purely by row_index. Everything here reads stored rows only;
the source spreadsheets are never opened.
"""
import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from sqlalchemy import func
from sqlalchemy.orm import Session
from excel_data.core.exceptions import InternalError, InvalidArgumentError, NotFoundError
from excel_data.models.file import ExcelFile
from excel_data.models.row import ExcelDataRow
from excel_data.schemas.comparison import (
    ENTIRE_ROW,
    ChangeEntry,
    ComparisonResult,
    ComparisonSummary,
    DataDifference,
    DifferenceType,
    FileHistoryEntry,
    RowHistoryEntry,
)
from excel_data.utils.row_data import RowDataFormatError, deserialize_row_data, preview
from excel_data.utils.timeutils import format_minutes, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

FILE_HISTORY_PREVIEW = 100
ROW_HISTORY_PREVIEW = 200


def _first_by_index(rows: Iterable[ExcelDataRow]) -> Dict[int, ExcelDataRow]:
    by_index: Dict[int, ExcelDataRow] = {}
    for row in rows:
        by_index.setdefault(row.row_index, row)
    return by_index


def _decode(row: ExcelDataRow) -> Dict[str, str]:
    try:
        return deserialize_row_data(row.row_data)
    except RowDataFormatError as e:
        logger.error(f"Row {row.id} ({row.file_name}/{row.sheet_name}#{row.row_index}) is malformed: {e}")
        raise InternalError(f"Stored data for row {row.row_index} could not be read") from e


def diff_row(row_index: int, old: Dict[str, str], new: Dict[str, str]) -> List[DataDifference]:
    """Column-level differences between two versions of one row.

    Columns of ``old`` come first in their order, then columns only ``new`` has.
    """
    differences = []
    for column, old_value in old.items():
        new_value = new.get(column)
        if new_value != old_value:
            differences.append(DataDifference(
                row_index=row_index, column_name=column,
                old_value=old_value, new_value=new_value, type=DifferenceType.MODIFIED,
            ))
    for column, new_value in new.items():
        if column not in old:
            differences.append(DataDifference(
                row_index=row_index, column_name=column,
                old_value=None, new_value=new_value, type=DifferenceType.MODIFIED,
            ))
    return differences


def compare_row_sets(
    rows_a: Sequence[ExcelDataRow],
    rows_b: Sequence[ExcelDataRow],
    whole_row_gate: bool = False,
) -> Tuple[List[DataDifference], ComparisonSummary]:
    """
    Diff row set A (old) against row set B (new).

    With whole_row_gate, a matched pair whose stored text is identical is
    skipped before decoding.
    """
    a_by_index = _first_by_index(rows_a)
    b_by_index = _first_by_index(rows_b)
    differences: List[DataDifference] = []

    for row_index, row_a in a_by_index.items():
        row_b = b_by_index.get(row_index)
        if row_b is None:
            differences.append(DataDifference(
                row_index=row_index, column_name=ENTIRE_ROW,
                old_value=row_a.row_data, new_value=None, type=DifferenceType.DELETED,
            ))
            continue
        if whole_row_gate and row_a.row_data == row_b.row_data:
            continue
        differences.extend(diff_row(row_index, _decode(row_a), _decode(row_b)))

    for row_index, row_b in b_by_index.items():
        if row_index not in a_by_index:
            differences.append(DataDifference(
                row_index=row_index, column_name=ENTIRE_ROW,
                old_value=None, new_value=row_b.row_data, type=DifferenceType.ADDED,
            ))

    return differences, summarize(differences, len(rows_a), len(rows_b))


def summarize(differences: List[DataDifference], count_a: int, count_b: int) -> ComparisonSummary:
    total = max(count_a, count_b)
    touched = {d.row_index for d in differences}
    modified = {d.row_index for d in differences if d.type == DifferenceType.MODIFIED}
    return ComparisonSummary(
        total_rows=total,
        modified_rows=len(modified),
        added_rows=sum(1 for d in differences if d.type == DifferenceType.ADDED),
        deleted_rows=sum(1 for d in differences if d.type == DifferenceType.DELETED),
        # Added and deleted indexes both count as touched, so this can go negative
        unchanged_rows=max(0, total - len(touched)),
    )


class ComparisonService:
    @staticmethod
    def _require_active_file(db: Session, file_name: str) -> ExcelFile:
        excel_file = db.query(ExcelFile).filter(
            ExcelFile.file_name == file_name,
            ExcelFile.is_active == True,  # noqa: E712
        ).first()
        if not excel_file:
            raise NotFoundError(f"File not found: {file_name}")
        return excel_file

    @staticmethod
    def _live_rows(db: Session, file_name: str, sheet_name: Optional[str] = None):
        query = db.query(ExcelDataRow).filter(
            ExcelDataRow.file_name == file_name,
            ExcelDataRow.is_deleted == False,  # noqa: E712
        )
        if sheet_name:
            query = query.filter(ExcelDataRow.sheet_name == sheet_name)
        return query

    @classmethod
    def _first_sheet(cls, db: Session, file_name: str) -> Optional[str]:
        """Sheet of the earliest stored live row, None when the file has no rows."""
        first = cls._live_rows(db, file_name).order_by(ExcelDataRow.id).first()
        return first.sheet_name if first else None

    def compare_files(
        self,
        db: Session,
        file_name1: str,
        file_name2: str,
        sheet_name: Optional[str] = None,
        sheet_name2: Optional[str] = None,
    ) -> ComparisonResult:
        if not file_name1 or not file_name2:
            raise InvalidArgumentError("Both file names are required")

        self._require_active_file(db, file_name1)
        self._require_active_file(db, file_name2)
        # Rows are matched by row_index only, so each side is limited to one sheet
        sheet_name2 = sheet_name2 or sheet_name or self._first_sheet(db, file_name2)
        sheet_name = sheet_name or self._first_sheet(db, file_name1)

        rows_a = self._live_rows(db, file_name1, sheet_name).order_by(ExcelDataRow.row_index, ExcelDataRow.id).all()
        rows_b = self._live_rows(db, file_name2, sheet_name2).order_by(ExcelDataRow.row_index, ExcelDataRow.id).all()
        logger.info(f"Comparing {file_name1} ({len(rows_a)} rows) with {file_name2} ({len(rows_b)} rows)")

        differences, summary = compare_row_sets(rows_a, rows_b)
        logger.info(
            f"Comparison done: {summary.modified_rows} modified, {summary.added_rows} added, "
            f"{summary.deleted_rows} deleted"
        )
        return ComparisonResult(
            comparison_id=str(uuid.uuid4()),
            file1_name=file_name1,
            file2_name=file_name2,
            comparison_date=utcnow(),
            differences=differences,
            summary=summary,
        )

    def _snapshot(self, db: Session, file_name: str, at: datetime, sheet_name: Optional[str]):
        """Live rows as they stood at ``at``."""
        return self._live_rows(db, file_name, sheet_name).filter(
            ExcelDataRow.created_date <= at,
            (ExcelDataRow.modified_date == None) | (ExcelDataRow.modified_date <= at),  # noqa: E711
        ).order_by(ExcelDataRow.row_index, ExcelDataRow.id).all()

    def compare_versions(
        self,
        db: Session,
        file_name: str,
        version1_date: datetime,
        version2_date: datetime,
        sheet_name: Optional[str] = None,
    ) -> ComparisonResult:
        if not file_name:
            raise InvalidArgumentError("File name is required")
        version1_date = to_naive_utc(version1_date)
        version2_date = to_naive_utc(version2_date)
        if version1_date >= version2_date:
            raise InvalidArgumentError("The first version date must be earlier than the second")

        self._require_active_file(db, file_name)
        rows_a = self._snapshot(db, file_name, version1_date, sheet_name)
        rows_b = self._snapshot(db, file_name, version2_date, sheet_name)
        logger.info(
            f"Comparing versions of {file_name}: {len(rows_a)} rows at {version1_date}, "
            f"{len(rows_b)} rows at {version2_date}"
        )

        differences, summary = compare_row_sets(rows_a, rows_b, whole_row_gate=True)
        return ComparisonResult(
            comparison_id=str(uuid.uuid4()),
            file1_name=f"{file_name} ({format_minutes(version1_date)})",
            file2_name=f"{file_name} ({format_minutes(version2_date)})",
            comparison_date=utcnow(),
            differences=differences,
            summary=summary,
        )

    def get_changes(
        self,
        db: Session,
        file_name: str,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        sheet_name: Optional[str] = None,
    ) -> List[ChangeEntry]:
        if not file_name:
            raise InvalidArgumentError("File name is required")

        query = self._live_rows(db, file_name, sheet_name).filter(ExcelDataRow.modified_date != None)  # noqa: E711
        if from_date is not None:
            query = query.filter(ExcelDataRow.modified_date >= to_naive_utc(from_date))
        if to_date is not None:
            query = query.filter(ExcelDataRow.modified_date <= to_naive_utc(to_date))

        rows = query.order_by(ExcelDataRow.modified_date.desc(), ExcelDataRow.id.desc()).all()
        return [
            ChangeEntry(
                id=r.id,
                row_index=r.row_index,
                sheet_name=r.sheet_name,
                modified_date=r.modified_date,
                modified_by=r.modified_by,
                version=r.version,
                data_preview=preview(r.row_data, FILE_HISTORY_PREVIEW),
            )
            for r in rows
        ]

    def get_change_history(
        self, db: Session, file_name: str, sheet_name: Optional[str] = None
    ) -> List[FileHistoryEntry]:
        if not file_name:
            raise InvalidArgumentError("File name is required")

        last_change = func.coalesce(ExcelDataRow.modified_date, ExcelDataRow.created_date)
        rows = self._live_rows(db, file_name, sheet_name).order_by(last_change.desc(), ExcelDataRow.id.desc()).all()
        return [
            FileHistoryEntry(
                id=r.id,
                row_index=r.row_index,
                sheet_name=r.sheet_name,
                created_date=r.created_date,
                modified_date=r.modified_date,
                modified_by=r.modified_by,
                version=r.version,
                has_modification=r.modified_date is not None,
                last_change_date=r.modified_date or r.created_date,
                data_preview=preview(r.row_data, FILE_HISTORY_PREVIEW),
            )
            for r in rows
        ]

    def get_row_history(self, db: Session, row_id: int) -> List[RowHistoryEntry]:
        """Every stored generation of the row's (file, sheet, row_index) slot, deleted ones included."""
        if row_id <= 0:
            raise InvalidArgumentError("A valid row id is required")

        base = db.get(ExcelDataRow, row_id)
        if base is None:
            raise NotFoundError(f"Row not found: {row_id}")

        last_change = func.coalesce(ExcelDataRow.modified_date, ExcelDataRow.created_date)
        rows = db.query(ExcelDataRow).filter(
            ExcelDataRow.file_name == base.file_name,
            ExcelDataRow.sheet_name == base.sheet_name,
            ExcelDataRow.row_index == base.row_index,
        ).order_by(ExcelDataRow.version.desc(), last_change.desc(), ExcelDataRow.id.desc()).all()

        return [
            RowHistoryEntry(
                id=r.id,
                row_index=r.row_index,
                sheet_name=r.sheet_name,
                file_name=r.file_name,
                data_preview=preview(r.row_data, ROW_HISTORY_PREVIEW),
                created_date=r.created_date,
                modified_date=r.modified_date,
                modified_by=r.modified_by,
                version=r.version,
                is_deleted=r.is_deleted,
                is_current_version=r.id == row_id,
                change_date=r.modified_date or r.created_date,
            )
            for r in rows
        ]


comparison_service = ComparisonService()
