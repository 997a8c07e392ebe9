import logging
import math
from pathlib import Path
from typing import Any, List, Mapping, Optional
from fastapi import UploadFile
from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from excel_data.core.config import settings
from excel_data.core.exceptions import (
    ConflictError,
    ExternalFailureError,
    InvalidArgumentError,
    NotFoundError,
)
from excel_data.models.file import ExcelFile
from excel_data.models.row import ExcelDataRow
from excel_data.schemas.excel import (
    DataStatistics,
    PagedRows,
    ReadResult,
    RowOut,
    SheetStatistics,
)
from excel_data.services.audit_service import ClientInfo, audit_service
from excel_data.services.row_mutator import row_mutator
from excel_data.services.spreadsheet_reader import SUPPORTED_EXTENSIONS, list_sheets, read_sheet
from excel_data.storage.local_storage import storage
from excel_data.utils.export_utils import build_workbook, modification_label
from excel_data.utils.row_data import (
    RowDataFormatError,
    deserialize_row_data,
    normalize_row_data,
    serialize_row_data,
)
from excel_data.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


async def read_upload(file: UploadFile) -> bytes:
    """Validate an uploaded spreadsheet and return its content"""
    if not file or not file.filename:
        raise InvalidArgumentError("Please select a spreadsheet file to upload")

    file_ext = Path(file.filename).suffix.lower()
    if file_ext not in SUPPORTED_EXTENSIONS:
        raise InvalidArgumentError(
            f"File type not supported. Allowed: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )

    content = await file.read()
    if not content:
        raise InvalidArgumentError("Uploaded file is empty")
    if len(content) > settings.MAX_FILE_SIZE:
        raise InvalidArgumentError(
            f"File too large. Maximum size is {settings.MAX_FILE_SIZE // (1024 * 1024)}MB"
        )
    return content


def _live_rows(db: Session, file_name: str, sheet_name: Optional[str] = None):
    query = db.query(ExcelDataRow).filter(
        ExcelDataRow.file_name == file_name,
        ExcelDataRow.is_deleted == False,  # noqa: E712
    )
    if sheet_name:
        query = query.filter(ExcelDataRow.sheet_name == sheet_name)
    return query


class ExcelService:
    @staticmethod
    async def upload_file(db: Session, file: UploadFile, uploaded_by: Optional[str] = None) -> ExcelFile:
        """Store an upload and register it"""
        content = await read_upload(file)
        file_path, stored_name = storage.save_bytes(file.filename, content)

        db_file = ExcelFile(
            file_name=stored_name,
            original_file_name=file.filename,
            file_path=file_path,
            file_size=len(content),
            uploaded_by=uploaded_by,
            is_active=True,
        )
        db.add(db_file)
        db.commit()
        db.refresh(db_file)

        logger.info(f"Uploaded {file.filename} as {stored_name}")
        return db_file

    @staticmethod
    def list_files(db: Session) -> List[ExcelFile]:
        return db.query(ExcelFile).filter(
            ExcelFile.is_active == True  # noqa: E712
        ).order_by(ExcelFile.upload_date.desc(), ExcelFile.id.desc()).all()

    @staticmethod
    def get_active_file(db: Session, file_name: str) -> ExcelFile:
        if not file_name:
            raise InvalidArgumentError("File name is required")
        excel_file = db.query(ExcelFile).filter(
            ExcelFile.file_name == file_name,
            ExcelFile.is_active == True,  # noqa: E712
        ).first()
        if not excel_file:
            raise NotFoundError(f"File not found: {file_name}")
        return excel_file

    def read_excel_data(self, db: Session, file_name: str, sheet_name: Optional[str] = None) -> ReadResult:
        """
        Parse a sheet and replace its stored rows.

        The file is parsed completely before anything is written. The previous
        generation is retired and the new one inserted in the same transaction.
        """
        excel_file = self.get_active_file(db, file_name)
        if not storage.file_exists(excel_file.file_path):
            raise ExternalFailureError(f"Physical file not found for {file_name}")

        parsed = read_sheet(excel_file.file_path, sheet_name)
        now = utcnow()

        try:
            previous = _live_rows(db, file_name, parsed.sheet_name).all()
            for row in previous:
                row.is_deleted = True
                row.modified_date = now
                row.modified_by = settings.SYSTEM_ACTOR

            db.add_all([
                ExcelDataRow(
                    file_name=file_name,
                    sheet_name=parsed.sheet_name,
                    row_index=row_index,
                    row_data=serialize_row_data(data),
                    created_date=now,
                    is_deleted=False,
                )
                for row_index, data in parsed.rows
            ])
            db.commit()
        except StaleDataError:
            db.rollback()
            logger.warning(f"Concurrent re-read of {file_name}/{parsed.sheet_name} detected")
            raise ConflictError(f"Sheet {parsed.sheet_name} of {file_name} was changed concurrently, please retry")
        except Exception:
            db.rollback()
            logger.error(f"Error storing rows for {file_name}/{parsed.sheet_name}", exc_info=True)
            raise

        rows = _live_rows(db, file_name, parsed.sheet_name).order_by(ExcelDataRow.row_index, ExcelDataRow.id).all()
        logger.info(
            f"Read {file_name}/{parsed.sheet_name}: {len(rows)} rows stored, {len(previous)} rows replaced"
        )
        return ReadResult(
            file_name=file_name,
            sheet_name=parsed.sheet_name,
            headers=parsed.headers,
            row_count=len(rows),
            skipped_rows=parsed.skipped_rows,
            replaced_rows=len(previous),
            rows=[RowOut.from_row(r) for r in rows],
        )

    @staticmethod
    def get_excel_data(
        db: Session,
        file_name: str,
        sheet_name: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> PagedRows:
        if not file_name:
            raise InvalidArgumentError("File name is required")

        page = max(page or 1, 1)
        if page_size is None:
            page_size = settings.DEFAULT_PAGE_SIZE
        page_size = max(1, min(page_size, settings.MAX_PAGE_SIZE))

        query = _live_rows(db, file_name, sheet_name)
        total_count = query.count()
        rows = query.order_by(ExcelDataRow.row_index, ExcelDataRow.id).offset(
            (page - 1) * page_size
        ).limit(page_size).all()

        return PagedRows(
            file_name=file_name,
            sheet_name=sheet_name,
            rows=[RowOut.from_row(r) for r in rows],
            page=page,
            page_size=page_size,
            total_count=total_count,
            total_pages=math.ceil(total_count / page_size) if total_count else 0,
        )

    def get_all_excel_data(self, db: Session, file_name: str, sheet_name: Optional[str] = None) -> List[RowOut]:
        self.get_active_file(db, file_name)
        rows = _live_rows(db, file_name, sheet_name).order_by(ExcelDataRow.row_index, ExcelDataRow.id).all()
        return [RowOut.from_row(r) for r in rows]

    def add_row(
        self,
        db: Session,
        file_name: str,
        sheet_name: str,
        row_data: Mapping[str, Any],
        added_by: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> ExcelDataRow:
        """Append a row after the highest index the sheet has ever used."""
        self.get_active_file(db, file_name)
        if not sheet_name:
            raise InvalidArgumentError("Sheet name is required")

        # Deleted rows count so an index is never handed out twice
        max_index = db.query(func.max(ExcelDataRow.row_index)).filter(
            ExcelDataRow.file_name == file_name,
            ExcelDataRow.sheet_name == sheet_name,
        ).scalar() or 0

        data = normalize_row_data(row_data)
        row = ExcelDataRow(
            file_name=file_name,
            sheet_name=sheet_name,
            row_index=max_index + 1,
            row_data=serialize_row_data(data),
            created_date=utcnow(),
            modified_by=added_by,
            is_deleted=False,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        logger.info(f"Added row {row.row_index} to {file_name}/{sheet_name}")

        audit_service.log_change(
            db,
            file_name=file_name,
            sheet_name=sheet_name,
            row_index=row.row_index,
            original_row_id=row.id,
            operation_type="CREATE",
            new_value=data,
            modified_by=added_by,
            client=client,
        )
        return row

    @staticmethod
    async def delete_row(
        db: Session,
        row_id: int,
        deleted_by: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> ExcelDataRow:
        return await row_mutator.soft_delete_row(db, row_id, deleted_by, client)

    def delete_file(self, db: Session, file_name: str, deleted_by: Optional[str] = None) -> int:
        """Deactivate a file and retire all its rows; returns the number of rows retired."""
        excel_file = self.get_active_file(db, file_name)
        now = utcnow()

        try:
            rows = _live_rows(db, file_name).all()
            for row in rows:
                row.is_deleted = True
                row.modified_date = now
                row.modified_by = deleted_by or settings.SYSTEM_ACTOR
            excel_file.is_active = False
            db.commit()
        except StaleDataError:
            db.rollback()
            raise ConflictError(f"Rows of {file_name} were changed concurrently, please retry")

        # Registry and rows are committed; a leftover file on disk is harmless
        try:
            storage.delete_file(excel_file.file_path)
        except OSError as e:
            logger.warning(f"Could not remove physical file {excel_file.file_path}: {e}")

        logger.info(f"Deleted file {file_name}: {len(rows)} rows soft-deleted")
        return len(rows)

    @staticmethod
    def export(
        db: Session,
        file_name: str,
        sheet_name: Optional[str] = None,
        row_ids: Optional[List[int]] = None,
        include_modification_history: bool = False,
    ) -> bytes:
        if not file_name:
            raise InvalidArgumentError("File name is required")

        query = _live_rows(db, file_name, sheet_name)
        if row_ids:
            query = query.filter(ExcelDataRow.id.in_(row_ids))
        rows = query.order_by(ExcelDataRow.row_index, ExcelDataRow.id).all()

        row_maps = []
        for row in rows:
            try:
                row_maps.append(deserialize_row_data(row.row_data))
            except RowDataFormatError as e:
                logger.warning(f"Skipping malformed row {row.id} in export: {e}")
                row_maps.append({})

        labels = None
        if include_modification_history:
            labels = [modification_label(r.modified_date, r.modified_by) for r in rows]

        logger.info(f"Exporting {len(rows)} rows of {file_name}")
        return build_workbook(row_maps, labels)

    def get_sheets(self, db: Session, file_name: str) -> List[str]:
        """Sheet names from the stored file, or from the stored rows once the file is gone."""
        excel_file = self.get_active_file(db, file_name)
        if storage.file_exists(excel_file.file_path):
            return list_sheets(excel_file.file_path)

        logger.warning(f"Physical file missing for {file_name}, listing sheets from stored rows")
        sheets = db.query(ExcelDataRow.sheet_name).filter(
            ExcelDataRow.file_name == file_name,
            ExcelDataRow.is_deleted == False,  # noqa: E712
        ).distinct().order_by(ExcelDataRow.sheet_name).all()
        return [s for (s,) in sheets]

    @staticmethod
    def get_statistics(db: Session, file_name: str, sheet_name: Optional[str] = None) -> DataStatistics:
        if not file_name:
            raise InvalidArgumentError("File name is required")

        grouped = _live_rows(db, file_name, sheet_name).with_entities(
            ExcelDataRow.sheet_name,
            func.count(ExcelDataRow.id),
            func.count(ExcelDataRow.modified_date),
            func.min(ExcelDataRow.created_date),
            func.max(ExcelDataRow.modified_date),
        ).group_by(ExcelDataRow.sheet_name).order_by(ExcelDataRow.sheet_name).all()

        sheet_stats = [
            SheetStatistics(
                sheet_name=name,
                row_count=count,
                modified_row_count=modified,
                first_created=first_created,
                last_modified=last_modified,
            )
            for name, count, modified, first_created, last_modified in grouped
        ]

        total_rows = sum(s.row_count for s in sheet_stats)
        modified_rows = sum(s.modified_row_count for s in sheet_stats)
        created_dates = [s.first_created for s in sheet_stats if s.first_created]
        modified_dates = [s.last_modified for s in sheet_stats if s.last_modified]

        logger.info(f"Statistics for {file_name}: {total_rows} rows, {modified_rows} modified")
        return DataStatistics(
            file_name=file_name,
            sheet_name=sheet_name,
            total_rows=total_rows,
            modified_rows=modified_rows,
            sheets_count=len(sheet_stats),
            first_created=min(created_dates) if created_dates else None,
            last_modified=max(modified_dates) if modified_dates else None,
            has_data=total_rows > 0,
            modification_rate=(modified_rows / total_rows * 100) if total_rows else 0.0,
            sheet_statistics=sheet_stats,
        )


excel_service = ExcelService()
