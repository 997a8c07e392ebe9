import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import Field
from excel_data.schemas.common import CamelModel
from excel_data.utils.row_data import RowDataFormatError, deserialize_row_data

logger = logging.getLogger(__name__)

INVALID_ROW_DATA = {"Error": "Invalid row data"}


class FileOut(CamelModel):
    id: int
    file_name: str
    original_file_name: str
    file_path: str
    file_size: int
    upload_date: datetime
    uploaded_by: Optional[str] = None
    is_active: bool


class RowOut(CamelModel):
    id: int
    file_name: str
    sheet_name: str
    row_index: int
    data: Dict[str, str]
    created_date: datetime
    modified_date: Optional[datetime] = None
    version: int
    modified_by: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "RowOut":
        """Build from an ExcelDataRow; undecodable stored data is flagged, not raised."""
        try:
            data = deserialize_row_data(row.row_data)
        except RowDataFormatError as e:
            logger.warning(f"Row {row.id} has malformed data: {e}")
            data = dict(INVALID_ROW_DATA)
        return cls(
            id=row.id,
            file_name=row.file_name,
            sheet_name=row.sheet_name,
            row_index=row.row_index,
            data=data,
            created_date=row.created_date,
            modified_date=row.modified_date,
            version=row.version,
            modified_by=row.modified_by,
        )


class PagedRows(CamelModel):
    file_name: str
    sheet_name: Optional[str] = None
    rows: List[RowOut]
    page: int
    page_size: int
    total_count: int
    total_pages: int


class ReadResult(CamelModel):
    """Outcome of parsing a sheet into a fresh row generation"""
    file_name: str
    sheet_name: str
    headers: List[str]
    row_count: int
    skipped_rows: int = 0
    replaced_rows: int = 0
    rows: List[RowOut] = []


class UploadAndReadResult(CamelModel):
    file: FileOut
    result: ReadResult


class UpdateRowRequest(CamelModel):
    id: int
    data: Dict[str, Any]
    modified_by: Optional[str] = None
    change_reason: Optional[str] = None


class BulkUpdateRequest(CamelModel):
    updates: List[UpdateRowRequest] = Field(min_length=1)
    modified_by: Optional[str] = None


class BulkUpdateItemOut(CamelModel):
    id: int
    success: bool
    data: Optional[RowOut] = None
    message: Optional[str] = None


class AddRowRequest(CamelModel):
    file_name: str
    sheet_name: str
    row_data: Dict[str, Any]
    added_by: Optional[str] = None


class ExportRequest(CamelModel):
    file_name: str
    sheet_name: Optional[str] = None
    row_ids: Optional[List[int]] = None
    include_modification_history: bool = False


class SheetStatistics(CamelModel):
    sheet_name: str
    row_count: int
    modified_row_count: int
    first_created: Optional[datetime] = None
    last_modified: Optional[datetime] = None


class DataStatistics(CamelModel):
    file_name: str
    sheet_name: Optional[str] = None
    total_rows: int
    modified_rows: int
    sheets_count: int
    first_created: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    has_data: bool
    modification_rate: float
    sheet_statistics: List[SheetStatistics] = []
