from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import Field
from excel_data.schemas.common import CamelModel

ENTIRE_ROW = "EntireRow"


class DifferenceType(str, Enum):
    MODIFIED = "Modified"
    ADDED = "Added"
    DELETED = "Deleted"


class DataDifference(CamelModel):
    row_index: int
    column_name: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    type: DifferenceType


class ComparisonSummary(CamelModel):
    total_rows: int = 0
    modified_rows: int = 0
    added_rows: int = 0
    deleted_rows: int = 0
    unchanged_rows: int = 0


class ComparisonResult(CamelModel):
    comparison_id: str
    file1_name: str
    file2_name: str
    comparison_date: datetime
    differences: List[DataDifference] = []
    summary: ComparisonSummary


class CompareFilesRequest(CamelModel):
    file_name1: str = Field(min_length=1)
    file_name2: str = Field(min_length=1)
    sheet_name: Optional[str] = None
    # Defaults to sheet_name
    sheet_name2: Optional[str] = None


class CompareVersionsRequest(CamelModel):
    file_name: str = Field(min_length=1)
    version1_date: datetime
    version2_date: datetime
    sheet_name: Optional[str] = None


class ChangeEntry(CamelModel):
    """A live row modified inside the requested window"""
    id: int
    row_index: int
    sheet_name: str
    modified_date: datetime
    modified_by: Optional[str] = None
    version: int
    data_preview: str


class FileHistoryEntry(CamelModel):
    id: int
    row_index: int
    sheet_name: str
    created_date: datetime
    modified_date: Optional[datetime] = None
    modified_by: Optional[str] = None
    version: int
    has_modification: bool
    last_change_date: datetime
    data_preview: str


class RowHistoryEntry(CamelModel):
    id: int
    row_index: int
    sheet_name: str
    file_name: str
    data_preview: str
    created_date: datetime
    modified_date: Optional[datetime] = None
    modified_by: Optional[str] = None
    version: int
    is_deleted: bool
    is_current_version: bool
    change_date: datetime


class UploadedFileRef(CamelModel):
    name: str
    original: str


class UploadedComparison(CamelModel):
    comparison: ComparisonResult
    file1: UploadedFileRef
    file2: UploadedFileRef
