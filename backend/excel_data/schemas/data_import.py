from datetime import datetime
from typing import Optional
from excel_data.schemas.common import CamelModel


class DataImportOut(CamelModel):
    id: int
    file_name: str
    file_size: int
    status: str
    progress: int
    error_message: Optional[str] = None
    created_date: datetime
    started_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    created_by: Optional[str] = None
    records_processed: int
    records_total: int
    ssis_package_name: Optional[str] = None
    processing_log: Optional[str] = None


class ExecuteRequest(CamelModel):
    package_name: str


class ImportStatusOut(CamelModel):
    id: int
    status: str
    progress: int
    current_step: str
    records_processed: int
    error_message: Optional[str] = None


class PackageInfo(CamelModel):
    name: str
    description: str
