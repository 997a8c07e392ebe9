from datetime import datetime
from typing import Optional
from excel_data.schemas.common import CamelModel


class AuditEntryOut(CamelModel):
    id: int
    file_name: str
    sheet_name: str
    row_index: int
    original_row_id: int
    operation_type: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    changed_columns: Optional[str] = None
    modified_by: Optional[str] = None
    change_date: datetime
    user_ip: Optional[str] = None
    user_agent: Optional[str] = None
    change_reason: Optional[str] = None
    is_success: bool
    error_message: Optional[str] = None
