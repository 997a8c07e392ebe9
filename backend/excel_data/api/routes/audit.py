from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from excel_data.core.database import get_db
from excel_data.schemas.audit import AuditEntryOut
from excel_data.schemas.common import ApiResponse
from excel_data.services.audit_service import audit_service
from excel_data.utils.timeutils import to_naive_utc

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/history", response_model=ApiResponse[List[AuditEntryOut]])
async def get_audit_history(
    file_name: Optional[str] = Query(None, alias="fileName"),
    sheet_name: Optional[str] = Query(None, alias="sheetName"),
    row_id: Optional[int] = Query(None, alias="rowId"),
    from_date: Optional[datetime] = Query(None, alias="fromDate"),
    to_date: Optional[datetime] = Query(None, alias="toDate"),
    limit: Optional[int] = Query(None),
    db: Session = Depends(get_db)
):
    """Audit entries, newest first"""
    entries = audit_service.get_history(
        db,
        file_name=file_name,
        sheet_name=sheet_name,
        row_id=row_id,
        from_date=to_naive_utc(from_date),
        to_date=to_naive_utc(to_date),
        limit=limit,
    )
    return ApiResponse[List[AuditEntryOut]](data=[AuditEntryOut.model_validate(e) for e in entries])
